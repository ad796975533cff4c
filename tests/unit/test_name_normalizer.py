"""
Unit tests for the name normalizer.

Run: pytest tests/unit/test_name_normalizer.py -v
"""

import pytest

from services.name_normalizer import normalize_name, name_variants, prepare_name
from utils.text_utils import fold_diacritics, strip_surrounding_quotes, collapse_whitespace


MESSY_NAMES = [
    '"Garcia, Robert"',
    "Dr. José  Núñez",
    "Smith, John Jr.",
    "Smith, John, Jr",
    "  ANA   maría  ",
    "O'Brien, Siobhán",
    "Mary-Jane Watson",
    "Łukasz Øster",
    "İpek Yılmaz",
    "- Ana -",
    "a_b c",
    "Room 101",
    "x ,y",
    " , Ana",
    "“Wei Chen”",
    "Prof. Dr. Hans Müller III",
    "Ana Lopez",
    "...",
    "Jr.",
    "",
]


class TestNormalizeName:
    """Tests for normalize_name()"""

    def test_reorders_last_first(self):
        """Single comma means 'Last, First'."""
        assert normalize_name('"Garcia, Robert"') == "robert garcia"

    def test_folds_diacritics_and_drops_titles(self):
        assert normalize_name("Dr. José  Núñez") == "jose nunez"

    def test_drops_suffix_after_reorder(self):
        assert normalize_name("Smith, John Jr.") == "john smith"

    def test_two_commas_are_not_reordered(self):
        assert normalize_name("Smith, John, Jr") == "smith john"

    def test_collapses_whitespace_and_lowercases(self):
        assert normalize_name("  ANA   maría  ") == "ana maria"

    def test_keeps_apostrophes_and_hyphens(self):
        assert normalize_name("O'Brien, Siobhán") == "siobhan o'brien"
        assert normalize_name("Mary-Jane Watson") == "mary-jane watson"

    def test_letters_without_decomposition(self):
        assert normalize_name("Łukasz Øster") == "lukasz oster"

    def test_smart_quotes_are_stripped(self):
        assert normalize_name("“Wei Chen”") == "wei chen"

    def test_multiple_titles(self):
        assert normalize_name("Prof. Dr. Hans Müller III") == "hans muller"

    def test_non_breaking_space(self):
        assert normalize_name("Ana\u00a0Lopez") == "ana lopez"

    @pytest.mark.parametrize("raw", ["", "...", "Jr.", "  ", "--", None])
    def test_empty_results(self, raw):
        """Empty or punctuation-only input gives the empty string."""
        assert normalize_name(raw) == ""

    def test_non_string_input(self):
        """Never raises, even on the wrong type."""
        assert normalize_name(12345) == ""

    @pytest.mark.parametrize("raw", MESSY_NAMES)
    def test_idempotent(self, raw):
        """normalize(normalize(x)) == normalize(x)"""
        once = normalize_name(raw)

        assert normalize_name(once) == once


class TestNameVariants:
    """Tests for name_variants()"""

    def test_nickname_expansion_is_additional(self):
        assert name_variants("bob smith") == ["bob smith", "robert smith"]

    def test_multiple_formal_names(self):
        assert name_variants("chris lee") == ["chris lee", "christopher lee", "christina lee"]

    def test_no_nickname(self):
        assert name_variants("ana lopez") == ["ana lopez"]

    def test_single_token(self):
        assert name_variants("liz") == ["liz", "elizabeth"]

    def test_empty(self):
        assert name_variants("") == []


class TestPrepareName:
    """Tests for prepare_name()"""

    def test_keeps_original(self):
        prepared = prepare_name("Smith, Bob")

        assert prepared.original == "Smith, Bob"
        assert prepared.normalized == "bob smith"
        assert prepared.variants == ["bob smith", "robert smith"]
        assert not prepared.is_empty

    def test_empty(self):
        prepared = prepare_name(None)

        assert prepared.original == ""
        assert prepared.is_empty
        assert prepared.variants == []


class TestTextUtils:
    """Tests for the text helpers the normalizer is built on."""

    def test_fold_diacritics_preserves_case(self):
        assert fold_diacritics("José García") == "Jose Garcia"

    def test_fold_special_letters(self):
        assert fold_diacritics("Straße") == "Strasse"

    def test_strip_nested_quotes(self):
        assert strip_surrounding_quotes("\"'Ana'\"") == "Ana"

    def test_unbalanced_quote_kept(self):
        assert strip_surrounding_quotes("O'Brien") == "O'Brien"

    def test_collapse_whitespace(self):
        assert collapse_whitespace("  a \t b\n c ") == "a b c"
