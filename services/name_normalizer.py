"""
Name normalization for matching.

Turns a raw attendance name into a comparison form. The original string is
never altered; callers keep it for display and audit.

normalize_name() is pure, total and idempotent:
    normalize_name(normalize_name(x)) == normalize_name(x)
"""

import re
import unicodedata
from dataclasses import dataclass, field
from typing import Optional

from utils.text_utils import collapse_whitespace, strip_surrounding_quotes, fold_diacritics

# Professional titles and generational suffixes dropped wherever they appear
TITLES = frozenset({
    "dr", "mr", "mrs", "ms", "miss", "mx", "prof", "sir", "rev",
    "jr", "sr", "ii", "iii", "iv", "phd", "esq",
})

# Nickname -> formal names. Expanded as extra candidates only.
NICKNAMES: dict[str, list[str]] = {
    "abby": ["abigail"],
    "alex": ["alexander", "alexandra"],
    "andy": ["andrew"],
    "ben": ["benjamin"],
    "beth": ["elizabeth"],
    "bill": ["william"],
    "billy": ["william"],
    "bob": ["robert"],
    "bobby": ["robert"],
    "cathy": ["catherine"],
    "chris": ["christopher", "christina"],
    "dan": ["daniel"],
    "danny": ["daniel"],
    "dave": ["david"],
    "ed": ["edward"],
    "eddie": ["edward"],
    "jim": ["james"],
    "jimmy": ["james"],
    "joe": ["joseph"],
    "jon": ["jonathan"],
    "kate": ["katherine", "kathryn"],
    "katie": ["katherine"],
    "liz": ["elizabeth"],
    "maggie": ["margaret"],
    "matt": ["matthew"],
    "meg": ["margaret"],
    "mike": ["michael"],
    "nate": ["nathan", "nathaniel"],
    "nick": ["nicholas"],
    "pat": ["patrick", "patricia"],
    "peggy": ["margaret"],
    "rick": ["richard"],
    "rob": ["robert"],
    "sam": ["samuel", "samantha"],
    "steve": ["steven", "stephen"],
    "sue": ["susan"],
    "ted": ["edward", "theodore"],
    "tom": ["thomas"],
    "tony": ["anthony"],
    "will": ["william"],
}

# Anything that is not a letter, digit, space, apostrophe or hyphen
_PUNCT_RE = re.compile(r"[^\w\s'\-]|_")
_EDGE_RE = re.compile(r"^['\-]+|['\-]+$")


@dataclass(frozen=True)
class NormalizedName:
    """Comparison forms of one raw name."""
    original: str
    normalized: str
    variants: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.normalized


def _reorder_last_first(text: str) -> str:
    """'garcia, robert' -> 'robert garcia'. Only for exactly one comma."""
    if text.count(",") != 1:
        return text
    last, first = (part.strip() for part in text.split(","))
    if not last or not first:
        return f"{first} {last}".strip()
    return f"{first} {last}"


def _clean_tokens(text: str) -> list[str]:
    text = "".join(c for c in text if not _is_mark(c))
    text = _PUNCT_RE.sub(" ", text)
    tokens = []
    for raw in text.split():
        token = _EDGE_RE.sub("", raw)
        if token and token not in TITLES:
            tokens.append(token)
    return tokens


def _is_mark(c: str) -> bool:
    # Combining marks left behind by lower() (e.g. "İ".lower())
    return unicodedata.combining(c) != 0


def normalize_name(raw: Optional[str]) -> str:
    """
    Canonicalize a raw name for comparison.

    Steps, in order:
        1. trim and collapse whitespace
        2. strip surrounding quotes
        3. fold diacritics
        4. lower-case
        5. "Last, First" -> "First Last" when there is exactly one comma
        6. drop punctuation and titles/suffixes

    Examples:
        '"Garcia, Robert"'  → 'robert garcia'
        'Dr. José  Núñez'   → 'jose nunez'
        'Smith, John Jr.'   → 'john smith'
        '...'               → ''

    Never raises; empty or punctuation-only input gives ''.
    """
    if not raw or not isinstance(raw, str):
        return ""

    text = collapse_whitespace(raw)
    text = strip_surrounding_quotes(text)
    text = fold_diacritics(text)
    text = text.lower()
    text = _reorder_last_first(text)
    return " ".join(_clean_tokens(text))


def name_variants(normalized: str) -> list[str]:
    """
    Normalized name plus nickname expansions of its first token.

    The normalized form is always first; expansions never replace it.

    >>> name_variants("bob smith")
    ['bob smith', 'robert smith']
    """
    if not normalized:
        return []

    variants = [normalized]
    first, _, rest = normalized.partition(" ")
    for formal in NICKNAMES.get(first, []):
        candidate = f"{formal} {rest}".strip()
        if candidate not in variants:
            variants.append(candidate)
    return variants


def prepare_name(raw: Optional[str]) -> NormalizedName:
    """Normalize a raw name and compute its matching variants."""
    normalized = normalize_name(raw)
    return NormalizedName(
        original=raw or "",
        normalized=normalized,
        variants=name_variants(normalized),
    )
