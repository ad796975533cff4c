"""
Text utilities for handling human-entered names with accents.

Used by the name normalizer and the column detector.
"""

import re
import unicodedata
from typing import Optional

_WHITESPACE_RE = re.compile(r"\s+")
_NBSP_RE = re.compile("[\u00A0\u2007\u202F\uFEFF]")
_QUOTE_CHARS = "\"'`\u2018\u2019\u201C\u201D\u00AB\u00BB"

# Letters NFKD does not decompose into a base letter + mark
_SPECIAL_FOLDS = {
    "ß": "ss", "ẞ": "SS",
    "æ": "ae", "Æ": "AE",
    "œ": "oe", "Œ": "OE",
    "ø": "o", "Ø": "O",
    "ł": "l", "Ł": "L",
    "đ": "d", "Đ": "D",
    "ð": "d", "Ð": "D",
    "þ": "th", "Þ": "TH",
    "ı": "i",
}


def collapse_whitespace(text: Optional[str]) -> str:
    """
    Trim and collapse internal whitespace, including non-breaking spaces.

    "  Ana   María " → "Ana María"
    """
    if not text:
        return ""
    text = _NBSP_RE.sub(" ", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def strip_surrounding_quotes(text: str) -> str:
    """
    Remove quote characters wrapping the whole value.

    '"J. Smith"' → 'J. Smith'
    """
    while len(text) >= 2 and text[0] in _QUOTE_CHARS and text[-1] in _QUOTE_CHARS:
        text = text[1:-1].strip()
    return text


def fold_diacritics(text: Optional[str]) -> str:
    """
    Fold accented letters to their base letters.

    Handles accents and letters without a decomposition:
    - "José García" → "Jose Garcia"
    - "Łukasz Øster" → "Lukasz Oster"
    - "Straße" → "Strasse"

    Args:
        text: Original text (may have accents, mixed case)

    Returns:
        Text with combining marks removed; case is preserved
    """
    if not text:
        return ""

    text = "".join(_SPECIAL_FOLDS.get(c, c) for c in text)

    # NFKD separates base chars from accents and expands compatibility forms
    normalized = unicodedata.normalize("NFKD", text)

    return "".join(c for c in normalized if not unicodedata.combining(c))


def clean_cell(value: object) -> str:
    """
    Convert a raw spreadsheet/CSV cell into a display string.

    - None → ""
    - 12.0 → "12"
    - datetimes → ISO date
    """
    if value is None:
        return ""
    if isinstance(value, float):
        if value != value:  # NaN
            return ""
        if value.is_integer():
            return str(int(value))
    if hasattr(value, "isoformat"):
        iso = value.isoformat()
        return iso[:10] if iso.endswith("T00:00:00") else iso
    return collapse_whitespace(str(value))
