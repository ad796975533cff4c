"""
Header row detection and the per-role header vocabulary.

A first row counts as a header when it carries role keywords that are not
explained by the values below it, and no email or id-like data.
"""

import re

from models.columns import ColumnRole
from utils.text_utils import collapse_whitespace, fold_diacritics

# Curated header vocabulary per role (folded, lower-case)
ROLE_KEYWORDS: dict[ColumnRole, list[str]] = {
    ColumnRole.NAME: [
        "name", "full name", "student name", "student", "attendee", "participant",
        "first name", "last name", "surname", "given name", "display name",
        "learner", "person", "nombre", "nom",
    ],
    ColumnRole.EMAIL: [
        "email", "e-mail", "email address", "mail", "correo", "user email",
    ],
    ColumnRole.IDENTIFIER: [
        "id", "student id", "identifier", "student number", "number", "no",
        "matric", "matriculation", "roll", "roll number", "code", "badge",
        "employee id", "registration",
    ],
    ColumnRole.DATE: [
        "date", "time", "timestamp", "day", "joined", "join time", "check in",
        "fecha",
    ],
    ColumnRole.STATUS: [
        "status", "attendance", "present", "attended", "state", "mark",
    ],
}

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
_NAME_SHAPE_RE = re.compile(r"^[A-Za-z][A-Za-z'.\-]*(?:[ ,]+[A-Za-z][A-Za-z'.\-]*)*$")
_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")


def normalize_header(value: str) -> str:
    """Fold, lower-case and collapse a header cell."""
    text = fold_diacritics(collapse_whitespace(value)).lower()
    return " ".join(t for t in _TOKEN_SPLIT_RE.split(text) if t)


def header_keyword_score(header: str, role: ColumnRole) -> float:
    """
    Score how strongly a header names a role.

    1.0 when the header equals a keyword, 0.8 when a keyword appears as a
    whole token or phrase inside it, otherwise 0.
    """
    text = normalize_header(header)
    if not text:
        return 0.0

    padded = f" {text} "
    best = 0.0
    for keyword in ROLE_KEYWORDS.get(role, []):
        kw = normalize_header(keyword)
        if text == kw:
            return 1.0
        if f" {kw} " in padded:
            best = 0.8
    return best


def _name_shaped(cell: str) -> bool:
    text = fold_diacritics(cell).strip()
    if not text or "@" in text:
        return False
    return bool(_NAME_SHAPE_RE.match(text)) and len(text.split()) <= 5


def _names_below(col: int, following: list[list[str]]) -> bool:
    """Most values below are multi-word names, not single status words."""
    values = [r[col] for r in following if col < len(r) and r[col].strip()]
    if not values:
        return False
    names = sum(1 for v in values if _name_shaped(v) and len(v.replace(",", " ").split()) >= 2)
    return names * 2 > len(values)


def _keyword_hits(row: list[str], following: list[list[str]]) -> int:
    hits = 0
    for col, cell in enumerate(row):
        roles = [role for role in ROLE_KEYWORDS if header_keyword_score(cell, role) > 0]
        if not roles:
            continue
        # "Present" repeated down the column is a value, not a header
        value = normalize_header(cell)
        if any(col < len(other) and normalize_header(other[col]) == value for other in following):
            continue
        # "Mark Lee" or "Day" above more names is a person, "Student Name" is a header
        if ColumnRole.NAME not in roles and _name_shaped(cell) and _names_below(col, following):
            continue
        hits += 1
    return hits


def _looks_like_data(cell: str) -> bool:
    """Emails and mostly-numeric cells (ids, dates, counts)."""
    text = cell.strip()
    if EMAIL_RE.match(text):
        return True
    digits = sum(1 for c in text if c.isdigit())
    letters = sum(1 for c in text if c.isalpha())
    return digits > 0 and digits >= letters


def _data_evidence(col: int, cell: str, following: list[list[str]]) -> bool:
    """A data-like cell over a column that holds the same kind of values."""
    if not _looks_like_data(cell):
        return False
    below = [r[col] for r in following if col < len(r) and r[col].strip()]
    return not below or any(_looks_like_data(v) for v in below)


def is_header_row(first_row: list[str], following: list[list[str]]) -> bool:
    """
    Decide whether the first row of a file is a header.

    Keyword hits outweigh stray digits ("Week 1", "2026-01-15" above a
    status column). An email anywhere in the row means data.

    Args:
        first_row: Cells of the first non-blank row
        following: A few rows after it, used as a contrast sample

    Returns:
        True if the first row should be treated as a header
    """
    cells = [(col, c) for col, c in enumerate(first_row) if c.strip()]
    if not cells:
        return False

    if any(EMAIL_RE.match(c.strip()) for _, c in cells):
        return False

    hits = _keyword_hits(first_row, following)
    data = sum(1 for col, c in cells if _data_evidence(col, c, following))
    if hits > 0:
        return hits > data
    if data > 0:
        return False

    # No keywords: a header when the rows below carry data-like cells it lacks
    data_like_below = sum(
        1 for row in following for c in row if c.strip() and _looks_like_data(c)
    )
    return data_like_below > 0
