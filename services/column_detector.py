"""
Column role detection for attendance files.

Scores every column against the roles name / email / identifier / date /
status / other using header keywords and the shape of sampled values, then
picks one primary column per role. A name column is mandatory.
"""

import re
from collections import Counter
from datetime import datetime
from typing import Optional
import structlog

from config import settings
from exceptions import NoNameColumnError
from models.columns import (
    ColumnRole,
    ROLE_ORDER,
    DetectedColumn,
    ColumnDetectionResult,
    ParsedRow,
)
from models.matching import AttendanceStatus
from parsers.header_detect import EMAIL_RE, header_keyword_score, normalize_header
from parsers.tabular_parser import TabularData, SourceRow
from utils.text_utils import fold_diacritics

logger = structlog.get_logger(__name__)

HEADER_WEIGHT = 0.5
OTHER_BASELINE = 0.1

# Closed vocabulary of attendance states
STATUS_VALUES: dict[str, AttendanceStatus] = {
    "present": AttendanceStatus.PRESENT,
    "p": AttendanceStatus.PRESENT,
    "yes": AttendanceStatus.PRESENT,
    "y": AttendanceStatus.PRESENT,
    "attended": AttendanceStatus.PRESENT,
    "here": AttendanceStatus.PRESENT,
    "x": AttendanceStatus.PRESENT,
    "absent": AttendanceStatus.ABSENT,
    "a": AttendanceStatus.ABSENT,
    "no": AttendanceStatus.ABSENT,
    "n": AttendanceStatus.ABSENT,
    "missing": AttendanceStatus.ABSENT,
    "late": AttendanceStatus.LATE,
    "l": AttendanceStatus.LATE,
    "tardy": AttendanceStatus.LATE,
    "excused": AttendanceStatus.EXCUSED,
    "e": AttendanceStatus.EXCUSED,
    "ex": AttendanceStatus.EXCUSED,
}

DATE_PATTERNS = [
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%m/%d/%y",
    "%d.%m.%Y",
    "%d-%m-%Y",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %H:%M",
    "%m/%d/%Y %I:%M %p",
    "%H:%M",
    "%I:%M %p",
]

_IDENTIFIER_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-_/.]{1,23}$")
_NAME_CHARS_RE = re.compile(r"^[^\W\d_][^\W\d_ .,'\-]*(?:[ .,'\-]+[^\W\d_][^\W\d_ .,'\-]*)*[.]?$")
_SIGNATURE_LETTER_RE = re.compile(r"[A-Za-z]")
_SIGNATURE_DIGIT_RE = re.compile(r"\d")

FIRST_NAME_HEADERS = {"first name", "given name", "first", "forename"}
LAST_NAME_HEADERS = {"last name", "surname", "family name", "last"}


# ===================
# VALUE SHAPES
# ===================

def status_from_value(value: Optional[str]) -> Optional[AttendanceStatus]:
    """Map a status cell onto an AttendanceStatus, or None."""
    if not value:
        return None
    key = fold_diacritics(value).strip().lower().rstrip(".")
    return STATUS_VALUES.get(key)


def looks_like_email(value: str) -> bool:
    return bool(EMAIL_RE.match(value.strip()))


def looks_like_date(value: str) -> bool:
    text = value.strip()
    for pattern in DATE_PATTERNS:
        try:
            datetime.strptime(text, pattern)
            return True
        except ValueError:
            continue
    return False


def looks_like_name(value: str) -> bool:
    text = fold_diacritics(value).strip()
    if not text or "@" in text or status_from_value(text) is not None:
        return False
    if not _NAME_CHARS_RE.match(text):
        return False
    tokens = [t for t in re.split(r"[\s,]+", text) if t]
    letters = sum(1 for c in text if c.isalpha())
    return 1 <= len(tokens) <= 5 and letters >= 2


def _format_signature(value: str) -> str:
    sig = _SIGNATURE_LETTER_RE.sub("A", value)
    return _SIGNATURE_DIGIT_RE.sub("9", sig)


def _identifier_score(values: list[str]) -> float:
    """Share of id-like tokens, scaled by how consistent their formats are."""
    ids = [
        v for v in values
        if _IDENTIFIER_RE.match(v) and any(c.isdigit() for c in v) and not looks_like_date(v)
    ]
    if not ids:
        return 0.0
    share = len(ids) / len(values)
    signatures = Counter(_format_signature(v) for v in ids)
    consistency = signatures.most_common(1)[0][1] / len(ids)
    return share * consistency


def _shape_scores(values: list[str]) -> dict[ColumnRole, float]:
    non_empty = [v for v in values if v.strip()]
    if not non_empty:
        return {role: 0.0 for role in ROLE_ORDER if role != ColumnRole.OTHER}

    n = len(non_empty)
    return {
        ColumnRole.NAME: sum(looks_like_name(v) for v in non_empty) / n,
        ColumnRole.EMAIL: sum(looks_like_email(v) for v in non_empty) / n,
        ColumnRole.IDENTIFIER: _identifier_score(non_empty),
        ColumnRole.DATE: sum(looks_like_date(v) for v in non_empty) / n,
        ColumnRole.STATUS: sum(status_from_value(v) is not None for v in non_empty) / n,
    }


# ===================
# DETECTION
# ===================

def score_column(header: Optional[str], values: list[str]) -> dict[ColumnRole, float]:
    """
    Role-confidence vector for one column.

    With a header: half keyword score, half value shape.
    Without: value shape alone.
    """
    shape = _shape_scores(values)
    scores: dict[ColumnRole, float] = {}
    for role, shape_score in shape.items():
        if header is not None:
            keyword = header_keyword_score(header, role)
            scores[role] = HEADER_WEIGHT * keyword + (1 - HEADER_WEIGHT) * shape_score
        else:
            scores[role] = shape_score
    scores[ColumnRole.OTHER] = OTHER_BASELINE
    return scores


def _best_role(scores: dict[ColumnRole, float]) -> tuple[ColumnRole, float]:
    # max() keeps the first maximum, so ROLE_ORDER breaks ties
    role = max(ROLE_ORDER, key=lambda r: scores.get(r, 0.0))
    return role, scores.get(role, 0.0)


def detect_columns(
    header: Optional[list[str]],
    sample: list[SourceRow],
    min_confidence: Optional[float] = None,
) -> ColumnDetectionResult:
    """
    Infer the role of every column.

    Args:
        header: Header cells, or None for headerless files
        sample: First data rows (up to column_sample_rows)
        min_confidence: Floor a column must clear to become primary

    Returns:
        ColumnDetectionResult with at most one primary column per role

    Raises:
        NoNameColumnError: If no column clears the floor for "name"
    """
    floor = settings.column_min_confidence if min_confidence is None else min_confidence
    width = max([len(header or [])] + [len(r.cells) for r in sample])

    columns: list[DetectedColumn] = []
    for index in range(width):
        col_header = header[index] if header is not None and index < len(header) else None
        values = [r.cells[index] if index < len(r.cells) else "" for r in sample]
        scores = score_column(col_header, values)
        role, confidence = _best_role(scores)
        columns.append(DetectedColumn(
            index=index,
            header=col_header,
            role=role,
            confidence=confidence,
            scores=scores,
            samples=[v for v in values if v][:5],
        ))

    result = ColumnDetectionResult(columns=columns)
    for role in ROLE_ORDER:
        if role == ColumnRole.OTHER:
            continue
        eligible = [c for c in columns if c.role == role and c.confidence >= floor]
        if not eligible:
            continue
        # Highest confidence wins; leftmost on ties
        best = sorted(eligible, key=lambda c: (-c.confidence, c.index))[0]
        best.primary = True
        result.primary[role] = best

    if ColumnRole.NAME not in result.primary:
        best_name = max((c.scores.get(ColumnRole.NAME, 0.0) for c in columns), default=0.0)
        logger.warning("name_column_not_found", best_confidence=best_name, floor=floor)
        raise NoNameColumnError(best_name, floor)

    logger.info(
        "columns_detected",
        width=width,
        primary={r.value: c.index for r, c in result.primary.items()},
    )
    return result


def _surname_column(detection: ColumnDetectionResult) -> Optional[DetectedColumn]:
    """A last-name column to pair with a first-name primary column."""
    primary = detection.name_column
    if primary.header is None or normalize_header(primary.header) not in FIRST_NAME_HEADERS:
        return None
    for column in detection.columns:
        if (
            column is not primary
            and column.role == ColumnRole.NAME
            and column.header is not None
            and normalize_header(column.header) in LAST_NAME_HEADERS
        ):
            return column
    return None


def build_rows(table: TabularData, detection: ColumnDetectionResult) -> list[ParsedRow]:
    """
    Map every data row onto the detected primary columns.

    Rows keep their source index. Split first/last name columns are joined.
    """
    surname = _surname_column(detection)
    keys = [
        (table.header[i] if table.header and table.header[i] else f"column_{i + 1}")
        for i in range(table.width)
    ]

    rows = []
    for source in table:
        cells = {
            role: source.cells[col.index] if col.index < len(source.cells) else ""
            for role, col in detection.primary.items()
        }
        if surname is not None and surname.index < len(source.cells):
            cells[ColumnRole.NAME] = f"{cells[ColumnRole.NAME]} {source.cells[surname.index]}".strip()

        raw = {}
        for i, value in enumerate(source.cells):
            key = keys[i] if i < len(keys) else f"column_{i + 1}"
            raw[key] = value
        rows.append(ParsedRow(index=source.index, cells=cells, raw=raw))

    return rows
