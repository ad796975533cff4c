"""
Tabular parser for attendance uploads.

Turns raw file bytes (delimited text or an .xlsx workbook) into rows of
string cells. Per-row irregularities are absorbed: short rows are padded,
long rows widen the table, blank rows are skipped. Only a file that cannot
be tokenized at all raises MalformedFileError.
"""

from dataclasses import dataclass, field
from io import BytesIO, StringIO
from typing import Iterator, Optional
import structlog

import pandas as pd

from exceptions import MalformedFileError
from models.processing import FileFormat
from parsers.header_detect import is_header_row
from utils.text_utils import clean_cell

logger = structlog.get_logger(__name__)

ENCODINGS = ["utf-8-sig", "cp1252"]
DELIMITERS = [",", ";", "\t", "|"]
SNIFF_LINES = 50
HEADER_CONTRAST_ROWS = 5
MAX_NUL_RATIO = 0.1

EXTENSION_FORMATS = {
    "csv": FileFormat.DELIMITED,
    "tsv": FileFormat.DELIMITED,
    "txt": FileFormat.DELIMITED,
    "xlsx": FileFormat.SPREADSHEET,
    "xlsm": FileFormat.SPREADSHEET,
}


@dataclass(frozen=True)
class SourceRow:
    """A non-blank row with its 1-based position in the source file."""
    index: int
    cells: list[str]


@dataclass
class TabularData:
    """
    Parsed table.

    Iterating yields SourceRow objects padded to `width`; the sequence can
    be walked more than once.
    """
    header: Optional[list[str]]
    width: int
    row_count: int
    encoding: Optional[str] = None
    delimiter: Optional[str] = None
    _rows: list[tuple[int, list[str]]] = field(default_factory=list, repr=False)

    def __iter__(self) -> Iterator[SourceRow]:
        rows = self._rows[1:] if self.header is not None else self._rows
        for index, cells in rows:
            yield SourceRow(index=index, cells=_pad(cells, self.width))

    def __len__(self) -> int:
        return self.row_count

    def sample(self, limit: int) -> list[SourceRow]:
        """First `limit` data rows."""
        out = []
        for row in self:
            if len(out) >= limit:
                break
            out.append(row)
        return out


def format_for_filename(filename: str) -> Optional[FileFormat]:
    """Map a filename extension to a FileFormat, or None if unsupported."""
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    return EXTENSION_FORMATS.get(ext)


def parse_tabular(
    content: bytes,
    file_format: FileFormat,
    has_header: Optional[bool] = None,
) -> TabularData:
    """
    Parse an attendance file.

    Args:
        content: Raw file bytes
        file_format: Declared format
        has_header: Force header handling; None detects it from the first rows

    Returns:
        TabularData with the header separated out

    Raises:
        MalformedFileError: If the file is empty, binary, undecodable or
            cannot be tokenized
    """
    logger.info("parsing_tabular", file_format=file_format.value, size_bytes=len(content))

    if not content or not content.strip():
        raise MalformedFileError("File is empty")

    encoding = None
    delimiter = None
    if file_format == FileFormat.SPREADSHEET:
        df = _load_excel(content)
    else:
        text, encoding = _decode(content)
        delimiter = _guess_delimiter(text)
        df = _load_delimited(text, delimiter)

    rows = _frame_rows(df)
    if not rows:
        raise MalformedFileError("File contains no rows")

    if has_header is None:
        following = [cells for _, cells in rows[1:1 + HEADER_CONTRAST_ROWS]]
        has_header = is_header_row(rows[0][1], following)

    width = max(len(cells) for _, cells in rows)
    header = _pad(rows[0][1], width) if has_header else None
    row_count = len(rows) - 1 if has_header else len(rows)

    logger.info(
        "tabular_parsed",
        has_header=has_header,
        width=width,
        row_count=row_count,
        encoding=encoding,
        delimiter=delimiter,
    )

    return TabularData(
        header=header,
        width=width,
        row_count=row_count,
        encoding=encoding,
        delimiter=delimiter,
        _rows=rows,
    )


# ===================
# DELIMITED TEXT
# ===================

def _decode(content: bytes) -> tuple[str, str]:
    """Decode bytes, trying UTF-8 first."""
    if content.count(b"\x00") > len(content) * MAX_NUL_RATIO:
        raise MalformedFileError("File looks binary, not delimited text")

    for enc in ENCODINGS:
        try:
            return content.decode(enc).replace("\x00", ""), enc
        except UnicodeDecodeError:
            continue

    raise MalformedFileError(
        "Unreadable text encoding",
        details={"tried": ENCODINGS}
    )


def _guess_delimiter(text: str) -> str:
    """
    Pick the separator present on the most lines, then the most often.

    Falls back to "," for single-column files.
    """
    lines = [ln for ln in text.splitlines() if ln.strip()][:SNIFF_LINES]
    if not lines:
        return ","

    def score(sep: str) -> tuple[int, float]:
        counts = [ln.count(sep) for ln in lines]
        return sum(1 for c in counts if c), sum(counts) / len(counts)

    best = max(DELIMITERS, key=score)
    return best if score(best)[0] > 0 else ","


def _load_delimited(text: str, delimiter: str) -> pd.DataFrame:
    # Wide enough for the longest line; unused trailing columns are dropped later
    width = max((ln.count(delimiter) for ln in text.splitlines()), default=0) + 1
    try:
        return pd.read_csv(
            StringIO(text),
            sep=delimiter,
            header=None,
            names=list(range(width)),
            index_col=False,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=False,
            skipinitialspace=True,
        )
    except (pd.errors.ParserError, ValueError) as e:
        logger.error("tabular_tokenize_failed", delimiter=delimiter, error=str(e))
        raise MalformedFileError(
            "File could not be tokenized",
            details={"original_error": str(e)}
        )


# ===================
# SPREADSHEET
# ===================

def _load_excel(content: bytes) -> pd.DataFrame:
    try:
        return pd.read_excel(
            BytesIO(content), engine="openpyxl", sheet_name=0, header=None, dtype=object, keep_default_na=False
        )
    except Exception as e:
        logger.error("spreadsheet_read_failed", error=str(e))
        raise MalformedFileError(
            "Failed to read spreadsheet",
            details={"original_error": str(e)}
        )


# ===================
# HELPERS
# ===================

def _frame_rows(df: pd.DataFrame) -> list[tuple[int, list[str]]]:
    """
    Non-blank rows as (1-based source position, cells).

    Columns that are empty on every row are trimmed from the right.
    """
    cleaned = [
        [clean_cell(None if pd.isna(v) else v) for v in values]
        for values in df.itertuples(index=False, name=None)
    ]

    width = 0
    for cells in cleaned:
        filled = [i for i, c in enumerate(cells) if c]
        if filled:
            width = max(width, filled[-1] + 1)

    return [
        (position, cells[:width])
        for position, cells in enumerate(cleaned, start=1)
        if any(cells)
    ]


def _pad(cells: list[str], width: int) -> list[str]:
    if len(cells) >= width:
        return list(cells)
    return list(cells) + [""] * (width - len(cells))
