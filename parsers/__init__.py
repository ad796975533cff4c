"""
Tabular file parsers module.
"""

from parsers.tabular_parser import (
    parse_tabular,
    format_for_filename,
    TabularData,
    SourceRow,
)
from parsers.header_detect import (
    ROLE_KEYWORDS,
    header_keyword_score,
    is_header_row,
)

__all__ = [
    "parse_tabular",
    "format_for_filename",
    "TabularData",
    "SourceRow",
    "ROLE_KEYWORDS",
    "header_keyword_score",
    "is_header_row",
]
