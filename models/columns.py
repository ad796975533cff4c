"""
Column detection and parsed row types.

These are in-process pipeline values; only their dict forms are persisted.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class ColumnRole(str, Enum):
    """Semantic role of an attendance file column."""
    NAME = "name"
    EMAIL = "email"
    IDENTIFIER = "identifier"
    DATE = "date"
    STATUS = "status"
    OTHER = "other"


# Tie order when a column scores equally for several roles
ROLE_ORDER = [
    ColumnRole.NAME,
    ColumnRole.EMAIL,
    ColumnRole.IDENTIFIER,
    ColumnRole.DATE,
    ColumnRole.STATUS,
    ColumnRole.OTHER,
]


@dataclass
class DetectedColumn:
    """One column with its inferred role."""
    index: int
    header: Optional[str]
    role: ColumnRole
    confidence: float
    scores: dict[ColumnRole, float] = field(default_factory=dict)
    samples: list[str] = field(default_factory=list)
    primary: bool = False

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "header": self.header,
            "role": self.role.value,
            "confidence": round(self.confidence, 4),
            "primary": self.primary,
            "samples": self.samples[:5],
        }


@dataclass
class ColumnDetectionResult:
    """All detected columns plus the primary column per role."""
    columns: list[DetectedColumn] = field(default_factory=list)
    primary: dict[ColumnRole, DetectedColumn] = field(default_factory=dict)

    @property
    def name_column(self) -> DetectedColumn:
        return self.primary[ColumnRole.NAME]

    def column_for(self, role: ColumnRole) -> Optional[DetectedColumn]:
        return self.primary.get(role)

    def to_dict(self) -> dict:
        return {
            "columns": [c.to_dict() for c in self.columns],
            "primary": {role.value: col.index for role, col in self.primary.items()},
        }


@dataclass(frozen=True)
class ParsedRow:
    """
    One data row mapped by role.

    Attributes:
        index: Row number in the source file (1-based, header counted)
        cells: Primary column role -> raw cell value
        raw: Every cell of the row keyed by header (or column position)
    """
    index: int
    cells: dict[ColumnRole, str]
    raw: dict[str, str]

    def get(self, role: ColumnRole) -> str:
        return self.cells.get(role, "")

    @property
    def name(self) -> str:
        return self.get(ColumnRole.NAME)
