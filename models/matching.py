"""
Directory entries, match candidates and per-row match results.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from pydantic import Field

from models.base import BaseSchema, FrozenSchema


class MatchMethod(str, Enum):
    """Stage that produced a candidate."""
    EXACT = "exact"
    AI = "ai"
    PATTERN = "pattern"


class UnmatchedReason(str, Enum):
    """Why a row could not be resolved."""
    EMPTY_NAME = "empty name"
    NO_CANDIDATES = "no candidates"
    BELOW_THRESHOLD = "below threshold"
    DUPLICATE_TARGET = "duplicate target"
    AMBIGUOUS = "ambiguous"


class AttendanceStatus(str, Enum):
    """Attendance state read from the status column."""
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    LATE = "LATE"
    EXCUSED = "EXCUSED"


class DirectoryEntry(BaseSchema):
    """
    Canonical enrolled person.

    Owned by the directory collaborator; never mutated here.
    """
    id: str
    full_name: str
    email: Optional[str] = None
    external_id: Optional[str] = None
    organization_id: Optional[str] = None


@dataclass(frozen=True)
class MatchCandidate:
    """A scored directory entry for one row. Never persisted on its own."""
    entry_id: str
    score: float
    method: MatchMethod


class Suggestion(FrozenSchema):
    """A candidate offered for manual review."""
    entry_id: str
    confidence: float = Field(ge=0, le=1)


class MatchedRow(FrozenSchema):
    """Row resolved to a directory entry."""
    status: Literal["matched"] = "matched"
    row: int
    original_name: str
    entry_id: str
    confidence: float = Field(ge=0, le=1)
    method: MatchMethod
    verified: bool = False
    attendance_status: Optional[AttendanceStatus] = None
    raw: dict[str, str] = Field(default_factory=dict)


class UnmatchedRow(FrozenSchema):
    """Row left for manual resolution."""
    status: Literal["unmatched"] = "unmatched"
    row: int
    original_name: str
    reason: UnmatchedReason
    suggestions: list[Suggestion] = Field(default_factory=list)
    attendance_status: Optional[AttendanceStatus] = None
    raw: dict[str, str] = Field(default_factory=dict)


MatchResult = Annotated[Union[MatchedRow, UnmatchedRow], Field(discriminator="status")]
