"""
Pydantic models and pipeline types.
"""

from models.base import BaseSchema, FrozenSchema
from models.columns import (
    ColumnRole,
    DetectedColumn,
    ColumnDetectionResult,
    ParsedRow,
)
from models.matching import (
    MatchMethod,
    UnmatchedReason,
    AttendanceStatus,
    DirectoryEntry,
    MatchCandidate,
    Suggestion,
    MatchedRow,
    UnmatchedRow,
    MatchResult,
)
from models.processing import (
    FileFormat,
    JobState,
    UploadedFile,
    JobError,
    RowError,
    ResultSummary,
    ProcessingJob,
    JobSubmitResponse,
    JobStatusResponse,
)
from models.feedback import (
    FeedbackCreate,
    FeedbackRecord,
    FeedbackAck,
    ThresholdSnapshot,
    LearnerSnapshot,
)

__all__ = [
    # Base
    "BaseSchema",
    "FrozenSchema",

    # Columns
    "ColumnRole",
    "DetectedColumn",
    "ColumnDetectionResult",
    "ParsedRow",

    # Matching
    "MatchMethod",
    "UnmatchedReason",
    "AttendanceStatus",
    "DirectoryEntry",
    "MatchCandidate",
    "Suggestion",
    "MatchedRow",
    "UnmatchedRow",
    "MatchResult",

    # Processing
    "FileFormat",
    "JobState",
    "UploadedFile",
    "JobError",
    "RowError",
    "ResultSummary",
    "ProcessingJob",
    "JobSubmitResponse",
    "JobStatusResponse",

    # Feedback
    "FeedbackCreate",
    "FeedbackRecord",
    "FeedbackAck",
    "ThresholdSnapshot",
    "LearnerSnapshot",
]
