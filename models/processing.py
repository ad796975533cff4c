"""
Uploaded file and processing job models.

A job moves PENDING -> PROCESSING -> COMPLETED | FAILED. COMPLETED and
FAILED are terminal; reprocessing a file creates a new job.
"""

from typing import Optional
from datetime import datetime
from enum import Enum
from pydantic import Field

from models.base import BaseSchema
from models.matching import MatchResult


class FileFormat(str, Enum):
    """Declared tabular format."""
    DELIMITED = "delimited"
    SPREADSHEET = "spreadsheet"


class JobState(str, Enum):
    """Processing job lifecycle state."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)

    @property
    def is_active(self) -> bool:
        return self in (JobState.PENDING, JobState.PROCESSING)


# Allowed transitions
JOB_TRANSITIONS: dict[JobState, set[JobState]] = {
    JobState.PENDING: {JobState.PROCESSING, JobState.FAILED},
    JobState.PROCESSING: {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}


class UploadedFile(BaseSchema):
    """Stored upload. Bytes live in the record store, referenced by storage_path."""
    id: str
    filename: str
    file_format: FileFormat
    content_type: Optional[str] = None
    organization_id: str
    owner_id: Optional[str] = None
    session_id: Optional[str] = None
    content_hash: str
    size_bytes: int
    storage_path: str
    created_at: datetime


class JobError(BaseSchema):
    """Fatal job error: kind + message only."""
    kind: str
    message: str


class RowError(BaseSchema):
    """Recoverable per-row problem, aggregated into the summary."""
    row: int
    kind: str
    message: str


class ResultSummary(BaseSchema):
    """Counts and aggregate confidence for a completed job."""
    total_rows: int = 0
    matched: int = 0
    unmatched: int = 0
    verified: int = 0
    by_method: dict[str, int] = Field(default_factory=dict)
    by_reason: dict[str, int] = Field(default_factory=dict)
    overall_confidence: float = 0.0
    overall_method: str = "none"
    threshold: float = 0.0
    threshold_version: int = 0
    oracle_available: bool = False
    processing_time_ms: int = 0
    columns: dict = Field(default_factory=dict)


class ProcessingJob(BaseSchema):
    """One lifecycle instance of matching a single uploaded file."""
    id: str
    file_id: str
    organization_id: str
    content_hash: str
    state: JobState = JobState.PENDING
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancel_requested: bool = False
    summary: Optional[ResultSummary] = None
    results: list[MatchResult] = Field(default_factory=list)
    row_errors: list[RowError] = Field(default_factory=list)
    error: Optional[JobError] = None


class JobSubmitResponse(BaseSchema):
    """Returned synchronously on upload."""
    job_id: str
    file_id: str
    state: JobState
    deduplicated: bool = False


class JobStatusResponse(BaseSchema):
    """Status query result."""
    job_id: str
    file_id: str
    state: JobState
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    summary: Optional[ResultSummary] = None
    results: Optional[list[MatchResult]] = None
    row_errors: list[RowError] = Field(default_factory=list)
    error: Optional[JobError] = None

    @classmethod
    def from_job(cls, job: ProcessingJob) -> "JobStatusResponse":
        completed = job.state == JobState.COMPLETED
        return cls(
            job_id=job.id,
            file_id=job.file_id,
            state=job.state,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
            summary=job.summary,
            results=job.results if completed else None,
            row_errors=job.row_errors,
            error=job.error if job.state == JobState.FAILED else None,
        )
