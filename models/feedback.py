"""
Feedback records and learned per-organization thresholds.
"""

from typing import Any, Optional
from datetime import datetime
from pydantic import Field

from models.base import BaseSchema


class FeedbackCreate(BaseSchema):
    """Feedback submitted after human review of a match."""
    organization_id: str = Field(min_length=1)
    original_name: str = Field(min_length=1, description="Name as it appeared in the file")
    correct_entry_id: str = Field(min_length=1)
    was_correct: bool
    prior_confidence: float = Field(ge=0, le=1)
    context: dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = Field(
        None,
        description="Caller-supplied idempotency key"
    )


class FeedbackRecord(BaseSchema):
    """Append-only stored feedback. Never deleted."""
    id: str
    organization_id: str
    original_name: str
    normalized_name: str
    correct_entry_id: str
    was_correct: bool
    prior_confidence: float
    threshold_at_submission: float
    context: dict[str, Any] = Field(default_factory=dict)
    request_id: Optional[str] = None
    dedupe_key: str
    submitted_at: datetime


class FeedbackAck(BaseSchema):
    """Acknowledgement returned to the caller."""
    feedback_id: Optional[str] = None
    accepted: bool
    duplicate: bool = False


class ThresholdSnapshot(BaseSchema):
    """Versioned acceptance threshold for one organization."""
    organization_id: str
    value: float = Field(ge=0, le=1)
    version: int = 0
    sample_size: int = 0
    updated_at: Optional[datetime] = None


class LearnerSnapshot(BaseSchema):
    """
    What a job reads from the learner at start.

    Taken once per job so concurrent feedback never changes a running job.
    """
    threshold: ThresholdSnapshot
    aliases: dict[str, str] = Field(
        default_factory=dict,
        description="normalized name -> directory entry id confirmed by feedback"
    )
