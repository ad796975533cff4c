"""
Feedback learner.

Stores human review outcomes (append-only) and derives two things per
organization from the most recent records:
- a versioned acceptance threshold, nudged within a clamped range
- learned aliases: normalized name -> directory entry confirmed by a reviewer

Jobs read both through snapshot() once at start, never live.
"""

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Optional
import structlog

from config import settings
from models.feedback import (
    FeedbackCreate,
    FeedbackRecord,
    FeedbackAck,
    ThresholdSnapshot,
    LearnerSnapshot,
)
from services.name_normalizer import normalize_name
from services.record_store import RecordStore, get_record_store

logger = structlog.get_logger(__name__)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


class FeedbackService:
    """
    Feedback business logic.

    Handles:
    - Idempotent feedback submission
    - Threshold recomputation over the recent window
    - Alias derivation and per-job snapshots
    """

    def __init__(self, store: Optional[RecordStore] = None):
        self.store = store or get_record_store()

    # ===================
    # THRESHOLD READS
    # ===================

    def default_threshold(self, organization_id: str) -> ThresholdSnapshot:
        return ThresholdSnapshot(
            organization_id=organization_id,
            value=settings.match_confidence_threshold,
            version=0,
            sample_size=0,
        )

    def current_threshold(self, organization_id: str) -> ThresholdSnapshot:
        """Stored threshold, or the configured default when none exists or learning is off."""
        if not settings.feedback_learning_enabled:
            return self.default_threshold(organization_id)
        stored = self.store.get_threshold(organization_id)
        return stored or self.default_threshold(organization_id)

    # ===================
    # SUBMISSION
    # ===================

    def dedupe_key(self, data: FeedbackCreate, normalized_name: str, submitted_at: datetime) -> str:
        """
        Idempotency key for one submission.

        The caller's request_id when given; otherwise a hash of
        organization, normalized name, entry and submission time bucket.
        """
        if data.request_id:
            return f"req:{data.request_id}"

        bucket = int(submitted_at.timestamp()) // settings.feedback_dedupe_bucket_seconds
        raw = "|".join([data.organization_id, normalized_name, data.correct_entry_id, str(bucket)])
        return "hash:" + hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def submit(self, data: FeedbackCreate, submitted_at: Optional[datetime] = None) -> FeedbackAck:
        """
        Append one feedback record.

        Does not recompute the threshold; callers schedule recompute()
        separately so the submitter never waits on it.

        Returns:
            FeedbackAck (duplicate=True when the key was already stored)
        """
        submitted_at = submitted_at or datetime.now(timezone.utc)
        normalized = normalize_name(data.original_name)
        threshold = self.current_threshold(data.organization_id)

        record = FeedbackRecord(
            id=str(uuid.uuid4()),
            organization_id=data.organization_id,
            original_name=data.original_name,
            normalized_name=normalized,
            correct_entry_id=data.correct_entry_id,
            was_correct=data.was_correct,
            prior_confidence=data.prior_confidence,
            threshold_at_submission=threshold.value,
            context=data.context,
            request_id=data.request_id,
            dedupe_key=self.dedupe_key(data, normalized, submitted_at),
            submitted_at=submitted_at,
        )

        if not self.store.append_feedback(record):
            logger.info("feedback_duplicate_ignored", organization_id=data.organization_id)
            return FeedbackAck(accepted=True, duplicate=True)

        logger.info(
            "feedback_recorded",
            organization_id=data.organization_id,
            feedback_id=record.id,
            was_correct=data.was_correct,
        )
        return FeedbackAck(feedback_id=record.id, accepted=True)

    # ===================
    # LEARNING
    # ===================

    def recompute(self, organization_id: str) -> ThresholdSnapshot:
        """
        Recompute the organization's threshold from the recent window.

        A reviewer rejecting an accepted match counts as too liberal; a
        reviewer confirming a rejected candidate counts as too conservative.
        The threshold moves from the default by max_adjustment times the
        net share, then is clamped to [threshold_min, threshold_max].
        """
        if not settings.feedback_learning_enabled:
            return self.default_threshold(organization_id)

        records = self.store.recent_feedback(organization_id, settings.feedback_window)
        previous = self.store.get_threshold(organization_id)

        if records:
            too_liberal = sum(
                1 for r in records
                if not r.was_correct and r.prior_confidence >= r.threshold_at_submission
            )
            too_conservative = sum(
                1 for r in records
                if r.was_correct and r.prior_confidence < r.threshold_at_submission
            )
            net = (too_liberal - too_conservative) / len(records)
            value = settings.match_confidence_threshold + settings.feedback_max_adjustment * net
        else:
            value = settings.match_confidence_threshold

        snapshot = ThresholdSnapshot(
            organization_id=organization_id,
            value=round(clamp(value, settings.threshold_min, settings.threshold_max), 4),
            version=(previous.version if previous else 0) + 1,
            sample_size=len(records),
            updated_at=datetime.now(timezone.utc),
        )
        self.store.save_threshold(snapshot)

        logger.info(
            "threshold_recomputed",
            organization_id=organization_id,
            value=snapshot.value,
            version=snapshot.version,
            sample_size=snapshot.sample_size,
        )
        return snapshot

    def learned_aliases(self, organization_id: str) -> dict[str, str]:
        """
        Normalized name -> entry id from the most recent record per name.

        Every record names the entry a reviewer confirmed, whether the
        original match was right or not. Later records override earlier.
        """
        if not settings.feedback_learning_enabled:
            return {}

        aliases: dict[str, str] = {}
        for record in self.store.recent_feedback(organization_id, settings.feedback_window):
            if record.normalized_name and record.normalized_name not in aliases:
                aliases[record.normalized_name] = record.correct_entry_id
        return aliases

    def snapshot(self, organization_id: str) -> LearnerSnapshot:
        """Threshold and aliases as of now, for one job."""
        return LearnerSnapshot(
            threshold=self.current_threshold(organization_id),
            aliases=self.learned_aliases(organization_id),
        )


# Singleton instance
_feedback_service: Optional[FeedbackService] = None


def get_feedback_service() -> FeedbackService:
    """Get or create FeedbackService instance."""
    global _feedback_service
    if _feedback_service is None:
        _feedback_service = FeedbackService()
    return _feedback_service
