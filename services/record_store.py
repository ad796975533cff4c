"""
Durable record store for uploads, jobs, feedback and thresholds.

Two backends share one interface:
- InMemoryRecordStore: lock-guarded dicts, used by default and in tests
- SupabaseRecordStore: Postgres tables plus a Storage bucket for file bytes

Job state only changes through compare_and_set_state(), which succeeds for
exactly one caller when several race on the same transition.
"""

import threading
from abc import ABC, abstractmethod
from typing import Any, Optional
import structlog

from config import get_supabase_client, settings
from exceptions import (
    AppError,
    DatabaseError,
    JobNotFoundError,
    FileNotFoundInStoreError,
    InvalidStatusTransitionError,
    JobAlreadyActiveError,
)
from models.processing import JobState, JOB_TRANSITIONS, UploadedFile, ProcessingJob
from models.feedback import FeedbackRecord, ThresholdSnapshot

logger = structlog.get_logger(__name__)

ACTIVE_STATES = [JobState.PENDING.value, JobState.PROCESSING.value]


def check_transition(current: JobState, new: JobState) -> None:
    """
    Raises:
        InvalidStatusTransitionError: If `new` is not reachable from `current`
    """
    if new not in JOB_TRANSITIONS[current]:
        raise InvalidStatusTransitionError(current.value, new.value)


class RecordStore(ABC):
    """Persistence operations used by the processing service and learner."""

    # Files
    @abstractmethod
    def create_file(self, file: UploadedFile, content: bytes) -> UploadedFile: ...

    @abstractmethod
    def get_file(self, file_id: str) -> UploadedFile: ...

    @abstractmethod
    def read_file_content(self, file: UploadedFile) -> bytes: ...

    @abstractmethod
    def delete_file(self, file: UploadedFile) -> None: ...

    # Jobs
    @abstractmethod
    def create_job(self, job: ProcessingJob) -> ProcessingJob:
        """Insert a PENDING job; JobAlreadyActiveError if the file or its content already has an active one."""

    @abstractmethod
    def get_job(self, job_id: str) -> ProcessingJob: ...

    @abstractmethod
    def list_jobs_for_file(self, file_id: str) -> list[ProcessingJob]: ...

    @abstractmethod
    def find_active_job(self, organization_id: str, content_hash: str) -> Optional[ProcessingJob]: ...

    @abstractmethod
    def compare_and_set_state(
        self,
        job_id: str,
        expected: JobState,
        new: JobState,
        changes: Optional[dict[str, Any]] = None,
    ) -> Optional[ProcessingJob]:
        """
        Move a job from `expected` to `new` atomically.

        Returns:
            The updated job, or None if the job was not in `expected`
        """

    @abstractmethod
    def request_cancel(self, job_id: str) -> ProcessingJob: ...

    # Feedback
    @abstractmethod
    def append_feedback(self, record: FeedbackRecord) -> bool:
        """Append a record. False if its dedupe key was already stored."""

    @abstractmethod
    def recent_feedback(self, organization_id: str, limit: int) -> list[FeedbackRecord]:
        """Most recent records first."""

    # Thresholds
    @abstractmethod
    def get_threshold(self, organization_id: str) -> Optional[ThresholdSnapshot]: ...

    @abstractmethod
    def save_threshold(self, snapshot: ThresholdSnapshot) -> ThresholdSnapshot: ...


# ===================
# IN-MEMORY BACKEND
# ===================

class InMemoryRecordStore(RecordStore):
    """Single-process store. Every operation holds one lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._files: dict[str, UploadedFile] = {}
        self._contents: dict[str, bytes] = {}
        self._jobs: dict[str, ProcessingJob] = {}
        self._feedback: list[FeedbackRecord] = []
        self._feedback_keys: set[tuple[str, str]] = set()
        self._thresholds: dict[str, ThresholdSnapshot] = {}

    def create_file(self, file: UploadedFile, content: bytes) -> UploadedFile:
        with self._lock:
            self._files[file.id] = file
            self._contents[file.storage_path] = content
        return file

    def get_file(self, file_id: str) -> UploadedFile:
        with self._lock:
            file = self._files.get(file_id)
        if file is None:
            raise FileNotFoundInStoreError(file_id)
        return file

    def read_file_content(self, file: UploadedFile) -> bytes:
        with self._lock:
            content = self._contents.get(file.storage_path)
        if content is None:
            raise FileNotFoundInStoreError(file.id)
        return content

    def delete_file(self, file: UploadedFile) -> None:
        with self._lock:
            self._files.pop(file.id, None)
            self._contents.pop(file.storage_path, None)

    def create_job(self, job: ProcessingJob) -> ProcessingJob:
        with self._lock:
            for existing in self._jobs.values():
                if not existing.state.is_active:
                    continue
                same_content = (
                    existing.organization_id == job.organization_id
                    and existing.content_hash == job.content_hash
                )
                if existing.file_id == job.file_id or same_content:
                    raise JobAlreadyActiveError(job.file_id, existing.id)
            self._jobs[job.id] = job.model_copy(deep=True)
        return job

    def get_job(self, job_id: str) -> ProcessingJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            return job.model_copy(deep=True)

    def list_jobs_for_file(self, file_id: str) -> list[ProcessingJob]:
        with self._lock:
            jobs = [j.model_copy(deep=True) for j in self._jobs.values() if j.file_id == file_id]
        return sorted(jobs, key=lambda j: (j.created_at, j.id))

    def find_active_job(self, organization_id: str, content_hash: str) -> Optional[ProcessingJob]:
        with self._lock:
            for job in self._jobs.values():
                if (
                    job.organization_id == organization_id
                    and job.content_hash == content_hash
                    and job.state.is_active
                ):
                    return job.model_copy(deep=True)
        return None

    def compare_and_set_state(
        self,
        job_id: str,
        expected: JobState,
        new: JobState,
        changes: Optional[dict[str, Any]] = None,
    ) -> Optional[ProcessingJob]:
        check_transition(expected, new)
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.state != expected:
                return None
            updated = job.model_copy(update={**(changes or {}), "state": new}, deep=True)
            # Re-validate so nested dicts become models again
            updated = ProcessingJob.model_validate(updated.model_dump())
            self._jobs[job_id] = updated
            return updated.model_copy(deep=True)

    def request_cancel(self, job_id: str) -> ProcessingJob:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            job = job.model_copy(update={"cancel_requested": True}, deep=True)
            self._jobs[job_id] = job
            return job.model_copy(deep=True)

    def append_feedback(self, record: FeedbackRecord) -> bool:
        key = (record.organization_id, record.dedupe_key)
        with self._lock:
            if key in self._feedback_keys:
                return False
            self._feedback_keys.add(key)
            self._feedback.append(record)
        return True

    def recent_feedback(self, organization_id: str, limit: int) -> list[FeedbackRecord]:
        with self._lock:
            records = [r for r in self._feedback if r.organization_id == organization_id]
        # Insertion order breaks ties between equal timestamps
        ordered = sorted(enumerate(records), key=lambda p: (p[1].submitted_at, p[0]), reverse=True)
        return [r for _, r in ordered[:limit]]

    def get_threshold(self, organization_id: str) -> Optional[ThresholdSnapshot]:
        with self._lock:
            return self._thresholds.get(organization_id)

    def save_threshold(self, snapshot: ThresholdSnapshot) -> ThresholdSnapshot:
        with self._lock:
            self._thresholds[snapshot.organization_id] = snapshot
        return snapshot


# ===================
# SUPABASE BACKEND
# ===================

def _is_unique_violation(error: Exception) -> bool:
    text = str(error).lower()
    return "23505" in text or "duplicate key" in text


class SupabaseRecordStore(RecordStore):
    """
    Store backed by Supabase.

    Expects partial unique indexes on processing_jobs(file_id) and on
    processing_jobs(organization_id, content_hash) where state is PENDING or
    PROCESSING, and a unique index on match_feedback(organization_id, dedupe_key).
    """

    def __init__(self):
        self.db = get_supabase_client()
        self.bucket = settings.storage_bucket
        self.files_table = "uploaded_files"
        self.jobs_table = "processing_jobs"
        self.feedback_table = "match_feedback"
        self.thresholds_table = "match_thresholds"

    # ===================
    # FILES
    # ===================

    def create_file(self, file: UploadedFile, content: bytes) -> UploadedFile:
        try:
            self.db.storage.from_(self.bucket).upload(
                file.storage_path,
                content,
                file_options={"content-type": file.content_type or "application/octet-stream"}
            )
            self.db.table(self.files_table).insert(file.model_dump(mode="json")).execute()
        except Exception as e:
            logger.error("file_store_failed", file_id=file.id, error=str(e))
            raise DatabaseError("file insert", str(e))

        logger.info("file_stored", file_id=file.id, size_bytes=file.size_bytes)
        return file

    def get_file(self, file_id: str) -> UploadedFile:
        try:
            result = self.db.table(self.files_table).select("*").eq("id", file_id).execute()
        except Exception as e:
            logger.error("file_get_failed", file_id=file_id, error=str(e))
            raise DatabaseError("file select", str(e))

        if not result.data:
            raise FileNotFoundInStoreError(file_id)
        return UploadedFile.model_validate(result.data[0])

    def read_file_content(self, file: UploadedFile) -> bytes:
        try:
            return self.db.storage.from_(self.bucket).download(file.storage_path)
        except Exception as e:
            logger.error("file_download_failed", file_id=file.id, error=str(e))
            raise DatabaseError("file download", str(e))

    def delete_file(self, file: UploadedFile) -> None:
        try:
            self.db.storage.from_(self.bucket).remove([file.storage_path])
            self.db.table(self.files_table).delete().eq("id", file.id).execute()
        except Exception as e:
            logger.error("file_delete_failed", file_id=file.id, error=str(e))
            raise DatabaseError("file delete", str(e))

        logger.info("file_deleted", file_id=file.id)

    # ===================
    # JOBS
    # ===================

    def _select_jobs(self):
        return self.db.table(self.jobs_table).select("*")

    def create_job(self, job: ProcessingJob) -> ProcessingJob:
        try:
            active = (
                self._select_jobs()
                .eq("file_id", job.file_id)
                .in_("state", ACTIVE_STATES)
                .limit(1)
                .execute()
            )
            if not active.data:
                active = (
                    self._select_jobs()
                    .eq("organization_id", job.organization_id)
                    .eq("content_hash", job.content_hash)
                    .in_("state", ACTIVE_STATES)
                    .limit(1)
                    .execute()
                )
            if active.data:
                raise JobAlreadyActiveError(job.file_id, active.data[0]["id"])

            self.db.table(self.jobs_table).insert(job.model_dump(mode="json")).execute()
        except AppError:
            raise
        except Exception as e:
            # Lost a race against another insert for the same file or content
            if _is_unique_violation(e):
                winner = self.find_active_job(job.organization_id, job.content_hash)
                raise JobAlreadyActiveError(job.file_id, winner.id if winner else "")
            logger.error("job_create_failed", job_id=job.id, error=str(e))
            raise DatabaseError("job insert", str(e))

        logger.info("job_created", job_id=job.id, file_id=job.file_id)
        return job

    def get_job(self, job_id: str) -> ProcessingJob:
        try:
            result = self._select_jobs().eq("id", job_id).execute()
        except Exception as e:
            logger.error("job_get_failed", job_id=job_id, error=str(e))
            raise DatabaseError("job select", str(e))

        if not result.data:
            raise JobNotFoundError(job_id)
        return ProcessingJob.model_validate(result.data[0])

    def list_jobs_for_file(self, file_id: str) -> list[ProcessingJob]:
        try:
            result = self._select_jobs().eq("file_id", file_id).order("created_at").execute()
        except Exception as e:
            logger.error("job_list_failed", file_id=file_id, error=str(e))
            raise DatabaseError("job select", str(e))

        return [ProcessingJob.model_validate(row) for row in result.data]

    def find_active_job(self, organization_id: str, content_hash: str) -> Optional[ProcessingJob]:
        try:
            result = (
                self._select_jobs()
                .eq("organization_id", organization_id)
                .eq("content_hash", content_hash)
                .in_("state", ACTIVE_STATES)
                .order("created_at")
                .limit(1)
                .execute()
            )
        except Exception as e:
            logger.error("active_job_lookup_failed", organization_id=organization_id, error=str(e))
            raise DatabaseError("job select", str(e))

        if not result.data:
            return None
        return ProcessingJob.model_validate(result.data[0])

    def compare_and_set_state(
        self,
        job_id: str,
        expected: JobState,
        new: JobState,
        changes: Optional[dict[str, Any]] = None,
    ) -> Optional[ProcessingJob]:
        check_transition(expected, new)

        # Serialize through the model so nested results become JSON
        current = self.get_job(job_id)
        staged = current.model_copy(update={**(changes or {}), "state": new})
        payload = ProcessingJob.model_validate(staged.model_dump()).model_dump(
            mode="json",
            include={"state", *(changes or {}).keys()},
        )

        try:
            # The state filter makes the update a compare-and-set
            result = (
                self.db.table(self.jobs_table)
                .update(payload)
                .eq("id", job_id)
                .eq("state", expected.value)
                .execute()
            )
        except Exception as e:
            logger.error("job_state_update_failed", job_id=job_id, error=str(e))
            raise DatabaseError("job update", str(e))

        if not result.data:
            return None
        return ProcessingJob.model_validate(result.data[0])

    def request_cancel(self, job_id: str) -> ProcessingJob:
        self.get_job(job_id)
        try:
            result = (
                self.db.table(self.jobs_table)
                .update({"cancel_requested": True})
                .eq("id", job_id)
                .execute()
            )
        except Exception as e:
            logger.error("job_cancel_flag_failed", job_id=job_id, error=str(e))
            raise DatabaseError("job update", str(e))

        if not result.data:
            raise JobNotFoundError(job_id)
        return ProcessingJob.model_validate(result.data[0])

    # ===================
    # FEEDBACK
    # ===================

    def append_feedback(self, record: FeedbackRecord) -> bool:
        try:
            existing = (
                self.db.table(self.feedback_table)
                .select("id")
                .eq("organization_id", record.organization_id)
                .eq("dedupe_key", record.dedupe_key)
                .limit(1)
                .execute()
            )
            if existing.data:
                return False
            self.db.table(self.feedback_table).insert(record.model_dump(mode="json")).execute()
        except Exception as e:
            if _is_unique_violation(e):
                return False
            logger.error("feedback_insert_failed", organization_id=record.organization_id, error=str(e))
            raise DatabaseError("feedback insert", str(e))
        return True

    def recent_feedback(self, organization_id: str, limit: int) -> list[FeedbackRecord]:
        try:
            result = (
                self.db.table(self.feedback_table)
                .select("*")
                .eq("organization_id", organization_id)
                .order("submitted_at", desc=True)
                .limit(limit)
                .execute()
            )
        except Exception as e:
            logger.error("feedback_select_failed", organization_id=organization_id, error=str(e))
            raise DatabaseError("feedback select", str(e))

        return [FeedbackRecord.model_validate(row) for row in result.data]

    # ===================
    # THRESHOLDS
    # ===================

    def get_threshold(self, organization_id: str) -> Optional[ThresholdSnapshot]:
        try:
            result = (
                self.db.table(self.thresholds_table)
                .select("*")
                .eq("organization_id", organization_id)
                .execute()
            )
        except Exception as e:
            logger.error("threshold_select_failed", organization_id=organization_id, error=str(e))
            raise DatabaseError("threshold select", str(e))

        if not result.data:
            return None
        return ThresholdSnapshot.model_validate(result.data[0])

    def save_threshold(self, snapshot: ThresholdSnapshot) -> ThresholdSnapshot:
        try:
            self.db.table(self.thresholds_table).upsert(
                snapshot.model_dump(mode="json"),
                on_conflict="organization_id",
            ).execute()
        except Exception as e:
            logger.error("threshold_upsert_failed", organization_id=snapshot.organization_id, error=str(e))
            raise DatabaseError("threshold upsert", str(e))
        return snapshot


# Singleton instance
_record_store: Optional[RecordStore] = None


def get_record_store() -> RecordStore:
    """Get or create the configured RecordStore."""
    global _record_store
    if _record_store is None:
        if settings.storage_backend == "supabase":
            _record_store = SupabaseRecordStore()
        else:
            _record_store = InMemoryRecordStore()
        logger.info("record_store_initialized", backend=settings.storage_backend)
    return _record_store
