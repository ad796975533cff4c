"""
Processing state machine for attendance files.

A job moves PENDING -> PROCESSING -> COMPLETED | FAILED. Every transition is
a compare-and-set on the stored state, so at most one worker ever holds a
job in PROCESSING. Jobs are never resumed: reprocessing a file creates a new
job and leaves the old one as history.

See services/record_store.py for the storage side of the transitions.
"""

import asyncio
import hashlib
import itertools
import re
import threading
import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Optional
import structlog

from config import settings
from exceptions import (
    AppError,
    NoDataError,
    UnsupportedFileTypeError,
    FileTooLargeError,
    InvalidStatusTransitionError,
    JobAlreadyActiveError,
    JobCancelledError,
)
from models.columns import ColumnDetectionResult, ParsedRow
from models.feedback import ThresholdSnapshot
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
from parsers.tabular_parser import parse_tabular, format_for_filename
from services.column_detector import detect_columns, build_rows
from services.directory_service import Directory, DirectorySnapshot, get_directory
from services.feedback_service import FeedbackService, get_feedback_service
from services.matching_oracle import MatchingOracle, get_matching_oracle
from services.matching_service import MatchingEngine
from services.record_store import RecordStore, get_record_store

logger = structlog.get_logger(__name__)

# Rows between re-reads of the stored cancel flag
CANCEL_POLL_ROWS = 25

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _extension(filename: str) -> str:
    return filename.rsplit(".", 1)[-1].lower() if "." in filename else ""


def build_summary(
    results: list,
    row_errors: list[RowError],
    threshold: ThresholdSnapshot,
    oracle_available: bool,
    elapsed_ms: int,
    detection: Optional[ColumnDetectionResult] = None,
) -> ResultSummary:
    """Aggregate counts and confidence for a completed job."""
    matched = [r for r in results if r.status == "matched"]
    unmatched = [r for r in results if r.status == "unmatched"]

    by_method = Counter(r.method.value for r in matched)
    by_reason = Counter(r.reason.value for r in unmatched)

    if not by_method:
        overall_method = "none"
    elif len(by_method) == 1:
        overall_method = next(iter(by_method))
    else:
        overall_method = "hybrid"

    overall_confidence = (
        round(sum(r.confidence for r in matched) / len(matched), 4) if matched else 0.0
    )

    return ResultSummary(
        total_rows=len(results),
        matched=len(matched),
        unmatched=len(unmatched),
        verified=sum(1 for r in matched if r.verified),
        by_method=dict(sorted(by_method.items())),
        by_reason=dict(sorted(by_reason.items())),
        overall_confidence=overall_confidence,
        overall_method=overall_method,
        threshold=threshold.value,
        threshold_version=threshold.version,
        oracle_available=oracle_available,
        processing_time_ms=elapsed_ms,
        columns=detection.to_dict() if detection else {},
    )


class ProcessingService:
    """
    Processing job business logic.

    Handles:
    - Upload validation and job submission (with double-submission guard)
    - Running one job through parse, detect, match and persist
    - Status queries, cancellation and reprocessing
    """

    def __init__(
        self,
        store: Optional[RecordStore] = None,
        directory: Optional[Directory] = None,
        oracle: Optional[MatchingOracle] = None,
        feedback: Optional[FeedbackService] = None,
    ):
        self.store = store or get_record_store()
        self.directory = directory or get_directory()
        self.oracle = oracle or get_matching_oracle()
        self.feedback = feedback or FeedbackService(self.store)
        # Cancel signals for jobs running in this process
        self._cancel_tokens: dict[str, threading.Event] = {}

    # ===================
    # SUBMISSION
    # ===================

    def validate_upload(self, filename: str, size: int) -> FileFormat:
        """
        Check extension and size of an upload.

        Raises:
            UnsupportedFileTypeError: Extension not allowed
            FileTooLargeError: Upload exceeds max_upload_bytes
        """
        allowed = settings.allowed_extensions
        ext = _extension(filename)
        file_format = format_for_filename(filename)
        if ext not in allowed or file_format is None:
            raise UnsupportedFileTypeError(ext, allowed)
        if size > settings.max_upload_bytes:
            raise FileTooLargeError(size, settings.max_upload_bytes)
        return file_format

    def submit(
        self,
        content: bytes,
        filename: str,
        organization_id: str,
        session_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        content_type: Optional[str] = None,
        file_format: Optional[FileFormat] = None,
    ) -> JobSubmitResponse:
        """
        Store an upload and create a PENDING job. Never runs matching.

        If the same content is already being processed for the same
        organization, that job is returned with deduplicated=True.
        """
        detected_format = self.validate_upload(filename, len(content))
        file_format = file_format or detected_format
        content_hash = hashlib.sha256(content).hexdigest()

        existing = self.store.find_active_job(organization_id, content_hash)
        if existing is not None:
            return self._deduplicated(existing)

        file_id = str(uuid.uuid4())
        safe_name = _UNSAFE_FILENAME_RE.sub("_", filename) or "upload"
        uploaded = UploadedFile(
            id=file_id,
            filename=filename,
            file_format=file_format,
            content_type=content_type,
            organization_id=organization_id,
            owner_id=owner_id,
            session_id=session_id,
            content_hash=content_hash,
            size_bytes=len(content),
            storage_path=f"{organization_id}/{file_id}/{safe_name}",
            created_at=_now(),
        )
        self.store.create_file(uploaded, content)

        try:
            job = self._create_job(uploaded)
        except JobAlreadyActiveError:
            # Another submission of the same content created its job first
            self.store.delete_file(uploaded)
            existing = self.store.find_active_job(organization_id, content_hash)
            if existing is None:
                raise
            return self._deduplicated(existing)

        logger.info(
            "job_submitted",
            job_id=job.id,
            file_id=file_id,
            organization_id=organization_id,
            size_bytes=len(content),
        )
        return JobSubmitResponse(job_id=job.id, file_id=file_id, state=job.state)

    def _deduplicated(self, existing: ProcessingJob) -> JobSubmitResponse:
        logger.info(
            "submission_deduplicated",
            job_id=existing.id,
            organization_id=existing.organization_id,
        )
        return JobSubmitResponse(
            job_id=existing.id,
            file_id=existing.file_id,
            state=existing.state,
            deduplicated=True,
        )

    def _create_job(self, uploaded: UploadedFile) -> ProcessingJob:
        job = ProcessingJob(
            id=str(uuid.uuid4()),
            file_id=uploaded.id,
            organization_id=uploaded.organization_id,
            content_hash=uploaded.content_hash,
            state=JobState.PENDING,
            created_at=_now(),
        )
        return self.store.create_job(job)

    def reprocess(self, file_id: str) -> JobSubmitResponse:
        """
        New PENDING job for an already stored file.

        Raises:
            FileNotFoundInStoreError: Unknown file
            JobAlreadyActiveError: File or its content already has a PENDING/PROCESSING job
        """
        uploaded = self.store.get_file(file_id)
        job = self._create_job(uploaded)
        logger.info("job_reprocess_requested", job_id=job.id, file_id=file_id)
        return JobSubmitResponse(job_id=job.id, file_id=file_id, state=job.state)

    # ===================
    # EXECUTION
    # ===================

    def _cancel_check(self, job_id: str) -> Callable[[], bool]:
        token = self._cancel_tokens[job_id]
        counter = itertools.count(1)

        def is_cancelled() -> bool:
            if token.is_set():
                return True
            # Another process may have set the stored flag
            if next(counter) % CANCEL_POLL_ROWS == 0 and self.store.get_job(job_id).cancel_requested:
                token.set()
            return token.is_set()

        return is_cancelled

    def _claim(self, job_id: str) -> tuple[Optional[ProcessingJob], ProcessingJob]:
        """PENDING -> PROCESSING. Returns (claimed job or None, current job)."""
        claimed = self.store.compare_and_set_state(
            job_id, JobState.PENDING, JobState.PROCESSING, {"started_at": _now()}
        )
        if claimed is None:
            return None, self.store.get_job(job_id)
        return claimed, claimed

    async def run_job(self, job_id: str) -> ProcessingJob:
        """
        Claim and run one job to a terminal state.

        Losing the PENDING -> PROCESSING race is not an error: the job is
        returned as found and nothing else happens. Storage calls, parsing
        and directory loading run in worker threads so the event loop keeps
        serving requests.
        """
        claimed, current = await asyncio.to_thread(self._claim, job_id)
        if claimed is None:
            logger.info("job_claim_lost", job_id=job_id)
            return current

        logger.info("job_claimed", job_id=job_id, file_id=claimed.file_id)
        self._cancel_tokens[job_id] = threading.Event()
        start = time.monotonic()

        try:
            if claimed.cancel_requested:
                raise JobCancelledError(job_id)
            return await self._process(claimed, start)
        except AppError as e:
            logger.warning("job_failed", job_id=job_id, kind=e.kind, error=e.message)
            return await asyncio.to_thread(self._fail, job_id, e.kind, e.message)
        except Exception as e:
            logger.exception("job_crashed", job_id=job_id, error_type=type(e).__name__)
            return await asyncio.to_thread(self._fail, job_id, "internal_error", "Unexpected error during processing")
        finally:
            self._cancel_tokens.pop(job_id, None)

    def _load_rows(self, job: ProcessingJob) -> tuple[ColumnDetectionResult, list[ParsedRow]]:
        """Read, parse and column-map the job's file."""
        uploaded = self.store.get_file(job.file_id)
        content = self.store.read_file_content(uploaded)

        table = parse_tabular(content, uploaded.file_format)
        if len(table) == 0:
            raise NoDataError(details={"has_header": table.header is not None})

        detection = detect_columns(table.header, table.sample(settings.column_sample_rows))
        rows = build_rows(table, detection)
        if not rows:
            raise NoDataError()
        return detection, rows

    async def _process(self, job: ProcessingJob, start: float) -> ProcessingJob:
        organization_id = job.organization_id

        # One snapshot per job; feedback arriving later never affects it
        learner = await asyncio.to_thread(self.feedback.snapshot, organization_id)

        detection, rows = await asyncio.to_thread(self._load_rows, job)

        directory = await asyncio.to_thread(DirectorySnapshot.load, self.directory, organization_id)
        engine = MatchingEngine(
            directory,
            threshold=learner.threshold.value,
            oracle=self.oracle,
            aliases=learner.aliases,
        )
        run = await engine.match_rows(rows, is_cancelled=self._cancel_check(job.id), job_id=job.id)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        summary = build_summary(
            run.results,
            run.row_errors,
            learner.threshold,
            self.oracle.available,
            elapsed_ms,
            detection,
        )

        completed = await asyncio.to_thread(
            self.store.compare_and_set_state,
            job.id,
            JobState.PROCESSING,
            JobState.COMPLETED,
            {
                "finished_at": _now(),
                "summary": summary,
                "results": run.results,
                "row_errors": run.row_errors,
            },
        )
        if completed is None:
            logger.warning("job_completion_lost", job_id=job.id)
            return await asyncio.to_thread(self.store.get_job, job.id)

        logger.info(
            "job_completed",
            job_id=job.id,
            total_rows=summary.total_rows,
            matched=summary.matched,
            unmatched=summary.unmatched,
            overall_method=summary.overall_method,
            processing_time_ms=elapsed_ms,
        )
        return completed

    def _fail(self, job_id: str, kind: str, message: str) -> ProcessingJob:
        """Move a PROCESSING job to FAILED, storing only the error."""
        changes = {
            "finished_at": _now(),
            "error": JobError(kind=kind, message=message),
            "summary": None,
            "results": [],
            "row_errors": [],
        }
        try:
            failed = self.store.compare_and_set_state(job_id, JobState.PROCESSING, JobState.FAILED, changes)
        except AppError as e:
            # Storage is down; the job stays PROCESSING until an operator intervenes
            logger.error("job_fail_write_failed", job_id=job_id, kind=kind, error=e.message)
            raise

        if failed is None:
            return self.store.get_job(job_id)
        return failed

    # ===================
    # QUERIES / CONTROL
    # ===================

    def get_status(self, job_id: str) -> JobStatusResponse:
        """
        Raises:
            JobNotFoundError: Unknown job
        """
        return JobStatusResponse.from_job(self.store.get_job(job_id))

    def list_jobs_for_file(self, file_id: str) -> list[JobStatusResponse]:
        self.store.get_file(file_id)
        return [JobStatusResponse.from_job(j) for j in self.store.list_jobs_for_file(file_id)]

    def cancel_job(self, job_id: str) -> JobStatusResponse:
        """
        Cancel a job.

        PENDING jobs fail immediately with kind "cancelled". PROCESSING jobs
        are flagged and fail at the next row boundary.

        Raises:
            JobNotFoundError: Unknown job
            InvalidStatusTransitionError: Job already COMPLETED or FAILED
        """
        job = self.store.get_job(job_id)

        if job.state == JobState.PENDING:
            failed = self.store.compare_and_set_state(
                job_id,
                JobState.PENDING,
                JobState.FAILED,
                {
                    "finished_at": _now(),
                    "cancel_requested": True,
                    "error": JobError(kind="cancelled", message="cancelled"),
                },
            )
            if failed is not None:
                logger.info("job_cancelled", job_id=job_id, state=JobState.PENDING.value)
                return JobStatusResponse.from_job(failed)
            # Claimed between the read and the compare-and-set
            job = self.store.get_job(job_id)

        if job.state.is_terminal:
            raise InvalidStatusTransitionError(job.state.value, JobState.FAILED.value)

        job = self.store.request_cancel(job_id)
        token = self._cancel_tokens.get(job_id)
        if token is not None:
            token.set()
        logger.info("job_cancel_requested", job_id=job_id, state=job.state.value)
        return JobStatusResponse.from_job(job)


# Singleton instance
_processing_service: Optional[ProcessingService] = None


def get_processing_service() -> ProcessingService:
    """Get or create ProcessingService instance."""
    global _processing_service
    if _processing_service is None:
        _processing_service = ProcessingService(feedback=get_feedback_service())
    return _processing_service
