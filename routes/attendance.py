"""
Attendance API routes.

Upload, job status, cancellation, reprocessing and feedback endpoints.
Matching runs in the background; every endpoint returns without waiting on it.
"""

from fastapi import APIRouter, BackgroundTasks, File, Form, UploadFile
from fastapi.responses import JSONResponse
from typing import Optional
import structlog

from models.processing import JobSubmitResponse, JobStatusResponse
from models.feedback import FeedbackCreate, FeedbackAck, ThresholdSnapshot
from services.processing_service import get_processing_service
from services.feedback_service import get_feedback_service
from exceptions import AppError

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api/attendance", tags=["Attendance"])


# ===================
# EXCEPTION HANDLER
# ===================

def handle_error(e: Exception) -> JSONResponse:
    """Convert exception to JSON response."""
    if isinstance(e, AppError):
        return JSONResponse(
            status_code=e.status_code,
            content=e.to_dict()
        )
    # Unexpected error
    logger.error("unexpected_error", error=str(e), type=type(e).__name__)
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred"
            }
        }
    )


# ===================
# UPLOADS / JOBS
# ===================

@router.post("/upload", response_model=JobSubmitResponse, status_code=202)
async def upload_attendance(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(..., description="Attendance file (.csv, .tsv, .txt, .xlsx)"),
    organization_id: str = Form(..., min_length=1),
    session_id: Optional[str] = Form(None),
    owner_id: Optional[str] = Form(None),
):
    """
    Upload an attendance file for matching.

    Returns immediately with the job id; poll GET /jobs/{job_id} for results.

    Raises:
        422: Unsupported file type or file too large
    """
    try:
        content = await file.read()
        service = get_processing_service()
        response = service.submit(
            content=content,
            filename=file.filename or "upload",
            organization_id=organization_id,
            session_id=session_id,
            owner_id=owner_id,
            content_type=file.content_type,
        )
        if not response.deduplicated:
            background_tasks.add_task(service.run_job, response.job_id)
        return response

    except Exception as e:
        return handle_error(e)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str):
    """
    Job state, summary, per-row results once COMPLETED, error once FAILED.

    Raises:
        404: Job not found
    """
    try:
        return get_processing_service().get_status(job_id)
    except Exception as e:
        return handle_error(e)


@router.post("/jobs/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_job(job_id: str):
    """
    Cancel a PENDING or PROCESSING job.

    Raises:
        404: Job not found
        409: Job already COMPLETED or FAILED
    """
    try:
        return get_processing_service().cancel_job(job_id)
    except Exception as e:
        return handle_error(e)


@router.post("/files/{file_id}/reprocess", response_model=JobSubmitResponse, status_code=202)
async def reprocess_file(file_id: str, background_tasks: BackgroundTasks):
    """
    Start a new job for a stored file. Earlier jobs are kept as history.

    Raises:
        404: File not found
        409: File already has an active job
    """
    try:
        service = get_processing_service()
        response = service.reprocess(file_id)
        background_tasks.add_task(service.run_job, response.job_id)
        return response
    except Exception as e:
        return handle_error(e)


@router.get("/files/{file_id}/jobs", response_model=list[JobStatusResponse])
async def list_file_jobs(file_id: str):
    """
    All jobs for one file, oldest first.

    Raises:
        404: File not found
    """
    try:
        return get_processing_service().list_jobs_for_file(file_id)
    except Exception as e:
        return handle_error(e)


# ===================
# FEEDBACK
# ===================

@router.post("/feedback", response_model=FeedbackAck, status_code=202)
async def submit_feedback(data: FeedbackCreate, background_tasks: BackgroundTasks):
    """
    Record a reviewer's verdict on a match.

    The threshold is recomputed in the background.
    """
    try:
        service = get_feedback_service()
        ack = service.submit(data)
        if not ack.duplicate:
            background_tasks.add_task(service.recompute, data.organization_id)
        return ack
    except Exception as e:
        return handle_error(e)


@router.get("/thresholds/{organization_id}", response_model=ThresholdSnapshot)
async def get_threshold(organization_id: str):
    """Current acceptance threshold for an organization."""
    try:
        return get_feedback_service().current_threshold(organization_id)
    except Exception as e:
        return handle_error(e)
