"""
Custom exception classes for the application.

Every error carries a stable code. Job-level failures are stored on the
job using the lower-cased code as their kind.
"""

from typing import Optional, Any
from datetime import datetime, timezone


class AppError(Exception):
    """
    Base exception for all application errors.

    All custom exceptions inherit from this.

    Attributes:
        code: Error code (e.g., "JOB_NOT_FOUND")
        message: Human-readable message
        status_code: HTTP status code
        details: Additional context
    """

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    @property
    def kind(self) -> str:
        """Error kind as stored on a failed job."""
        return self.code.lower()

    def to_dict(self) -> dict:
        """Convert to API response format."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "timestamp": self.timestamp
            }
        }


class NotFoundError(AppError):
    """Resource not found (404)."""

    def __init__(
        self,
        resource: str,
        identifier: str,
        code: Optional[str] = None
    ):
        super().__init__(
            code=code or f"{resource.upper()}_NOT_FOUND",
            message=f"{resource} not found",
            status_code=404,
            details={"id": identifier}
        )


class ValidationError(AppError):
    """Validation failed (422)."""

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=422,
            details=details
        )


class ConflictError(AppError):
    """Conflict with existing resource (409)."""

    def __init__(
        self,
        message: str,
        code: str = "CONFLICT",
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code,
            message=message,
            status_code=409,
            details=details
        )


class DuplicateError(ConflictError):
    """Duplicate resource (409)."""

    def __init__(
        self,
        resource: str,
        field: str,
        value: str
    ):
        super().__init__(
            code=f"{resource.upper()}_{field.upper()}_EXISTS",
            message=f"{resource} with this {field} already exists",
            details={field: value}
        )


class ExternalServiceError(AppError):
    """External service failure (503)."""

    def __init__(
        self,
        service: str,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict] = None
    ):
        super().__init__(
            code=code or f"{service.upper()}_ERROR",
            message=message,
            status_code=503,
            details={"service": service, **(details or {})}
        )


class DatabaseError(AppError):
    """Database operation failed (500)."""

    def __init__(
        self,
        operation: str,
        message: str,
        details: Optional[dict] = None
    ):
        super().__init__(
            code="STORAGE_ERROR",
            message=f"Database {operation} failed: {message}",
            status_code=500,
            details={"operation": operation, **(details or {})}
        )


# ===================
# FILE / PARSER ERRORS
# ===================

class MalformedFileError(ValidationError):
    """File cannot be tokenized at all."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(
            code="MALFORMED_FILE",
            message=message,
            details=details
        )


class NoDataError(ValidationError):
    """File has a header but no data rows."""

    def __init__(self, details: Optional[dict] = None):
        super().__init__(
            code="NO_DATA",
            message="File contains no data rows",
            details=details
        )


class NoNameColumnError(ValidationError):
    """No column could be identified as holding names."""

    def __init__(self, best_confidence: float, floor: float):
        super().__init__(
            code="NO_NAME_COLUMN",
            message="Could not detect a name column",
            details={"best_confidence": round(best_confidence, 4), "required": floor}
        )


class UnsupportedFileTypeError(ValidationError):
    """Upload extension not in the allow-list."""

    def __init__(self, extension: str, allowed: list[str]):
        super().__init__(
            code="UNSUPPORTED_FILE_TYPE",
            message=f"File type not allowed. Allowed types: {', '.join(allowed)}",
            details={"provided": extension, "valid": allowed}
        )


class FileTooLargeError(ValidationError):
    """Upload exceeds the configured size limit."""

    def __init__(self, size: int, limit: int):
        super().__init__(
            code="FILE_TOO_LARGE",
            message=f"File exceeds {limit} bytes",
            details={"size": size, "limit": limit}
        )


# ===================
# JOB ERRORS
# ===================

class JobNotFoundError(NotFoundError):
    """Processing job not found."""

    def __init__(self, job_id: str):
        super().__init__(
            resource="Processing job",
            identifier=job_id,
            code="JOB_NOT_FOUND"
        )


class FileNotFoundInStoreError(NotFoundError):
    """Uploaded file not found."""

    def __init__(self, file_id: str):
        super().__init__(
            resource="Uploaded file",
            identifier=file_id,
            code="FILE_NOT_FOUND"
        )


class InvalidStatusTransitionError(ConflictError):
    """Invalid job state transition."""

    def __init__(self, current_status: str, new_status: str):
        super().__init__(
            code="INVALID_STATUS_TRANSITION",
            message=f"Cannot transition from {current_status} to {new_status}",
            details={
                "current_status": current_status,
                "new_status": new_status,
                "reason": "COMPLETED and FAILED are terminal"
            }
        )


class JobAlreadyActiveError(ConflictError):
    """File already has a PENDING or PROCESSING job."""

    def __init__(self, file_id: str, job_id: str):
        super().__init__(
            code="JOB_ALREADY_ACTIVE",
            message="File already has an active processing job",
            details={"file_id": file_id, "job_id": job_id}
        )


class JobCancelledError(AppError):
    """Job was cancelled between rows."""

    def __init__(self, job_id: str):
        super().__init__(
            code="CANCELLED",
            message="cancelled",
            status_code=409,
            details={"job_id": job_id}
        )


# ===================
# ORACLE ERRORS
# ===================

class OracleUnavailableError(ExternalServiceError):
    """Oracle not configured or unreachable."""

    def __init__(self, message: str = "Matching oracle unavailable"):
        super().__init__(service="oracle", message=message, code="ORACLE_UNAVAILABLE")


class OracleTimeoutError(ExternalServiceError):
    """Oracle call exceeded its timeout or the job budget."""

    def __init__(self, timeout: float):
        super().__init__(
            service="oracle",
            message=f"Oracle call exceeded {timeout:.1f}s",
            code="ORACLE_TIMEOUT",
            details={"timeout": timeout}
        )


class OracleResponseError(ExternalServiceError):
    """Oracle response had an unexpected shape."""

    def __init__(self, message: str, preview: Optional[str] = None):
        super().__init__(
            service="oracle",
            message=message,
            code="ORACLE_BAD_RESPONSE",
            details={"preview": (preview or "")[:200]}
        )
