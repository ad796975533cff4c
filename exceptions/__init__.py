"""
Custom exceptions module.
"""

from exceptions.errors import (
    # Base exceptions
    AppError,
    NotFoundError,
    ValidationError,
    ConflictError,
    DuplicateError,
    ExternalServiceError,
    DatabaseError,

    # Files / parser
    MalformedFileError,
    NoDataError,
    NoNameColumnError,
    UnsupportedFileTypeError,
    FileTooLargeError,

    # Jobs
    JobNotFoundError,
    FileNotFoundInStoreError,
    InvalidStatusTransitionError,
    JobAlreadyActiveError,
    JobCancelledError,

    # Oracle
    OracleUnavailableError,
    OracleTimeoutError,
    OracleResponseError,
)

__all__ = [
    # Base
    "AppError",
    "NotFoundError",
    "ValidationError",
    "ConflictError",
    "DuplicateError",
    "ExternalServiceError",
    "DatabaseError",

    # Files / parser
    "MalformedFileError",
    "NoDataError",
    "NoNameColumnError",
    "UnsupportedFileTypeError",
    "FileTooLargeError",

    # Jobs
    "JobNotFoundError",
    "FileNotFoundInStoreError",
    "InvalidStatusTransitionError",
    "JobAlreadyActiveError",
    "JobCancelledError",

    # Oracle
    "OracleUnavailableError",
    "OracleTimeoutError",
    "OracleResponseError",
]
