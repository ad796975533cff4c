"""
Business logic services.

Each service handles one stage of the attendance pipeline.
"""

from services.name_normalizer import normalize_name, prepare_name, NormalizedName
from services.column_detector import detect_columns, build_rows
from services.directory_service import (
    Directory,
    InMemoryDirectory,
    SupabaseDirectory,
    DirectorySnapshot,
    get_directory,
)
from services.matching_oracle import (
    MatchingOracle,
    ClaudeMatchingOracle,
    NullMatchingOracle,
    OracleBudget,
    get_matching_oracle,
)
from services.matching_service import MatchingEngine, MatchRun
from services.record_store import (
    RecordStore,
    InMemoryRecordStore,
    SupabaseRecordStore,
    get_record_store,
)
from services.feedback_service import FeedbackService, get_feedback_service
from services.processing_service import ProcessingService, get_processing_service

__all__ = [
    "normalize_name",
    "prepare_name",
    "NormalizedName",
    "detect_columns",
    "build_rows",
    "Directory",
    "InMemoryDirectory",
    "SupabaseDirectory",
    "DirectorySnapshot",
    "get_directory",
    "MatchingOracle",
    "ClaudeMatchingOracle",
    "NullMatchingOracle",
    "OracleBudget",
    "get_matching_oracle",
    "MatchingEngine",
    "MatchRun",
    "RecordStore",
    "InMemoryRecordStore",
    "SupabaseRecordStore",
    "get_record_store",
    "FeedbackService",
    "get_feedback_service",
    "ProcessingService",
    "get_processing_service",
]
