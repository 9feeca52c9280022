"""LEX ingestion pipeline: validation, reconciliation, batching, progress and reporting."""

from .errors import (
    ImportAccessDenied,
    ImportJobError,
    ImportJobNotFound,
    InvalidTransitionError,
    UnsafeFilenameError,
)
from .export import export_enquiries, iter_export_rows
from .job_service import ImportJobService, IngestSettings, JobFilters, get_tracker
from .progress import ProgressSnapshot, ProgressTracker

__all__ = [
    "ImportAccessDenied",
    "ImportJobError",
    "ImportJobNotFound",
    "ImportJobService",
    "IngestSettings",
    "InvalidTransitionError",
    "JobFilters",
    "ProgressSnapshot",
    "ProgressTracker",
    "UnsafeFilenameError",
    "export_enquiries",
    "get_tracker",
    "iter_export_rows",
]
