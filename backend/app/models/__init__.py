"""Models package."""
from app.models.analysis_job import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    AnalysisJob,
    DeadLetterCategory,
    ErrorType,
    JobPriority,
    JobStatus,
)

__all__ = [
    "AnalysisJob",
    "JobPriority",
    "JobStatus",
    "ErrorType",
    "DeadLetterCategory",
    "ACTIVE_STATUSES",
    "TERMINAL_STATUSES",
]
