"""Analysis job queue records."""

from __future__ import annotations

import enum
from uuid import uuid4

from sqlalchemy import JSON, Boolean, Column, DateTime, Index, Integer, String, Text, Uuid

from app.core.database import Base
from app.utils.clock import utcnow


class JobPriority(str, enum.Enum):
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class JobStatus(str, enum.Enum):
    QUEUED = "queued"
    CLAIMED = "claimed"
    RETRY_WAIT = "retry_wait"
    COMPLETED = "completed"
    DEAD_LETTERED = "dead_lettered"
    CANCELLED = "cancelled"


class ErrorType(str, enum.Enum):
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    VALIDATION = "validation"
    SERVICE_ERROR = "service_error"
    AUTHENTICATION = "authentication"


class DeadLetterCategory(str, enum.Enum):
    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    NON_RECOVERABLE_ERROR = "non_recoverable_error"
    CIRCUIT_BREAKER_TRIGGERED = "circuit_breaker_triggered"
    EXPIRED = "expired"
    STUCK_PROCESSING = "stuck_processing"


ACTIVE_STATUSES: tuple[str, ...] = (
    JobStatus.QUEUED.value,
    JobStatus.CLAIMED.value,
    JobStatus.RETRY_WAIT.value,
)
TERMINAL_STATUSES: tuple[str, ...] = (
    JobStatus.COMPLETED.value,
    JobStatus.DEAD_LETTERED.value,
    JobStatus.CANCELLED.value,
)


class AnalysisJob(Base):
    __tablename__ = "analysis_jobs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    entry_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    relationship_id = Column(String(64), nullable=True)
    user_tier = Column(String(16), nullable=True)
    request_key = Column(String(128), nullable=False)
    # Copy of request_key held only while the job is active; the unique key makes a duplicate enqueue lose the race.
    dedupe_key = Column(String(128), nullable=True, unique=True)

    priority = Column(String(16), nullable=False, default=JobPriority.NORMAL.value)
    status = Column(String(24), nullable=False, default=JobStatus.QUEUED.value)  # queued|claimed|retry_wait|completed|dead_lettered|cancelled
    queued_at = Column(DateTime, nullable=False, default=utcnow)
    priority_changed_at = Column(DateTime, nullable=True)
    processing_started_at = Column(DateTime, nullable=True)
    next_attempt_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)

    processing_attempts = Column(Integer, nullable=False, default=0)
    retry_history = Column(JSON, nullable=False, default=list)
    priority_history = Column(JSON, nullable=False, default=list)
    last_error_type = Column(String(24), nullable=True)
    last_error_message = Column(Text, nullable=True)

    dead_letter_queue = Column(Boolean, nullable=False, default=False)
    dead_letter_reason = Column(Text, nullable=True)
    dead_letter_category = Column(String(32), nullable=True)
    dead_letter_timestamp = Column(DateTime, nullable=True)
    dead_letter_metadata = Column(JSON, nullable=True)

    queue_position = Column(Integer, nullable=True)
    estimated_completion_time = Column(DateTime, nullable=True)
    queue_wait_time_ms = Column(Integer, nullable=True)
    total_processing_time_ms = Column(Integer, nullable=True)
    result_json = Column(JSON, nullable=True)

    requeued_from_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    requeued_to_id = Column(Uuid(as_uuid=True), nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_analysis_jobs_status", "status"),
        Index("ix_analysis_jobs_priority_queued", "priority", "queued_at"),
        Index("ix_analysis_jobs_status_priority", "status", "priority"),
        Index("ix_analysis_jobs_entry", "entry_id"),
        Index("ix_analysis_jobs_status_dead_letter", "status", "dead_letter_timestamp"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_waiting(self) -> bool:
        return self.status in (JobStatus.QUEUED.value, JobStatus.RETRY_WAIT.value)
