"""
Resonant Analysis Queue - Pydantic Schemas
==========================================
Request/Response schemas for the API layer.
"""

from typing import Optional

from pydantic import BaseModel, Field

PRIORITY_PATTERN = "^(urgent|high|normal)$"
ERROR_TYPE_PATTERN = "^(network|rate_limit|timeout|validation|service_error|authentication)$"
DEAD_LETTER_CATEGORY_PATTERN = (
    "^(max_retries_exceeded|non_recoverable_error|circuit_breaker_triggered|expired|stuck_processing)$"
)


# ── User-facing queue ──

class EnqueueAnalysisRequest(BaseModel):
    entry_id: str = Field(..., min_length=1, max_length=128)
    priority: Optional[str] = Field(None, pattern=PRIORITY_PATTERN)
    relationship_id: Optional[str] = Field(None, max_length=128)
    user_tier: Optional[str] = Field(None, max_length=32)
    dedupe_key: Optional[str] = Field(None, max_length=255)
    crisis_signal: bool = False
    entry_content: Optional[str] = None
    sentiment_score: Optional[float] = Field(None, ge=-1, le=1)
    emotional_keywords: list[str] = Field(default_factory=list)


class CancelAnalysisRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ── Operator surface ──

class PriorityUpgradeRequest(BaseModel):
    priority: str = Field(..., pattern=PRIORITY_PATTERN)


class RecoverDeadLettersRequest(BaseModel):
    job_ids: list[str] = Field(..., min_length=1, max_length=100)
    new_priority: str = Field("high", pattern=PRIORITY_PATTERN)


class ManualDeadLetterRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=1000)
    category: str = Field("non_recoverable_error", pattern=DEAD_LETTER_CATEGORY_PATTERN)
    error_type: Optional[str] = Field(None, pattern=ERROR_TYPE_PATTERN)


class ManualRequeueRequest(BaseModel):
    error_type: Optional[str] = Field(None, pattern=ERROR_TYPE_PATTERN)
    error_message: str = Field("", max_length=4000)


class DispatchRequest(BaseModel):
    max_items: int = Field(1, ge=1, le=100)
    priority: Optional[str] = Field(None, pattern=PRIORITY_PATTERN)


# ── System ──

class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    database: str = "connected"
    queue_enabled: bool = True
    uptime_seconds: float = 0
