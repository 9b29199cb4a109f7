"""Retry eligibility, exponential backoff with jitter and retry-driven escalation."""

from __future__ import annotations

import random
from dataclasses import dataclass

from app.models.analysis_job import DeadLetterCategory, ErrorType, JobPriority


RECOVERABLE_ERRORS: frozenset[ErrorType] = frozenset(
    {ErrorType.NETWORK, ErrorType.TIMEOUT, ErrorType.RATE_LIMIT, ErrorType.SERVICE_ERROR}
)
TERMINAL_ERRORS: frozenset[ErrorType] = frozenset({ErrorType.VALIDATION, ErrorType.AUTHENTICATION})

# Failure weight fed to the circuit breaker; service errors count double.
CIRCUIT_FAILURE_WEIGHT: dict[ErrorType, int] = {ErrorType.SERVICE_ERROR: 2}

# Checked in order; first match wins.
_CLASSIFICATION_RULES: tuple[tuple[ErrorType, tuple[str, ...]], ...] = (
    (ErrorType.TIMEOUT, ("timeout", "timed out")),
    (ErrorType.NETWORK, ("network", "connection")),
    (ErrorType.RATE_LIMIT, ("rate limit", "rate_limit", "quota", "too many requests")),
    (ErrorType.SERVICE_ERROR, ("service", "server error")),
    (ErrorType.VALIDATION, ("validation", "invalid")),
    (ErrorType.AUTHENTICATION, ("auth", "unauthorized", "forbidden")),
    (ErrorType.SERVICE_ERROR, ("api", "provider")),
)


def coerce_error_type(value: ErrorType | str | None) -> ErrorType:
    if isinstance(value, ErrorType):
        return value
    try:
        return ErrorType(str(value or "").strip().lower())
    except ValueError:
        return ErrorType.SERVICE_ERROR


def classify_error(message: str | None) -> ErrorType:
    lowered = (message or "").lower()
    for error_type, needles in _CLASSIFICATION_RULES:
        if any(needle in lowered for needle in needles):
            return error_type
    return ErrorType.SERVICE_ERROR


def is_recoverable(error_type: ErrorType | str) -> bool:
    return coerce_error_type(error_type) in RECOVERABLE_ERRORS


def circuit_failure_weight(error_type: ErrorType | str) -> int:
    return CIRCUIT_FAILURE_WEIGHT.get(coerce_error_type(error_type), 1)


@dataclass(slots=True)
class RetryDecision:
    should_retry: bool
    retry_count: int
    error_type: ErrorType
    delay_ms: int = 0
    new_priority: JobPriority | None = None
    dead_letter_category: DeadLetterCategory | None = None
    reason: str = ""


class RetryPolicy:
    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 60_000,
        jitter_ms: int = 1000,
        rng: random.Random | None = None,
    ) -> None:
        self.max_retries = max_retries
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self.jitter_ms = jitter_ms
        self._rng = rng or random.Random()

    @classmethod
    def from_settings(cls, settings, rng: random.Random | None = None) -> "RetryPolicy":
        return cls(
            max_retries=settings.retry_max_attempts,
            base_delay_ms=settings.retry_base_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            jitter_ms=settings.retry_jitter_ms,
            rng=rng,
        )

    def backoff_delay(self, attempt: int) -> int:
        jitter = self._rng.random() * self.jitter_ms
        return int(min((2 ** max(0, attempt)) * self.base_delay_ms + jitter, self.max_delay_ms))

    def escalated_priority(self, priority: JobPriority | str, retry_count: int) -> JobPriority:
        current = JobPriority(priority)
        # One step per requeue.
        if current == JobPriority.NORMAL and retry_count >= 2:
            return JobPriority.HIGH
        if current == JobPriority.HIGH and retry_count >= 3:
            return JobPriority.URGENT
        return current

    @staticmethod
    def final_failure_message(retry_count: int, error_message: str) -> str:
        return f"Final failure after {retry_count} attempts: {error_message}"

    def decide(
        self,
        *,
        attempts: int,
        error_type: ErrorType | str,
        priority: JobPriority | str,
        error_message: str = "",
    ) -> RetryDecision:
        kind = coerce_error_type(error_type)
        retry_count = attempts + 1

        if kind in TERMINAL_ERRORS:
            return RetryDecision(
                should_retry=False,
                retry_count=retry_count,
                error_type=kind,
                dead_letter_category=DeadLetterCategory.NON_RECOVERABLE_ERROR,
                reason=f"Non-recoverable {kind.value} error: {error_message}",
            )

        if retry_count > self.max_retries:
            return RetryDecision(
                should_retry=False,
                retry_count=retry_count,
                error_type=kind,
                dead_letter_category=DeadLetterCategory.MAX_RETRIES_EXCEEDED,
                reason=self.final_failure_message(retry_count, error_message),
            )

        return RetryDecision(
            should_retry=True,
            retry_count=retry_count,
            error_type=kind,
            delay_ms=self.backoff_delay(attempts),
            new_priority=self.escalated_priority(priority, retry_count),
            reason=f"Retry {retry_count}/{self.max_retries} after {kind.value}",
        )
