from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from app.models.analysis_job import JobPriority


PRIORITY_LEVELS: dict[JobPriority, int] = {
    JobPriority.NORMAL: 1,
    JobPriority.HIGH: 2,
    JobPriority.URGENT: 3,
}

PRIORITY_ORDER: tuple[JobPriority, ...] = (JobPriority.NORMAL, JobPriority.HIGH, JobPriority.URGENT)


@dataclass(frozen=True, slots=True)
class PriorityCriteria:
    priority: JobPriority
    level: int
    dispatch_delay_ms: int
    sla_target_ms: int
    max_wait_ms: int
    description: str


PRIORITY_CRITERIA: dict[JobPriority, PriorityCriteria] = {
    JobPriority.URGENT: PriorityCriteria(
        priority=JobPriority.URGENT,
        level=3,
        dispatch_delay_ms=0,
        sla_target_ms=30_000,
        max_wait_ms=60_000,
        description="Crisis signals and explicitly escalated work",
    ),
    JobPriority.HIGH: PriorityCriteria(
        priority=JobPriority.HIGH,
        level=2,
        dispatch_delay_ms=1_000,
        sla_target_ms=120_000,
        max_wait_ms=300_000,
        description="Premium relationship entries and retried work",
    ),
    JobPriority.NORMAL: PriorityCriteria(
        priority=JobPriority.NORMAL,
        level=1,
        dispatch_delay_ms=5_000,
        sla_target_ms=600_000,
        max_wait_ms=1_800_000,
        description="Standard processing",
    ),
}


def coerce_priority(value: JobPriority | str | None) -> JobPriority | None:
    """Parse a caller supplied priority; anything unrecognised yields None."""
    if value is None:
        return None
    if isinstance(value, JobPriority):
        return value
    try:
        return JobPriority(str(value).strip().lower())
    except ValueError:
        return None


def priority_value(priority: JobPriority | str) -> int:
    parsed = coerce_priority(priority) or JobPriority.NORMAL
    return PRIORITY_LEVELS[parsed]


def max_priority(*priorities: JobPriority | str | None) -> JobPriority:
    parsed = [p for p in (coerce_priority(item) for item in priorities) if p is not None]
    if not parsed:
        return JobPriority.NORMAL
    return max(parsed, key=lambda item: PRIORITY_LEVELS[item])


def next_priority(priority: JobPriority | str) -> JobPriority | None:
    level = priority_value(priority)
    if level >= PRIORITY_LEVELS[JobPriority.URGENT]:
        return None
    return PRIORITY_ORDER[level]


def is_upgrade(from_priority: JobPriority | str, to_priority: JobPriority | str) -> bool:
    return priority_value(to_priority) > priority_value(from_priority)


def sla_target_ms(priority: JobPriority | str) -> int:
    return PRIORITY_CRITERIA[coerce_priority(priority) or JobPriority.NORMAL].sla_target_ms


def dispatch_delay_ms(priority: JobPriority | str) -> int:
    return PRIORITY_CRITERIA[coerce_priority(priority) or JobPriority.NORMAL].dispatch_delay_ms


def is_within_sla(priority: JobPriority | str, queued_at: datetime, resolved_at: datetime) -> bool:
    elapsed_ms = (resolved_at - queued_at).total_seconds() * 1000
    return elapsed_ms <= sla_target_ms(priority)


def estimated_delay_ms(priority: JobPriority | str, queue_length: int) -> int:
    """Dispatch delay plus one second per ten jobs already waiting."""
    return dispatch_delay_ms(priority) + (max(0, queue_length) // 10) * 1000
