from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from typing import Protocol, TypeVar

from app.domain.queue.priorities import priority_value


CLASS_WEIGHT = 10
AGE_CAP_MINUTES = 5.0


class Weighable(Protocol):
    priority: str
    queued_at: datetime


T = TypeVar("T", bound=Weighable)


def age_minutes(queued_at: datetime, now: datetime) -> float:
    return max(0.0, (now - queued_at).total_seconds() / 60.0)


def compute_weight(priority: str, queued_at: datetime, now: datetime) -> float:
    # 10 points between classes against a 5 point aging bonus: class always dominates.
    return priority_value(priority) * CLASS_WEIGHT + min(age_minutes(queued_at, now), AGE_CAP_MINUTES)


def weight_of(job: Weighable, now: datetime) -> float:
    return compute_weight(job.priority, job.queued_at, now)


def order_by_weight(jobs: Iterable[T], now: datetime) -> list[T]:
    """Highest weight first, FIFO on equal weight. ``sorted`` is stable."""
    return sorted(jobs, key=lambda job: (-weight_of(job, now), job.queued_at))


def jobs_ahead(target: Weighable, candidates: Iterable[Weighable], now: datetime) -> int:
    target_key = (-weight_of(target, now), target.queued_at)
    return sum(
        1
        for job in candidates
        if job is not target and (-weight_of(job, now), job.queued_at) < target_key
    )
