"""Aging-based priority upgrades.

Time in the current class is measured from ``priority_changed_at`` so that a
job just promoted starts a fresh clock; running the sweep twice in a row is a
no-op for every job it already touched.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from app.domain.queue.priorities import PRIORITY_CRITERIA
from app.models.analysis_job import JobPriority


# normal: half of its 30 minute max wait.
NORMAL_UPGRADE_AFTER_MS = PRIORITY_CRITERIA[JobPriority.NORMAL].max_wait_ms // 2
# high: its full SLA target, no half grace.
HIGH_UPGRADE_AFTER_MS = PRIORITY_CRITERIA[JobPriority.HIGH].sla_target_ms


@dataclass(slots=True)
class SlaUpgrade:
    from_priority: JobPriority
    to_priority: JobPriority
    waited_ms: int


def time_in_class_ms(queued_at: datetime, priority_changed_at: datetime | None, now: datetime) -> int:
    # Aging counts from the last class change, not from queued_at: a job promoted
    # normal -> high starts a fresh high window instead of jumping straight to urgent.
    anchor = priority_changed_at or queued_at
    return max(0, int((now - anchor).total_seconds() * 1000))


def sla_upgrade_for(
    priority: JobPriority | str,
    queued_at: datetime,
    priority_changed_at: datetime | None,
    now: datetime,
) -> SlaUpgrade | None:
    current = JobPriority(priority)
    waited = time_in_class_ms(queued_at, priority_changed_at, now)
    if current == JobPriority.NORMAL and waited > NORMAL_UPGRADE_AFTER_MS:
        return SlaUpgrade(current, JobPriority.HIGH, waited)
    if current == JobPriority.HIGH and waited > HIGH_UPGRADE_AFTER_MS:
        return SlaUpgrade(current, JobPriority.URGENT, waited)
    return None
