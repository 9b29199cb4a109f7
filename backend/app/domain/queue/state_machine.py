from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from app.domain.queue.errors import InvalidTransitionError
from app.models.analysis_job import JobStatus


STATE_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.CLAIMED, JobStatus.CANCELLED, JobStatus.DEAD_LETTERED},
    JobStatus.CLAIMED: {
        JobStatus.COMPLETED,
        JobStatus.RETRY_WAIT,
        JobStatus.QUEUED,
        JobStatus.DEAD_LETTERED,
        JobStatus.CANCELLED,
    },
    JobStatus.RETRY_WAIT: {JobStatus.QUEUED, JobStatus.CANCELLED, JobStatus.DEAD_LETTERED},
    JobStatus.COMPLETED: set(),
    JobStatus.DEAD_LETTERED: set(),
    JobStatus.CANCELLED: set(),
}


@dataclass(slots=True)
class TransitionValidationResult:
    valid: bool
    from_state: JobStatus
    to_state: JobStatus
    allowed_targets: list[JobStatus]


def allowed_targets(from_state: JobStatus | str) -> set[JobStatus]:
    return set(STATE_TRANSITIONS.get(JobStatus(from_state), set()))


def can_transition(from_state: JobStatus | str, to_state: JobStatus | str) -> bool:
    return JobStatus(to_state) in allowed_targets(from_state)


def validate_transition(from_state: JobStatus | str, to_state: JobStatus | str) -> TransitionValidationResult:
    targets = sorted(allowed_targets(from_state), key=lambda item: item.value)
    return TransitionValidationResult(
        valid=can_transition(from_state, to_state),
        from_state=JobStatus(from_state),
        to_state=JobStatus(to_state),
        allowed_targets=targets,
    )


def ensure_transition(job_id, from_state: JobStatus | str, to_state: JobStatus | str) -> None:
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(str(job_id), JobStatus(from_state).value, JobStatus(to_state).value)


def validate_path(states: Iterable[JobStatus | str]) -> bool:
    sequence = list(states)
    if len(sequence) <= 1:
        return True
    return all(can_transition(sequence[idx], sequence[idx + 1]) for idx in range(0, len(sequence) - 1))
