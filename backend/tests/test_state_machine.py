import pytest

from app.domain.queue.errors import InvalidTransitionError
from app.domain.queue.state_machine import can_transition, ensure_transition, validate_path, validate_transition
from app.models.analysis_job import JobStatus


def test_valid_transition_claimed_to_retry_wait() -> None:
    assert can_transition(JobStatus.CLAIMED, JobStatus.RETRY_WAIT)


def test_terminal_states_have_no_exits() -> None:
    for terminal in (JobStatus.COMPLETED, JobStatus.DEAD_LETTERED, JobStatus.CANCELLED):
        result = validate_transition(terminal, JobStatus.QUEUED)
        assert result.valid is False
        assert result.allowed_targets == []


def test_queued_cannot_complete_without_claim() -> None:
    with pytest.raises(InvalidTransitionError) as exc:
        ensure_transition("job-1", "queued", "completed")
    assert exc.value.status_code == 409
    assert exc.value.details() == {"job_id": "job-1", "from": "queued", "to": "completed"}


def test_retry_path_is_valid() -> None:
    assert validate_path(["queued", "claimed", "retry_wait", "queued", "claimed", "completed"])
    assert not validate_path(["queued", "retry_wait"])
