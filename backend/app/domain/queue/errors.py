"""Queue error taxonomy.

Per-attempt failure classes (network, timeout, ...) are plain ``ErrorType``
values used for retry decisions; only the exceptions below cross the queue
boundary.
"""

from __future__ import annotations


class QueueError(Exception):
    code = "queue_error"
    status_code = 500

    def details(self) -> dict:
        return {}


class QueueFullError(QueueError):
    code = "queue_full"
    status_code = 503

    def __init__(self, population: int, capacity: int, retry_after_ms: int = 30_000) -> None:
        self.population = population
        self.capacity = capacity
        self.retry_after_ms = retry_after_ms
        super().__init__(f"Queue is at capacity ({population}/{capacity})")

    def details(self) -> dict:
        return {
            "population": self.population,
            "capacity": self.capacity,
            "retry_after_ms": self.retry_after_ms,
        }


class DuplicateJobError(QueueError):
    """Benign: enqueue resolves duplicates by returning the active job."""

    code = "duplicate_job"
    status_code = 200

    def __init__(self, existing_job_id: str) -> None:
        self.existing_job_id = existing_job_id
        super().__init__(f"Active job {existing_job_id} already exists for this entry")

    def details(self) -> dict:
        return {"existing_job_id": self.existing_job_id}


class AuthorizationError(QueueError):
    code = "forbidden"
    status_code = 403

    def __init__(self, job_id: str, user_id: str) -> None:
        self.job_id = job_id
        self.user_id = user_id
        super().__init__("Only the owner of a job may cancel it")

    def details(self) -> dict:
        return {"job_id": self.job_id}


class RetryExhaustedError(QueueError):
    code = "retry_exhausted"
    status_code = 422

    def __init__(self, job_id: str, retry_count: int, message: str) -> None:
        self.job_id = job_id
        self.retry_count = retry_count
        super().__init__(message)

    def details(self) -> dict:
        return {"job_id": self.job_id, "retry_count": self.retry_count}


class JobNotFoundError(QueueError):
    code = "not_found"
    status_code = 404

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        super().__init__(f"Analysis job {job_id} not found")

    def details(self) -> dict:
        return {"job_id": self.job_id}


class InvalidTransitionError(QueueError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, job_id: str, from_state: str, to_state: str) -> None:
        self.job_id = job_id
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Job {job_id} cannot move from {from_state} to {to_state}")

    def details(self) -> dict:
        return {"job_id": self.job_id, "from": self.from_state, "to": self.to_state}


class ProviderCallError(Exception):
    """Classified failure raised by the analysis provider client."""

    def __init__(self, error_type, message: str) -> None:
        self.error_type = error_type
        super().__init__(message)
