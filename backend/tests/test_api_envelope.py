import json

from app.api.envelope import error_envelope, queue_error_envelope, success_envelope
from app.domain.queue.errors import AuthorizationError, QueueFullError


def test_success_envelope_shape() -> None:
    response = success_envelope({"value": 1}, status_code=201)
    body = json.loads(response.body.decode("utf-8"))
    assert response.status_code == 201
    assert body["ok"] is True
    assert body["data"] == {"value": 1}
    assert isinstance(body.get("meta"), dict)
    assert body["meta"]["timestamp"]


def test_error_envelope_shape() -> None:
    response = error_envelope(code="bad_request", message="Invalid", status_code=400, details={"field": "x"})
    body = json.loads(response.body.decode("utf-8"))
    assert body["ok"] is False
    assert body["error"]["code"] == "bad_request"
    assert body["error"]["message"] == "Invalid"


def test_queue_full_envelope_carries_retry_after() -> None:
    response = queue_error_envelope(QueueFullError(1000, 1000, retry_after_ms=60_000), path="/api/v1/analysis-queue/jobs")
    body = json.loads(response.body.decode("utf-8"))
    assert response.status_code == 503
    assert response.headers["retry-after"] == "60"
    assert body["error"]["details"] == {"population": 1000, "capacity": 1000, "retry_after_ms": 60_000}
    assert body["meta"]["path"] == "/api/v1/analysis-queue/jobs"


def test_authorization_envelope_hides_user() -> None:
    response = queue_error_envelope(AuthorizationError("job-1", "u-2"))
    body = json.loads(response.body.decode("utf-8"))
    assert response.status_code == 403
    assert body["error"]["code"] == "forbidden"
    assert body["error"]["details"] == {"job_id": "job-1"}
    assert "retry-after" not in response.headers
