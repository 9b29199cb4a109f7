import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.core.database import get_db
from app.main import app
from app.services.circuit_breaker import MemoryBreakerStore, circuit_breakers
from app.services.queue_manager import queue_manager

from conftest import RecordingScheduler

MEMBER = {"X-User-Id": "u-1"}
OTHER = {"X-User-Id": "u-2"}
OPERATOR = {"X-User-Id": "ops-1", "X-User-Role": "operator"}


@pytest_asyncio.fixture
async def client(session_factory, monkeypatch):
    async def _override_db():
        async with session_factory() as session:
            yield session

    monkeypatch.setattr(queue_manager, "scheduler", RecordingScheduler())
    monkeypatch.setattr(circuit_breakers, "store", MemoryBreakerStore())
    app.dependency_overrides[get_db] = _override_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.clear()


async def _enqueue(client, entry_id="e-1", headers=MEMBER, **extra):
    return await client.post("/api/v1/analysis-queue/jobs", json={"entry_id": entry_id, **extra}, headers=headers)


@pytest.mark.asyncio
async def test_enqueue_then_duplicate(client) -> None:
    first = await _enqueue(client, crisis_signal=True)
    assert first.status_code == 201
    body = first.json()
    assert body["ok"] is True
    assert body["data"]["status"] == "queued"
    assert body["data"]["job"]["priority"] == "urgent"
    assert body["data"]["job"]["queue_position"] == 1

    second = await _enqueue(client)
    assert second.status_code == 200
    assert second.json()["data"]["status"] == "already_queued"
    assert second.json()["data"]["job"]["id"] == body["data"]["job"]["id"]


@pytest.mark.asyncio
async def test_missing_identity_is_rejected(client) -> None:
    response = await client.post("/api/v1/analysis-queue/jobs", json={"entry_id": "e-1"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "http_error"


@pytest.mark.asyncio
async def test_invalid_payload_uses_validation_envelope(client) -> None:
    response = await _enqueue(client, priority="critical")
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "validation_error"


@pytest.mark.asyncio
async def test_status_and_job_visibility(client) -> None:
    job_id = (await _enqueue(client)).json()["data"]["job"]["id"]

    status = await client.get("/api/v1/analysis-queue/status", headers=MEMBER)
    assert status.status_code == 200
    assert status.json()["data"]["active_count"] == 1

    mine = await client.get(f"/api/v1/analysis-queue/jobs/{job_id}", headers=MEMBER)
    assert mine.status_code == 200
    assert mine.json()["data"]["retry_history"] == []

    assert (await client.get(f"/api/v1/analysis-queue/jobs/{job_id}", headers=OTHER)).status_code == 403
    assert (await client.get(f"/api/v1/analysis-queue/jobs/{job_id}", headers=OPERATOR)).status_code == 200


@pytest.mark.asyncio
async def test_unknown_job_is_not_found(client) -> None:
    response = await client.get("/api/v1/analysis-queue/jobs/00000000-0000-0000-0000-000000000000", headers=MEMBER)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "not_found"


@pytest.mark.asyncio
async def test_cancel_requires_owner(client) -> None:
    job_id = (await _enqueue(client)).json()["data"]["job"]["id"]

    forbidden = await client.post(f"/api/v1/analysis-queue/jobs/{job_id}/cancel", headers=OTHER)
    assert forbidden.status_code == 403
    assert forbidden.json()["error"]["code"] == "forbidden"

    cancelled = await client.post(
        f"/api/v1/analysis-queue/jobs/{job_id}/cancel", json={"reason": "changed my mind"}, headers=MEMBER
    )
    assert cancelled.status_code == 200
    assert cancelled.json()["data"]["status"] == "cancelled"
    assert cancelled.json()["data"]["refund_eligible"] is True

    again = await client.post(f"/api/v1/analysis-queue/jobs/{job_id}/cancel", headers=MEMBER)
    assert again.json()["data"]["reason"] == "already_resolved"


@pytest.mark.asyncio
async def test_queue_full_sets_retry_after(client, monkeypatch) -> None:
    monkeypatch.setattr(queue_manager, "max_size", 1)
    await _enqueue(client, entry_id="e-1")

    response = await _enqueue(client, entry_id="e-2")
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "queue_full"
    assert int(response.headers["retry-after"]) >= 1


@pytest.mark.asyncio
async def test_admin_routes_require_operator(client) -> None:
    assert (await client.get("/api/v1/analysis-queue/admin/dashboard", headers=MEMBER)).status_code == 403

    await _enqueue(client)
    dashboard = await client.get("/api/v1/analysis-queue/admin/dashboard", headers=OPERATOR)
    assert dashboard.status_code == 200
    assert dashboard.json()["data"]["total_queued"] == 1


@pytest.mark.asyncio
async def test_admin_export_and_purge_preview(client) -> None:
    await _enqueue(client)

    exported = await client.get("/api/v1/analysis-queue/admin/export", params={"format": "csv"}, headers=OPERATOR)
    assert exported.status_code == 200
    assert exported.json()["data"]["format"] == "csv"

    rejected = await client.get("/api/v1/analysis-queue/admin/export", params={"format": "xml"}, headers=OPERATOR)
    assert rejected.status_code == 422

    preview = await client.post("/api/v1/analysis-queue/admin/purge", params={"dry_run": True}, headers=OPERATOR)
    assert preview.status_code == 200
    assert preview.json()["data"]["dry_run"] is True
    assert preview.json()["data"]["would_purge_count"] == 0


@pytest.mark.asyncio
async def test_admin_circuit_breaker_reset(client) -> None:
    await circuit_breakers.record_failure("analysis_provider", "network", "down")
    listed = await client.get("/api/v1/analysis-queue/admin/circuit-breakers", headers=OPERATOR)
    assert "analysis_provider" in listed.json()["data"]["services"]

    reset = await client.post("/api/v1/analysis-queue/admin/circuit-breakers/analysis_provider/reset", headers=OPERATOR)
    assert reset.status_code == 200
    assert await circuit_breakers.health() == {}


@pytest.mark.asyncio
async def test_health_endpoint(client) -> None:
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
