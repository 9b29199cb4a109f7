from datetime import timedelta

import pytest

from app.models.analysis_job import JobStatus
from app.services.queue_maintenance_service import QueueMaintenanceService

from conftest import NOW, at

LOOKBACK_MS = 30 * 60 * 1000


async def _dead_letter(manager, db, entry_id, *, category, error_type, now):
    await manager.enqueue(db, entry_id=entry_id, user_id="u-1", now=now)
    claimed = await manager.dequeue(db, max_items=1, now=now + timedelta(seconds=1))
    job = claimed[0]
    return await manager.dead_letter(
        db, job.id, reason=f"{error_type} failure", category=category, error_type=error_type, now=now + timedelta(seconds=2)
    )


@pytest.mark.asyncio
async def test_sla_sweep_upgrades_and_is_idempotent(manager, db) -> None:
    service = QueueMaintenanceService(manager)
    normal = (await manager.enqueue(db, entry_id="e-n", user_id="u-1", now=at(minutes=-16))).job
    high = (await manager.enqueue(db, entry_id="e-h", user_id="u-1", priority="high", now=at(minutes=-3))).job
    fresh = (await manager.enqueue(db, entry_id="e-f", user_id="u-1", now=at(minutes=-1))).job

    report = await service.upgrade_aging_requests(db, now=at())
    assert report["upgraded"] == 2
    assert normal.priority == "high"
    assert high.priority == "urgent"
    assert fresh.priority == "normal"
    assert normal.priority_history[-1]["source"] == "sla_aging"

    again = await service.upgrade_aging_requests(db, now=at(seconds=1))
    assert again["upgraded"] == 0
    assert normal.priority == "high"


@pytest.mark.asyncio
async def test_sla_sweep_ignores_claimed_jobs(manager, db) -> None:
    service = QueueMaintenanceService(manager)
    await manager.enqueue(db, entry_id="e-n", user_id="u-1", now=at(minutes=-20))
    job = (await manager.dequeue(db, max_items=1, now=at(minutes=-19)))[0]
    report = await service.upgrade_aging_requests(db, now=at())
    assert report["upgraded"] == 0
    assert job.priority == "normal"


@pytest.mark.asyncio
async def test_auto_requeue_reinjects_transient_failures(manager, db) -> None:
    service = QueueMaintenanceService(manager)
    transient = await _dead_letter(manager, db, "e-net", category="max_retries_exceeded", error_type="network", now=at(minutes=-10))
    await _dead_letter(manager, db, "e-bad", category="non_recoverable_error", error_type="validation", now=at(minutes=-9))
    await _dead_letter(manager, db, "e-old", category="expired", error_type="timeout", now=at(minutes=-8))

    report = await service.auto_requeue_transient_failures(db, lookback_ms=LOOKBACK_MS, batch_size=20, now=at())
    assert report["status"] == "completed"
    assert report["requeued"] == 1
    assert report["skipped"] == 2
    reasons = {item["reason"] for item in report["details"]["skipped_items"]}
    assert reasons == {"Non-recoverable error", "Expired by age"}

    requeued = report["details"]["requeued_items"][0]
    assert requeued["job_id"] == str(transient.id)
    new_job = await manager.repo.get(db, requeued["new_job_id"])
    assert new_job.status == JobStatus.QUEUED.value
    assert new_job.requeued_from_id == transient.id
    assert new_job.retry_history == transient.retry_history
    assert new_job.processing_attempts == transient.processing_attempts
    assert new_job.priority_history[-1]["source"] == "auto_requeue"

    again = await service.auto_requeue_transient_failures(db, lookback_ms=LOOKBACK_MS, batch_size=20, now=at(seconds=5))
    assert again["requeued"] == 0
    assert "Already requeued" in {item["reason"] for item in again["details"]["skipped_items"]}


@pytest.mark.asyncio
async def test_auto_requeue_skips_while_breaker_open(manager, db, breakers) -> None:
    service = QueueMaintenanceService(manager)
    await _dead_letter(manager, db, "e-net", category="max_retries_exceeded", error_type="network", now=at(minutes=-5))
    for _ in range(5):
        await breakers.record_failure(manager.service_name, "network", "down", now=at())

    report = await service.auto_requeue_transient_failures(db, lookback_ms=LOOKBACK_MS, batch_size=20, now=at(seconds=1))
    assert report["requeued"] == 0
    assert report["details"]["skipped_items"][0]["reason"] == "Circuit breaker open"


@pytest.mark.asyncio
async def test_auto_requeue_skips_entry_with_active_job(manager, db) -> None:
    service = QueueMaintenanceService(manager)
    await _dead_letter(manager, db, "e-1", category="max_retries_exceeded", error_type="timeout", now=at(minutes=-5))
    await manager.enqueue(db, entry_id="e-1", user_id="u-1", now=at(minutes=-1))

    report = await service.auto_requeue_transient_failures(db, lookback_ms=LOOKBACK_MS, batch_size=20, now=at())
    assert report["requeued"] == 0
    assert report["details"]["skipped_items"][0]["reason"] == "Active job exists for entry"


@pytest.mark.asyncio
async def test_auto_requeue_no_candidates(manager, db) -> None:
    service = QueueMaintenanceService(manager)
    report = await service.auto_requeue_transient_failures(db, lookback_ms=LOOKBACK_MS, batch_size=20, now=at())
    assert report["status"] == "no_candidates"
    assert report["requeued"] == 0


@pytest.mark.asyncio
async def test_auto_requeue_health_counts_retry_successes(manager, db) -> None:
    service = QueueMaintenanceService(manager)
    await _dead_letter(manager, db, "e-1", category="max_retries_exceeded", error_type="timeout", now=at(minutes=-5))
    report = await service.auto_requeue_transient_failures(db, lookback_ms=LOOKBACK_MS, batch_size=20, now=at(minutes=-4))
    new_id = report["details"]["requeued_items"][0]["new_job_id"]

    claimed = await manager.dequeue(db, max_items=1, now=at(minutes=-3))
    assert str(claimed[0].id) == new_id
    await manager.complete(db, new_id, {"summary": "ok"}, now=at(minutes=-2))

    health = await service.auto_requeue_health(db, now=at())
    assert health["total_failures"] == 1
    assert health["recoverable_failures"] == 1
    assert health["retried"] == 1
    assert health["retry_successes"] == 1
    assert health["retry_success_rate"] == 100.0
    assert health["failures_by_type"]["timeout"] == {"count": 1, "recoverable": True}


@pytest.mark.asyncio
async def test_queue_cleanup_releases_overdue_and_purges(manager, db) -> None:
    service = QueueMaintenanceService(manager)
    expired = (await manager.enqueue(db, entry_id="e-old", user_id="u-1", now=NOW - timedelta(hours=30))).job
    await manager.enqueue(db, entry_id="e-retry", user_id="u-1", priority="urgent", now=at(minutes=-10))
    job = (await manager.dequeue(db, max_items=1, now=at(minutes=-9)))[0]
    await manager.requeue(db, job.id, error_type="timeout", error_message="slow", now=at(minutes=-9))

    report = await service.trigger_queue_cleanup(db, now=at())
    assert report["released_overdue"] == 1
    assert job.status == JobStatus.QUEUED.value
    assert report["purged_count"] == 1
    assert expired.status == JobStatus.DEAD_LETTERED.value
