import pytest
import pytest_asyncio

from app.services.queue_metrics_service import QueueMetricsService

from conftest import at


@pytest_asyncio.fixture
async def populated(manager, db):
    for idx in range(3):
        await manager.enqueue(db, entry_id=f"e-{idx}", user_id="u-1", now=at())
    done, failed = await manager.dequeue(db, max_items=2, now=at(seconds=1))
    await manager.complete(db, done.id, {"summary": "ok"}, now=at(seconds=10))
    await manager.dead_letter(
        db,
        failed.id,
        reason="Final failure after 4 attempts: timed out",
        category="max_retries_exceeded",
        error_type="timeout",
        now=at(seconds=12),
    )
    return done, failed


@pytest.mark.asyncio
async def test_dashboard_reflects_population_and_history(populated, db) -> None:
    dashboard = await QueueMetricsService().queue_dashboard(db, now=at(seconds=60))

    assert dashboard["total_queued"] == 1
    assert dashboard["waiting_in_queue"] == 1
    assert dashboard["active_processing"] == 0
    assert dashboard["priority_breakdown"] == {"urgent": 0, "high": 0, "normal": 1}
    assert dashboard["average_wait_ms"] == 60_000
    perf = dashboard["performance_24h"]
    assert perf["completed"] == 1
    assert perf["failed"] == 1
    assert perf["success_rate"] == 50.0
    assert perf["average_processing_ms"] == 10_000
    assert dashboard["sla_compliance"]["normal"]["compliance_rate"] == 100.0
    assert dashboard["sla_violations"] == []
    assert dashboard["health"]["status"] == "critical"
    assert dashboard["health"]["score"] == 75


@pytest.mark.asyncio
async def test_queue_health_summary(populated, db) -> None:
    report = await QueueMetricsService().queue_health(db, now=at(seconds=60))
    assert report["status"] == "critical"
    assert report["metrics"]["total_queued"] == 1
    assert any(alert["type"] == "success_rate" for alert in report["alerts"])


@pytest.mark.asyncio
async def test_export_formats(populated, db) -> None:
    service = QueueMetricsService()
    prom = await service.export_metrics(db, fmt="prometheus", now=at(seconds=60))
    assert "queue_total_items 1" in prom["data"].splitlines()
    as_json = await service.export_metrics(db, fmt="json", now=at(seconds=60))
    assert as_json["data"]["queue_waiting_count"] == 1
    with pytest.raises(ValueError):
        await service.export_metrics(db, fmt="xml", now=at(seconds=60))


@pytest.mark.asyncio
async def test_analytics_window(populated, db) -> None:
    report = await QueueMetricsService().queue_analytics(db, hours=1, include_users=True, now=at(seconds=60))

    assert report["summary"] == {"total": 3, "completed": 1, "failed": 1, "success_rate": 50.0}
    assert report["processing_time"]["max"] == 10_000
    assert report["wait_time"]["median"] == 1_000
    assert report["by_priority"]["normal"]["in_queue"] == 1
    assert report["errors"]["breakdown"] == {"timeout": 1}
    assert len(report["throughput_timeline"]) == 1
    assert report["throughput_timeline"][0]["total"] == 3
    assert report["users"][0]["user_id"] == "u-1"
    assert report["users"][0]["in_queue"] == 1


@pytest.mark.asyncio
async def test_analytics_hours_are_clamped(db) -> None:
    report = await QueueMetricsService().queue_analytics(db, hours=500, now=at())
    assert report["time_range"]["hours"] == 168
    assert "users" not in report


@pytest.mark.asyncio
async def test_dead_letter_stats(populated, db) -> None:
    _, failed = populated
    stats = await QueueMetricsService().dead_letter_stats(db, hours=1, now=at(seconds=60))

    assert stats["summary"]["total_dead_letter_items"] == 1
    assert stats["summary"]["max_retries_exceeded"] == 1
    assert stats["breakdown"]["by_error_type"] == {"timeout": 1}
    [item] = stats["recoverable_items"]
    assert item["job_id"] == str(failed.id)
    assert item["recovery_recommendation"] == "Retry with increased timeout"
