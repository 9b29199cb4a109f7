import pytest

from app.domain.queue import health


def _snapshot(**overrides) -> health.QueueSnapshot:
    values = dict(
        total_items=12,
        capacity=1000,
        capacity_utilization=1.2,
        active_processing=2,
        waiting_count=10,
        priority_breakdown={"urgent": 1, "high": 3, "normal": 8},
        average_wait_ms=4200,
        max_wait_ms=9000,
        throughput_per_hour=7,
        success_rate=98.5,
        average_processing_ms=3100,
        health_score=100,
        health_status="healthy",
        alert_count=0,
        sla_violation_count=0,
        sla_compliance={"urgent": {"compliance_rate": 100.0}, "high": {"compliance_rate": 92.5}},
        timestamp="2026-03-02T12:00:00",
    )
    values.update(overrides)
    return health.QueueSnapshot(**values)


def test_evaluate_health_critical_capacity() -> None:
    status = health.evaluate_health(96, 1000, 99)
    assert status.status == health.CRITICAL
    assert status.score == 60


def test_evaluate_health_warning_and_healthy() -> None:
    assert health.evaluate_health(85, 0, 100).status == health.WARNING
    assert health.evaluate_health(10, 0, 100).status == health.HEALTHY


def test_evaluate_health_score_floor() -> None:
    assert health.evaluate_health(99, 10_000_000, 0).score == 5
    assert health.evaluate_health(99, 10_000_000, 0).status == health.CRITICAL


def test_alerts_are_independent_per_category() -> None:
    alerts = health.generate_alerts(96, 400_000, 80, 700_000)
    kinds = {alert["type"] for alert in alerts}
    assert kinds == {"capacity", "wait_time", "success_rate", "max_wait_time"}


def test_success_rate_with_no_history_is_full() -> None:
    assert health.success_rate_pct(0, 0) == 100.0
    assert health.success_rate_pct(3, 1) == 75.0


def test_sla_compliance_counts_violations() -> None:
    result = health.sla_compliance([10_000, 20_000, 40_000], 30_000)
    assert result["violation_count"] == 1
    assert result["compliance_rate"] == 66.67


def test_backpressure_and_admission() -> None:
    assert health.backpressure_level(40, 10) == "none"
    assert health.backpressure_level(40, 90) == "heavy"
    decision = health.admission_decision(
        population=800, capacity=1000, capacity_utilization=80, priority="normal", level="moderate", average_wait_ms=0
    )
    assert decision["allowed"] is False
    assert decision["suggested_retry_after_ms"] == 60_000
    urgent = health.admission_decision(
        population=970, capacity=1000, capacity_utilization=97, priority="urgent", level="critical", average_wait_ms=0
    )
    assert urgent["allowed"] is True


def test_export_prometheus_lines() -> None:
    out = health.render_export(_snapshot(), "prometheus")
    lines = out["data"].splitlines()
    assert len(lines) == 18
    assert "queue_total_items 12" in lines
    assert "queue_sla_high_compliance_percent 92.5" in lines
    assert "queue_sla_normal_compliance_percent 100.0" in lines


def test_export_csv_header_and_row() -> None:
    out = health.render_export(_snapshot(), "csv")
    header, row = out["data"].split("\n")
    assert header.split(",")[0] == "queue_total_items"
    assert row.split(",")[0] == "12"
    assert len(header.split(",")) == len(row.split(",")) == 18


def test_export_json_and_unknown_format() -> None:
    out = health.render_export(_snapshot(), "json")
    assert out["data"]["queue_waiting_count"] == 10
    with pytest.raises(ValueError):
        health.render_export(_snapshot(), "xml")


def test_recovery_recommendation() -> None:
    assert health.recovery_recommendation("Final failure after 4 attempts: timed out", "timeout") == "Retry with increased timeout"
    assert health.recovery_recommendation(None, None) == "Retry with standard parameters"
