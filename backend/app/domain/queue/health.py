"""Pure health scoring, alerting, backpressure and export helpers.

Everything here works on plain numbers or on a ``QueueSnapshot`` built by the
metrics service, so each export format is rendered from one computed
snapshot.
"""

from __future__ import annotations

import csv
import io
from dataclasses import asdict, dataclass, field
from typing import Any


HEALTHY = "healthy"
WARNING = "warning"
CRITICAL = "critical"

EXPORT_FORMATS = ("json", "prometheus", "csv")

BACKPRESSURE_ACTIONS: dict[str, str] = {
    "none": "Normal operation",
    "light": "Monitor queue growth",
    "moderate": "Apply light throttling",
    "heavy": "Reject low priority requests",
    "critical": "Emergency capacity scaling required",
}
_ADMISSION_BASE_THRESHOLDS = {"urgent": 95, "high": 85, "normal": 75}
_ADMISSION_ADJUSTMENT = {"none": 0, "light": -5, "moderate": -10, "heavy": -15, "critical": -20}
_RETRY_AFTER_MULTIPLIER = {"none": 0, "light": 1, "moderate": 2, "heavy": 4, "critical": 8}
RETRY_AFTER_BASE_MS = 30_000


@dataclass(slots=True)
class HealthStatus:
    status: str
    score: int
    tripped: list[str] = field(default_factory=list)


def evaluate_health(
    utilization: float,
    average_wait_ms: float,
    success_rate: float,
    *,
    high_wait_ms: int = 120_000,
    critical_wait_ms: int = 300_000,
) -> HealthStatus:
    score = 100
    criticals: list[str] = []
    warnings: list[str] = []

    if utilization > 95:
        score -= 40
        criticals.append("capacity")
    elif utilization > 80:
        score -= 20
        warnings.append("capacity")
    elif utilization > 50:
        score -= 10

    if average_wait_ms > critical_wait_ms:
        score -= 30
        criticals.append("wait_time")
    elif average_wait_ms > high_wait_ms:
        score -= 15
        warnings.append("wait_time")

    if success_rate < 90:
        score -= 25
        criticals.append("success_rate")
    elif success_rate < 95:
        score -= 10
        warnings.append("success_rate")

    if criticals:
        status = CRITICAL
    elif warnings:
        status = WARNING
    else:
        status = HEALTHY
    return HealthStatus(status=status, score=max(0, score), tripped=criticals + warnings)


def generate_alerts(
    utilization: float,
    average_wait_ms: float,
    success_rate: float,
    max_wait_ms: float,
    *,
    high_wait_ms: int = 120_000,
    critical_wait_ms: int = 300_000,
) -> list[dict[str, Any]]:
    """One alert per tripped category; categories are independent."""
    alerts: list[dict[str, Any]] = []

    if utilization > 95:
        alerts.append(_alert(CRITICAL, "capacity", f"Queue at {round(utilization)}% capacity - immediate action required", 95, utilization))
    elif utilization > 80:
        alerts.append(_alert(WARNING, "capacity", f"Queue approaching capacity at {round(utilization)}%", 80, utilization))

    if average_wait_ms > critical_wait_ms:
        alerts.append(
            _alert(CRITICAL, "wait_time", f"Average wait time {round(average_wait_ms / 1000)}s exceeds critical threshold", critical_wait_ms, average_wait_ms)
        )
    elif average_wait_ms > high_wait_ms:
        alerts.append(
            _alert(WARNING, "wait_time", f"Average wait time {round(average_wait_ms / 1000)}s exceeds normal threshold", high_wait_ms, average_wait_ms)
        )

    if success_rate < 90:
        alerts.append(_alert(CRITICAL, "success_rate", f"Success rate {round(success_rate)}% below critical threshold", 90, success_rate))
    elif success_rate < 95:
        alerts.append(_alert(WARNING, "success_rate", f"Success rate {round(success_rate)}% below optimal threshold", 95, success_rate))

    if max_wait_ms > 600_000:
        alerts.append(_alert(WARNING, "max_wait_time", f"Some items waiting over {round(max_wait_ms / 60000)} minutes", 600_000, max_wait_ms))

    return alerts


def _alert(severity: str, kind: str, message: str, threshold: float, current: float) -> dict[str, Any]:
    return {
        "severity": severity,
        "type": kind,
        "message": message,
        "threshold": threshold,
        "current": round(float(current), 2),
    }


def generate_recommendations(
    utilization: float,
    average_wait_ms: float,
    success_rate: float,
    sla_violation_count: int,
    *,
    high_wait_ms: int = 120_000,
) -> list[dict[str, str]]:
    recommendations: list[dict[str, str]] = []
    if utilization > 80:
        recommendations.append(
            {
                "type": "capacity",
                "priority": CRITICAL if utilization > 95 else "high",
                "action": "Increase processing capacity or implement queue throttling",
                "impact": "Reduce wait times and prevent queue overflow",
            }
        )
    if average_wait_ms > high_wait_ms:
        recommendations.append(
            {
                "type": "performance",
                "priority": "high",
                "action": "Optimize processing algorithms or increase concurrent processing limit",
                "impact": "Improve user experience and SLA compliance",
            }
        )
    if success_rate < 95:
        recommendations.append(
            {
                "type": "reliability",
                "priority": CRITICAL,
                "action": "Investigate and fix processing errors, improve error handling",
                "impact": "Increase system reliability and reduce failed analyses",
            }
        )
    if sla_violation_count > 0:
        recommendations.append(
            {
                "type": "sla",
                "priority": "high",
                "action": "Review priority assessment logic and consider capacity scaling",
                "impact": "Meet service level agreements and improve user satisfaction",
            }
        )
    return recommendations


def sla_compliance(durations_ms: list[int], sla_target_ms: int) -> dict[str, Any]:
    """Compliance over resolved jobs; an empty class is fully compliant."""
    if not durations_ms:
        return {"compliance_rate": 100.0, "violation_count": 0, "average_time_ms": 0}
    compliant = sum(1 for value in durations_ms if value <= sla_target_ms)
    return {
        "compliance_rate": round(compliant / len(durations_ms) * 100, 2),
        "violation_count": len(durations_ms) - compliant,
        "average_time_ms": round(sum(durations_ms) / len(durations_ms)),
    }


def time_stats(values: list[int | float]) -> dict[str, int | float]:
    if not values:
        return {"min": 0, "max": 0, "average": 0, "median": 0, "p95": 0, "p99": 0}
    ordered = sorted(values)
    count = len(ordered)
    return {
        "min": ordered[0],
        "max": ordered[-1],
        "average": round(sum(ordered) / count),
        "median": ordered[count // 2],
        "p95": ordered[min(count - 1, int(count * 0.95))],
        "p99": ordered[min(count - 1, int(count * 0.99))],
    }


def success_rate_pct(completed: int, failed: int) -> float:
    total = completed + failed
    return round(completed / total * 100, 2) if total else 100.0


# Backpressure / admission -------------------------------------------------


def backpressure_level(capacity_utilization: float, processing_utilization: float) -> str:
    peak = max(capacity_utilization, processing_utilization)
    if peak >= 95:
        return "critical"
    if peak >= 85:
        return "heavy"
    if peak >= 70:
        return "moderate"
    if peak >= 50:
        return "light"
    return "none"


def admission_threshold(level: str, priority: str) -> int:
    base = _ADMISSION_BASE_THRESHOLDS.get(priority, 75)
    return max(50, base + _ADMISSION_ADJUSTMENT.get(level, 0))


def suggested_retry_after_ms(level: str) -> int:
    return RETRY_AFTER_BASE_MS * _RETRY_AFTER_MULTIPLIER.get(level, 1)


def admission_decision(
    *,
    population: int,
    capacity: int,
    capacity_utilization: float,
    priority: str,
    level: str,
    average_wait_ms: float,
) -> dict[str, Any]:
    """Advisory admission; only the hard capacity limit is enforced by enqueue."""
    if priority == "urgent" and capacity_utilization < 98 and population < capacity:
        return {
            "allowed": True,
            "reason": "Urgent priority - allowed despite backpressure",
            "estimated_wait_ms": round(average_wait_ms),
        }
    if population >= capacity:
        return {
            "allowed": False,
            "reason": "Queue at maximum capacity",
            "estimated_wait_ms": None,
            "suggested_retry_after_ms": suggested_retry_after_ms(level),
        }
    threshold = admission_threshold(level, priority)
    if capacity_utilization > threshold:
        return {
            "allowed": False,
            "reason": f"Backpressure active - capacity {round(capacity_utilization)}% exceeds threshold {threshold}%",
            "estimated_wait_ms": None,
            "suggested_retry_after_ms": suggested_retry_after_ms(level),
        }
    return {"allowed": True, "reason": "Admission approved", "estimated_wait_ms": round(average_wait_ms)}


# Dead letter / auto requeue ----------------------------------------------


def recovery_recommendation(reason: str | None, error_type: str | None = None) -> str:
    text = f"{reason or ''} {error_type or ''}".lower()
    if "timeout" in text:
        return "Retry with increased timeout"
    if "network" in text:
        return "Retry when network conditions improve"
    if "rate_limit" in text or "rate limit" in text:
        return "Retry with exponential backoff"
    if "capacity" in text:
        return "Retry during low-load period"
    if "overload" in text:
        return "Retry with reduced priority"
    return "Retry with standard parameters"


def auto_requeue_recommendations(success_rate_pct: float, total_failures: int, retry_successes: int) -> list[str]:
    recommendations: list[str] = []
    if success_rate_pct < 30 and retry_successes > 0:
        recommendations.append("Consider increasing retry limits for recoverable errors")
    if success_rate_pct > 80 and total_failures > 10:
        recommendations.append("Auto-requeue system performing well - maintain current settings")
    if total_failures > 50 and success_rate_pct < 50:
        recommendations.append("High failure rate detected - investigate underlying service issues")
    if retry_successes == 0 and total_failures > 5:
        recommendations.append("No retry successes - check if auto-requeue system is functioning")
    if not recommendations:
        recommendations.append("Auto-requeue system operating within normal parameters")
    return recommendations


# Snapshot / export ---------------------------------------------------------


@dataclass(slots=True)
class QueueSnapshot:
    total_items: int
    capacity: int
    capacity_utilization: float
    active_processing: int
    waiting_count: int
    priority_breakdown: dict[str, int]
    average_wait_ms: int
    max_wait_ms: int
    throughput_per_hour: int
    success_rate: float
    average_processing_ms: int
    health_score: int
    health_status: str
    alert_count: int
    sla_violation_count: int
    sla_compliance: dict[str, dict[str, Any]]
    timestamp: str

    def to_metrics(self) -> dict[str, int | float]:
        return {
            "queue_total_items": self.total_items,
            "queue_capacity_utilization_percent": self.capacity_utilization,
            "queue_average_wait_time_ms": self.average_wait_ms,
            "queue_max_wait_time_ms": self.max_wait_ms,
            "queue_active_processing": self.active_processing,
            "queue_waiting_count": self.waiting_count,
            "queue_urgent_count": self.priority_breakdown.get("urgent", 0),
            "queue_high_count": self.priority_breakdown.get("high", 0),
            "queue_normal_count": self.priority_breakdown.get("normal", 0),
            "queue_throughput_per_hour": self.throughput_per_hour,
            "queue_success_rate_percent": self.success_rate,
            "queue_average_processing_time_ms": self.average_processing_ms,
            "queue_health_score": self.health_score,
            "queue_alert_count": self.alert_count,
            "queue_sla_violations": self.sla_violation_count,
            "queue_sla_urgent_compliance_percent": self.sla_compliance.get("urgent", {}).get("compliance_rate", 100.0),
            "queue_sla_high_compliance_percent": self.sla_compliance.get("high", {}).get("compliance_rate", 100.0),
            "queue_sla_normal_compliance_percent": self.sla_compliance.get("normal", {}).get("compliance_rate", 100.0),
        }

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def render_export(snapshot: QueueSnapshot, fmt: str) -> dict[str, Any]:
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"unsupported_export_format:{fmt}")
    metrics = snapshot.to_metrics()

    if fmt == "prometheus":
        data: Any = "\n".join(f"{key} {value}" for key, value in metrics.items())
    elif fmt == "csv":
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(metrics.keys())
        writer.writerow(metrics.values())
        data = buffer.getvalue().rstrip("\n")
    else:
        data = dict(metrics)
    return {"format": fmt, "data": data, "timestamp": snapshot.timestamp}
