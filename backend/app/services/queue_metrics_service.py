"""Queue dashboard, health, export and analytics built from the live job population."""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.logging import get_logger
from app.domain.queue import health
from app.domain.queue.priorities import PRIORITY_CRITERIA, sla_target_ms
from app.domain.queue.retry_policy import classify_error, is_recoverable
from app.models.analysis_job import AnalysisJob, DeadLetterCategory, JobPriority, JobStatus
from app.repositories.analysis_job_repository import AnalysisJobRepository, analysis_job_repository
from app.utils.clock import iso, ms_ago, ms_between, utcnow

logger = get_logger("services.queue_metrics")
settings = get_settings()

DAY_MS = 24 * 60 * 60 * 1000
HOUR_MS = 60 * 60 * 1000


def _resolved_at(job: AnalysisJob) -> datetime | None:
    if job.status == JobStatus.COMPLETED.value:
        return job.completed_at
    if job.status == JobStatus.DEAD_LETTERED.value:
        return job.dead_letter_timestamp
    if job.status == JobStatus.CANCELLED.value:
        return job.cancelled_at
    return None


def _error_category(job: AnalysisJob) -> str:
    if job.status == JobStatus.CANCELLED.value:
        return "cancelled"
    if job.dead_letter_category == DeadLetterCategory.EXPIRED.value:
        return "expired"
    if job.last_error_type:
        return job.last_error_type
    return classify_error(job.last_error_message).value if job.last_error_message else "other"


class QueueMetricsService:
    def __init__(self, repository: AnalysisJobRepository | None = None) -> None:
        self.repo = repository or analysis_job_repository
        self.max_size = settings.queue_max_size
        self.max_concurrent = settings.queue_max_concurrent_processing
        self.high_wait_ms = settings.queue_high_wait_ms
        self.critical_wait_ms = settings.queue_critical_wait_ms

    async def queue_dashboard(self, db: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        active = await self.repo.list_active(db)
        resolved = await self.repo.list_resolved_since(db, ms_ago(now, DAY_MS))

        total = len(active)
        utilization = total / self.max_size * 100
        processing = sum(1 for job in active if job.status == JobStatus.CLAIMED.value)
        breakdown: dict[str, int] = {p.value: 0 for p in JobPriority}
        for job in active:
            breakdown[job.priority] = breakdown.get(job.priority, 0) + 1

        waits = [ms_between(job.queued_at, now) for job in active]
        average_wait = sum(waits) / len(waits) if waits else 0
        max_wait = max(waits) if waits else 0

        completed = [job for job in resolved if job.status == JobStatus.COMPLETED.value]
        failed = [job for job in resolved if job.status == JobStatus.DEAD_LETTERED.value]
        success_rate = health.success_rate_pct(len(completed), len(failed))
        processed_24h = len(completed) + len(failed)
        processing_times = [job.total_processing_time_ms or 0 for job in completed]
        average_processing = round(sum(processing_times) / len(processing_times)) if processing_times else 0

        compliance = {}
        for priority in JobPriority:
            durations = [
                ms_between(job.queued_at, _resolved_at(job))
                for job in completed + failed
                if job.priority == priority.value
            ]
            compliance[priority.value] = health.sla_compliance(durations, PRIORITY_CRITERIA[priority].sla_target_ms)

        violations = self._sla_violations(active, now)
        status = health.evaluate_health(
            utilization,
            average_wait,
            success_rate,
            high_wait_ms=self.high_wait_ms,
            critical_wait_ms=self.critical_wait_ms,
        )
        alerts = health.generate_alerts(
            utilization,
            average_wait,
            success_rate,
            max_wait,
            high_wait_ms=self.high_wait_ms,
            critical_wait_ms=self.critical_wait_ms,
        )
        recommendations = health.generate_recommendations(
            utilization, average_wait, success_rate, len(violations), high_wait_ms=self.high_wait_ms
        )

        return {
            "total_queued": total,
            "max_capacity": self.max_size,
            "capacity_utilization": round(utilization, 2),
            "active_processing": processing,
            "waiting_in_queue": total - processing,
            "max_concurrent_processing": self.max_concurrent,
            "priority_breakdown": breakdown,
            "average_wait_ms": round(average_wait),
            "max_wait_ms": max_wait,
            "sla_compliance": compliance,
            "performance_24h": {
                "total_processed": processed_24h,
                "completed": len(completed),
                "failed": len(failed),
                "success_rate": success_rate,
                "average_processing_ms": average_processing,
                "throughput_per_hour": round(processed_24h / 24),
                "current_processing": processing,
            },
            "health": {"status": status.status, "score": status.score, "tripped": status.tripped},
            "alerts": alerts,
            "sla_violations": violations,
            "recommendations": recommendations,
            "timestamp": iso(now),
        }

    @staticmethod
    def _sla_violations(active: list[AnalysisJob], now: datetime) -> list[dict[str, Any]]:
        violations = []
        for job in active:
            target = sla_target_ms(job.priority)
            waited = ms_between(job.queued_at, now)
            if waited > target:
                violations.append(
                    {
                        "job_id": str(job.id),
                        "priority": job.priority,
                        "current_wait_ms": waited,
                        "sla_target_ms": target,
                        "violation_ms": waited - target,
                        "user_id": job.user_id,
                        "entry_id": job.entry_id,
                    }
                )
        return violations

    def snapshot_from_dashboard(self, dashboard: dict[str, Any]) -> health.QueueSnapshot:
        perf = dashboard["performance_24h"]
        return health.QueueSnapshot(
            total_items=dashboard["total_queued"],
            capacity=dashboard["max_capacity"],
            capacity_utilization=dashboard["capacity_utilization"],
            active_processing=dashboard["active_processing"],
            waiting_count=dashboard["waiting_in_queue"],
            priority_breakdown=dashboard["priority_breakdown"],
            average_wait_ms=dashboard["average_wait_ms"],
            max_wait_ms=dashboard["max_wait_ms"],
            throughput_per_hour=perf["throughput_per_hour"],
            success_rate=perf["success_rate"],
            average_processing_ms=perf["average_processing_ms"],
            health_score=dashboard["health"]["score"],
            health_status=dashboard["health"]["status"],
            alert_count=len(dashboard["alerts"]),
            sla_violation_count=len(dashboard["sla_violations"]),
            sla_compliance=dashboard["sla_compliance"],
            timestamp=dashboard["timestamp"],
        )

    async def queue_health(self, db: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
        dashboard = await self.queue_dashboard(db, now=now)
        return {
            "status": dashboard["health"]["status"],
            "score": dashboard["health"]["score"],
            "metrics": {
                "capacity_utilization": dashboard["capacity_utilization"],
                "average_wait_ms": dashboard["average_wait_ms"],
                "success_rate": dashboard["performance_24h"]["success_rate"],
                "total_queued": dashboard["total_queued"],
                "active_processing": dashboard["active_processing"],
            },
            "alerts": dashboard["alerts"],
            "sla_violations": dashboard["sla_violations"],
            "recommendations": dashboard["recommendations"],
            "last_checked": dashboard["timestamp"],
        }

    async def export_metrics(self, db: AsyncSession, *, fmt: str = "json", now: datetime | None = None) -> dict[str, Any]:
        if fmt not in health.EXPORT_FORMATS:
            raise ValueError(f"unsupported_export_format:{fmt}")
        snapshot = self.snapshot_from_dashboard(await self.queue_dashboard(db, now=now))
        return health.render_export(snapshot, fmt)

    async def queue_analytics(
        self,
        db: AsyncSession,
        *,
        hours: int = 24,
        include_users: bool = False,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        hours = max(1, min(hours, 24 * 7))
        since = ms_ago(now, hours * HOUR_MS)
        jobs = await self.repo.list_queued_since(db, since)

        completed = [job for job in jobs if job.status == JobStatus.COMPLETED.value]
        failed = [job for job in jobs if job.status in (JobStatus.DEAD_LETTERED.value, JobStatus.CANCELLED.value)]

        by_priority = {}
        for priority in JobPriority:
            items = [job for job in jobs if job.priority == priority.value]
            done = [job for job in items if job.status == JobStatus.COMPLETED.value]
            dead = [job for job in items if job.status == JobStatus.DEAD_LETTERED.value]
            times = [job.total_processing_time_ms for job in done if job.total_processing_time_ms]
            by_priority[priority.value] = {
                "total": len(items),
                "completed": len(done),
                "failed": len(dead),
                "in_queue": sum(1 for job in items if not job.is_terminal),
                "success_rate": health.success_rate_pct(len(done), len(dead)),
                "average_processing_ms": round(sum(times) / len(times)) if times else 0,
            }

        error_counts = Counter(_error_category(job) for job in failed)
        result: dict[str, Any] = {
            "time_range": {"hours": hours, "start": iso(since), "end": iso(now)},
            "summary": {
                "total": len(jobs),
                "completed": len(completed),
                "failed": len(failed),
                "success_rate": health.success_rate_pct(
                    len(completed), sum(1 for job in failed if job.status == JobStatus.DEAD_LETTERED.value)
                ),
            },
            "processing_time": health.time_stats([job.total_processing_time_ms or 0 for job in completed]),
            "wait_time": health.time_stats([job.queue_wait_time_ms or 0 for job in completed]),
            "by_priority": by_priority,
            "errors": {
                "total_errors": len(failed),
                "breakdown": dict(error_counts),
                "top_errors": [{"error": name, "count": count} for name, count in error_counts.most_common(5)],
            },
            "throughput_timeline": self._throughput_timeline(jobs, hours, now),
        }
        if include_users:
            result["users"] = self._user_breakdown(jobs)
        return result

    @staticmethod
    def _throughput_timeline(jobs: list[AnalysisJob], hours: int, now: datetime) -> list[dict[str, Any]]:
        timeline = []
        for offset in range(hours - 1, -1, -1):
            start = now - timedelta(hours=offset + 1)
            end = now - timedelta(hours=offset)
            bucket = [job for job in jobs if start <= job.queued_at < end]
            done = sum(1 for job in bucket if job.status == JobStatus.COMPLETED.value)
            dead = sum(1 for job in bucket if job.status == JobStatus.DEAD_LETTERED.value)
            timeline.append(
                {
                    "hour": start.strftime("%Y-%m-%dT%H:00:00Z"),
                    "total": len(bucket),
                    "completed": done,
                    "failed": dead,
                    "success_rate": health.success_rate_pct(done, dead),
                }
            )
        return timeline

    @staticmethod
    def _user_breakdown(jobs: list[AnalysisJob], limit: int = 20) -> list[dict[str, Any]]:
        stats: dict[str, Counter] = {}
        for job in jobs:
            bucket = stats.setdefault(job.user_id, Counter())
            bucket["total"] += 1
            bucket[job.status] += 1
        rows = [
            {
                "user_id": user_id,
                "total": counts["total"],
                "completed": counts[JobStatus.COMPLETED.value],
                "failed": counts[JobStatus.DEAD_LETTERED.value],
                "cancelled": counts[JobStatus.CANCELLED.value],
                "in_queue": sum(counts[status] for status in (JobStatus.QUEUED.value, JobStatus.CLAIMED.value, JobStatus.RETRY_WAIT.value)),
                "success_rate": health.success_rate_pct(counts[JobStatus.COMPLETED.value], counts[JobStatus.DEAD_LETTERED.value]),
            }
            for user_id, counts in stats.items()
        ]
        rows.sort(key=lambda row: row["total"], reverse=True)
        return rows[:limit]

    async def dead_letter_stats(self, db: AsyncSession, *, hours: int = 24, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        since = ms_ago(now, max(1, hours) * HOUR_MS)
        items = await self.repo.list_dead_lettered_since(db, since)

        def _count(key) -> dict[str, int]:
            return dict(Counter(key(job) for job in items))

        attempts = [int(job.processing_attempts or 0) for job in items]
        waits = [int((job.dead_letter_metadata or {}).get("total_wait_ms", 0)) for job in items]
        recoverable = [
            job for job in items
            if job.requeued_to_id is None
            and job.dead_letter_category != DeadLetterCategory.EXPIRED.value
            and job.last_error_type
            and is_recoverable(job.last_error_type)
        ]
        categories = _count(lambda job: job.dead_letter_category or "unknown")
        service_errors = sum(1 for job in items if (job.dead_letter_metadata or {}).get("is_service_error"))
        circuit = categories.get(DeadLetterCategory.CIRCUIT_BREAKER_TRIGGERED.value, 0)

        return {
            "summary": {
                "total_dead_letter_items": len(items),
                "time_range": {"hours": hours, "start": iso(since), "end": iso(now)},
                "service_error_count": service_errors,
                "circuit_breaker_triggered": circuit,
                "max_retries_exceeded": categories.get(DeadLetterCategory.MAX_RETRIES_EXCEEDED.value, 0),
                "non_recoverable_errors": categories.get(DeadLetterCategory.NON_RECOVERABLE_ERROR.value, 0),
                "needs_investigation": service_errors + circuit,
                "avg_retry_attempts": round(sum(attempts) / len(attempts), 2) if attempts else 0,
                "avg_wait_ms": round(sum(waits) / len(waits)) if waits else 0,
            },
            "breakdown": {
                "by_reason": _count(lambda job: job.dead_letter_reason or "unknown"),
                "by_category": categories,
                "by_error_type": _count(lambda job: job.last_error_type or "unknown"),
                "by_priority": _count(lambda job: job.priority),
            },
            "recoverable_items": [
                {
                    "job_id": str(job.id),
                    "entry_id": job.entry_id,
                    "user_id": job.user_id,
                    "reason": job.dead_letter_reason,
                    "last_error": job.last_error_message,
                    "priority": job.priority,
                    "retry_count": job.processing_attempts,
                    "recovery_recommendation": health.recovery_recommendation(job.dead_letter_reason, job.last_error_type),
                }
                for job in recoverable
            ],
            "timestamp": iso(now),
        }


queue_metrics_service = QueueMetricsService()
