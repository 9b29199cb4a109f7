"""Periodic queue sweeps: SLA upgrades, auto-requeue of transient failures, cleanup.

Sweeps never raise on a single bad job; failures are collected into the
report of the run.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.logging import get_logger
from app.domain.queue import health
from app.domain.queue.retry_policy import is_recoverable
from app.domain.queue.sla import sla_upgrade_for
from app.models.analysis_job import DeadLetterCategory, JobStatus
from app.repositories.analysis_job_repository import WAITING_STATUSES
from app.services.circuit_breaker import OPEN
from app.services.queue_manager import QueueManager, queue_manager
from app.utils.clock import iso, ms_ago, utcnow

logger = get_logger("services.queue_maintenance")
settings = get_settings()

SKIPPED_DETAIL_LIMIT = 5


class QueueMaintenanceService:
    def __init__(self, manager: QueueManager | None = None) -> None:
        self.manager = manager or queue_manager

    @property
    def repo(self):
        return self.manager.repo

    async def upgrade_aging_requests(self, db: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        jobs = await self.repo.list_by_statuses(db, WAITING_STATUSES)
        upgraded: list[dict[str, Any]] = []
        failures: list[dict[str, str]] = []

        for job in jobs:
            try:
                upgrade = sla_upgrade_for(job.priority, job.queued_at, job.priority_changed_at, now)
                if upgrade is None:
                    continue
                if self.manager.apply_priority_change(job, upgrade.to_priority, "sla_aging", now):
                    upgraded.append(
                        {
                            "job_id": str(job.id),
                            "original_priority": upgrade.from_priority.value,
                            "upgraded_priority": upgrade.to_priority.value,
                            "waited_ms": upgrade.waited_ms,
                        }
                    )
            except ValueError as exc:
                failures.append({"job_id": str(job.id), "error": str(exc)})

        if upgraded:
            await db.commit()
        logger.info("sla_sweep_done", scanned=len(jobs), upgraded=len(upgraded), failures=len(failures))
        return {"scanned": len(jobs), "upgraded": len(upgraded), "details": upgraded, "failures": failures}

    def _skip_reason(self, job) -> str | None:
        if job.requeued_to_id is not None:
            return "Already requeued"
        if job.dead_letter_category == DeadLetterCategory.EXPIRED.value:
            return "Expired by age"
        if not job.last_error_type or not is_recoverable(job.last_error_type):
            return "Non-recoverable error"
        if int(job.processing_attempts or 0) >= self.manager.retry_policy.max_retries:
            return "Maximum retries exceeded"
        return None

    async def auto_requeue_transient_failures(
        self,
        db: AsyncSession,
        *,
        lookback_ms: int | None = None,
        batch_size: int | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        if lookback_ms is None:
            lookback_ms = settings.auto_requeue_lookback_minutes * 60_000
        if batch_size is None:
            batch_size = settings.auto_requeue_batch_size
        since = ms_ago(now, lookback_ms)

        candidates = await self.repo.list_dead_lettered_since(db, since)
        if not candidates:
            return {
                "status": "no_candidates",
                "message": "No dead-lettered analyses with transient errors found",
                "checked_since": iso(since),
                "requeued": 0,
                "skipped": 0,
            }

        breaker = await self.manager.breakers.snapshot(self.manager.service_name, now)
        requeued: list[dict[str, Any]] = []
        skipped: list[dict[str, Any]] = []
        processed = 0

        # Re-read per item: a rollback expires every loaded instance.
        for candidate_id in [job.id for job in candidates]:
            if len(requeued) >= batch_size:
                break
            job = await self.repo.get(db, candidate_id)
            if job is None:
                continue
            processed += 1
            job_key, attempts = str(job.id), job.processing_attempts
            reason = self._skip_reason(job)
            if reason is None and breaker.state == OPEN:
                reason = "Circuit breaker open"
            if reason is None and await self.repo.get_active_for_entry(db, job.entry_id) is not None:
                reason = "Active job exists for entry"
            if reason is None and await self.repo.count_active(db) >= self.manager.max_size:
                reason = "Queue at capacity"
            if reason is not None:
                skipped.append({"job_id": str(job.id), "reason": reason, "retry_count": job.processing_attempts})
                continue

            priority = self.manager.retry_policy.escalated_priority(job.priority, int(job.processing_attempts or 0))
            try:
                new_job = await self.manager.reinject(
                    db, job, priority=priority, keep_history=True, source_tag="auto_requeue", now=now
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                skipped.append({"job_id": job_key, "reason": "Active job exists for entry", "retry_count": attempts})
                continue
            except Exception as exc:  # noqa: BLE001
                await db.rollback()
                logger.error("auto_requeue_item_failed", job_id=job_key, error=str(exc))
                skipped.append({"job_id": job_key, "reason": f"Requeue error: {exc}", "retry_count": attempts})
                continue

            requeued.append(
                {
                    "job_id": str(job.id),
                    "new_job_id": str(new_job.id),
                    "entry_id": job.entry_id,
                    "original_priority": job.priority,
                    "new_priority": new_job.priority,
                    "retry_count": new_job.processing_attempts,
                    "error_type": job.last_error_type,
                }
            )

        logger.info(
            "auto_requeue_done",
            candidates=len(candidates),
            requeued=len(requeued),
            skipped=len(skipped),
            lookback_ms=lookback_ms,
        )
        return {
            "status": "completed",
            "requeued": len(requeued),
            "skipped": len(skipped),
            "total_candidates": len(candidates),
            "processed_batch": processed,
            "details": {
                "requeued_items": requeued,
                "skipped_items": skipped[:SKIPPED_DETAIL_LIMIT],
            },
            "next_run_recommended": len(candidates) > processed,
            "health": await self.auto_requeue_health(db, now=now),
        }

    async def auto_requeue_health(self, db: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        since = ms_ago(now, 24 * 60 * 60 * 1000)
        failures = await self.repo.list_dead_lettered_since(db, since)
        resolved = await self.repo.list_resolved_since(db, since)

        by_type: dict[str, dict[str, Any]] = {}
        for job in failures:
            kind = job.last_error_type or "unknown"
            bucket = by_type.setdefault(kind, {"count": 0, "recoverable": is_recoverable(kind) if kind != "unknown" else False})
            bucket["count"] += 1

        recoverable = sum(bucket["count"] for bucket in by_type.values() if bucket["recoverable"])
        retried = [
            job for job in resolved
            if job.requeued_from_id is not None and job.status in (JobStatus.COMPLETED.value, JobStatus.DEAD_LETTERED.value)
        ]
        retry_successes = sum(1 for job in retried if job.status == JobStatus.COMPLETED.value)
        success_rate = round(retry_successes / len(retried) * 100, 2) if retried else 0.0

        return {
            "window_hours": 24,
            "total_failures": len(failures),
            "recoverable_failures": recoverable,
            "non_recoverable_failures": len(failures) - recoverable,
            "failures_by_type": by_type,
            "retried": len(retried),
            "retry_successes": retry_successes,
            "retry_success_rate": success_rate,
            "recommendations": health.auto_requeue_recommendations(success_rate, len(failures), retry_successes),
            "timestamp": iso(now),
        }

    async def trigger_auto_requeue(self, db: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
        return await self.auto_requeue_transient_failures(
            db,
            lookback_ms=settings.auto_requeue_lookback_minutes * 60_000,
            batch_size=settings.auto_requeue_batch_size,
            now=now,
        )

    async def emergency_auto_requeue(self, db: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        logger.warning("emergency_auto_requeue_started")
        requeue = await self.auto_requeue_transient_failures(
            db,
            lookback_ms=settings.emergency_requeue_lookback_minutes * 60_000,
            batch_size=settings.emergency_requeue_batch_size,
            now=now,
        )
        cleanup = await self.manager.purge_expired(
            db,
            max_age_ms=settings.emergency_purge_max_age_minutes * 60_000,
            dry_run=False,
            now=now,
        )
        return {"status": "emergency_completed", "requeue": requeue, "cleanup": cleanup, "timestamp": iso(now)}

    async def trigger_queue_cleanup(self, db: AsyncSession, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        released = await self.manager.release_overdue(db, now=now)
        purge = await self.manager.purge_expired(
            db,
            max_age_ms=settings.queue_max_item_age_ms,
            dry_run=False,
            now=now,
        )
        return {**purge, "released_overdue": released}


queue_maintenance_service = QueueMaintenanceService()
