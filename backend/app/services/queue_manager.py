"""Analysis queue lifecycle: enqueue, dequeue, requeue, release, complete, cancel, purge.

Each public operation is one unit of work against the database session it is
handed and commits before returning. Mutual exclusion is delegated to the
store: the unique ``dedupe_key`` serializes duplicate enqueues and the
compare-and-set in ``AnalysisJobRepository.claim`` serializes dequeue.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import get_settings
from app.core.logging import get_correlation_id, get_logger
from app.domain.queue import health
from app.domain.queue.assessor import PriorityContext, assess_priority
from app.domain.queue.errors import (
    AuthorizationError,
    JobNotFoundError,
    QueueFullError,
    RetryExhaustedError,
)
from app.domain.queue.priorities import (
    coerce_priority,
    estimated_delay_ms,
    is_upgrade,
    max_priority,
    priority_value,
)
from app.domain.queue.retry_policy import RetryPolicy, classify_error, coerce_error_type, is_recoverable
from app.domain.queue.state_machine import ensure_transition
from app.domain.queue.weighting import jobs_ahead, order_by_weight
from app.models.analysis_job import (
    AnalysisJob,
    DeadLetterCategory,
    ErrorType,
    JobPriority,
    JobStatus,
)
from app.queue.scheduler import DeferredScheduler, celery_scheduler
from app.repositories.analysis_job_repository import AnalysisJobRepository, analysis_job_repository
from app.services.circuit_breaker import OPEN, CircuitBreakerRegistry, circuit_breakers
from app.utils.clock import iso, ms_ago, ms_between, utcnow

logger = get_logger("services.queue_manager")
settings = get_settings()

PURGE_SAMPLE_SIZE = 10


@dataclass(slots=True)
class EnqueueResult:
    status: str  # queued|already_queued
    job: AnalysisJob


@dataclass(slots=True)
class RequeueOutcome:
    status: str  # retry_wait|dead_lettered|ignored
    job: AnalysisJob
    retry_count: int = 0
    delay_ms: int = 0
    previous_priority: str | None = None
    reason: str = ""
    circuit_breaker: dict[str, Any] = field(default_factory=dict)


class QueueManager:
    def __init__(
        self,
        *,
        scheduler: DeferredScheduler | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        repository: AnalysisJobRepository | None = None,
        max_size: int | None = None,
        max_concurrent: int | None = None,
        processing_timeout_ms: int | None = None,
    ) -> None:
        self.scheduler = scheduler or celery_scheduler
        self.breakers = breakers or circuit_breakers
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.repo = repository or analysis_job_repository
        self.max_size = max_size if max_size is not None else settings.queue_max_size
        self.max_concurrent = max_concurrent if max_concurrent is not None else settings.queue_max_concurrent_processing
        self.processing_timeout_ms = processing_timeout_ms if processing_timeout_ms is not None else settings.queue_processing_timeout_ms
        self.service_name = settings.analysis_service_name

    # ------------------------------------------------------------------ helpers

    def _estimate_wait_ms(self, priority: str, position: int) -> int:
        """Dispatch delay for the class plus processing rounds ahead of this job."""
        rounds = math.ceil(max(1, position) / max(1, self.max_concurrent))
        return estimated_delay_ms(priority, max(0, position - 1)) + rounds * settings.queue_estimated_processing_ms

    async def require(self, db: AsyncSession, job_id: UUID | str, *, for_update: bool = False) -> AnalysisJob:
        job = await self.repo.get(db, job_id, for_update=for_update)
        if job is None:
            raise JobNotFoundError(str(job_id))
        return job

    def apply_priority_change(self, job: AnalysisJob, new_priority: JobPriority | str, source: str, now: datetime) -> bool:
        """Upward-only priority change with an audit entry. Returns False when nothing changed."""
        target = coerce_priority(new_priority)
        if target is None or job.is_terminal or not is_upgrade(job.priority, target):
            return False
        job.priority_history = [
            *(job.priority_history or []),
            {"from": job.priority, "to": target.value, "source": source, "at": iso(now)},
        ]
        job.priority = target.value
        job.priority_changed_at = now
        return True

    def apply_dead_letter(
        self,
        job: AnalysisJob,
        *,
        reason: str,
        category: DeadLetterCategory,
        now: datetime,
        error_type: ErrorType | None = None,
    ) -> None:
        ensure_transition(job.id, job.status, JobStatus.DEAD_LETTERED)
        if error_type is not None:
            job.last_error_type = error_type.value
        job.status = JobStatus.DEAD_LETTERED.value
        job.dead_letter_queue = True
        job.dead_letter_reason = reason[:4000]
        job.dead_letter_category = category.value
        job.dead_letter_timestamp = now
        job.dead_letter_metadata = {
            "error_type": job.last_error_type or "",
            "recoverable": bool(job.last_error_type and is_recoverable(job.last_error_type)),
            "is_service_error": job.last_error_type == ErrorType.SERVICE_ERROR.value,
            "final_retry_count": int(job.processing_attempts or 0),
            "max_retries": self.retry_policy.max_retries,
            "priority": job.priority,
            "total_wait_ms": ms_between(job.queued_at, now),
            "was_processing": job.processing_started_at is not None,
        }
        job.dedupe_key = None
        job.next_attempt_at = None

    # ------------------------------------------------------------------ enqueue

    async def enqueue(
        self,
        db: AsyncSession,
        *,
        entry_id: str,
        user_id: str,
        priority: JobPriority | str | None = None,
        dedupe_key: str | None = None,
        context: PriorityContext | None = None,
        relationship_id: str | None = None,
        user_tier: str | None = None,
        now: datetime | None = None,
    ) -> EnqueueResult:
        now = now or utcnow()
        request_key = dedupe_key or f"entry:{entry_id}"

        existing = await self.repo.get_active_by_dedupe_key(db, request_key)
        if existing is None:
            existing = await self.repo.get_active_for_entry(db, entry_id)
        if existing is not None:
            logger.info("analysis_job_duplicate", job_id=str(existing.id), entry_id=entry_id)
            return EnqueueResult(status="already_queued", job=existing)

        population = await self.repo.count_active(db)
        if population >= self.max_size:
            processing = await self.repo.count_by_status(db, JobStatus.CLAIMED.value)
            level = health.backpressure_level(
                population / self.max_size * 100, processing / max(1, self.max_concurrent) * 100
            )
            logger.warning("analysis_queue_full", population=population, capacity=self.max_size)
            raise QueueFullError(population, self.max_size, health.suggested_retry_after_ms(level))

        ctx = context or PriorityContext(user_tier=user_tier, relationship_linked=bool(relationship_id))
        assigned = max_priority(assess_priority(ctx), priority)

        waiting = await self.repo.count_waiting_by_priority(db)
        ahead = sum(count for name, count in waiting.items() if priority_value(name) >= priority_value(assigned))
        position = ahead + 1

        job = AnalysisJob(
            id=uuid4(),
            entry_id=entry_id,
            user_id=user_id,
            relationship_id=relationship_id,
            user_tier=ctx.user_tier or user_tier,
            request_key=request_key,
            dedupe_key=request_key,
            priority=assigned.value,
            status=JobStatus.QUEUED.value,
            queued_at=now,
            priority_changed_at=now,
            processing_attempts=0,
            retry_history=[],
            priority_history=[],
            queue_position=position,
            estimated_completion_time=now + timedelta(milliseconds=self._estimate_wait_ms(assigned.value, position)),
        )
        db.add(job)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            winner = await self.repo.get_active_by_dedupe_key(db, request_key)
            if winner is None:
                raise
            logger.info("analysis_job_duplicate_race", job_id=str(winner.id), entry_id=entry_id)
            return EnqueueResult(status="already_queued", job=winner)

        logger.info(
            "analysis_job_enqueued",
            job_id=str(job.id),
            entry_id=entry_id,
            priority=job.priority,
            position=position,
            correlation_id=get_correlation_id() or None,
        )
        return EnqueueResult(status="queued", job=job)

    # ------------------------------------------------------------------ dequeue

    async def dequeue(
        self,
        db: AsyncSession,
        *,
        max_items: int,
        priority_filter: JobPriority | str | None = None,
        now: datetime | None = None,
    ) -> list[AnalysisJob]:
        now = now or utcnow()
        if max_items <= 0:
            return []
        wanted = coerce_priority(priority_filter)
        candidates = await self.repo.list_dequeue_candidates(db, priority=wanted.value if wanted else None)

        claimed: list[AnalysisJob] = []
        for job in order_by_weight(candidates, now):
            if len(claimed) >= max_items:
                break
            if await self.repo.claim(db, job.id, now):
                claimed.append(job)
        await db.commit()

        for job in claimed:
            await db.refresh(job)
        if claimed:
            logger.info("analysis_jobs_claimed", count=len(claimed), job_ids=[str(job.id) for job in claimed])
        return claimed

    # ------------------------------------------------------------------ requeue / release

    async def requeue(
        self,
        db: AsyncSession,
        job_id: UUID | str,
        *,
        error_type: ErrorType | str | None = None,
        error_message: str = "",
        service: str | None = None,
        now: datetime | None = None,
    ) -> RequeueOutcome:
        """Record a failed attempt, then back off and retry or dead-letter.

        Raises ``RetryExhaustedError`` after persisting the dead-letter when the
        retry budget is spent.
        """
        now = now or utcnow()
        job = await self.require(db, job_id, for_update=True)
        if job.is_terminal:
            logger.info("analysis_job_requeue_ignored", job_id=str(job.id), status=job.status)
            return RequeueOutcome(status="ignored", job=job)
        ensure_transition(job.id, job.status, JobStatus.RETRY_WAIT)

        kind = coerce_error_type(error_type) if error_type else classify_error(error_message)
        message = error_message or kind.value
        breaker = await self.breakers.snapshot(service or self.service_name, now)
        decision = self.retry_policy.decide(
            attempts=int(job.processing_attempts or 0),
            error_type=kind,
            priority=job.priority,
            error_message=message,
        )

        job.retry_history = [
            *(job.retry_history or []),
            {
                "attempt": decision.retry_count,
                "timestamp": iso(now),
                "delay_ms": decision.delay_ms,
                "error_type": kind.value,
                "error_message": message[:500],
                "priority": job.priority,
                "circuit_breaker": breaker.as_dict(),
            },
        ]
        job.processing_attempts = decision.retry_count
        job.last_error_type = kind.value
        job.last_error_message = message[:4000]
        previous_priority = job.priority

        if not decision.should_retry:
            category = decision.dead_letter_category or DeadLetterCategory.NON_RECOVERABLE_ERROR
            if category == DeadLetterCategory.MAX_RETRIES_EXCEEDED and breaker.state == OPEN:
                category = DeadLetterCategory.CIRCUIT_BREAKER_TRIGGERED
            self.apply_dead_letter(job, reason=decision.reason, category=category, now=now, error_type=kind)
            await db.commit()
            logger.warning(
                "analysis_job_dead_lettered",
                job_id=str(job.id),
                category=category.value,
                error_type=kind.value,
                attempts=decision.retry_count,
            )
            if category != DeadLetterCategory.NON_RECOVERABLE_ERROR:
                raise RetryExhaustedError(str(job.id), decision.retry_count, decision.reason)
            return RequeueOutcome(
                status="dead_lettered",
                job=job,
                retry_count=decision.retry_count,
                previous_priority=previous_priority,
                reason=decision.reason,
                circuit_breaker=breaker.as_dict(),
            )

        job.status = JobStatus.RETRY_WAIT.value
        job.processing_started_at = None
        job.next_attempt_at = now + timedelta(milliseconds=decision.delay_ms)
        if decision.new_priority is not None:
            self.apply_priority_change(job, decision.new_priority, "retry_escalation", now)
        await db.commit()

        self.scheduler.run_after(decision.delay_ms, "release", job_id=str(job.id))
        logger.info(
            "analysis_job_requeued",
            job_id=str(job.id),
            retry_count=decision.retry_count,
            delay_ms=decision.delay_ms,
            priority=job.priority,
            error_type=kind.value,
            circuit_state=breaker.state,
        )
        return RequeueOutcome(
            status="retry_wait",
            job=job,
            retry_count=decision.retry_count,
            delay_ms=decision.delay_ms,
            previous_priority=previous_priority,
            reason=decision.reason,
            circuit_breaker=breaker.as_dict(),
        )

    async def release(self, db: AsyncSession, job_id: UUID | str, *, now: datetime | None = None) -> bool:
        """Deferred action fired after backoff: retry_wait -> queued. No-op otherwise."""
        now = now or utcnow()
        job = await self.repo.get(db, job_id, for_update=True)
        if job is None or job.status != JobStatus.RETRY_WAIT.value:
            return False
        job.status = JobStatus.QUEUED.value
        job.next_attempt_at = None
        await db.commit()
        logger.info("analysis_job_released", job_id=str(job.id), priority=job.priority)
        return True

    async def release_overdue(self, db: AsyncSession, *, grace_ms: int = 60_000, now: datetime | None = None) -> int:
        """Safety net for release actions lost by the broker."""
        now = now or utcnow()
        overdue = await self.repo.list_overdue_retries(db, ms_ago(now, grace_ms))
        for job in overdue:
            job.status = JobStatus.QUEUED.value
            job.next_attempt_at = None
        if overdue:
            await db.commit()
            logger.warning("analysis_jobs_release_recovered", count=len(overdue))
        return len(overdue)

    # ------------------------------------------------------------------ resolution

    async def complete(
        self,
        db: AsyncSession,
        job_id: UUID | str,
        result: dict[str, Any],
        *,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        job = await self.require(db, job_id, for_update=True)
        if job.is_terminal:
            # Late result for a cancelled or purged job.
            logger.info("analysis_result_discarded", job_id=str(job.id), status=job.status)
            return {"status": "discarded", "job_id": str(job.id), "job_status": job.status}
        ensure_transition(job.id, job.status, JobStatus.COMPLETED)

        job.status = JobStatus.COMPLETED.value
        job.completed_at = now
        job.result_json = result
        job.queue_wait_time_ms = ms_between(job.queued_at, job.processing_started_at or now)
        job.total_processing_time_ms = ms_between(job.queued_at, now)
        job.dedupe_key = None
        job.next_attempt_at = None
        await db.commit()
        logger.info(
            "analysis_job_completed",
            job_id=str(job.id),
            priority=job.priority,
            total_processing_time_ms=job.total_processing_time_ms,
            attempts=job.processing_attempts,
        )
        return {"status": "completed", "job_id": str(job.id), "total_processing_time_ms": job.total_processing_time_ms}

    async def dead_letter(
        self,
        db: AsyncSession,
        job_id: UUID | str,
        *,
        reason: str,
        category: DeadLetterCategory | str,
        error_type: ErrorType | str | None = None,
        now: datetime | None = None,
    ) -> AnalysisJob:
        now = now or utcnow()
        job = await self.require(db, job_id, for_update=True)
        self.apply_dead_letter(
            job,
            reason=reason,
            category=DeadLetterCategory(category),
            now=now,
            error_type=coerce_error_type(error_type) if error_type else None,
        )
        await db.commit()
        logger.warning("analysis_job_dead_lettered", job_id=str(job.id), category=job.dead_letter_category, reason=reason)
        return job

    async def cancel(
        self,
        db: AsyncSession,
        job_id: UUID | str,
        *,
        requesting_user_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        job = await self.require(db, job_id, for_update=True)
        if job.user_id != str(requesting_user_id):
            logger.warning("analysis_cancel_forbidden", job_id=str(job.id), user_id=requesting_user_id)
            raise AuthorizationError(str(job.id), str(requesting_user_id))

        if job.is_terminal:
            return {
                "status": "cannot_cancel",
                "reason": "already_resolved",
                "job_id": str(job.id),
                "job_status": job.status,
            }

        was_started = job.status == JobStatus.CLAIMED.value
        ensure_transition(job.id, job.status, JobStatus.CANCELLED)
        job.status = JobStatus.CANCELLED.value
        job.cancelled_at = now
        job.last_error_message = f"Cancelled by user: {reason or 'No reason provided'}"
        job.dedupe_key = None
        job.next_attempt_at = None
        await db.commit()

        total_wait_ms = ms_between(job.queued_at, now)
        logger.info("analysis_job_cancelled", job_id=str(job.id), was_processing_started=was_started)
        return {
            "status": "cancelled",
            "job_id": str(job.id),
            "was_processing_started": was_started,
            "total_wait_time_ms": total_wait_ms,
            "refund_eligible": not was_started,
        }

    # ------------------------------------------------------------------ purge

    async def purge_expired(
        self,
        db: AsyncSession,
        *,
        max_age_ms: int | None = None,
        dry_run: bool = True,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        if max_age_ms is None:
            max_age_ms = settings.queue_max_item_age_ms
        cutoff = ms_ago(now, max_age_ms)
        stuck_cutoff = ms_ago(now, self.processing_timeout_ms)

        expired = await self.repo.list_queued_before(db, cutoff)
        stuck = await self.repo.list_stuck_claimed(db, started_before=stuck_cutoff, queued_not_before=cutoff)

        if dry_run:
            samples = [self._purge_sample(job, "expired", now) for job in expired[:PURGE_SAMPLE_SIZE]]
            samples += [self._purge_sample(job, "stuck_processing", now) for job in stuck[:PURGE_SAMPLE_SIZE]]
            return {
                "dry_run": True,
                "would_purge_count": len(expired) + len(stuck),
                "expired_count": len(expired),
                "stuck_count": len(stuck),
                "cutoff": iso(cutoff),
                "stuck_cutoff": iso(stuck_cutoff),
                "details": samples,
            }

        age_minutes = max_age_ms // 60_000
        purged: list[str] = []
        failures: list[dict[str, str]] = []
        for job in expired:
            try:
                self.apply_dead_letter(
                    job,
                    reason=f"Queue item expired - maximum age exceeded ({age_minutes} minutes)",
                    category=DeadLetterCategory.EXPIRED,
                    now=now,
                )
                purged.append(str(job.id))
            except Exception as exc:  # noqa: BLE001
                failures.append({"job_id": str(job.id), "error": str(exc)})
        for job in stuck:
            try:
                self.apply_dead_letter(
                    job,
                    reason=f"Processing timeout exceeded ({self.processing_timeout_ms // 1000} seconds)",
                    category=DeadLetterCategory.STUCK_PROCESSING,
                    now=now,
                    error_type=ErrorType.TIMEOUT,
                )
                purged.append(str(job.id))
            except Exception as exc:  # noqa: BLE001
                failures.append({"job_id": str(job.id), "error": str(exc)})
        await db.commit()

        logger.info(
            "analysis_queue_purged",
            purged=len(purged),
            expired=len(expired),
            stuck=len(stuck),
            failures=len(failures),
        )
        return {
            "dry_run": False,
            "purged_count": len(purged),
            "expired_count": len(expired),
            "stuck_count": len(stuck),
            "cutoff": iso(cutoff),
            "stuck_cutoff": iso(stuck_cutoff),
            "purged_ids": purged,
            "failures": failures,
        }

    @staticmethod
    def _purge_sample(job: AnalysisJob, kind: str, now: datetime) -> dict[str, Any]:
        return {
            "job_id": str(job.id),
            "entry_id": job.entry_id,
            "kind": kind,
            "status": job.status,
            "priority": job.priority,
            "age_minutes": ms_between(job.queued_at, now) // 60_000,
        }

    # ------------------------------------------------------------------ capacity / status

    async def check_capacity(
        self,
        db: AsyncSession,
        *,
        priority: JobPriority | str = JobPriority.NORMAL,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        active = await self.repo.list_active(db)
        population = len(active)
        processing = sum(1 for job in active if job.status == JobStatus.CLAIMED.value)
        utilization = population / self.max_size * 100
        processing_utilization = processing / max(1, self.max_concurrent) * 100
        level = health.backpressure_level(utilization, processing_utilization)
        waits = [ms_between(job.queued_at, now) for job in active]
        average_wait = sum(waits) / len(waits) if waits else 0

        breakdown: dict[str, int] = {}
        for job in active:
            breakdown[job.priority] = breakdown.get(job.priority, 0) + 1

        requested = (coerce_priority(priority) or JobPriority.NORMAL).value
        return {
            "capacity": {
                "total_queued": population,
                "max_capacity": self.max_size,
                "capacity_utilization": round(utilization, 2),
                "remaining_capacity": max(0, self.max_size - population),
                "near_capacity": utilization > settings.queue_near_capacity_ratio * 100,
            },
            "processing": {
                "active_processing": processing,
                "max_concurrent_processing": self.max_concurrent,
                "processing_utilization": round(processing_utilization, 2),
                "available_processing_slots": max(0, self.max_concurrent - processing),
            },
            "priority_breakdown": breakdown,
            "backpressure": {
                "level": level,
                "average_wait_ms": round(average_wait),
                "recommended_action": health.BACKPRESSURE_ACTIONS[level],
            },
            "admission": health.admission_decision(
                population=population,
                capacity=self.max_size,
                capacity_utilization=utilization,
                priority=requested,
                level=level,
                average_wait_ms=average_wait,
            ),
            "timestamp": iso(now),
        }

    async def user_queue_status(self, db: AsyncSession, user_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        now = now or utcnow()
        mine = await self.repo.list_active_for_user(db, user_id)
        waiting = await self.repo.list_waiting(db)
        breaker = await self.breakers.snapshot(self.service_name, now)

        items = []
        for job in mine:
            position = jobs_ahead(job, waiting, now) + 1 if job.is_waiting else 0
            items.append(
                {
                    "job_id": str(job.id),
                    "entry_id": job.entry_id,
                    "status": job.status,
                    "priority": job.priority,
                    "queued_at": iso(job.queued_at),
                    "position": position,
                    "estimated_wait_ms": self._estimate_wait_ms(job.priority, position) if position else 0,
                    "processing_attempts": job.processing_attempts,
                    "next_attempt_at": iso(job.next_attempt_at),
                    "last_error_type": job.last_error_type,
                }
            )

        recent = await self.repo.list_resolved_since(db, ms_ago(now, 60 * 60 * 1000), user_id=user_id)
        completed = sum(1 for job in recent if job.status == JobStatus.COMPLETED.value)
        failed = sum(1 for job in recent if job.status == JobStatus.DEAD_LETTERED.value)
        return {
            "user_id": user_id,
            "items": items,
            "active_count": len(items),
            "recent": {
                "completed": completed,
                "failed": failed,
                "success_rate": health.success_rate_pct(completed, failed),
            },
            "circuit_breaker": breaker.as_dict(),
            "timestamp": iso(now),
        }

    async def refresh_positions(self, db: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
        """Recompute advisory positions; ordering never reads them."""
        now = now or utcnow()
        ordered = order_by_weight(await self.repo.list_waiting(db), now)
        batch = max(1, settings.queue_position_batch_size)
        for start in range(0, len(ordered), batch):
            for idx, job in enumerate(ordered[start:start + batch], start=start + 1):
                job.queue_position = idx
                job.estimated_completion_time = now + timedelta(milliseconds=self._estimate_wait_ms(job.priority, idx))
            await db.commit()
        return {"updated": len(ordered)}

    async def upgrade_priority(
        self,
        db: AsyncSession,
        job_id: UUID | str,
        priority: JobPriority | str,
        *,
        source: str = "manual",
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        job = await self.require(db, job_id, for_update=True)
        previous = job.priority
        changed = self.apply_priority_change(job, priority, source, now)
        if changed:
            await db.commit()
            logger.info("analysis_job_priority_upgraded", job_id=str(job.id), previous=previous, priority=job.priority)
        return {"job_id": str(job.id), "changed": changed, "previous_priority": previous, "priority": job.priority}

    # ------------------------------------------------------------------ re-injection

    async def reinject(
        self,
        db: AsyncSession,
        source: AnalysisJob,
        *,
        priority: JobPriority | str,
        keep_history: bool,
        source_tag: str,
        now: datetime,
    ) -> AnalysisJob:
        """New queued job for a dead-lettered one. Caller commits."""
        target = max_priority(source.priority, priority)
        job = AnalysisJob(
            id=uuid4(),
            entry_id=source.entry_id,
            user_id=source.user_id,
            relationship_id=source.relationship_id,
            user_tier=source.user_tier,
            request_key=source.request_key,
            dedupe_key=source.request_key,
            priority=target.value,
            status=JobStatus.QUEUED.value,
            queued_at=now,
            priority_changed_at=now,
            processing_attempts=int(source.processing_attempts or 0) if keep_history else 0,
            retry_history=list(source.retry_history or []) if keep_history else [],
            priority_history=[{"from": source.priority, "to": target.value, "source": source_tag, "at": iso(now)}],
            last_error_type=source.last_error_type,
            last_error_message=source.last_error_message,
            requeued_from_id=source.id,
        )
        db.add(job)
        source.requeued_to_id = job.id
        await db.flush()
        return job

    async def recover_dead_letters(
        self,
        db: AsyncSession,
        job_ids: list[str],
        *,
        new_priority: JobPriority | str = JobPriority.HIGH,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        now = now or utcnow()
        recovered: list[dict[str, str]] = []
        failures: list[dict[str, str]] = []

        for job_id in job_ids:
            job = await self.repo.get(db, job_id)
            if job is None:
                failures.append({"job_id": job_id, "reason": "not_found"})
                continue
            if job.status != JobStatus.DEAD_LETTERED.value:
                failures.append({"job_id": job_id, "reason": "not_dead_lettered"})
                continue
            if job.requeued_to_id is not None:
                failures.append({"job_id": job_id, "reason": "already_recovered"})
                continue
            if job.last_error_type and not is_recoverable(job.last_error_type):
                failures.append({"job_id": job_id, "reason": "non_recoverable"})
                continue
            if await self.repo.get_active_for_entry(db, job.entry_id) is not None:
                failures.append({"job_id": job_id, "reason": "active_job_exists"})
                continue
            if await self.repo.count_active(db) >= self.max_size:
                failures.append({"job_id": job_id, "reason": "queue_full"})
                continue
            try:
                new_job = await self.reinject(
                    db, job, priority=new_priority, keep_history=False, source_tag="dead_letter_recovery", now=now
                )
                await db.commit()
            except IntegrityError:
                await db.rollback()
                failures.append({"job_id": job_id, "reason": "active_job_exists"})
                continue
            recovered.append({"job_id": job_id, "new_job_id": str(new_job.id), "priority": new_job.priority})

        logger.info("dead_letter_recovery_done", recovered=len(recovered), failures=len(failures))
        return {"recovered": recovered, "failures": failures, "timestamp": iso(now)}


queue_manager = QueueManager()
