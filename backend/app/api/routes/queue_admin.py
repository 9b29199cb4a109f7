"""Operator surface for the analysis queue: sweeps, metrics, dead letters, breakers."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps.auth import CurrentUser
from app.api.deps.rbac import require_operator
from app.api.envelope import success_envelope
from app.api.routes.analysis_queue import serialize_job
from app.core.database import get_db
from app.core.logging import get_logger
from app.schemas import (
    PRIORITY_PATTERN,
    DispatchRequest,
    ManualDeadLetterRequest,
    ManualRequeueRequest,
    PriorityUpgradeRequest,
    RecoverDeadLettersRequest,
)
from app.services.circuit_breaker import circuit_breakers
from app.services.dispatch_service import dispatch_service
from app.services.queue_maintenance_service import queue_maintenance_service
from app.services.queue_manager import queue_manager
from app.services.queue_metrics_service import queue_metrics_service

router = APIRouter(prefix="/analysis-queue/admin", tags=["Analysis Queue Admin"])
logger = get_logger("api.queue_admin")


# ── Metrics ──

@router.get("/dashboard")
async def queue_dashboard(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_metrics_service.queue_dashboard(db))


@router.get("/health")
async def queue_health(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_metrics_service.queue_health(db))


@router.get("/export")
async def export_metrics(
    format: str = Query("json", pattern="^(json|prometheus|csv)$"),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_metrics_service.export_metrics(db, fmt=format))


@router.get("/capacity")
async def queue_capacity(
    priority: str = Query("normal", pattern=PRIORITY_PATTERN),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_manager.check_capacity(db, priority=priority))


@router.get("/analytics")
async def queue_analytics(
    hours: int = Query(24, ge=1, le=168),
    include_users: bool = Query(False),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_metrics_service.queue_analytics(db, hours=hours, include_users=include_users))


# ── Sweeps ──

@router.post("/sla-sweep")
async def run_sla_sweep(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_maintenance_service.upgrade_aging_requests(db))


@router.post("/auto-requeue")
async def run_auto_requeue(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_maintenance_service.trigger_auto_requeue(db))


@router.post("/auto-requeue/emergency")
async def run_emergency_requeue(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    logger.warning("emergency_requeue_requested", actor=current_user.id)
    return success_envelope(await queue_maintenance_service.emergency_auto_requeue(db))


@router.get("/auto-requeue/health")
async def auto_requeue_health(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_maintenance_service.auto_requeue_health(db))


@router.post("/purge")
async def purge_expired(
    dry_run: bool = Query(True),
    max_age_minutes: int | None = Query(default=None, ge=1, le=7 * 24 * 60),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    max_age_ms = max_age_minutes * 60_000 if max_age_minutes is not None else None
    return success_envelope(await queue_manager.purge_expired(db, max_age_ms=max_age_ms, dry_run=dry_run))


@router.post("/cleanup")
async def run_cleanup(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_maintenance_service.trigger_queue_cleanup(db))


@router.post("/positions/refresh")
async def refresh_positions(
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_manager.refresh_positions(db))


@router.post("/dispatch")
async def run_dispatch(
    payload: DispatchRequest | None = None,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    if payload is None:
        return success_envelope(await dispatch_service.dispatch_cycle(db))
    return success_envelope(
        await dispatch_service.dispatch_cycle(db, max_items=payload.max_items, priority_filter=payload.priority)
    )


# ── Dead letters ──

@router.get("/dead-letter/stats")
async def dead_letter_stats(
    hours: int = Query(24, ge=1, le=168),
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_metrics_service.dead_letter_stats(db, hours=hours))


@router.post("/dead-letter/recover")
async def recover_dead_letters(
    payload: RecoverDeadLettersRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(
        await queue_manager.recover_dead_letters(db, payload.job_ids, new_priority=payload.new_priority)
    )


# ── Single job ──

@router.post("/jobs/{job_id}/priority")
async def upgrade_job_priority(
    job_id: str,
    payload: PriorityUpgradeRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    return success_envelope(await queue_manager.upgrade_priority(db, job_id, payload.priority, source="manual"))


@router.post("/jobs/{job_id}/requeue")
async def requeue_job(
    job_id: str,
    payload: ManualRequeueRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    outcome = await queue_manager.requeue(
        db, job_id, error_type=payload.error_type, error_message=payload.error_message
    )
    return success_envelope(
        {
            "status": outcome.status,
            "retry_count": outcome.retry_count,
            "delay_ms": outcome.delay_ms,
            "previous_priority": outcome.previous_priority,
            "reason": outcome.reason,
            "circuit_breaker": outcome.circuit_breaker,
            "job": serialize_job(outcome.job),
        }
    )


@router.post("/jobs/{job_id}/dead-letter")
async def dead_letter_job(
    job_id: str,
    payload: ManualDeadLetterRequest,
    db: AsyncSession = Depends(get_db),
    current_user: CurrentUser = Depends(require_operator),
):
    job = await queue_manager.dead_letter(
        db, job_id, reason=payload.reason, category=payload.category, error_type=payload.error_type
    )
    return success_envelope(serialize_job(job, include_history=True))


# ── Circuit breakers ──

@router.get("/circuit-breakers")
async def circuit_breaker_health(current_user: CurrentUser = Depends(require_operator)):
    return success_envelope({"services": await circuit_breakers.health()})


@router.post("/circuit-breakers/{service}/reset")
async def reset_circuit_breaker(service: str, current_user: CurrentUser = Depends(require_operator)):
    await circuit_breakers.reset(service)
    logger.warning("circuit_breaker_reset", service=service, actor=current_user.id)
    return success_envelope({"service": service, "state": "closed"})
