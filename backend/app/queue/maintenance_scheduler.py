"""Periodic queue sweeps run in the API process (dispatch, SLA, auto-requeue, purge, positions)."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from app.core.config import get_settings
from app.core.logging import get_logger
from app.queue.async_runtime import with_session
from app.services.dispatch_service import dispatch_service
from app.services.queue_maintenance_service import queue_maintenance_service
from app.services.queue_manager import queue_manager

settings = get_settings()
logger = get_logger("queue.maintenance_scheduler")

_scheduler: AsyncIOScheduler | None = None


async def run_sweep(name: str, fn: Callable[..., Awaitable[Any]]) -> Any:
    """One sweep in its own session; failures are logged and never stop the schedule."""
    try:
        return await with_session(fn)
    except Exception as exc:  # noqa: BLE001
        logger.error("maintenance_sweep_failed", sweep=name, error=str(exc), error_type=type(exc).__name__)
        return None


def sweep_jobs() -> list[tuple[str, Callable[..., Awaitable[Any]], int]]:
    return [
        ("analysis_dispatch_cycle", dispatch_service.dispatch_cycle, settings.dispatch_interval_sec),
        ("analysis_sla_sweep", queue_maintenance_service.upgrade_aging_requests, settings.sla_sweep_interval_sec),
        ("analysis_auto_requeue", queue_maintenance_service.trigger_auto_requeue, settings.auto_requeue_interval_minutes * 60),
        ("analysis_queue_cleanup", queue_maintenance_service.trigger_queue_cleanup, settings.purge_interval_minutes * 60),
        ("analysis_position_refresh", queue_manager.refresh_positions, settings.position_refresh_interval_sec),
    ]


def start_maintenance_scheduler() -> None:
    global _scheduler
    if _scheduler is not None:
        return

    _scheduler = AsyncIOScheduler(timezone="UTC")
    for job_id, fn, interval_seconds in sweep_jobs():
        _scheduler.add_job(
            run_sweep,
            trigger=IntervalTrigger(seconds=max(1, interval_seconds)),
            args=[job_id, fn],
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
    _scheduler.start()
    logger.info(
        "maintenance_scheduler_started",
        dispatch_interval_sec=settings.dispatch_interval_sec,
        sla_sweep_interval_sec=settings.sla_sweep_interval_sec,
        auto_requeue_interval_minutes=settings.auto_requeue_interval_minutes,
        purge_interval_minutes=settings.purge_interval_minutes,
    )


def stop_maintenance_scheduler() -> None:
    global _scheduler
    if _scheduler is None:
        return
    _scheduler.shutdown(wait=False)
    _scheduler = None
    logger.info("maintenance_scheduler_stopped")
