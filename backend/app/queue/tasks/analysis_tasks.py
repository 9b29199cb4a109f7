"""Celery tasks for claimed analysis jobs and deferred queue actions.

Attempt accounting lives in the queue itself; these tasks never use Celery's
own retry machinery for provider failures.
"""

from __future__ import annotations

import structlog
from celery import Task

from app.core.logging import bind_job_context, get_logger
from app.queue.async_runtime import run_in_session
from app.queue.celery_app import celery_app
from app.services.dispatch_service import dispatch_service
from app.services.queue_manager import queue_manager

logger = get_logger("queue.analysis_tasks")

DEFAULT_TASK_SOFT_LIMIT_SEC = 120
DEFAULT_TASK_HARD_LIMIT_SEC = 150


@celery_app.task(
    bind=True,
    soft_time_limit=DEFAULT_TASK_SOFT_LIMIT_SEC,
    time_limit=DEFAULT_TASK_HARD_LIMIT_SEC,
)
def process_analysis_job(self: Task, job_id: str) -> dict:
    bind_job_context(job_id, "process_analysis_job")
    try:
        result = run_in_session(dispatch_service.process_job, job_id)
        logger.info("analysis_task_finished", status=result.get("status"))
        return result
    except Exception as exc:  # noqa: BLE001
        logger.error("analysis_task_failed", error=str(exc))
        raise
    finally:
        structlog.contextvars.clear_contextvars()


@celery_app.task(
    bind=True,
    autoretry_for=(TimeoutError, ConnectionError),
    retry_backoff=True,
    retry_jitter=True,
    max_retries=3,
)
def release_analysis_job(self: Task, job_id: str) -> dict:
    bind_job_context(job_id, "release_analysis_job")
    try:
        released = run_in_session(queue_manager.release, job_id)
        return {"job_id": job_id, "released": released}
    finally:
        structlog.contextvars.clear_contextvars()

