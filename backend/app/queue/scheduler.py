"""Deferred actions: "run this queue action after N milliseconds".

Backoff delays and per-job dispatch are expressed as delayed Celery tasks,
never as in-process sleeps.
"""

from __future__ import annotations

from typing import Any, Protocol

from app.core.config import get_settings
from app.core.logging import get_logger
from app.queue.celery_app import celery_app

logger = get_logger("queue.scheduler")
settings = get_settings()

ACTION_TASKS: dict[str, str] = {
    "process": "app.queue.tasks.analysis_tasks.process_analysis_job",
    "release": "app.queue.tasks.analysis_tasks.release_analysis_job",
}


class DeferredScheduler(Protocol):
    def run_after(self, delay_ms: int, action: str, **kwargs: Any) -> None:
        ...


class CeleryDeferredScheduler:
    def run_after(self, delay_ms: int, action: str, **kwargs: Any) -> None:
        task_name = ACTION_TASKS.get(action)
        if not task_name:
            raise ValueError(f"unsupported_deferred_action:{action}")
        celery_app.send_task(
            task_name,
            kwargs=kwargs,
            countdown=max(0, delay_ms) / 1000.0,
            queue=settings.queue_celery_name,
        )
        logger.debug("deferred_action_scheduled", action=action, delay_ms=delay_ms, **kwargs)


celery_scheduler = CeleryDeferredScheduler()
