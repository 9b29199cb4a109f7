"""Celery application for analysis workers and deferred queue actions."""

from __future__ import annotations

from celery import Celery

from app.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "resonant_workers",
    broker=settings.redis_queue_url,
    backend=settings.redis_queue_url,
    include=["app.queue.tasks.analysis_tasks"],
)

celery_app.conf.update(
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,
    broker_connection_retry_on_startup=True,
    task_default_queue=settings.queue_celery_name,
    task_default_exchange=settings.queue_celery_name,
    task_default_routing_key=settings.queue_celery_name,
    task_routes={
        "app.queue.tasks.analysis_tasks.*": {"queue": settings.queue_celery_name},
    },
)
