"""
Resonant Analysis Queue - Structured Logging
============================================
structlog configuration plus request/correlation id helpers bound per
HTTP request and per worker task.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from uuid import uuid4

import structlog

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
correlation_id_ctx: ContextVar[str] = ContextVar("correlation_id", default="")


def setup_logging(debug: bool = False, json_output: bool = True) -> None:
    level = logging.DEBUG if debug else logging.INFO
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str):
    return structlog.get_logger(name)


def new_request_id() -> str:
    return f"req-{uuid4().hex[:20]}"


def new_correlation_id() -> str:
    return f"corr-{uuid4().hex[:20]}"


def set_request_id(value: str) -> None:
    request_id_ctx.set(value or "")


def set_correlation_id(value: str) -> None:
    correlation_id_ctx.set(value or "")


def get_request_id() -> str:
    return request_id_ctx.get("")


def get_correlation_id() -> str:
    return correlation_id_ctx.get("")


def bind_job_context(job_id: str, task: str) -> None:
    """Attach the job being worked to every log line of the current task."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(job_id=job_id, task=task)
