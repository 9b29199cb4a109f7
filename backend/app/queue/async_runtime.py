"""Shared asyncio runtime for Celery sync tasks.

SQLAlchemy/asyncpg pooled connections are bound to the loop they were created
with, so every task in a worker process runs on the same loop.
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from app.core.database import async_session

T = TypeVar("T")

_loop_lock = threading.Lock()
_worker_loop: asyncio.AbstractEventLoop | None = None


def run_async(awaitable: Awaitable[T]) -> T:
    global _worker_loop
    with _loop_lock:
        if _worker_loop is None or _worker_loop.is_closed():
            _worker_loop = asyncio.new_event_loop()
            asyncio.set_event_loop(_worker_loop)
        loop = _worker_loop
    return loop.run_until_complete(awaitable)


async def with_session(fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    """Run ``fn(db, *args, **kwargs)`` inside a fresh session."""
    async with async_session() as db:
        return await fn(db, *args, **kwargs)


def run_in_session(fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    return run_async(with_session(fn, *args, **kwargs))
