import os

# Must be set before any app module reads settings.
os.environ.setdefault("RESONANT_DATABASE_URL_OVERRIDE", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("RESONANT_APP_ENV", "test")
os.environ.setdefault("RESONANT_MAINTENANCE_SCHEDULER_ENABLED", "false")

import random
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database import Base
from app.domain.queue.retry_policy import RetryPolicy
from app.models import AnalysisJob  # noqa: F401
from app.services.circuit_breaker import CircuitBreakerRegistry, MemoryBreakerStore
from app.services.queue_manager import QueueManager

NOW = datetime(2026, 3, 2, 12, 0, 0)


def at(seconds: float = 0, minutes: float = 0) -> datetime:
    return NOW + timedelta(seconds=seconds, minutes=minutes)


class RecordingScheduler:
    def __init__(self) -> None:
        self.calls: list[tuple[int, str, dict]] = []

    def run_after(self, delay_ms: int, action: str, **kwargs) -> None:
        self.calls.append((delay_ms, action, kwargs))

    def actions(self, action: str) -> list[tuple[int, str, dict]]:
        return [call for call in self.calls if call[1] == action]


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def scheduler() -> RecordingScheduler:
    return RecordingScheduler()


@pytest.fixture
def breakers() -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(failure_threshold=5, open_seconds=60, store=MemoryBreakerStore())


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_retries=3, base_delay_ms=1000, max_delay_ms=60_000, jitter_ms=1000, rng=random.Random(7))


@pytest.fixture
def manager(scheduler, breakers, retry_policy) -> QueueManager:
    return QueueManager(
        scheduler=scheduler,
        breakers=breakers,
        retry_policy=retry_policy,
        max_size=5,
        max_concurrent=2,
        processing_timeout_ms=30_000,
    )
