"""Per-service circuit breaker for the analysis provider.

Breaker state is kept in Redis: Celery workers record provider outcomes while
the API process runs the dispatch cycle and serves status reads, so both must
see the same counters. The queue only reads snapshots, which are copied into
each retry-history entry for diagnostics.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Protocol

from redis.asyncio import Redis

from app.core.config import get_settings
from app.core.logging import get_logger
from app.domain.queue.retry_policy import circuit_failure_weight
from app.models.analysis_job import ErrorType
from app.utils.clock import iso, utcnow

logger = get_logger("services.circuit_breaker")
settings = get_settings()

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


@dataclass
class BreakerState:
    failure_count: int = 0
    opened_at: datetime | None = None
    open_until: datetime | None = None
    last_error: str | None = None
    last_failure_at: datetime | None = None
    calls: int = 0


@dataclass(frozen=True, slots=True)
class BreakerSnapshot:
    service: str
    state: str
    failure_count: int
    open_until: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "service": self.service,
            "state": self.state,
            "failure_count": self.failure_count,
            "open_until": iso(self.open_until),
        }


class BreakerStore(Protocol):
    async def load(self, service: str) -> BreakerState:
        ...

    async def add_failure(self, service: str, weight: int, error: str, now: datetime) -> BreakerState:
        ...

    async def open(self, service: str, opened_at: datetime, open_until: datetime) -> None:
        ...

    async def record_success(self, service: str) -> None:
        ...

    async def services(self) -> list[str]:
        ...

    async def delete(self, service: str | None = None) -> None:
        ...


class MemoryBreakerStore:
    """Process-local store for tests and single-process runs."""

    def __init__(self) -> None:
        self._state: dict[str, BreakerState] = {}

    async def load(self, service: str) -> BreakerState:
        st = self._state.get(service)
        return replace(st) if st else BreakerState()

    async def add_failure(self, service: str, weight: int, error: str, now: datetime) -> BreakerState:
        st = self._state.setdefault(service, BreakerState())
        st.failure_count += weight
        st.calls += 1
        st.last_error = error
        st.last_failure_at = now
        return replace(st)

    async def open(self, service: str, opened_at: datetime, open_until: datetime) -> None:
        st = self._state.setdefault(service, BreakerState())
        st.opened_at = opened_at
        st.open_until = open_until

    async def record_success(self, service: str) -> None:
        st = self._state.setdefault(service, BreakerState())
        st.calls += 1
        st.failure_count = 0
        st.last_error = None
        st.opened_at = None
        st.open_until = None

    async def services(self) -> list[str]:
        return sorted(self._state)

    async def delete(self, service: str | None = None) -> None:
        if service is None:
            self._state.clear()
        else:
            self._state.pop(service, None)


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class RedisBreakerStore:
    """One hash per service plus an index set of known services."""

    def __init__(self, url: str | None = None, prefix: str | None = None) -> None:
        self.url = url or settings.redis_queue_url
        self.prefix = prefix or settings.circuit_redis_prefix
        self._redis: Redis | None = None

    async def _redis_client(self) -> Redis:
        if self._redis is None:
            self._redis = Redis.from_url(self.url, decode_responses=True)
        return self._redis

    def _key(self, service: str) -> str:
        return f"{self.prefix}:{service}"

    @property
    def _index_key(self) -> str:
        return f"{self.prefix}:services"

    async def load(self, service: str) -> BreakerState:
        redis = await self._redis_client()
        raw = await redis.hgetall(self._key(service))
        return BreakerState(
            failure_count=int(raw.get("failure_count", 0)),
            opened_at=_parse_ts(raw.get("opened_at")),
            open_until=_parse_ts(raw.get("open_until")),
            last_error=raw.get("last_error") or None,
            last_failure_at=_parse_ts(raw.get("last_failure_at")),
            calls=int(raw.get("calls", 0)),
        )

    async def add_failure(self, service: str, weight: int, error: str, now: datetime) -> BreakerState:
        redis = await self._redis_client()
        key = self._key(service)
        # HINCRBY keeps concurrent worker failures from overwriting each other.
        async with redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, "failure_count", weight)
            pipe.hincrby(key, "calls", 1)
            pipe.hset(key, mapping={"last_error": error, "last_failure_at": iso(now)})
            pipe.sadd(self._index_key, service)
            await pipe.execute()
        return await self.load(service)

    async def open(self, service: str, opened_at: datetime, open_until: datetime) -> None:
        redis = await self._redis_client()
        await redis.hset(self._key(service), mapping={"opened_at": iso(opened_at), "open_until": iso(open_until)})

    async def record_success(self, service: str) -> None:
        redis = await self._redis_client()
        key = self._key(service)
        async with redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(key, "calls", 1)
            pipe.hset(key, "failure_count", 0)
            pipe.hdel(key, "last_error", "opened_at", "open_until")
            pipe.sadd(self._index_key, service)
            await pipe.execute()

    async def services(self) -> list[str]:
        redis = await self._redis_client()
        return sorted(await redis.smembers(self._index_key))

    async def delete(self, service: str | None = None) -> None:
        redis = await self._redis_client()
        targets = [service] if service is not None else await self.services()
        for name in targets:
            await redis.delete(self._key(name))
            await redis.srem(self._index_key, name)


class CircuitBreakerRegistry:
    def __init__(
        self,
        *,
        failure_threshold: int | None = None,
        open_seconds: int | None = None,
        store: BreakerStore | None = None,
    ) -> None:
        self.failure_threshold = failure_threshold if failure_threshold is not None else settings.circuit_failure_threshold
        self.open_seconds = open_seconds if open_seconds is not None else settings.circuit_open_sec
        self.store = store or RedisBreakerStore()

    @staticmethod
    def _state_name(st: BreakerState, now: datetime) -> str:
        if st.open_until is None:
            return CLOSED
        if st.open_until > now:
            return OPEN
        return HALF_OPEN

    def _snapshot(self, service: str, st: BreakerState, now: datetime) -> BreakerSnapshot:
        return BreakerSnapshot(
            service=service,
            state=self._state_name(st, now),
            failure_count=st.failure_count,
            open_until=st.open_until,
        )

    async def snapshot(self, service: str, now: datetime | None = None) -> BreakerSnapshot:
        now = now or utcnow()
        return self._snapshot(service, await self.store.load(service), now)

    async def allows_dispatch(self, service: str, now: datetime | None = None) -> bool:
        return (await self.snapshot(service, now)).state != OPEN

    async def record_success(self, service: str) -> None:
        st = await self.store.load(service)
        if st.open_until is not None:
            logger.info("circuit_closed", service=service)
        await self.store.record_success(service)

    async def record_failure(
        self,
        service: str,
        error_type: ErrorType | str,
        error: str = "",
        now: datetime | None = None,
    ) -> BreakerSnapshot:
        now = now or utcnow()
        was_half_open = self._state_name(await self.store.load(service), now) == HALF_OPEN
        st = await self.store.add_failure(service, circuit_failure_weight(error_type), error[:500], now)
        if was_half_open or st.failure_count >= self.failure_threshold:
            st.opened_at = now
            st.open_until = now + timedelta(seconds=self.open_seconds)
            await self.store.open(service, st.opened_at, st.open_until)
            logger.warning(
                "circuit_open",
                service=service,
                failure_count=st.failure_count,
                open_seconds=self.open_seconds,
                probe_failed=was_half_open,
            )
        return self._snapshot(service, st, now)

    async def health(self, now: datetime | None = None) -> dict[str, dict[str, Any]]:
        now = now or utcnow()
        out: dict[str, dict[str, Any]] = {}
        for name in await self.store.services():
            st = await self.store.load(name)
            out[name] = {
                **self._snapshot(name, st, now).as_dict(),
                "last_error": st.last_error,
                "last_failure_at": iso(st.last_failure_at),
                "calls": st.calls,
            }
        return out

    async def reset(self, service: str | None = None) -> None:
        await self.store.delete(service)


circuit_breakers = CircuitBreakerRegistry()
