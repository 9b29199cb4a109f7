import pytest

from app.services.circuit_breaker import (
    CLOSED,
    HALF_OPEN,
    OPEN,
    CircuitBreakerRegistry,
    MemoryBreakerStore,
    RedisBreakerStore,
)

from conftest import at

SERVICE = "analysis_provider"


def _registry(threshold: int, store=None) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(failure_threshold=threshold, open_seconds=60, store=store or MemoryBreakerStore())


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.queued: list[tuple[str, tuple, dict]] = []

    async def __aenter__(self) -> "FakePipeline":
        return self

    async def __aexit__(self, *exc) -> None:
        self.queued.clear()

    def __getattr__(self, name: str):
        def _queue(*args, **kwargs):
            self.queued.append((name, args, kwargs))
            return self

        return _queue

    async def execute(self) -> list:
        return [await getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.queued]


class FakeRedis:
    """Minimal hash/set subset of redis.asyncio used by the breaker store."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.sets: dict[str, set[str]] = {}

    def pipeline(self, transaction: bool = True) -> FakePipeline:
        return FakePipeline(self)

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def hset(self, key: str, field=None, value=None, mapping=None) -> int:
        target = self.hashes.setdefault(key, {})
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        target.update({k: str(v) for k, v in items.items()})
        return len(items)

    async def hincrby(self, key: str, field: str, amount: int = 1) -> int:
        target = self.hashes.setdefault(key, {})
        target[field] = str(int(target.get(field, 0)) + amount)
        return int(target[field])

    async def hdel(self, key: str, *fields: str) -> int:
        target = self.hashes.get(key, {})
        return sum(1 for field in fields if target.pop(field, None) is not None)

    async def sadd(self, key: str, *members: str) -> int:
        self.sets.setdefault(key, set()).update(members)
        return len(members)

    async def smembers(self, key: str) -> set[str]:
        return set(self.sets.get(key, set()))

    async def srem(self, key: str, *members: str) -> int:
        self.sets.get(key, set()).difference_update(members)
        return len(members)

    async def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self.hashes.pop(key, None) is not None)


def _redis_store(client: FakeRedis) -> RedisBreakerStore:
    store = RedisBreakerStore(url="redis://unused:6379/0", prefix="test:circuit")
    store._redis = client
    return store


@pytest.mark.asyncio
async def test_opens_at_threshold() -> None:
    breakers = _registry(3)
    for _ in range(2):
        await breakers.record_failure(SERVICE, "network", "reset", now=at())
    assert (await breakers.snapshot(SERVICE, at())).state == CLOSED
    snap = await breakers.record_failure(SERVICE, "network", "reset", now=at())
    assert snap.state == OPEN
    assert snap.open_until == at(seconds=60)
    assert await breakers.allows_dispatch(SERVICE, at(seconds=30)) is False


@pytest.mark.asyncio
async def test_service_errors_count_double() -> None:
    breakers = _registry(4)
    await breakers.record_failure(SERVICE, "service_error", "502", now=at())
    assert (await breakers.snapshot(SERVICE, at())).failure_count == 2
    snap = await breakers.record_failure(SERVICE, "service_error", "502", now=at())
    assert snap.state == OPEN


@pytest.mark.asyncio
async def test_half_open_after_interval_and_probe_failure_reopens() -> None:
    breakers = _registry(1)
    await breakers.record_failure(SERVICE, "timeout", "slow", now=at())
    assert (await breakers.snapshot(SERVICE, at(seconds=61))).state == HALF_OPEN
    assert await breakers.allows_dispatch(SERVICE, at(seconds=61)) is True

    snap = await breakers.record_failure(SERVICE, "timeout", "slow again", now=at(seconds=61))
    assert snap.state == OPEN
    assert snap.open_until == at(seconds=121)


@pytest.mark.asyncio
async def test_success_closes_and_resets_count() -> None:
    breakers = _registry(2)
    await breakers.record_failure(SERVICE, "network", "x", now=at())
    await breakers.record_failure(SERVICE, "network", "x", now=at())
    await breakers.record_success(SERVICE)
    snap = await breakers.snapshot(SERVICE, at(seconds=1))
    assert snap.state == CLOSED
    assert snap.failure_count == 0


@pytest.mark.asyncio
async def test_health_and_reset() -> None:
    breakers = _registry(5)
    await breakers.record_failure(SERVICE, "rate_limit", "429", now=at())
    report = await breakers.health(at())
    assert report[SERVICE]["state"] == CLOSED
    assert report[SERVICE]["last_error"] == "429"
    assert report[SERVICE]["calls"] == 1
    await breakers.reset(SERVICE)
    assert await breakers.health(at()) == {}


@pytest.mark.asyncio
async def test_registries_sharing_a_store_see_the_same_state() -> None:
    store = MemoryBreakerStore()
    worker = _registry(2, store)
    api = _registry(2, store)

    await worker.record_failure(SERVICE, "network", "down", now=at())
    await worker.record_failure(SERVICE, "network", "down", now=at())
    assert (await api.snapshot(SERVICE, at(seconds=1))).state == OPEN
    assert await api.allows_dispatch(SERVICE, at(seconds=1)) is False

    await worker.record_success(SERVICE)
    assert (await api.snapshot(SERVICE, at(seconds=2))).state == CLOSED


@pytest.mark.asyncio
async def test_redis_store_round_trips_open_state() -> None:
    client = FakeRedis()
    worker = _registry(2, _redis_store(client))
    api = _registry(2, _redis_store(client))

    await worker.record_failure(SERVICE, "service_error", "502 Bad Gateway", now=at())
    assert client.hashes["test:circuit:analysis_provider"]["failure_count"] == "2"
    assert client.sets["test:circuit:services"] == {SERVICE}

    snap = await api.snapshot(SERVICE, at(seconds=1))
    assert snap.state == OPEN
    assert snap.open_until == at(seconds=60)
    assert (await api.snapshot(SERVICE, at(seconds=61))).state == HALF_OPEN

    report = await api.health(at(seconds=1))
    assert report[SERVICE]["last_error"] == "502 Bad Gateway"
    assert report[SERVICE]["last_failure_at"] == at().isoformat()


@pytest.mark.asyncio
async def test_redis_store_success_and_reset() -> None:
    client = FakeRedis()
    breakers = _registry(1, _redis_store(client))

    await breakers.record_failure(SERVICE, "timeout", "slow", now=at())
    await breakers.record_success(SERVICE)
    snap = await breakers.snapshot(SERVICE, at(seconds=1))
    assert snap.state == CLOSED
    assert snap.failure_count == 0
    assert "open_until" not in client.hashes["test:circuit:analysis_provider"]
    assert client.hashes["test:circuit:analysis_provider"]["calls"] == "2"

    await breakers.reset()
    assert await breakers.health(at()) == {}
    assert client.hashes == {}
