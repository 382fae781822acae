"""
Tests for CacheStore: stale-while-revalidate reads, persistence and invalidation.

Time is driven by a fake clock; nothing here sleeps.
"""
import asyncio
import json

import pytest

from console_sync.cache import (
    CacheEvent,
    CacheSource,
    CacheStore,
    MemoryStorage,
    SQLiteStorage,
    get_ttl_for_key,
)
from console_sync.errors import ApiError, RequestCancelledError


TTL_MS = 30_000


class FakeClock:
    """Callable clock returning epoch seconds that tests advance by hand."""

    def __init__(self, start_ms: int = 1_700_000_000_000):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms / 1000.0

    def advance(self, ms: float) -> None:
        self.now_ms += ms


class Fetcher:
    """Counting fetcher that can be held back or made to fail."""

    def __init__(self, value=None, error=None, gated=False):
        self.calls = 0
        self.value = value if value is not None else {"total_items": 1}
        self.error = error
        self.gate = asyncio.Event()
        if not gated:
            self.gate.set()

    async def __call__(self):
        self.calls += 1
        await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.value


async def _settle(rounds: int = 20):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def cache(clock, storage):
    return CacheStore(storage=storage, clock=clock).init()


def _envelope(ts_ms, data, ttl_ms=TTL_MS, version=1):
    return json.dumps({"v": version, "ts": ts_ms, "ttlMs": ttl_ms, "data": data})


# =============================================================================
# Reads
# =============================================================================

@pytest.mark.asyncio
async def test_miss_returns_nothing_and_fetches_in_background(cache):
    fetcher = Fetcher(value={"total_items": 5})

    result = cache.read("dashboard:snapshot", TTL_MS, fetcher)

    assert result.value is None
    assert result.is_stale is True
    assert result.refreshing is True
    assert result.cache_source == CacheSource.MISS

    await cache.join("dashboard:snapshot")

    again = cache.read("dashboard:snapshot", TTL_MS, fetcher)
    assert again.value == {"total_items": 5}
    assert again.is_stale is False
    assert again.refreshing is False
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_freshness_boundary_follows_ttl(cache, clock):
    fetcher = Fetcher()
    await cache.refresh("stats", TTL_MS, fetcher)

    clock.advance(TTL_MS - 1)
    assert cache.read("stats", TTL_MS, fetcher).is_stale is False
    assert fetcher.calls == 1

    clock.advance(1)
    result = cache.read("stats", TTL_MS, fetcher)
    assert result.is_stale is True
    assert result.refreshing is True
    await cache.join("stats")
    assert fetcher.calls == 2


@pytest.mark.asyncio
async def test_stale_value_served_immediately_while_revalidating(cache, clock):
    cache.put("stats", {"total_items": 1}, TTL_MS)
    clock.advance(TTL_MS + 5_000)
    fetcher = Fetcher(value={"total_items": 2}, gated=True)

    result = cache.read("stats", TTL_MS, fetcher)

    assert result.value == {"total_items": 1}
    assert result.is_stale is True
    assert result.refreshing is True
    assert result.age_ms == pytest.approx(TTL_MS + 5_000)

    fetcher.gate.set()
    await cache.join("stats")

    assert cache.peek("stats").value == {"total_items": 2}
    assert cache.read("stats", TTL_MS, fetcher).is_stale is False


@pytest.mark.asyncio
async def test_reader_with_shorter_ttl_sees_entry_as_stale(cache, clock):
    cache.put("jobs:all", {"jobs": {}}, TTL_MS)
    clock.advance(5_000)
    fetcher = Fetcher(value={"jobs": {"j1": {}}})

    assert cache.read("jobs:all", TTL_MS, fetcher).is_stale is False

    result = cache.read("jobs:all", 3_000, fetcher)
    assert result.is_stale is True
    assert result.refreshing is True
    await cache.join("jobs:all")
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_repeated_stale_reads_start_one_refresh(cache, clock):
    cache.put("stats", {"total_items": 1}, TTL_MS)
    clock.advance(TTL_MS)
    fetcher = Fetcher(gated=True)

    for _ in range(5):
        cache.read("stats", TTL_MS, fetcher)
    await _settle()
    fetcher.gate.set()
    await cache.join("stats")

    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_failed_refresh_keeps_stale_value_and_reports_error(cache, clock):
    cache.put("stats", {"total_items": 1}, TTL_MS)
    clock.advance(TTL_MS)
    error = ApiError("stats", 503, "unavailable")
    events = []
    cache.subscribe("stats", events.append)

    cache.read("stats", TTL_MS, Fetcher(error=error))
    await cache.join("stats")

    result = cache.read("stats", TTL_MS, Fetcher(gated=True))
    assert result.value == {"total_items": 1}
    assert result.error is error
    assert events[-1].error is error
    assert cache.get_stats()["errors"] == 1
    cache.dispose()


@pytest.mark.asyncio
async def test_refresh_raises_to_its_caller(cache):
    with pytest.raises(ApiError):
        await cache.refresh("health", TTL_MS, Fetcher(error=ApiError("health", None, "timeout")))
    assert cache.peek("health") is None


@pytest.mark.asyncio
async def test_successful_refresh_clears_error(cache):
    with pytest.raises(ApiError):
        await cache.refresh("health", TTL_MS, Fetcher(error=ApiError("health", None, "timeout")))

    await cache.refresh("health", TTL_MS, Fetcher(value={"status": "healthy"}))

    assert cache.last_error("health") is None


@pytest.mark.asyncio
async def test_subscribers_notified_and_can_unsubscribe(cache):
    events = []
    unsubscribe = cache.subscribe("stats", events.append)

    await cache.refresh("stats", TTL_MS, Fetcher(value={"n": 1}))
    unsubscribe()
    await cache.refresh("stats", TTL_MS, Fetcher(value={"n": 2}))

    assert len(events) == 1
    assert isinstance(events[0], CacheEvent)
    assert events[0].ok
    assert events[0].value == {"n": 1}


@pytest.mark.asyncio
async def test_broken_listener_does_not_break_refresh(cache):
    def explode(event):
        raise RuntimeError("view crashed")

    cache.subscribe("stats", explode)
    assert await cache.refresh("stats", TTL_MS, Fetcher(value={"n": 1})) == {"n": 1}
    assert cache.peek("stats").value == {"n": 1}


# =============================================================================
# Blocking get and staleness bound
# =============================================================================

@pytest.mark.asyncio
async def test_get_waits_on_miss_and_serves_stale_otherwise(cache, clock):
    assert await cache.get("stats", TTL_MS, Fetcher(value={"n": 1})) == {"n": 1}

    clock.advance(TTL_MS)
    fetcher = Fetcher(value={"n": 2}, gated=True)
    assert await cache.get("stats", TTL_MS, fetcher) == {"n": 1}

    fetcher.gate.set()
    await cache.join("stats")
    assert cache.peek("stats").value == {"n": 2}


@pytest.mark.asyncio
async def test_max_stale_withholds_value(clock, storage):
    cache = CacheStore(storage=storage, clock=clock, max_stale_ms=60_000).init()
    cache.put("stats", {"n": 1}, TTL_MS)

    clock.advance(45_000)
    assert cache.read("stats", TTL_MS, Fetcher(gated=True)).value == {"n": 1}

    clock.advance(20_000)
    result = cache.read("stats", TTL_MS, Fetcher(gated=True))
    assert result.value is None
    assert result.is_stale is True
    cache.dispose()


@pytest.mark.asyncio
async def test_get_blocks_past_max_stale(clock, storage):
    cache = CacheStore(storage=storage, clock=clock, max_stale_ms=60_000).init()
    cache.put("stats", {"n": 1}, TTL_MS)
    clock.advance(61_000)

    assert await cache.get("stats", TTL_MS, Fetcher(value={"n": 2})) == {"n": 2}


# =============================================================================
# Persistence
# =============================================================================

@pytest.mark.asyncio
async def test_refresh_persists_versioned_envelope(cache, storage, clock):
    await cache.refresh("dashboard:snapshot", TTL_MS, Fetcher(value={"stats": {}}))

    raw = storage.get("dashboard:snapshot_cache_v1")
    envelope = json.loads(raw)
    assert envelope == {
        "v": 1,
        "ts": clock.now_ms,
        "ttlMs": TTL_MS,
        "data": {"stats": {}},
    }


def test_snapshot_hydrates_into_new_instance(storage, clock):
    storage.set("stats_cache_v1", _envelope(clock.now_ms - 1_000, {"n": 7}))

    cache = CacheStore(storage=storage, clock=clock).init(["stats"])

    entry = cache.peek("stats")
    assert entry.value == {"n": 7}
    assert cache.get_stats()["hydrated"] == 1


@pytest.mark.parametrize("raw", [
    "{not json",
    json.dumps(["not", "an", "object"]),
    json.dumps({"ts": 1, "ttlMs": TTL_MS, "data": {}}),
    json.dumps({"v": 2, "ts": 1, "ttlMs": TTL_MS, "data": {}}),
    json.dumps({"v": 1, "ts": "yesterday", "ttlMs": TTL_MS, "data": {}}),
    json.dumps({"v": 1, "ts": 1, "ttlMs": TTL_MS}),
])
def test_corrupt_or_unversioned_snapshot_is_discarded(storage, clock, raw):
    storage.set("stats_cache_v1", raw)

    cache = CacheStore(storage=storage, clock=clock).init()

    assert cache.peek("stats") is None
    assert storage.get("stats_cache_v1") is None


def test_snapshot_past_hard_expiry_is_discarded(storage, clock):
    too_old = clock.now_ms - TTL_MS * 5
    storage.set("stats_cache_v1", _envelope(too_old, {"n": 1}))

    cache = CacheStore(storage=storage, clock=clock, hard_expiry_multiplier=5).init()

    assert cache.peek("stats") is None
    assert storage.get("stats_cache_v1") is None


def test_stale_but_within_hard_expiry_is_hydrated(storage, clock):
    storage.set("stats_cache_v1", _envelope(clock.now_ms - TTL_MS * 2, {"n": 1}))

    cache = CacheStore(storage=storage, clock=clock).init()

    entry = cache.peek("stats")
    assert entry is not None
    assert not entry.is_fresh(clock())


def test_schema_bump_removes_previous_version(storage, clock):
    storage.set("stats_cache_v1", _envelope(clock.now_ms, {"n": 1}, version=1))

    cache = CacheStore(storage=storage, clock=clock, schema_version=2).init()

    assert cache.peek("stats") is None
    assert storage.get("stats_cache_v1") is None


@pytest.mark.asyncio
async def test_persist_failure_keeps_memory_entry(clock):
    class BrokenStorage(MemoryStorage):
        def set(self, key, value):
            raise OSError("disk full")

    cache = CacheStore(storage=BrokenStorage(), clock=clock).init()
    await cache.refresh("stats", TTL_MS, Fetcher(value={"n": 1}))

    assert cache.peek("stats").value == {"n": 1}


@pytest.mark.asyncio
async def test_unreadable_storage_counts_as_miss(clock):
    class LockedStorage(MemoryStorage):
        def get(self, key):
            raise OSError("database is locked")

        def remove(self, key):
            raise OSError("database is locked")

    cache = CacheStore(storage=LockedStorage(), clock=clock).init()
    fetcher = Fetcher(value={"n": 2})

    result = cache.read("stats", TTL_MS, fetcher)
    assert result.value is None
    assert result.cache_source == CacheSource.MISS
    await cache.join("stats")

    assert cache.peek("stats").value == {"n": 2}
    assert fetcher.calls == 1
    assert cache.invalidate("stats") is True
    assert cache.peek("stats") is None


@pytest.mark.asyncio
async def test_sqlite_storage_round_trips_snapshots(tmp_path, clock):
    storage = SQLiteStorage(tmp_path / "cache.db")
    first = CacheStore(storage=storage, clock=clock).init()
    await first.refresh("stats", TTL_MS, Fetcher(value={"n": 3}))
    first.dispose()

    second = CacheStore(storage=SQLiteStorage(tmp_path / "cache.db"), clock=clock).init()

    assert second.peek("stats").value == {"n": 3}
    assert storage.keys() == ["stats_cache_v1"]


# =============================================================================
# Invalidation and lifecycle
# =============================================================================

@pytest.mark.asyncio
async def test_invalidate_clears_memory_and_storage(cache, storage):
    await cache.refresh("stats", TTL_MS, Fetcher())

    assert cache.invalidate("stats") is True
    assert cache.peek("stats") is None
    assert storage.get("stats_cache_v1") is None

    fetcher = Fetcher()
    assert cache.read("stats", TTL_MS, fetcher).value is None
    await cache.join("stats")
    assert fetcher.calls == 1


@pytest.mark.asyncio
async def test_invalidate_discards_in_flight_response(cache, storage):
    fetcher = Fetcher(value={"late": True}, gated=True)
    cache.read("stats", TTL_MS, fetcher)
    await _settle()

    cache.invalidate("stats")
    fetcher.gate.set()
    await _settle()

    assert cache.peek("stats") is None
    assert storage.get("stats_cache_v1") is None


@pytest.mark.asyncio
async def test_refresh_superseded_by_invalidate_raises_cancelled(cache):
    fetcher = Fetcher(gated=True)
    task = asyncio.create_task(cache.refresh("stats", TTL_MS, fetcher))
    await _settle()

    cache.invalidate("stats")

    with pytest.raises(RequestCancelledError):
        await task


@pytest.mark.asyncio
async def test_invalidate_pattern_and_clear(cache):
    for key in ("logs:a", "logs:b", "stats"):
        cache.put(key, {"k": key}, TTL_MS)

    assert cache.invalidate_pattern("logs:") == 2
    assert cache.clear() == 1
    assert cache.get_stats()["entries"] == 0


@pytest.mark.asyncio
async def test_independent_instances_do_not_share_state(clock):
    one = CacheStore(storage=MemoryStorage(), clock=clock).init()
    two = CacheStore(storage=MemoryStorage(), clock=clock).init()

    one.put("stats", {"n": 1}, TTL_MS)

    assert two.peek("stats") is None
    assert one.coordinator is not two.coordinator


@pytest.mark.asyncio
async def test_dispose_cancels_background_refresh(cache, clock):
    cache.put("stats", {"n": 1}, TTL_MS)
    clock.advance(TTL_MS)
    fetcher = Fetcher(gated=True)
    cache.read("stats", TTL_MS, fetcher)
    await _settle()

    cache.dispose()
    fetcher.gate.set()
    await _settle()

    assert not cache.initialized
    assert cache.coordinator.active_requests == 0
    assert cache.get_stats()["revalidating_count"] == 0


def test_ttl_policy_by_feature():
    assert get_ttl_for_key("jobs:all") == 3_000
    assert get_ttl_for_key('logs:{"level": "error"}') == 10_000
    assert get_ttl_for_key("dashboard:snapshot") == 30_000
    assert get_ttl_for_key("unknown") == 30_000
