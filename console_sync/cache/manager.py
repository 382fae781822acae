"""
Main cache orchestration with TTL, persisted snapshots and stale-while-revalidate.
"""
import asyncio
import json
import time
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from console_sync.errors import CacheCorruptionError, RequestCancelledError
from .core import CacheEntry, CacheEvent, CacheRead
from .coalescer import RequestCoordinator
from .storage import MemoryStorage, SQLiteStorage, Storage
from .ttl_policies import DEFAULT_HARD_EXPIRY_MULTIPLIER, get_hard_expiry_ms

logger = logging.getLogger("cache.manager")

Fetcher = Callable[[], Awaitable[Any]]
Listener = Callable[[CacheEvent], None]


class CacheStore:
    """
    Cache orchestration for the console views:
    - Non-blocking reads that hand back whatever is cached, stale or not
    - Background revalidation through the RequestCoordinator
    - Failed refreshes keep the last good value and report the error
    - Snapshots persisted to durable storage under a versioned key
    - Subscribers notified after every refresh
    """

    def __init__(
        self,
        coordinator: Optional[RequestCoordinator] = None,
        storage: Optional[Storage] = None,
        clock: Callable[[], float] = time.time,
        schema_version: int = 1,
        hard_expiry_multiplier: int = DEFAULT_HARD_EXPIRY_MULTIPLIER,
        max_stale_ms: Optional[float] = None,
    ):
        """
        Initialize the cache store.

        Args:
            coordinator: Shared request coordinator (a private one by default)
            storage: Durable storage for snapshots; None disables persistence
            clock: Returns the current time in epoch seconds
            schema_version: Version tag of persisted envelopes
            hard_expiry_multiplier: Persisted snapshots older than
                ttl * multiplier are discarded on hydrate
            max_stale_ms: If set, values older than this are withheld from
                read() and get() waits for a fresh fetch
        """
        self._cache: Dict[str, CacheEntry] = {}
        self._errors: Dict[str, BaseException] = {}
        self._coordinator = coordinator or RequestCoordinator()
        self._storage = storage
        self._clock = clock
        self._schema_version = schema_version
        self._hard_expiry_multiplier = hard_expiry_multiplier
        self._max_stale_ms = max_stale_ms

        self._hydrated: set = set()
        self._refreshing: Dict[str, "asyncio.Task[None]"] = {}
        self._listeners: Dict[str, List[Listener]] = {}
        self._initialized = False

        # Stats tracking
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "refreshes": 0,
            "errors": 0,
            "discarded": 0,
            "hydrated": 0,
            "corrupt": 0,
        }

    @classmethod
    def from_settings(
        cls,
        settings: Any,
        coordinator: Optional[RequestCoordinator] = None,
        storage: Optional[Storage] = None,
    ) -> "CacheStore":
        """Build a store from application settings."""
        if storage is None:
            if settings.cache_enabled:
                storage = SQLiteStorage(settings.cache_db_path)
            else:
                storage = MemoryStorage()
        max_stale = settings.cache_max_stale_seconds
        return cls(
            coordinator=coordinator,
            storage=storage,
            schema_version=settings.cache_schema_version,
            hard_expiry_multiplier=settings.cache_hard_expiry_multiplier,
            max_stale_ms=max_stale * 1000 if max_stale is not None else None,
        )

    @property
    def coordinator(self) -> RequestCoordinator:
        return self._coordinator

    @property
    def initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def init(self, keys: Iterable[str] = ()) -> "CacheStore":
        """
        Prepare the store, eagerly hydrating the given keys from storage.

        Other keys are hydrated the first time they are read.
        """
        for key in keys:
            self._lookup(key)
        self._initialized = True
        logger.info(f"Cache store ready ({len(self._cache)} entries hydrated)")
        return self

    def dispose(self) -> None:
        """
        Stop background work and drop in-memory state.

        Persisted snapshots are kept so the next session can show them.
        """
        for task in list(self._refreshing.values()):
            task.cancel()
        self._refreshing.clear()
        self._listeners.clear()
        self._cache.clear()
        self._errors.clear()
        self._hydrated.clear()
        self._initialized = False
        logger.info("Cache store disposed")

    # =========================================================================
    # Reads
    # =========================================================================

    def read(self, key: str, ttl_ms: int, fetcher: Fetcher) -> CacheRead:
        """
        Return what is cached for a key right now, revalidating if needed.

        Never waits for the network. If the entry is missing or stale a
        background refresh is started (at most one per key); its outcome
        reaches subscribers and the error side channel.

        An entry counts as fresh within the shorter of ttl_ms and the TTL it
        was stored with.

        Must be called with a running event loop.
        """
        entry = self._lookup(key)
        error = self._errors.get(key)

        if entry is None:
            logger.info(f"CACHE MISS: {key}")
            self._stats["misses"] += 1
            self._start_background_refresh(key, ttl_ms, fetcher)
            return CacheRead(value=None, is_stale=True, refreshing=True, error=error)

        now = self._clock()
        age = entry.age_ms(now)

        if entry.is_fresh(now, ttl_ms):
            logger.debug(f"CACHE HIT (fresh): {key} [age={age:.0f}ms]")
            self._stats["hits_fresh"] += 1
            return CacheRead(
                value=entry.value,
                is_stale=False,
                refreshing=key in self._refreshing,
                error=error,
                fetched_at=entry.fetched_at,
                age_ms=age,
            )

        self._start_background_refresh(key, ttl_ms, fetcher)

        if self._exceeds_max_stale(age):
            logger.info(f"CACHE TOO STALE: {key} [age={age:.0f}ms], withholding value")
            self._stats["misses"] += 1
            return CacheRead(value=None, is_stale=True, refreshing=True, error=error, age_ms=age)

        logger.info(f"CACHE HIT (stale, revalidating): {key} [age={age:.0f}ms]")
        self._stats["hits_stale"] += 1
        return CacheRead(
            value=entry.value,
            is_stale=True,
            refreshing=True,
            error=error,
            fetched_at=entry.fetched_at,
            age_ms=age,
        )

    async def get(self, key: str, ttl_ms: int, fetcher: Fetcher) -> Any:
        """
        Get data from cache or fetch it, waiting only when there is nothing usable.

        Fresh values are returned directly, stale values are returned while
        revalidating in the background, and a miss (or a value past
        max_stale_ms) waits for the fetch. Fetch errors propagate.
        """
        entry = self._lookup(key)
        if entry is None:
            logger.info(f"CACHE MISS: {key}")
            self._stats["misses"] += 1
            return await self.refresh(key, ttl_ms, fetcher)

        now = self._clock()
        age = entry.age_ms(now)
        if entry.is_fresh(now, ttl_ms):
            self._stats["hits_fresh"] += 1
            return entry.value

        if self._exceeds_max_stale(age):
            logger.info(f"CACHE EXPIRED: {key} [age={age:.0f}ms]")
            self._stats["misses"] += 1
            return await self.refresh(key, ttl_ms, fetcher)

        self._stats["hits_stale"] += 1
        self._start_background_refresh(key, ttl_ms, fetcher)
        return entry.value

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Return the cached entry without triggering any fetch."""
        return self._lookup(key)

    def last_error(self, key: str) -> Optional[BaseException]:
        return self._errors.get(key)

    def _exceeds_max_stale(self, age_ms: float) -> bool:
        return self._max_stale_ms is not None and age_ms >= self._max_stale_ms

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self, key: str, ttl_ms: int, fetcher: Fetcher) -> Any:
        """
        Fetch a key now and store the result.

        Concurrent refreshes of the same key share one fetch. On failure the
        previous value is left untouched, the error is recorded and sent to
        subscribers, and then re-raised.

        Raises:
            RequestCancelledError: The key was invalidated or cancelled
                while the fetch was in flight; nothing was stored
        """
        generation = self._coordinator.generation(key)
        try:
            value = await self._coordinator.run(key, fetcher)
        except RequestCancelledError:
            raise
        except Exception as e:
            if not self._coordinator.is_current(key, generation):
                raise RequestCancelledError(key) from e
            self._errors[key] = e
            self._stats["errors"] += 1
            self._notify(CacheEvent(key=key, error=e))
            raise

        if not self._coordinator.is_current(key, generation):
            logger.debug(f"Discarding superseded response for {key}")
            self._stats["discarded"] += 1
            raise RequestCancelledError(key)

        self._stats["refreshes"] += 1
        self.put(key, value, ttl_ms)
        return value

    def put(self, key: str, value: Any, ttl_ms: int) -> CacheEntry:
        """Store a payload fetched elsewhere, persist it and notify subscribers."""
        entry = CacheEntry(value=value, fetched_at=self._clock(), ttl_ms=ttl_ms)
        self._cache[key] = entry
        self._hydrated.add(key)
        self._errors.pop(key, None)
        self._persist(key, entry)
        self._notify(CacheEvent(key=key, value=value, fetched_at=entry.fetched_at))
        return entry

    def _start_background_refresh(self, key: str, ttl_ms: int, fetcher: Fetcher) -> None:
        """Trigger a background refresh without blocking."""
        if key in self._refreshing:
            logger.debug(f"Already revalidating: {key}")
            return

        loop = asyncio.get_running_loop()
        task = loop.create_task(self._revalidate(key, ttl_ms, fetcher))
        self._refreshing[key] = task

        def _done(finished: "asyncio.Task[None]") -> None:
            if self._refreshing.get(key) is finished:
                del self._refreshing[key]

        task.add_done_callback(_done)

    async def _revalidate(self, key: str, ttl_ms: int, fetcher: Fetcher) -> None:
        try:
            await self.refresh(key, ttl_ms, fetcher)
            logger.debug(f"Background revalidation complete: {key}")
        except RequestCancelledError:
            logger.debug(f"Background revalidation cancelled: {key}")
        except Exception as e:
            # Already recorded and sent to subscribers by refresh()
            logger.warning(f"Background revalidation failed: {key} - {e}")

    async def join(self, key: str) -> None:
        """Wait for the background refresh of a key, if one is running."""
        task = self._refreshing.get(key)
        if task is not None:
            await asyncio.wait({task})

    # =========================================================================
    # Subscribers
    # =========================================================================

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for refresh outcomes of a key.

        Returns:
            A callable that removes the listener
        """
        self._listeners.setdefault(key, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    del self._listeners[key]

        return unsubscribe

    def _notify(self, event: CacheEvent) -> None:
        for listener in list(self._listeners.get(event.key, ())):
            try:
                listener(event)
            except Exception:
                logger.exception(f"Cache listener failed for {event.key}")

    # =========================================================================
    # Persistence
    # =========================================================================

    def storage_key(self, key: str, version: Optional[int] = None) -> str:
        """Versioned storage key, e.g. "dashboard:snapshot_cache_v1"."""
        if version is None:
            version = self._schema_version
        return f"{key}_cache_v{version}"

    def _lookup(self, key: str) -> Optional[CacheEntry]:
        entry = self._cache.get(key)
        if entry is None and key not in self._hydrated:
            self._hydrated.add(key)
            entry = self._hydrate(key)
        return entry

    def _hydrate(self, key: str) -> Optional[CacheEntry]:
        """Load a persisted snapshot, discarding anything untrustworthy."""
        if self._storage is None:
            return None

        for old_version in range(1, self._schema_version):
            self._remove_persisted(self.storage_key(key, old_version))

        storage_key = self.storage_key(key)
        try:
            raw = self._storage.get(storage_key)
        except Exception as e:
            logger.warning(f"Failed to load persisted cache for {key}: {e}")
            return None
        if raw is None:
            return None

        try:
            entry = self._decode(key, raw)
        except CacheCorruptionError as e:
            logger.warning(f"Discarding persisted cache: {e}")
            self._stats["corrupt"] += 1
            self._remove_persisted(storage_key)
            return None

        if entry is None:
            logger.info(f"Persisted cache past hard expiry: {key}")
            self._remove_persisted(storage_key)
            return None

        self._cache[key] = entry
        self._stats["hydrated"] += 1
        logger.debug(f"Hydrated {key} from storage")
        return entry

    def _decode(self, key: str, raw: str) -> Optional[CacheEntry]:
        """
        Decode a persisted envelope.

        Returns None if the snapshot is valid but past its hard expiry.

        Raises:
            CacheCorruptionError: Malformed, unversioned or wrong-version data
        """
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise CacheCorruptionError(key, f"invalid JSON ({e})") from e

        if not isinstance(envelope, dict):
            raise CacheCorruptionError(key, "envelope is not an object")
        if "v" not in envelope:
            raise CacheCorruptionError(key, "missing schema version")
        if envelope["v"] != self._schema_version:
            raise CacheCorruptionError(
                key, f"schema version {envelope['v']!r} != {self._schema_version}"
            )

        ts = envelope.get("ts")
        ttl_ms = envelope.get("ttlMs")
        for name, number in (("ts", ts), ("ttlMs", ttl_ms)):
            if isinstance(number, bool) or not isinstance(number, (int, float)):
                raise CacheCorruptionError(key, f"{name} is not a number")
        if "data" not in envelope:
            raise CacheCorruptionError(key, "missing data")

        age_ms = self._clock() * 1000.0 - ts
        if age_ms >= get_hard_expiry_ms(int(ttl_ms), self._hard_expiry_multiplier):
            return None

        return CacheEntry(value=envelope["data"], fetched_at=ts / 1000.0, ttl_ms=int(ttl_ms))

    def _persist(self, key: str, entry: CacheEntry) -> None:
        """Write a snapshot to storage. Failures never affect the in-memory entry."""
        if self._storage is None:
            return
        envelope = {
            "v": self._schema_version,
            "ts": int(entry.fetched_at * 1000),
            "ttlMs": entry.ttl_ms,
            "data": entry.value,
        }
        try:
            payload = json.dumps(envelope)
        except (TypeError, ValueError) as e:
            logger.warning(f"Cannot persist {key}, payload not serializable: {e}")
            return
        try:
            self._storage.set(self.storage_key(key), payload)
        except Exception as e:
            logger.warning(f"Failed to persist cache for {key}: {e}")

    def _remove_persisted(self, storage_key: str) -> None:
        if self._storage is None:
            return
        try:
            self._storage.remove(storage_key)
        except Exception as e:
            logger.warning(f"Failed to remove persisted cache {storage_key}: {e}")

    # =========================================================================
    # Invalidation
    # =========================================================================

    def invalidate(self, key: str) -> bool:
        """
        Invalidate a cache entry in memory and in storage.

        Any in-flight refresh for the key is cancelled and its result will
        not be stored. The next read fetches.

        Returns:
            True if an in-memory entry was removed
        """
        self._coordinator.cancel(key)
        self._refreshing.pop(key, None)
        self._errors.pop(key, None)
        existed = self._cache.pop(key, None) is not None
        self._hydrated.add(key)
        self._remove_persisted(self.storage_key(key))
        logger.info(f"Invalidated cache: {key}")
        return existed

    def invalidate_pattern(self, pattern: str) -> int:
        """
        Invalidate all loaded cache entries whose key contains pattern.

        Returns:
            Number of entries invalidated
        """
        to_delete = [k for k in self._cache if pattern in k]
        for key in to_delete:
            self.invalidate(key)
        if to_delete:
            logger.info(f"Invalidated {len(to_delete)} entries matching '{pattern}'")
        return len(to_delete)

    def clear(self) -> int:
        """
        Invalidate every loaded cache entry.

        Returns:
            Number of entries cleared
        """
        keys = list(self._cache.keys())
        for key in keys:
            self.invalidate(key)
        logger.info(f"Cleared {len(keys)} cache entries")
        return len(keys)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
        total_requests = total_hits + self._stats["misses"]
        hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

        return {
            "entries": len(self._cache),
            **self._stats,
            "hit_rate_percent": round(hit_rate, 1),
            "coordinator": self._coordinator.get_stats(),
            "revalidating_count": len(self._refreshing),
        }
