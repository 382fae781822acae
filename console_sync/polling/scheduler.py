"""
Adaptive polling of mutable backend state.

Each handle runs one loop: poll, derive the next delay from the result it
just got, wait, repeat. The cadence therefore follows what the backend is
doing right now instead of lagging one cycle behind.
"""
import asyncio
import itertools
import logging
from typing import Any, Dict, Hashable, List, Optional

from console_sync.cache.coalescer import RequestCoordinator
from console_sync.cache.manager import CacheStore
from console_sync.errors import RequestCancelledError
from .models import (
    ErrorCallback,
    IntervalPolicy,
    PollHandle,
    Poller,
    PollState,
    ResultCallback,
)
from .policies import FALLBACK_DELAY_MS

logger = logging.getLogger("polling.scheduler")


class PollingScheduler:
    """
    Runs poll loops and tears them down cleanly.

    - At most one live handle per owner: starting again for the same owner
      stops the previous handle first
    - Polls go through the RequestCoordinator under the handle's key, so a
      poll and a cache refresh of the same key share one request
    - When built with a CacheStore, results of handles started with ttl_ms
      are written to the cache
    - stop() is synchronous: once it returns, no further poll starts and a
      poll that was in flight is never applied; the request itself is
      cancelled when no other handle or refresh shares it
    """

    def __init__(
        self,
        coordinator: Optional[RequestCoordinator] = None,
        cache: Optional[CacheStore] = None,
    ):
        if coordinator is None:
            coordinator = cache.coordinator if cache is not None else RequestCoordinator()
        self._coordinator = coordinator
        self._cache = cache
        self._handles: Dict[int, PollHandle] = {}
        self._owners: Dict[Hashable, PollHandle] = {}
        self._ids = itertools.count(1)

    def start(
        self,
        key: str,
        interval_policy: IntervalPolicy,
        poller: Poller,
        owner: Optional[Hashable] = None,
        ttl_ms: Optional[int] = None,
        on_result: Optional[ResultCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> PollHandle:
        """
        Start polling immediately.

        Args:
            key: Query key of the polled data
            interval_policy: Maps the last successful payload to a delay in ms
            poller: Zero-argument coroutine function performing one poll
            owner: Subscribing component; one live handle per owner
            ttl_ms: If set (and a cache is attached), results are cached
            on_result: Called with every applied result
            on_error: Called with every poll failure

        Must be called with a running event loop.
        """
        if owner is not None and owner in self._owners:
            logger.debug(f"Owner {owner!r} already polling, replacing its handle")
            self.stop(self._owners[owner])

        handle = PollHandle(
            id=next(self._ids),
            key=key,
            interval_policy=interval_policy,
            poller=poller,
            owner=owner,
            ttl_ms=ttl_ms,
            on_result=on_result,
            on_error=on_error,
        )
        loop = asyncio.get_running_loop()
        handle._task = loop.create_task(self._run(handle), name=f"poll:{key}#{handle.id}")
        self._handles[handle.id] = handle
        if owner is not None:
            self._owners[owner] = handle
        logger.info(f"Started polling {key} (handle {handle.id})")
        return handle

    def stop(self, handle: PollHandle) -> None:
        """
        Stop a handle: cancel its timer and leave any poll it has in flight.

        The shared request is cancelled through the coordinator once no
        other handle or cache refresh is waiting on it; its result is never
        applied for this handle either way. Safe to call more than once.
        """
        if not handle.active:
            return
        handle.transition(PollState.STOPPED)
        if handle._task is not None:
            handle._task.cancel()
        self._handles.pop(handle.id, None)
        if handle.owner is not None and self._owners.get(handle.owner) is handle:
            del self._owners[handle.owner]
        logger.info(f"Stopped polling {handle.key} (handle {handle.id})")

    def stop_owner(self, owner: Hashable) -> bool:
        """Stop the handle belonging to owner. Returns False if it had none."""
        handle = self._owners.get(owner)
        if handle is None:
            return False
        self.stop(handle)
        return True

    def stop_all(self) -> int:
        """Stop every live handle. Returns the number stopped."""
        handles = list(self._handles.values())
        for handle in handles:
            self.stop(handle)
        return len(handles)

    def trigger(self, handle: PollHandle) -> bool:
        """
        Poll now instead of waiting for the timer.

        A handle waiting on its timer is woken at once. A handle that is
        polling runs one more poll as soon as the current one finishes,
        since that result may predate whatever prompted the trigger.
        Triggers arriving during one poll collapse into a single extra poll.
        """
        if handle.state not in (PollState.SCHEDULED, PollState.POLLING):
            return False
        handle._wake.set()
        return True

    def get_handle(self, owner: Hashable) -> Optional[PollHandle]:
        return self._owners.get(owner)

    @property
    def handles(self) -> List[PollHandle]:
        return list(self._handles.values())

    # =========================================================================
    # Poll loop
    # =========================================================================

    async def _run(self, handle: PollHandle) -> None:
        while handle.active:
            handle.transition(PollState.POLLING)
            handle._wake.clear()
            await self._poll_once(handle)
            if not handle.active:
                return

            delay_ms = self._next_delay(handle)
            handle.next_delay_ms = delay_ms
            handle.transition(PollState.SCHEDULED)
            logger.debug(f"Next poll of {handle.key} in {delay_ms}ms")
            await self._wait(handle, delay_ms)

    async def _poll_once(self, handle: PollHandle) -> None:
        generation = self._coordinator.generation(handle.key)
        try:
            result = await self._coordinator.run(handle.key, handle.poller)
        except RequestCancelledError:
            logger.debug(f"Poll of {handle.key} was cancelled elsewhere")
            return
        except Exception as e:
            if not handle.active:
                return
            handle.poll_count += 1
            handle.last_error = e
            logger.warning(f"Poll failed for {handle.key}: {e}")
            self._emit(handle, handle.on_error, e)
            return

        if not handle.active or not self._coordinator.is_current(handle.key, generation):
            logger.debug(f"Discarding stale poll result for {handle.key}")
            return

        handle.poll_count += 1
        handle.last_result = result
        handle.last_error = None
        if self._cache is not None and handle.ttl_ms is not None:
            self._cache.put(handle.key, result, handle.ttl_ms)
        self._emit(handle, handle.on_result, result)

    def _next_delay(self, handle: PollHandle) -> int:
        try:
            delay_ms = int(handle.interval_policy(handle.last_result))
        except Exception:
            logger.exception(f"Interval policy failed for {handle.key}")
            delay_ms = handle.next_delay_ms if handle.next_delay_ms is not None else FALLBACK_DELAY_MS
        return max(0, delay_ms)

    async def _wait(self, handle: PollHandle, delay_ms: int) -> None:
        try:
            await asyncio.wait_for(handle._wake.wait(), timeout=delay_ms / 1000.0)
            logger.debug(f"Poll of {handle.key} triggered early")
        except asyncio.TimeoutError:
            pass

    def _emit(self, handle: PollHandle, callback: Optional[Any], value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception:
            logger.exception(f"Poll callback failed for {handle.key}")
