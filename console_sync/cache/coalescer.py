"""
Request coordination to prevent duplicate in-flight backend calls.

When several consumers ask for the same query key at once, only one
operation runs and every caller shares its outcome. Cancelling a key bumps
its generation so late results from the cancelled request can be told
apart from current ones.
"""
import asyncio
import time
import logging
from typing import Any, Awaitable, Callable, Dict
from dataclasses import dataclass, field

from console_sync.errors import RequestCancelledError

logger = logging.getLogger("sync.coordinator")


@dataclass
class InFlightRequest:
    """Tracks an in-progress backend request."""
    key: str
    task: "asyncio.Future[Any]"
    generation: int
    started_at: float = field(default_factory=time.time)
    waiter_count: int = 0
    callers: int = 0
    cancelled: bool = False


class RequestCoordinator:
    """
    Ensures concurrent requests for the same query key share one operation.

    Pattern:
    - First caller for a key starts the operation as a task
    - Subsequent callers for the same key await that task (shielded, so one
      caller going away does not cancel it for the others)
    - When the task settles its entry is removed; a failure is raised to
      every joined caller but does not affect the next run for the key
    - cancel(key) drops the entry at once and bumps the key's generation
    - When the last caller goes away the operation is cancelled, since
      nobody is left to receive its result

    Usage:
        coordinator = RequestCoordinator()
        jobs = await coordinator.run("jobs:all", lambda: api.fetch_jobs())
    """

    def __init__(self):
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._generations: Dict[str, int] = {}

    async def run(self, key: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Either join an existing in-flight request or start a new one.

        Args:
            key: Query key identifying the logical request
            operation: Zero-argument callable returning an awaitable

        Returns:
            The operation's result (shared among all concurrent callers)

        Raises:
            RequestCancelledError: If the joined request was cancelled
            Exception: Any error from the operation is propagated
        """
        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            in_flight.waiter_count += 1
            logger.debug(
                f"Coalescing request for {key} "
                f"(waiters: {in_flight.waiter_count})"
            )
        else:
            task = asyncio.ensure_future(operation())
            in_flight = InFlightRequest(
                key=key,
                task=task,
                generation=self.generation(key),
            )
            self._in_flight[key] = in_flight
            task.add_done_callback(lambda _t, request=in_flight: self._settle(request))
            logger.debug(f"Initiating request for {key} (generation {in_flight.generation})")

        in_flight.callers += 1
        try:
            return await asyncio.shield(in_flight.task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if in_flight.cancelled and not (current is not None and current.cancelling()):
                raise RequestCancelledError(key) from None
            raise
        finally:
            in_flight.callers -= 1
            if in_flight.callers == 0 and not in_flight.task.done():
                self._abandon(in_flight)

    def _abandon(self, request: InFlightRequest) -> None:
        """Cancel a request every caller has walked away from."""
        if request.cancelled:
            return
        if self._in_flight.get(request.key) is request:
            del self._in_flight[request.key]
        request.cancelled = True
        request.task.cancel()
        logger.debug(f"Abandoned request for {request.key} (no callers left)")

    def _settle(self, request: InFlightRequest) -> None:
        """Remove a finished request, unless it was already replaced."""
        if self._in_flight.get(request.key) is request:
            del self._in_flight[request.key]
        if request.task.cancelled():
            return
        error = request.task.exception()
        if error is not None and not request.cancelled:
            logger.warning(f"Request failed for {request.key}: {error}")

    def generation(self, key: str) -> int:
        """Current generation of a key; bumped by every cancel()."""
        return self._generations.get(key, 0)

    def is_current(self, key: str, generation: int) -> bool:
        """True if nothing has cancelled the key since generation was read."""
        return self.generation(key) == generation

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    def cancel(self, key: str) -> bool:
        """
        Cancel the in-flight request for a key.

        Late results of the cancelled request are never delivered as
        current: the key's generation moves on and the next run() starts a
        fresh operation.

        Returns:
            True if a request was in flight
        """
        self._generations[key] = self.generation(key) + 1
        request = self._in_flight.pop(key, None)
        if request is None:
            return False
        request.cancelled = True
        request.task.cancel()
        logger.debug(f"Cancelled request for {key}")
        return True

    def cancel_all(self) -> int:
        """Cancel every in-flight request. Returns the number cancelled."""
        keys = list(self._in_flight.keys())
        for key in keys:
            self.cancel(key)
        return len(keys)

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coordinator statistics."""
        return {
            "active_requests": len(self._in_flight),
            "active_keys": list(self._in_flight.keys()),
            "waiters": {
                key: request.waiter_count
                for key, request in self._in_flight.items()
            },
        }
