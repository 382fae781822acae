"""
Poll handle and its state machine.

A handle moves IDLE -> POLLING -> SCHEDULED -> POLLING -> ... and ends in
STOPPED, which is terminal. Transitions are driven by poll completion and
timer expiry, never by nested timer callbacks.
"""
import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, FrozenSet, Hashable, Optional, Tuple

from console_sync.errors import InvalidStateTransitionError

IntervalPolicy = Callable[[Any], int]
Poller = Callable[[], Awaitable[Any]]
ResultCallback = Callable[[Any], None]
ErrorCallback = Callable[[BaseException], None]


class PollState(Enum):
    """Lifecycle states of a poll handle."""
    IDLE = "idle"
    SCHEDULED = "scheduled"
    POLLING = "polling"
    STOPPED = "stopped"


_POLL_TRANSITIONS: FrozenSet[Tuple[PollState, PollState]] = frozenset({
    (PollState.IDLE, PollState.POLLING),
    (PollState.POLLING, PollState.SCHEDULED),
    (PollState.SCHEDULED, PollState.POLLING),
    # Stopping is allowed from every live state
    (PollState.IDLE, PollState.STOPPED),
    (PollState.POLLING, PollState.STOPPED),
    (PollState.SCHEDULED, PollState.STOPPED),
})


def can_transition(current: PollState, target: PollState) -> bool:
    return (current, target) in _POLL_TRANSITIONS


@dataclass(eq=False)
class PollHandle:
    """
    Ties one subscriber's lifecycle to a repeating poll.

    last_result is the most recent successful payload; it is what the
    interval policy sees when choosing the next delay.
    """
    id: int
    key: str
    interval_policy: IntervalPolicy
    poller: Poller
    owner: Optional[Hashable] = None
    ttl_ms: Optional[int] = None
    on_result: Optional[ResultCallback] = None
    on_error: Optional[ErrorCallback] = None

    state: PollState = PollState.IDLE
    last_result: Any = None
    last_error: Optional[BaseException] = None
    next_delay_ms: Optional[int] = None
    poll_count: int = 0

    _task: Optional["asyncio.Task[None]"] = field(default=None, repr=False)
    _wake: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def active(self) -> bool:
        return self.state is not PollState.STOPPED

    def transition(self, target: PollState) -> None:
        """Move to a new state, rejecting illegal changes."""
        if not can_transition(self.state, target):
            raise InvalidStateTransitionError("poll", self.state.value, target.value)
        self.state = target
