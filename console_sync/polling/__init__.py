"""
Adaptive-interval polling with explicit handle lifecycles.
"""
from .models import (
    PollState,
    PollHandle,
    IntervalPolicy,
    Poller,
    can_transition,
)
from .policies import (
    FALLBACK_DELAY_MS,
    fixed_interval,
    job_interval_policy,
)
from .scheduler import PollingScheduler

__all__ = [
    # Models
    "PollState",
    "PollHandle",
    "IntervalPolicy",
    "Poller",
    "can_transition",
    # Policies
    "FALLBACK_DELAY_MS",
    "fixed_interval",
    "job_interval_policy",
    # Scheduler
    "PollingScheduler",
]
