"""
Interval policies: map the last observed payload to the next poll delay.
"""
from typing import Any, Mapping

from console_sync.models import has_running_jobs
from .models import IntervalPolicy

# Used when a policy itself fails
FALLBACK_DELAY_MS = 15_000


def fixed_interval(delay_ms: int) -> IntervalPolicy:
    """Always wait the same amount of time, whatever the payload."""
    def policy(_payload: Any) -> int:
        return delay_ms
    return policy


def _jobs_in(payload: Any) -> Any:
    # The jobs endpoint wraps records as {"jobs": {id: record}, ...}
    if isinstance(payload, Mapping) and "jobs" in payload:
        return payload.get("jobs")
    return payload


def job_interval_policy(fast_ms: int = 3_000, idle_ms: int = 15_000) -> IntervalPolicy:
    """
    Poll fast while any job is running, slowly while everything is idle.

    Accepts the raw jobs response, an id -> record mapping, or a list of
    records. No payload yet (first poll failed) counts as idle.
    """
    def policy(payload: Any) -> int:
        return fast_ms if has_running_jobs(_jobs_in(payload)) else idle_ms
    return policy
