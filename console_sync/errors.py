"""
Error types for the synchronization layer.

All errors inherit from SyncError for easy catching.
"""
from typing import Optional


class SyncError(Exception):
    """Base exception for all synchronization failures."""
    pass


class RequestCancelledError(SyncError):
    """Raised to callers that joined a request which was later cancelled."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Request cancelled: {key}")


class ApiError(SyncError):
    """Raised when the backend cannot be reached or answers with an error."""

    def __init__(self, endpoint: str, status_code: Optional[int], message: str):
        self.endpoint = endpoint
        self.status_code = status_code
        self.message = message
        if status_code is not None:
            super().__init__(f"{endpoint} failed with HTTP {status_code}: {message}")
        else:
            super().__init__(f"{endpoint} failed: {message}")


class RateLimitError(ApiError):
    """Raised when the backend answers 429; the client retries these."""
    pass


class CacheCorruptionError(SyncError):
    """Raised while decoding a persisted cache envelope that cannot be trusted."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Corrupt cache entry {key}: {reason}")


class InvalidStateTransitionError(SyncError):
    """Raised when a poll handle is driven through an illegal state change."""

    def __init__(self, entity_type: str, current_state: str, target_state: str):
        self.entity_type = entity_type
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(
            f"Invalid {entity_type} state transition: "
            f"{current_state} -> {target_state}"
        )
