"""
TTL configuration and query-key-to-feature mapping.
"""
from typing import Dict


# TTL configuration by console feature (in milliseconds)
TTL_CONFIG: Dict[str, int] = {
    "jobs": 3_000,          # Job status changes quickly while work runs
    "logs": 10_000,         # Activity log auto-refresh cadence
    "dashboard": 30_000,    # Stats + health + recent activity
    "stats": 30_000,
    "health": 30_000,
    "items": 60_000,        # News items list pages
    "config": 300_000,      # Pipeline configuration rarely changes
}

DEFAULT_TTL_MS = 30_000

# Persisted snapshots older than ttl * multiplier are discarded on hydrate
DEFAULT_HARD_EXPIRY_MULTIPLIER = 5


def get_feature_for_key(key: str) -> str:
    """
    Extract the feature prefix of a query key.

    "jobs:{...}" -> "jobs", "dashboard:snapshot" -> "dashboard", "health" -> "health"
    """
    return key.split(":", 1)[0]


def get_ttl_for_key(key: str) -> int:
    """
    Get the TTL in milliseconds for a query key.

    Args:
        key: Query key, e.g. "logs:{\"level\": \"error\"}"

    Returns:
        TTL in milliseconds, falling back to DEFAULT_TTL_MS
    """
    return TTL_CONFIG.get(get_feature_for_key(key), DEFAULT_TTL_MS)


def get_hard_expiry_ms(ttl_ms: int, multiplier: int = DEFAULT_HARD_EXPIRY_MULTIPLIER) -> int:
    """Hard ceiling on the age of a persisted snapshot that may be shown."""
    return ttl_ms * max(1, multiplier)
