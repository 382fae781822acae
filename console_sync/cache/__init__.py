"""
Caching module with request coordination, persisted snapshots and stale-while-revalidate.
"""
from .core import CacheEntry, CacheEvent, CacheRead, CacheSource
from .ttl_policies import (
    TTL_CONFIG,
    DEFAULT_TTL_MS,
    get_ttl_for_key,
    get_feature_for_key,
    get_hard_expiry_ms,
)
from .coalescer import RequestCoordinator
from .storage import Storage, MemoryStorage, SQLiteStorage
from .manager import CacheStore

__all__ = [
    # Core types
    "CacheEntry",
    "CacheEvent",
    "CacheRead",
    "CacheSource",
    # TTL policies
    "TTL_CONFIG",
    "DEFAULT_TTL_MS",
    "get_ttl_for_key",
    "get_feature_for_key",
    "get_hard_expiry_ms",
    # Coordination
    "RequestCoordinator",
    # Storage
    "Storage",
    "MemoryStorage",
    "SQLiteStorage",
    # Store
    "CacheStore",
]
