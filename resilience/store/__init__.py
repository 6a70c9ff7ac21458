"""Shared key-value store used by the cache, checkpoints and metrics.

Public API:
    KeyValueStore   - Abstract async store interface
    RedisStore      - Redis-backed production store
    InMemoryStore   - Dict-backed store for tests and local dev
    create_store    - Factory: selects the implementation from settings
"""

from resilience.store.backend import (
    InMemoryStore,
    KeyValueStore,
    RedisStore,
    create_store,
)

__all__ = [
    "KeyValueStore",
    "RedisStore",
    "InMemoryStore",
    "create_store",
]
