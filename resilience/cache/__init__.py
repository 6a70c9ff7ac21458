"""Content-addressed response cache.

Public API:
    CacheCategory   - Entry categories, each with an independent TTL
    CacheEntry      - Stored envelope {payload, category, cached_at}
    ResponseCache   - Fingerprint-keyed cache over a KeyValueStore
    fingerprint     - Deterministic hash of a normalised request
"""

from resilience.cache.response_cache import (
    CacheCategory,
    CacheEntry,
    ResponseCache,
    fingerprint,
)

__all__ = [
    "CacheCategory",
    "CacheEntry",
    "ResponseCache",
    "fingerprint",
]
