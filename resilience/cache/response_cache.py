"""Response cache - content-addressed memoization of prior results.

Keys are SHA-256 fingerprints of the normalised request, so two logically
identical requests always share an entry no matter which component sends
them or in what order. Normalisation lower-cases, trims and collapses
whitespace in every string, which keeps casing and spacing variants from
creating distinct entries.

TTL design:
- provider responses: 24h
- fetched resource content: 6h
- report sections: 2h
- generic: 1h
All configurable through Settings. The store TTL is set to the category TTL,
and the envelope timestamp is also checked on read so an entry is never
served past its TTL even if the store kept it longer. Stale entries are
deleted when read.

Caching is strictly best-effort: every store error degrades to a miss (reads)
or a no-op (writes) and is logged, never raised.
"""

from __future__ import annotations

import hashlib
import json
import re
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog
from pydantic import BaseModel

from resilience.config import Settings
from resilience.exceptions import StoreError
from resilience.store.backend import KeyValueStore

log = structlog.get_logger(__name__)

# Namespace prefix to avoid collisions with checkpoints and metrics
_CACHE_NS = "cache"

_WHITESPACE = re.compile(r"\s+")


class CacheCategory(StrEnum):
    PROVIDER_RESPONSE = "provider_response"
    RESOURCE_CONTENT = "resource_content"
    REPORT_SECTION = "report_section"
    GENERIC = "generic"


DEFAULT_TTLS: dict[CacheCategory, int] = {
    CacheCategory.PROVIDER_RESPONSE: 86400,
    CacheCategory.RESOURCE_CONTENT: 21600,
    CacheCategory.REPORT_SECTION: 7200,
    CacheCategory.GENERIC: 3600,
}


@dataclass
class CacheEntry:
    """Envelope stored under a cache key."""

    payload: Any
    category: CacheCategory
    cached_at: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "payload": self.payload,
            "category": str(self.category),
            "cached_at": self.cached_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            payload=data["payload"],
            category=CacheCategory(data["category"]),
            cached_at=float(data["cached_at"]),
        )


# ---------------------------------------------------------------------------
# Fingerprinting
# ---------------------------------------------------------------------------


def _normalise(value: Any) -> Any:
    if isinstance(value, BaseModel):
        value = value.model_dump(exclude_none=True)
    if isinstance(value, str):
        return _WHITESPACE.sub(" ", value).strip().lower()
    if isinstance(value, Mapping):
        return {str(k): _normalise(v) for k, v in value.items() if v is not None}
    if isinstance(value, Sequence):
        return [_normalise(item) for item in value]
    return value


def fingerprint(
    messages: Sequence[Any] | str,
    model: str | None = None,
    tools: Sequence[dict[str, Any]] | None = None,
) -> str:
    """Return the SHA-256 hex digest of the normalised request.

    Args:
        messages: Message models, role/content dicts, or a plain string
        model: Target model identifier (part of the key)
        tools: Tool definitions offered to the model, hashed verbatim

    Returns:
        64-character hex digest
    """
    request: dict[str, Any] = {"messages": _normalise(messages), "model": _normalise(model or "")}
    if tools:
        request["tools"] = list(tools)
    canonical = json.dumps(
        request,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode()).hexdigest()


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class ResponseCache:
    """Fingerprint-keyed cache with per-category TTLs.

    Holds no mutable state beyond the injected store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        ttls: Mapping[CacheCategory, int] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self._clock = clock

    @classmethod
    def from_settings(cls, store: KeyValueStore, settings: Settings) -> ResponseCache:
        return cls(
            store,
            ttls={
                CacheCategory.PROVIDER_RESPONSE: settings.cache_ttl_provider_response,
                CacheCategory.RESOURCE_CONTENT: settings.cache_ttl_resource_content,
                CacheCategory.REPORT_SECTION: settings.cache_ttl_report_section,
                CacheCategory.GENERIC: settings.cache_ttl_generic,
            },
        )

    def ttl_for(self, category: CacheCategory) -> int:
        return self._ttls[category]

    @staticmethod
    def key(fp: str, category: CacheCategory) -> str:
        return f"{_CACHE_NS}:{category}:{fp}"

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    async def get(self, fp: str, category: CacheCategory = CacheCategory.GENERIC) -> Any | None:
        """Return the cached payload, or None on miss, expiry or store error."""
        key = self.key(fp, category)
        try:
            data = await self._store.get(key)
        except StoreError as exc:
            log.warning("cache.get_failed", key=key, error=str(exc))
            return None

        if data is None:
            log.debug("cache.miss", category=category)
            return None

        try:
            entry = CacheEntry.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            log.warning("cache.entry_corrupt", key=key, error=str(exc))
            await self._delete_quietly(key)
            return None

        age = self._clock() - entry.cached_at
        if age >= self.ttl_for(category):
            log.debug("cache.expired", category=category, age_seconds=round(age, 1))
            await self._delete_quietly(key)
            return None

        log.debug("cache.hit", category=category, age_seconds=round(age, 1))
        return entry.payload

    async def set(
        self,
        fp: str,
        value: Any,
        category: CacheCategory = CacheCategory.GENERIC,
    ) -> None:
        """Store a payload. Errors are logged and swallowed."""
        key = self.key(fp, category)
        entry = CacheEntry(payload=value, category=category, cached_at=self._clock())
        try:
            await self._store.set(key, entry.to_dict(), self.ttl_for(category))
        except StoreError as exc:
            log.warning("cache.set_failed", key=key, error=str(exc))
            return
        log.debug("cache.stored", category=category, ttl=self.ttl_for(category))

    async def _delete_quietly(self, key: str) -> None:
        try:
            await self._store.delete(key)
        except StoreError as exc:
            log.warning("cache.delete_failed", key=key, error=str(exc))

    # ------------------------------------------------------------------
    # Category helpers
    # ------------------------------------------------------------------

    async def get_response(
        self,
        messages: Sequence[Any],
        model: str | None,
        tools: Sequence[dict[str, Any]] | None = None,
    ) -> Any | None:
        key = fingerprint(messages, model, tools)
        return await self.get(key, CacheCategory.PROVIDER_RESPONSE)

    async def set_response(
        self,
        messages: Sequence[Any],
        model: str | None,
        value: Any,
        tools: Sequence[dict[str, Any]] | None = None,
    ) -> None:
        key = fingerprint(messages, model, tools)
        await self.set(key, value, CacheCategory.PROVIDER_RESPONSE)

    async def get_resource(self, url: str) -> Any | None:
        return await self.get(fingerprint(url), CacheCategory.RESOURCE_CONTENT)

    async def set_resource(self, url: str, content: Any) -> None:
        await self.set(fingerprint(url), content, CacheCategory.RESOURCE_CONTENT)

    async def get_report_section(self, question: str, section: str) -> Any | None:
        return await self.get(fingerprint([question, section]), CacheCategory.REPORT_SECTION)

    async def set_report_section(self, question: str, section: str, content: Any) -> None:
        await self.set(fingerprint([question, section]), content, CacheCategory.REPORT_SECTION)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def stats(self) -> dict[str, Any]:
        """Return key counts overall and per category."""
        try:
            keys = await self._store.keys(f"{_CACHE_NS}:*")
        except StoreError as exc:
            log.warning("cache.stats_failed", error=str(exc))
            return {"total_keys": 0, "keys_by_category": {}, "error": str(exc)}

        by_category: dict[str, int] = {str(c): 0 for c in CacheCategory}
        for key in keys:
            category = key.split(":", 2)[1]
            by_category[category] = by_category.get(category, 0) + 1
        return {"total_keys": len(keys), "keys_by_category": by_category}

    async def clear(self, category: CacheCategory | None = None) -> int:
        """Delete every entry, or every entry of one category. Returns count."""
        pattern = f"{_CACHE_NS}:{category}:*" if category else f"{_CACHE_NS}:*"
        try:
            keys = await self._store.keys(pattern)
            deleted = await self._store.delete(*keys)
        except StoreError as exc:
            log.warning("cache.clear_failed", pattern=pattern, error=str(exc))
            return 0
        log.info("cache.cleared", category=category or "all", deleted=deleted)
        return deleted
