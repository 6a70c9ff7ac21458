"""Checkpoint & recovery manager.

The orchestrator writes a checkpoint before every upstream call, so the
latest checkpoint is never older than "just before the step that failed".

Key layout:
    checkpoint:{thread_id}:{timestamp_ms}  -> Checkpoint JSON (TTL 1h)
    checkpoint_latest:{thread_id}          -> key of the newest checkpoint
    checkpoint_index:{thread_id}           -> checkpoint keys, newest first
    recovery_logs                          -> list of RecoveryRecord, newest first

Writes for one thread are serialized by a per-thread asyncio.Lock and carry
strictly increasing timestamps, so "most recent" is well defined even when
two writes land in the same millisecond. At most ``max_checkpoints`` are kept
per thread; older ones are deleted after each write. Retention and history go
through the per-thread index, never a key pattern, so thread ids may contain
any character.

Checkpoint writes are best-effort. Store failures are logged and swallowed.
"""

from __future__ import annotations

import asyncio
import time
import weakref
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from resilience.config import Settings
from resilience.exceptions import StoreError
from resilience.models import ConversationState, Message
from resilience.store.backend import KeyValueStore

log = structlog.get_logger(__name__)

CHECKPOINT_VERSION = "1.0"
DEFAULT_MAX_CHECKPOINTS = 10

_CHECKPOINT_NS = "checkpoint"
_LATEST_NS = "checkpoint_latest"
_INDEX_NS = "checkpoint_index"
_RECOVERY_LOG_KEY = "recovery_logs"


class CheckpointMetadata(BaseModel):
    version: str = CHECKPOINT_VERSION
    model_used: str = "unknown"
    total_tokens: int = 0


class Checkpoint(BaseModel):
    """A stored snapshot of one conversation."""

    thread_id: str
    timestamp: int  # epoch milliseconds, strictly increasing per thread
    state: ConversationState
    context: list[Message] = Field(default_factory=list)
    metadata: CheckpointMetadata = Field(default_factory=CheckpointMetadata)


class RecoveryRecord(BaseModel):
    thread_id: str
    error: str
    checkpoint_timestamp: int
    recovery_timestamp: int


def estimate_state_tokens(state: ConversationState, chars_per_token: int = 4) -> int:
    """Rough token estimate over everything a resumed turn would resend."""
    parts = [state.research_question, state.report]
    parts.extend(resource.content for resource in state.resources)
    parts.extend(message.content for message in state.messages)
    text = " ".join(parts)
    return -(-len(text) // chars_per_token)


class CheckpointManager:
    """Saves conversation snapshots and restores the latest one after a failure."""

    def __init__(
        self,
        store: KeyValueStore,
        *,
        max_checkpoints: int = DEFAULT_MAX_CHECKPOINTS,
        ttl_seconds: int = 3600,
        message_window: int = 10,
        recovery_log_limit: int = 100,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_checkpoints < 1:
            raise ValueError(f"max_checkpoints must be >= 1, got {max_checkpoints}")
        self._store = store
        self._max_checkpoints = max_checkpoints
        self._ttl = ttl_seconds
        self._window = message_window
        self._recovery_log_limit = recovery_log_limit
        self._clock = clock
        # Entries disappear once no writer holds the lock
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @classmethod
    def from_settings(cls, store: KeyValueStore, settings: Settings) -> CheckpointManager:
        return cls(
            store,
            max_checkpoints=settings.max_checkpoints,
            ttl_seconds=settings.checkpoint_ttl_seconds,
            message_window=settings.checkpoint_message_window,
            recovery_log_limit=settings.recovery_log_limit,
        )

    @staticmethod
    def _key(thread_id: str, timestamp: int) -> str:
        return f"{_CHECKPOINT_NS}:{thread_id}:{timestamp}"

    @staticmethod
    def _latest_key(thread_id: str) -> str:
        return f"{_LATEST_NS}:{thread_id}"

    @staticmethod
    def _index_key(thread_id: str) -> str:
        return f"{_INDEX_NS}:{thread_id}"

    @staticmethod
    def _timestamp_of(key: str) -> int:
        return int(key.rsplit(":", 1)[1])

    def _lock_for(self, thread_id: str) -> asyncio.Lock:
        lock = self._locks.get(thread_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[thread_id] = lock
        return lock

    async def _next_timestamp(self, thread_id: str) -> int:
        now_ms = int(self._clock() * 1000)
        pointer = await self._store.get(self._latest_key(thread_id))
        if not pointer:
            return now_ms
        return max(now_ms, self._timestamp_of(pointer) + 1)

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #

    async def checkpoint(self, thread_id: str, state: ConversationState) -> Checkpoint | None:
        """Save a snapshot of state for thread_id.

        Returns:
            The stored Checkpoint, or None if the store rejected the write
        """
        async with self._lock_for(thread_id):
            try:
                snapshot = Checkpoint(
                    thread_id=thread_id,
                    timestamp=await self._next_timestamp(thread_id),
                    state=state.model_copy(deep=True, update={"thread_id": thread_id}),
                    context=[m.model_copy() for m in state.messages[-self._window :]],
                    metadata=CheckpointMetadata(
                        model_used=state.model or "unknown",
                        total_tokens=estimate_state_tokens(state),
                    ),
                )
                key = self._key(thread_id, snapshot.timestamp)
                await self._store.set(key, snapshot.model_dump(mode="json"), self._ttl)
                await self._store.set(self._latest_key(thread_id), key, self._ttl)
                await self._index_and_evict(thread_id, key)
            except StoreError as exc:
                log.warning("checkpoint.save_failed", thread_id=thread_id, error=str(exc))
                return None

        log.debug(
            "checkpoint.saved",
            thread_id=thread_id,
            timestamp=snapshot.timestamp,
            message_count=len(state.messages),
        )
        return snapshot

    async def _index_and_evict(self, thread_id: str, key: str) -> None:
        index_key = self._index_key(thread_id)
        await self._store.lpush(index_key, key)
        await self._store.expire(index_key, self._ttl)
        stale = await self._store.lrange(index_key, self._max_checkpoints, -1)
        if not stale:
            return
        await self._store.ltrim(index_key, 0, self._max_checkpoints - 1)
        await self._store.delete(*stale)
        log.debug("checkpoint.evicted", thread_id=thread_id, evicted=len(stale))

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    async def latest(self, thread_id: str) -> Checkpoint | None:
        """Return the most recent checkpoint for thread_id.

        Raises:
            StoreError: If the store cannot be reached
        """
        pointer = await self._store.get(self._latest_key(thread_id))
        if not pointer:
            return None
        data = await self._store.get(pointer)
        if data is None:
            return None
        try:
            return Checkpoint.model_validate(data)
        except ValidationError as exc:
            log.warning("checkpoint.corrupt", thread_id=thread_id, key=pointer, error=str(exc))
            return None

    async def history(self, thread_id: str) -> list[Checkpoint]:
        """Return every retained checkpoint for thread_id, newest first."""
        try:
            keys = await self._store.lrange(self._index_key(thread_id), 0, -1)
            checkpoints: list[Checkpoint] = []
            for key in keys:
                data = await self._store.get(key)
                if data is not None:
                    checkpoints.append(Checkpoint.model_validate(data))
        except (StoreError, ValidationError) as exc:
            log.warning("checkpoint.history_failed", thread_id=thread_id, error=str(exc))
            return []
        return checkpoints

    # ------------------------------------------------------------------ #
    # Recovery
    # ------------------------------------------------------------------ #

    async def recover(
        self,
        thread_id: str,
        error: BaseException | str,
    ) -> ConversationState | None:
        """Restore the latest checkpoint with a note describing the failure.

        The failed step is not replayed. The caller decides whether to retry.

        Returns:
            Recovered state, or None if there is no checkpoint or the store
            is unreachable
        """
        reason = str(error) or type(error).__name__
        try:
            checkpoint = await self.latest(thread_id)
        except StoreError as exc:
            log.error("checkpoint.recovery_failed", thread_id=thread_id, error=str(exc))
            return None

        if checkpoint is None:
            log.info("checkpoint.recovery_unavailable", thread_id=thread_id)
            return None

        note = Message(
            role="system",
            content=f"Recovered from error: {reason}. Continuing conversation...",
        )
        recovered = checkpoint.state.model_copy(
            deep=True,
            update={"messages": [*checkpoint.context, note]},
        )
        log.info(
            "checkpoint.recovered",
            thread_id=thread_id,
            checkpoint_timestamp=checkpoint.timestamp,
            error=reason,
        )
        await self._log_recovery(thread_id, reason, checkpoint.timestamp)
        return recovered

    async def _log_recovery(self, thread_id: str, reason: str, checkpoint_timestamp: int) -> None:
        record = RecoveryRecord(
            thread_id=thread_id,
            error=reason,
            checkpoint_timestamp=checkpoint_timestamp,
            recovery_timestamp=int(self._clock() * 1000),
        )
        try:
            await self._store.lpush(_RECOVERY_LOG_KEY, record.model_dump())
            await self._store.ltrim(_RECOVERY_LOG_KEY, 0, self._recovery_log_limit - 1)
        except StoreError as exc:
            log.warning("checkpoint.recovery_log_failed", error=str(exc))

    async def recovery_stats(self) -> dict[str, Any]:
        """Return the total logged recoveries and the ten most recent."""
        try:
            records = await self._store.lrange(_RECOVERY_LOG_KEY, 0, -1)
        except StoreError as exc:
            log.warning("checkpoint.recovery_stats_failed", error=str(exc))
            return {"total_recoveries": 0, "recent_recoveries": []}
        return {"total_recoveries": len(records), "recent_recoveries": records[:10]}

    @staticmethod
    def fresh_state(thread_id: str | None = None, model: str | None = None) -> ConversationState:
        return ConversationState(thread_id=thread_id, model=model)
