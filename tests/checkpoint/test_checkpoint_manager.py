"""Tests for conversation checkpointing and recovery."""

from __future__ import annotations

import asyncio

import pytest

from resilience.checkpoint.manager import CheckpointManager, estimate_state_tokens
from resilience.exceptions import StoreError
from resilience.models import ConversationState, Message, Resource
from resilience.store.backend import InMemoryStore


def _state(n_messages: int = 2, **kwargs) -> ConversationState:
    messages = [
        Message(role="user" if i % 2 == 0 else "assistant", content=f"message {i}")
        for i in range(n_messages)
    ]
    return ConversationState(messages=messages, model="gpt-4o", **kwargs)


@pytest.fixture
def manager(store, clock) -> CheckpointManager:
    return CheckpointManager(store, max_checkpoints=3, clock=clock)


class TestCheckpointWrites:
    @pytest.mark.asyncio
    async def test_checkpoint_is_retrievable_as_latest(self, manager):
        saved = await manager.checkpoint("t1", _state(research_question="Why?"))

        latest = await manager.latest("t1")

        assert saved is not None
        assert latest is not None
        assert latest.timestamp == saved.timestamp
        assert latest.state.thread_id == "t1"
        assert latest.state.research_question == "Why?"
        assert latest.metadata.model_used == "gpt-4o"

    @pytest.mark.asyncio
    async def test_context_holds_trailing_message_window(self, store, clock):
        manager = CheckpointManager(store, message_window=4, clock=clock)
        saved = await manager.checkpoint("t1", _state(n_messages=9))
        assert [m.content for m in saved.context] == [f"message {i}" for i in range(5, 9)]
        assert len(saved.state.messages) == 9

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase_within_same_millisecond(self, manager):
        first = await manager.checkpoint("t1", _state())
        second = await manager.checkpoint("t1", _state())
        assert second.timestamp > first.timestamp

    @pytest.mark.asyncio
    async def test_retention_keeps_newest_checkpoints(self, manager, store, clock):
        saved = []
        for i in range(5):
            saved.append(await manager.checkpoint("t1", _state(n_messages=i + 1)))
            clock.advance(1)

        history = await manager.history("t1")

        assert [c.timestamp for c in history] == [c.timestamp for c in reversed(saved[2:])]
        assert len(await store.keys("checkpoint:t1:*")) == 3

    @pytest.mark.asyncio
    async def test_thread_ids_sharing_a_prefix_keep_separate_histories(self, manager, clock):
        for _ in range(3):
            await manager.checkpoint("a:b", _state())
            clock.advance(1)
        await manager.checkpoint("a", _state())

        assert len(await manager.history("a:b")) == 3
        assert len(await manager.history("a")) == 1
        assert (await manager.latest("a:b")) is not None

    @pytest.mark.asyncio
    async def test_retention_with_pattern_characters_in_thread_id(self, manager, store, clock):
        for i in range(6):
            await manager.checkpoint("user[1]", _state(n_messages=i + 1))
            clock.advance(1)

        history = await manager.history("user[1]")

        assert len(history) == 3
        assert [len(c.state.messages) for c in history] == [6, 5, 4]
        assert len(await store.lrange("checkpoint_index:user[1]", 0, -1)) == 3

    @pytest.mark.asyncio
    async def test_thread_locks_released_after_write(self, manager):
        for i in range(20):
            await manager.checkpoint(f"thread-{i}", _state())
        assert len(manager._locks) == 0

    @pytest.mark.asyncio
    async def test_new_manager_continues_timestamps_from_store(self, store, clock):
        first = await CheckpointManager(store, clock=clock).checkpoint("t1", _state())

        second = await CheckpointManager(store, clock=clock).checkpoint("t1", _state())

        assert second.timestamp > first.timestamp
        assert (await CheckpointManager(store, clock=clock).latest("t1")).timestamp == (
            second.timestamp
        )

    @pytest.mark.asyncio
    async def test_threads_are_isolated(self, manager):
        await manager.checkpoint("t1", _state(research_question="one"))
        await manager.checkpoint("t2", _state(research_question="two"))
        assert (await manager.latest("t1")).state.research_question == "one"
        assert (await manager.latest("t2")).state.research_question == "two"

    @pytest.mark.asyncio
    async def test_concurrent_writes_on_one_thread_are_serialized(self, manager):
        results = await asyncio.gather(*(manager.checkpoint("t1", _state()) for _ in range(5)))
        timestamps = [r.timestamp for r in results]
        assert len(set(timestamps)) == 5
        latest = await manager.latest("t1")
        assert latest.timestamp == max(timestamps)

    @pytest.mark.asyncio
    async def test_store_failure_returns_none(self, clock):
        manager = CheckpointManager(InMemoryStore(), clock=clock)
        assert await manager.checkpoint("t1", _state()) is None

    @pytest.mark.asyncio
    async def test_latest_raises_when_store_unavailable(self, clock):
        manager = CheckpointManager(InMemoryStore(), clock=clock)
        with pytest.raises(StoreError):
            await manager.latest("t1")

    def test_rejects_zero_retention(self, store):
        with pytest.raises(ValueError):
            CheckpointManager(store, max_checkpoints=0)


class TestRecovery:
    @pytest.mark.asyncio
    async def test_recover_appends_error_note(self, manager):
        await manager.checkpoint("t1", _state(n_messages=3))

        recovered = await manager.recover("t1", RuntimeError("provider timeout"))

        assert recovered is not None
        assert recovered.messages[-1].role == "system"
        assert recovered.messages[-1].content == (
            "Recovered from error: provider timeout. Continuing conversation..."
        )
        assert [m.content for m in recovered.messages[:-1]] == [
            "message 0",
            "message 1",
            "message 2",
        ]

    @pytest.mark.asyncio
    async def test_recover_uses_exception_type_when_message_empty(self, manager):
        await manager.checkpoint("t1", _state())
        recovered = await manager.recover("t1", TimeoutError())
        assert "Recovered from error: TimeoutError." in recovered.messages[-1].content

    @pytest.mark.asyncio
    async def test_recover_without_checkpoint_returns_none(self, manager):
        assert await manager.recover("unknown", "boom") is None

    @pytest.mark.asyncio
    async def test_recover_with_unreachable_store_returns_none(self, clock):
        manager = CheckpointManager(InMemoryStore(), clock=clock)
        assert await manager.recover("t1", "boom") is None

    @pytest.mark.asyncio
    async def test_recover_preserves_workflow_fields(self, manager):
        state = _state(
            report="Draft report",
            resources=[Resource(url="https://example.com", content="text")],
        )
        await manager.checkpoint("t1", state)

        recovered = await manager.recover("t1", "boom")

        assert recovered.report == "Draft report"
        assert recovered.resources[0].url == "https://example.com"

    @pytest.mark.asyncio
    async def test_recoveries_are_logged(self, manager):
        await manager.checkpoint("t1", _state())
        await manager.recover("t1", "first failure")
        await manager.recover("t1", "second failure")

        stats = await manager.recovery_stats()

        assert stats["total_recoveries"] == 2
        assert stats["recent_recoveries"][0]["error"] == "second failure"
        assert stats["recent_recoveries"][0]["thread_id"] == "t1"


class TestHelpers:
    def test_estimate_state_tokens(self):
        state = ConversationState(
            research_question="abcd",
            messages=[Message(role="user", content="abcdefgh")],
        )
        # "abcd" + " " + "" + " " + "abcdefgh" = 14 chars
        assert estimate_state_tokens(state) == 4

    def test_fresh_state(self):
        state = CheckpointManager.fresh_state("t9", model="m")
        assert state.thread_id == "t9"
        assert state.messages == []
