"""Unit tests for MemoryCacheProvider and ProgressTracker."""

from __future__ import annotations

import pytest

from src.models.pipeline import ProcessingStage, ProcessingStatus
from src.pipeline.progress_tracker import ProgressTracker
from src.providers.cache.memory_cache import MemoryCacheProvider
from tests.conftest import FakeClock


# ======================================================================
# MemoryCacheProvider
# ======================================================================


class TestMemoryCacheProvider:
    @pytest.fixture()
    def cache(self, fake_clock: FakeClock) -> MemoryCacheProvider:
        return MemoryCacheProvider(max_size=3, ttl=60, timer=fake_clock)

    @pytest.mark.asyncio
    async def test_get_missing_key_returns_none(self, cache: MemoryCacheProvider) -> None:
        assert await cache.get("nonexistent") is None

    @pytest.mark.asyncio
    async def test_set_and_get(self, cache: MemoryCacheProvider) -> None:
        await cache.set("key1", {"results": [1, 2]})
        assert await cache.get("key1") == {"results": [1, 2]}
        assert await cache.exists("key1") is True

    @pytest.mark.asyncio
    async def test_delete_removes_key(self, cache: MemoryCacheProvider) -> None:
        await cache.set("key1", "value1")
        await cache.delete("key1")
        await cache.delete("never-set")
        assert await cache.get("key1") is None

    @pytest.mark.asyncio
    async def test_entries_expire_on_their_own_ttl(
        self, cache: MemoryCacheProvider, fake_clock: FakeClock
    ) -> None:
        await cache.set("short", "a", ttl=10)
        await cache.set("default", "b")
        fake_clock.advance(11)
        assert await cache.get("short") is None
        assert await cache.get("default") == "b"
        fake_clock.advance(50)
        assert await cache.get("default") is None

    @pytest.mark.asyncio
    async def test_least_recently_used_entry_is_evicted(self, cache: MemoryCacheProvider) -> None:
        for key in ("a", "b", "c"):
            await cache.set(key, key)
        await cache.get("a")
        await cache.set("d", "d")
        assert await cache.get("b") is None
        assert await cache.get("a") == "a"
        assert len(cache) == 3

    @pytest.mark.asyncio
    async def test_increment_keeps_window_expiry(
        self, cache: MemoryCacheProvider, fake_clock: FakeClock
    ) -> None:
        assert await cache.increment("counter", 30) == (1, 30)
        fake_clock.advance(10)
        assert await cache.increment("counter", 30) == (2, 20)
        fake_clock.advance(21)
        assert await cache.increment("counter", 30) == (1, 30)

    @pytest.mark.asyncio
    async def test_sets_accumulate_members(self, cache: MemoryCacheProvider) -> None:
        await cache.add_to_set("tag:document:d1", "k1")
        await cache.add_to_set("tag:document:d1", "k2")
        assert await cache.get_set("tag:document:d1") == {"k1", "k2"}
        assert await cache.get_set("tag:missing") == set()

    @pytest.mark.asyncio
    async def test_clear(self, cache: MemoryCacheProvider) -> None:
        await cache.set("key1", 1)
        cache.clear()
        assert len(cache) == 0


# ======================================================================
# ProgressTracker
# ======================================================================


def _status(document_id: str, stage: ProcessingStage, percent: float = 0.0) -> ProcessingStatus:
    return ProcessingStatus(document_id=document_id, stage=stage, percent=percent)


class TestProgressTracker:
    @pytest.fixture()
    def tracker(self) -> ProgressTracker:
        return ProgressTracker()

    @pytest.mark.asyncio
    async def test_update_stores_latest_status(self, tracker: ProgressTracker) -> None:
        await tracker.update(_status("d1", ProcessingStage.PARSING))
        await tracker.update(_status("d1", ProcessingStage.CHUNKING, 30.0))
        latest = tracker.get_status("d1")
        assert latest is not None
        assert latest.stage is ProcessingStage.CHUNKING
        assert tracker.get_status("unknown") is None

    @pytest.mark.asyncio
    async def test_sync_and_async_listeners_are_notified(self, tracker: ProgressTracker) -> None:
        sync_seen: list[ProcessingStage] = []
        async_seen: list[ProcessingStage] = []

        async def _async_listener(status: ProcessingStatus) -> None:
            async_seen.append(status.stage)

        tracker.register_listener("d1", lambda status: sync_seen.append(status.stage))
        tracker.register_listener("d1", _async_listener)
        await tracker.update(_status("d1", ProcessingStage.EMBEDDING, 70.0))
        assert sync_seen == [ProcessingStage.EMBEDDING]
        assert async_seen == [ProcessingStage.EMBEDDING]

    @pytest.mark.asyncio
    async def test_listeners_only_see_their_document(self, tracker: ProgressTracker) -> None:
        seen: list[str] = []
        tracker.register_listener("d1", lambda status: seen.append(status.document_id))
        await tracker.update(_status("d2", ProcessingStage.PARSING))
        await tracker.update(_status("d1", ProcessingStage.PARSING))
        assert seen == ["d1"]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block_others(self, tracker: ProgressTracker) -> None:
        seen: list[str] = []

        def _broken(_status: ProcessingStatus) -> None:
            raise RuntimeError("listener bug")

        tracker.register_listener("d1", _broken)
        tracker.register_listener("d1", lambda status: seen.append(status.document_id))
        await tracker.update(_status("d1", ProcessingStage.PARSING))
        assert seen == ["d1"]

    @pytest.mark.asyncio
    async def test_unregister_and_forget(self, tracker: ProgressTracker) -> None:
        seen: list[str] = []

        def _listener(status: ProcessingStatus) -> None:
            seen.append(status.document_id)

        tracker.register_listener("d1", _listener)
        tracker.register_listener("d1", _listener)
        tracker.unregister_listener("d1", _listener)
        await tracker.update(_status("d1", ProcessingStage.PARSING))
        assert seen == []

        tracker.forget("d1")
        assert tracker.get_status("d1") is None

    @pytest.mark.asyncio
    async def test_terminal_status_is_delivered_then_dropped(
        self, tracker: ProgressTracker
    ) -> None:
        seen: list[ProcessingStage] = []
        tracker.register_listener("d1", lambda status: seen.append(status.stage))
        for index in range(50):
            await tracker.update(_status(f"done{index}", ProcessingStage.PARSING))
            await tracker.update(_status(f"done{index}", ProcessingStage.COMPLETE, 100.0))
        await tracker.update(_status("d1", ProcessingStage.EMBEDDING, 70.0))
        await tracker.update(_status("d1", ProcessingStage.ERROR))

        assert seen == [ProcessingStage.EMBEDDING, ProcessingStage.ERROR]
        assert tracker.get_status("d1") is None
        assert all(tracker.get_status(f"done{index}") is None for index in range(50))
        assert tracker._statuses == {}

    def test_terminal_flag(self) -> None:
        assert _status("d1", ProcessingStage.COMPLETE, 100.0).is_terminal is True
        assert _status("d1", ProcessingStage.STORING, 100.0).is_terminal is False
