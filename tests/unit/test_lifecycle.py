"""Unit tests for timers, daemon-thread offload and the lifecycle manager."""

from __future__ import annotations

import asyncio
import contextvars
import logging
import threading
import time

import pytest

from patternbank.core.result import LifecycleError
from patternbank.memory.lifecycle import LifecycleManager, TimerRegistry, run_in_daemon_thread
from patternbank.memory.store import PatternStore

_marker: contextvars.ContextVar[str] = contextvars.ContextVar("marker", default="unset")


@pytest.fixture
def memory_store() -> PatternStore:
    pattern_store = PatternStore(":memory:")
    yield pattern_store
    pattern_store.close()


class TestTimerRegistry:
    """Tests for tracked loop timers."""

    def test_schedule_without_loop_returns_none(self) -> None:
        registry = TimerRegistry()
        assert registry.schedule(1.0, lambda: None) is None
        assert registry.pending == 0

    @pytest.mark.asyncio
    async def test_timer_fires_once(self) -> None:
        registry = TimerRegistry()
        fired: list[str] = []
        handle = registry.schedule(0.01, fired.append, "x")
        assert handle is not None and handle.active
        await asyncio.sleep(0.05)
        assert fired == ["x"]
        assert not handle.active
        assert handle.cancel() is False

    @pytest.mark.asyncio
    async def test_cancel_prevents_callback(self) -> None:
        registry = TimerRegistry()
        fired: list[int] = []
        handle = registry.schedule(0.01, fired.append, 1)
        assert handle.cancel() is True
        await asyncio.sleep(0.05)
        assert fired == []

    @pytest.mark.asyncio
    async def test_close_cancels_all_and_refuses_more(self) -> None:
        registry = TimerRegistry()
        for _ in range(5):
            registry.schedule(60.0, lambda: None)
        assert registry.pending == 5
        assert registry.close() == 5
        assert registry.closed
        assert registry.schedule(1.0, lambda: None) is None
        assert registry.pending == 0


class TestRunInDaemonThread:
    """Tests for the blocking-call bridge."""

    @pytest.mark.asyncio
    async def test_returns_value_from_daemon_thread(self) -> None:
        def work(a: int, b: int) -> tuple[int, bool]:
            return a + b, threading.current_thread().daemon

        assert await run_in_daemon_thread(work, 2, 3) == (5, True)

    @pytest.mark.asyncio
    async def test_propagates_exception(self) -> None:
        def boom() -> None:
            raise ValueError("provider exploded")

        with pytest.raises(ValueError, match="provider exploded"):
            await run_in_daemon_thread(boom)

    @pytest.mark.asyncio
    async def test_copies_context(self) -> None:
        _marker.set("inside")
        assert await run_in_daemon_thread(_marker.get) == "inside"

    @pytest.mark.asyncio
    async def test_timeout_abandons_call(self) -> None:
        started = time.monotonic()
        with pytest.raises(TimeoutError):
            await asyncio.wait_for(run_in_daemon_thread(time.sleep, 5.0), timeout=0.05)
        assert time.monotonic() - started < 1.0


class TestLifecycleManager:
    """Tests for task ownership and bounded shutdown."""

    @pytest.mark.asyncio
    async def test_shutdown_cancels_background_tasks(self, memory_store: PatternStore) -> None:
        manager = LifecycleManager(memory_store, grace_period=0.5)
        task = manager.spawn(asyncio.sleep(60), name="sleeper")
        assert manager.pending_tasks == 1

        report = await manager.shutdown()
        assert task.cancelled()
        assert report.tasks_cancelled == 1
        assert report.tasks_flushed == 0
        assert memory_store.closed

    @pytest.mark.asyncio
    async def test_flush_tasks_finish_within_grace(self, memory_store: PatternStore) -> None:
        manager = LifecycleManager(memory_store, grace_period=1.0)
        done: list[bool] = []

        async def write() -> None:
            await asyncio.sleep(0.01)
            done.append(True)

        manager.spawn(write(), name="write", flush_on_shutdown=True)
        report = await manager.shutdown()
        assert done == [True]
        assert report.tasks_flushed == 1
        assert report.tasks_cancelled == 0

    @pytest.mark.asyncio
    async def test_slow_flush_is_cut_off(self, memory_store: PatternStore) -> None:
        manager = LifecycleManager(memory_store, grace_period=0.2)
        task = manager.spawn(asyncio.sleep(60), flush_on_shutdown=True)

        report = await manager.shutdown()
        assert task.cancelled()
        assert report.tasks_cancelled == 1
        assert report.elapsed < 1.0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_timers(self, memory_store: PatternStore) -> None:
        manager = LifecycleManager(memory_store)
        for _ in range(50):
            manager.timers.schedule(3600.0, lambda: None)
        report = await manager.shutdown()
        assert report.timers_cancelled == 50
        assert manager.timers.pending == 0

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, memory_store: PatternStore) -> None:
        manager = LifecycleManager(memory_store)
        first, second = await asyncio.gather(manager.shutdown(), manager.shutdown())
        third = await manager.shutdown()
        assert first is second is third

    @pytest.mark.asyncio
    async def test_no_work_after_shutdown(self, memory_store: PatternStore) -> None:
        manager = LifecycleManager(memory_store)
        await manager.shutdown()
        with pytest.raises(LifecycleError):
            manager.ensure_open()

        coro = asyncio.sleep(0)
        with pytest.raises(LifecycleError):
            manager.spawn(coro, name="late")
        assert coro.cr_frame is None

    @pytest.mark.asyncio
    async def test_drain_waits_for_flush_tasks(self, memory_store: PatternStore) -> None:
        manager = LifecycleManager(memory_store)
        assert await manager.drain() is True
        manager.spawn(asyncio.sleep(0.01), flush_on_shutdown=True)
        assert await manager.drain(timeout=1.0) is True
        slow = manager.spawn(asyncio.sleep(60), flush_on_shutdown=True)
        assert await manager.drain(timeout=0.01) is False
        slow.cancel()
        await manager.shutdown()

    @pytest.mark.asyncio
    async def test_failed_task_is_logged(
        self, memory_store: PatternStore, caplog: pytest.LogCaptureFixture
    ) -> None:
        manager = LifecycleManager(memory_store)

        async def fail() -> None:
            raise RuntimeError("indexing broke")

        caplog.set_level(logging.WARNING, logger="patternbank")
        task = manager.spawn(fail(), name="doomed")
        await asyncio.wait([task])
        await asyncio.sleep(0)
        assert "indexing broke" in caplog.text
        assert manager.pending_tasks == 0
        await manager.shutdown()

    def test_sync_close(self, memory_store: PatternStore) -> None:
        manager = LifecycleManager(memory_store)
        report = manager.close()
        assert manager.closed
        assert memory_store.closed
        assert report.timers_cancelled == 0
