"""Resource ownership and bounded shutdown.

Every timer scheduled by a cache goes through a TimerRegistry, every
background coroutine is spawned through the LifecycleManager, and the
storage handle is closed only by the manager. Shutdown runs, in order:

1. cancel all outstanding invalidation timers and background jobs
2. give buffered writes (pending embedding indexing) what remains of the
   grace period, then cancel the rest and flush the store
3. close the storage handle

so nothing this module created can keep the interpreter alive afterwards.
"""

from __future__ import annotations

import asyncio
import contextvars
import itertools
import sqlite3
import threading
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from typing import Any, TypeVar

from patternbank.core.console import get_logger
from patternbank.core.result import Err, LifecycleError, StorageError
from patternbank.memory.models import ShutdownReport
from patternbank.memory.store import PatternStore

logger = get_logger(__name__)

T = TypeVar("T")


# -----------------------------------------------------------------------------
# Timers
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class TimerHandle:
    """Cancellable reference to one scheduled callback."""

    registry: TimerRegistry
    timer_id: int

    def cancel(self) -> bool:
        return self.registry.cancel(self.timer_id)

    @property
    def active(self) -> bool:
        return self.registry.is_pending(self.timer_id)


class TimerRegistry:
    """Tracks every ``loop.call_later`` handle so shutdown can cancel them all.

    Scheduling with no running event loop schedules nothing and returns
    ``None``; callers must not depend on a timer firing for correctness.
    """

    def __init__(self) -> None:
        self._handles: dict[int, asyncio.TimerHandle] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._closed = False

    def schedule(
        self, delay: float, callback: Callable[..., object], *args: object
    ) -> TimerHandle | None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; timer for %s not scheduled", callback)
            return None

        with self._lock:
            if self._closed:
                return None
            timer_id = next(self._ids)
            self._handles[timer_id] = loop.call_later(
                max(delay, 0.0), self._fire, timer_id, callback, args
            )
        return TimerHandle(self, timer_id)

    def _fire(self, timer_id: int, callback: Callable[..., object], args: tuple[object, ...]) -> None:
        with self._lock:
            if self._handles.pop(timer_id, None) is None:
                return
        callback(*args)

    def cancel(self, timer_id: int) -> bool:
        with self._lock:
            handle = self._handles.pop(timer_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_pending(self, timer_id: int) -> bool:
        with self._lock:
            return timer_id in self._handles

    def cancel_all(self) -> int:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.cancel()
        return len(handles)

    def close(self) -> int:
        """Cancel everything and refuse further scheduling."""
        with self._lock:
            self._closed = True
        return self.cancel_all()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._handles)


# -----------------------------------------------------------------------------
# Blocking work
# -----------------------------------------------------------------------------


def run_in_daemon_thread(fn: Callable[..., T], *args: object) -> asyncio.Future[T]:
    """Run a blocking call on a daemon thread and bridge its outcome to an asyncio future.

    Unlike ``asyncio.to_thread`` the worker is a daemon, so an abandoned call
    (for example a slow embedding provider after a timeout) cannot delay
    interpreter exit. Cancelling the returned future abandons the call.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[T] = loop.create_future()

    def _deliver(outcome: T | None, error: Exception | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(outcome)  # type: ignore[arg-type]

    def _worker() -> None:
        outcome: T | None = None
        error: Exception | None = None
        try:
            outcome = fn(*args)
        except Exception as exc:
            error = exc
        try:
            loop.call_soon_threadsafe(_deliver, outcome, error)
        except RuntimeError:
            logger.debug("Event loop closed before %s finished; result dropped", fn)

    name = getattr(fn, "__name__", "call")
    context = contextvars.copy_context()
    threading.Thread(
        target=context.run, args=(_worker,), name=f"patternbank-{name}", daemon=True
    ).start()
    return future


# -----------------------------------------------------------------------------
# Lifecycle Manager
# -----------------------------------------------------------------------------


class LifecycleManager:
    """Owns timers, background tasks and the storage handle."""

    def __init__(
        self,
        store: PatternStore,
        *,
        grace_period: float = 0.2,
        timers: TimerRegistry | None = None,
    ) -> None:
        self.timers = timers or TimerRegistry()
        self._store = store
        self._grace_period = grace_period
        self._tasks: dict[asyncio.Task[Any], bool] = {}
        self._closed = False
        self._shutdown_future: asyncio.Future[ShutdownReport] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def grace_period(self) -> float:
        return self._grace_period

    def ensure_open(self) -> None:
        if self._closed:
            raise LifecycleError("Pattern memory has been shut down")

    def spawn(
        self,
        coro: Coroutine[Any, Any, T],
        *,
        name: str | None = None,
        flush_on_shutdown: bool = False,
    ) -> asyncio.Task[T]:
        """Start a tracked background task.

        ``flush_on_shutdown`` tasks are buffered writes that shutdown lets
        finish within the grace period; all others are cancelled first.
        """
        if self._closed:
            coro.close()
            raise LifecycleError("Cannot start background work after shutdown", context={"name": name})
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks[task] = flush_on_shutdown
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.pop(task, None)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background task %s failed: %s", task.get_name(), exc)

    @property
    def pending_tasks(self) -> int:
        return sum(1 for task in self._tasks if not task.done())

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for buffered-write tasks. Returns True when none remain."""
        pending = [task for task, flush in self._tasks.items() if flush and not task.done()]
        if not pending:
            return True
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        return not not_done

    async def shutdown(self) -> ShutdownReport:
        """Release everything within the grace period. Idempotent."""
        if self._shutdown_future is None:
            self._shutdown_future = asyncio.ensure_future(self._shutdown())
        return await asyncio.shield(self._shutdown_future)

    async def _shutdown(self) -> ShutdownReport:
        started = time.monotonic()
        deadline = started + self._grace_period
        self._closed = True
        report = ShutdownReport()

        report.timers_cancelled = self.timers.close()

        cancelled: list[asyncio.Task[Any]] = []
        for task, flush in list(self._tasks.items()):
            if not flush and not task.done():
                task.cancel()
                cancelled.append(task)

        flushing = [task for task, flush in list(self._tasks.items()) if flush and not task.done()]
        if flushing:
            # Half the remaining budget for buffered writes; the rest covers cancellation.
            budget = max(deadline - time.monotonic(), 0.0) / 2
            done, not_done = await asyncio.wait(flushing, timeout=budget)
            report.tasks_flushed = len(done)
            for task in not_done:
                task.cancel()
                cancelled.append(task)

        if cancelled:
            await asyncio.wait(cancelled, timeout=max(deadline - time.monotonic(), 0.0))
        report.tasks_cancelled = len(cancelled)

        self._release_store()

        report.elapsed = time.monotonic() - started
        logger.debug(
            "Shutdown: %d timers cancelled, %d tasks flushed, %d tasks cancelled in %.3fs",
            report.timers_cancelled,
            report.tasks_flushed,
            report.tasks_cancelled,
            report.elapsed,
        )
        return report

    def _release_store(self) -> None:
        if self._store.closed:
            return
        match self._store.flush():
            case Err(err):
                logger.warning("Flush before close failed: %s", err)
        try:
            self._store.close()
        except sqlite3.Error as exc:
            raise StorageError("Failed to close pattern store", context={"error": str(exc)}) from exc

    def close(self) -> ShutdownReport:
        """Synchronous release for callers without a running event loop."""
        started = time.monotonic()
        self._closed = True
        report = ShutdownReport(timers_cancelled=self.timers.close())
        for task in list(self._tasks):
            if task.done():
                continue
            try:
                task.cancel()
            except RuntimeError as exc:
                # Owning loop already closed.
                logger.debug("Could not cancel %s: %s", task.get_name(), exc)
            report.tasks_cancelled += 1
        self._release_store()
        report.elapsed = time.monotonic() - started
        return report


__all__ = [
    "LifecycleManager",
    "TimerHandle",
    "TimerRegistry",
    "run_in_daemon_thread",
]
