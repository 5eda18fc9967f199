"""Partitioned task scheduling, wait conditions, semaphores and helpers."""

from __future__ import annotations

import inspect
import itertools
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .coroutine import Coroutine, coroutine

_local = threading.local()


def _running_task() -> "_Task":
    task = getattr(_local, "task", None)
    if task is None:
        raise RuntimeError("not running inside a scheduled coroutine")
    return task


class LazySignal:
    """Wake-up signal that only takes effect while someone is waiting on it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._emitted = False
        self._waited = False

    def emit(self) -> None:
        """Wake the current waiter, if any; otherwise do nothing."""
        with self._lock:
            if self._waited and not self._emitted:
                self._emitted = True
                self._emit()

    def wait(self, duration_ms: float) -> bool:
        """Wait up to ``duration_ms``; return whether an emit woke the wait."""
        with self._lock:
            self._waited = True
            try:
                self._wait(duration_ms)
                return self._emitted
            finally:
                self._waited = False
                self._emitted = False

    def _emit(self) -> None:
        self._cond.notify()

    def _wait(self, duration_ms: float) -> None:
        self._cond.wait(max(duration_ms, 0) / 1000.0)


@dataclass(eq=False)
class _Task:
    ctx: Any
    id: int
    fn: Coroutine
    yielded: bool = False
    waiting_cond: Optional["Condition"] = None
    waiting_lock: Optional[Any] = None
    locals: list = field(default_factory=list)
    execute_cnt: int = 0
    suspend_cnt: int = 0
    yield_cnt: int = 0


class _Allocator:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pool: dict[int, _Task] = {}

    def create(self, ctx: Any, task_id: int, fn: Coroutine) -> _Task:
        task = _Task(ctx, task_id, fn)
        with self._lock:
            self._pool[task_id] = task
        return task

    def destroy(self, task: _Task) -> None:
        with self._lock:
            self._pool.pop(task.id, None)

    def snapshot(self) -> list[_Task]:
        with self._lock:
            return list(self._pool.values())


class _Scheduler:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._runnable: deque[_Task] = deque()
        self.signal: Optional[LazySignal] = None

    def push(self, task: _Task) -> None:
        with self._lock:
            self._runnable.append(task)
            signal = self.signal
        if signal is not None:
            signal.emit()

    def pop(self) -> Optional[_Task]:
        with self._lock:
            return self._runnable.popleft() if self._runnable else None

    def discard(self, task: _Task) -> bool:
        with self._lock:
            try:
                self._runnable.remove(task)
            except ValueError:
                return False
            return True


class Condition:
    """Queue of blocked coroutines; each notify reschedules one of them."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._blocked: deque[_Task] = deque()
        self._scheduled_ctx: Any = None

    @coroutine
    def wait(self, lock: Any):
        """Block the running coroutine. ``lock`` must be held; it is held again on return."""
        task = _running_task()
        self._lock.acquire()
        task.waiting_cond = self
        task.waiting_lock = lock
        yield
        lock.acquire()
        self._scheduled_ctx = None

    def notify(self) -> None:
        """Reschedule the longest-blocked coroutine, if any."""
        with self._lock:
            self._schedule_from_this()

    def _schedule_from_this(self) -> None:
        if not self._blocked:
            return
        task = self._blocked.popleft()
        self._scheduled_ctx = task.ctx
        SchedContext.at(task.ctx)._scheduler(task.id).push(task)

    def _suspend_to_this(self, task: _Task, waiting_lock: Any) -> None:
        self._blocked.append(task)
        self._lock.release()
        waiting_lock.release()

    def _remove(self, task: _Task) -> None:
        with self._lock:
            try:
                self._blocked.remove(task)
            except ValueError:
                SchedContext.at(task.ctx)._scheduler(task.id).discard(task)
            if self._scheduled_ctx is None or self._scheduled_ctx is task.ctx:
                self._schedule_from_this()


class SchedContext:
    """Per-context task allocators and run queues, split into partitions."""

    def __init__(self, ctx: Any, n_partition: int) -> None:
        if n_partition < 1:
            raise ValueError("n_partition must be at least 1")
        self._ctx = ctx
        self._ids = itertools.count()
        self._ids_lock = threading.Lock()
        self._allocators = [_Allocator() for _ in range(n_partition)]
        self._schedulers = [_Scheduler() for _ in range(n_partition)]

    @staticmethod
    def at(ctx: Any) -> "SchedContext":
        """The scheduling state of a started context."""
        sched = getattr(ctx, "sched_ctx", None)
        if sched is None:
            raise RuntimeError("context has not been started")
        return sched

    def _allocator(self, task_id: int) -> _Allocator:
        return self._allocators[task_id % len(self._allocators)]

    def _scheduler(self, task_id: int) -> _Scheduler:
        return self._schedulers[task_id % len(self._schedulers)]

    def on_scheduled(self, pindex: int, signal: Optional[LazySignal]) -> None:
        """Set the signal emitted when a task becomes runnable in ``pindex``."""
        self._scheduler(pindex).signal = signal

    def create_scheduled(self, fn: Coroutine) -> None:
        """Register ``fn`` as a new task and queue it for running."""
        if inspect.isgenerator(fn):
            fn = Coroutine(fn)
        if not isinstance(fn, Coroutine):
            raise TypeError(f"expected a Coroutine, got {type(fn).__name__}")
        with self._ids_lock:
            task_id = next(self._ids)
        task = self._allocator(task_id).create(self._ctx, task_id, fn)
        self._scheduler(task_id).push(task)

    def run_scheduled(self, pindex: int, batch_size: int) -> int:
        """Run up to ``batch_size`` tasks, stealing from other partitions when idle."""
        cnt = 0
        own = self._scheduler(pindex)
        while cnt < batch_size:
            task = own.pop()
            if task is None:
                break
            self._execute(task)
            cnt += 1
        if cnt == batch_size:
            return cnt
        for offset in range(len(self._schedulers)):
            task = self._scheduler(pindex + offset).pop()
            if task is not None:
                self._execute(task)
                cnt += 1
                if cnt == batch_size:
                    break
        return cnt

    def final_schedule(self, pindex: int) -> None:
        """Detach the partition's signal and destroy its blocked tasks."""
        self._scheduler(pindex).signal = None
        allocator = self._allocator(pindex)
        for task in allocator.snapshot():
            if task.waiting_cond is not None:
                task.waiting_cond._remove(task)
                allocator.destroy(task)
                task.fn.destroy()

    def _execute(self, task: _Task) -> None:
        _local.task = task
        task.yielded = False
        task.waiting_cond = None
        task.waiting_lock = None
        task.execute_cnt += 1
        try:
            while not task.yielded and task.waiting_cond is None and not task.fn.done():
                task.fn.resume()
        except Exception:
            self._allocator(task.id).destroy(task)
            raise
        finally:
            _local.task = None

        if task.fn.done():
            self._allocator(task.id).destroy(task)
        elif task.yielded:
            task.yield_cnt += 1
            self._scheduler(task.id).push(task)
        else:
            task.suspend_cnt += 1
            task.waiting_cond._suspend_to_this(task, task.waiting_lock)


class Semaphore:
    """Counting semaphore whose acquire suspends the coroutine, not the thread."""

    def __init__(self, vacant: int) -> None:
        if vacant < 0:
            raise ValueError("vacant must not be negative")
        self._lock = threading.Lock()
        self._cond = Condition()
        self._vacant = vacant

    @coroutine
    def acquire(self):
        """Take one unit, waiting until one is free."""
        self._lock.acquire()
        try:
            while self._vacant == 0:
                yield self._cond.wait(self._lock)
        except Exception:
            self._lock.release()
            raise
        self._vacant -= 1
        self._lock.release()

    def release(self) -> None:
        """Return one unit and wake one waiter."""
        with self._lock:
            self._vacant += 1
            self._cond.notify()

    def count(self) -> int:
        """Number of free units."""
        return self._vacant


class Mutex:
    """Coroutine mutex: a semaphore with one unit."""

    def __init__(self) -> None:
        self._sem = Semaphore(1)

    def lock(self) -> Coroutine:
        return self._sem.acquire()

    def unlock(self) -> None:
        self._sem.release()


class DeferGuard:
    """Runs a callable once when its ``with`` block exits, unless dropped."""

    def __init__(self, fn: Callable[[], Any]) -> None:
        self._fn: Optional[Callable[[], Any]] = fn

    def drop(self) -> None:
        self._fn = None

    def __enter__(self) -> "DeferGuard":
        return self

    def __exit__(self, *args: Any) -> bool:
        fn, self._fn = self._fn, None
        if fn is not None:
            fn()
        return False


def defer(fn: Callable[[], Any]) -> DeferGuard:
    return DeferGuard(fn)


@coroutine
def yield_now():
    """Give the worker to other runnable tasks; the caller is requeued."""
    _running_task().yielded = True
    yield


def this_coroutine_id() -> int:
    return _running_task().id


def this_coroutine_ctx() -> Any:
    return _running_task().ctx


def this_coroutine_locals() -> list:
    return _running_task().locals


def spawn(ctx: Any, fn: Coroutine) -> None:
    """Schedule ``fn`` to run in ``ctx``."""
    SchedContext.at(ctx).create_scheduled(fn)