"""Timer queues and coroutine sleep."""

from __future__ import annotations

import heapq
import itertools
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .schedule import LazySignal, Semaphore
from .coroutine import coroutine


@dataclass(order=True)
class _Timer:
    ex: float
    id: int
    fn: Callable[[], Any] = field(compare=False)


class _TimerQueue:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._heap: list[_Timer] = []
        self.signal: Optional[LazySignal] = None

    def push(self, timer: _Timer) -> None:
        with self._lock:
            earlier = not self._heap or timer < self._heap[0]
            heapq.heappush(self._heap, timer)
            signal = self.signal
        if earlier and signal is not None:
            signal.emit()

    def pop(self) -> Optional[_Timer]:
        with self._lock:
            if self._heap and time.monotonic() >= self._heap[0].ex:
                return heapq.heappop(self._heap)
            return None

    def next_time(self) -> float:
        with self._lock:
            return self._heap[0].ex if self._heap else math.inf


class TimedContext:
    """Deadline-ordered callbacks spread over partitions."""

    def __init__(self, n_partition: int) -> None:
        if n_partition < 1:
            raise ValueError("n_partition must be at least 1")
        self._ids = itertools.count()
        self._ids_lock = threading.Lock()
        self._queues = [_TimerQueue() for _ in range(n_partition)]

    @staticmethod
    def at(ctx: Any) -> "TimedContext":
        """The timer state of a started context."""
        timed = getattr(ctx, "timed_ctx", None)
        if timed is None:
            raise RuntimeError("context has not been started")
        return timed

    def _queue(self, index: int) -> _TimerQueue:
        return self._queues[index % len(self._queues)]

    def on_timeout(self, pindex: int, signal: Optional[LazySignal]) -> None:
        """Set the signal emitted when partition ``pindex`` gets an earlier deadline."""
        self._queue(pindex).signal = signal

    def create_timeout(self, fn: Callable[[], Any], timeout_ms: float) -> None:
        """Call ``fn`` once ``timeout_ms`` milliseconds have passed."""
        with self._ids_lock:
            timer_id = next(self._ids)
        ex = time.monotonic() + timeout_ms / 1000.0
        self._queue(timer_id).push(_Timer(ex, timer_id, fn))

    def run_timeout(self, pindex: int, batch_size: int) -> int:
        """Run up to ``batch_size`` due callbacks, taking from other partitions when idle."""
        cnt = 0
        own = self._queue(pindex)
        while cnt < batch_size:
            timer = own.pop()
            if timer is None:
                break
            timer.fn()
            cnt += 1
        if cnt == batch_size:
            return cnt
        for offset in range(len(self._queues)):
            timer = self._queue(pindex + offset).pop()
            if timer is not None:
                timer.fn()
                cnt += 1
                if cnt == batch_size:
                    break
        return cnt

    def next_schedule_time(self, pindex: int) -> float:
        """Earliest deadline of the partition on the ``time.monotonic`` clock, or infinity."""
        return self._queue(pindex).next_time()


@coroutine
def sleep(ctx: Any, timeout_ms: float):
    """Suspend the running coroutine for ``timeout_ms`` milliseconds."""
    signal = Semaphore(0)
    TimedContext.at(ctx).create_timeout(signal.release, timeout_ms)
    yield signal.acquire()