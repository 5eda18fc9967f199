"""Worker threads that drive scheduled coroutines, timers and events."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from .event import EventContext, EventLazySignal
from .schedule import SchedContext
from .timed import TimedContext

_BATCH = 128
_MAX_IDLE_MS = 50.0
_MIN_HANDLE_INTERVAL = 0.001

_log = logging.getLogger(__name__)


class Context:
    """A pool of worker threads; start with :meth:`startup`, stop with :meth:`shutdown`.

    Coroutines still blocked when the context stops are destroyed, which
    runs their cleanup code.
    """

    def __init__(self) -> None:
        self._workers: list[threading.Thread] = []
        self._barrier: Optional[threading.Barrier] = None
        self.sched_ctx: Optional[SchedContext] = None
        self.timed_ctx: Optional[TimedContext] = None
        self.event_ctx: Optional[EventContext] = None
        self._finished = False

    def startup(self, n_worker: int) -> None:
        """Start ``n_worker`` threads; a context cannot be started twice."""
        if self._finished:
            raise RuntimeError("restart context")
        if self._workers:
            raise RuntimeError("context already started")
        if n_worker < 1:
            raise ValueError("n_worker must be at least 1")
        self._barrier = threading.Barrier(n_worker)
        self.sched_ctx = SchedContext(self, n_worker)
        self.timed_ctx = TimedContext(n_worker)
        self.event_ctx = EventContext(n_worker)
        for pindex in range(n_worker):
            worker = threading.Thread(
                target=self._run, args=(pindex,), name=f"cgoro-worker-{pindex}", daemon=True
            )
            self._workers.append(worker)
            worker.start()

    def shutdown(self) -> None:
        """Stop the workers and wait for them; calling it again does nothing."""
        if self._finished:
            return
        self._finished = True
        current = threading.current_thread()
        for worker in self._workers:
            if worker is not current and worker.is_alive():
                worker.join()
        if self.event_ctx is not None:
            self.event_ctx.close()

    def closed(self) -> bool:
        return self._finished

    @staticmethod
    def _guarded(step: Callable[[int, int], int], pindex: int) -> int:
        try:
            return step(pindex, _BATCH)
        except Exception:
            _log.exception("task failed in worker %d", pindex)
            return 1

    def _run(self, pindex: int) -> None:
        assert self.sched_ctx and self.timed_ctx and self.event_ctx and self._barrier
        sched, timed, events = self.sched_ctx, self.timed_ctx, self.event_ctx
        signal = EventLazySignal(self, pindex, nowait=True)
        sched.on_scheduled(pindex, signal)
        timed.on_timeout(pindex, signal)
        self._barrier.wait()

        last_handle_time = time.monotonic()
        while not self._finished:
            sched_flag = self._guarded(sched.run_scheduled, pindex) > 0
            timed_flag = self._guarded(timed.run_timeout, pindex) > 0

            now = time.monotonic()
            next_time = timed.next_schedule_time(pindex)
            if sched_flag or timed_flag or now >= next_time:
                if now - last_handle_time < _MIN_HANDLE_INTERVAL:
                    continue
                events.run_handler(pindex, _BATCH, 0)
            else:
                wait_ms = min((next_time - now) * 1000.0, _MAX_IDLE_MS)
                events.run_handler(pindex, _BATCH, wait_ms)
            last_handle_time = time.monotonic()

        self._barrier.wait()
        signal.close()
        try:
            sched.final_schedule(pindex)
        except Exception:
            _log.exception("cleanup failed in worker %d", pindex)

    def __repr__(self) -> str:
        state = "closed" if self._finished else ("running" if self._workers else "idle")
        return f"<Context {state} workers={len(self._workers)}>"


def _context_of(obj: Any) -> Context:
    if not isinstance(obj, Context):
        raise TypeError(f"expected a Context, got {type(obj).__name__}")
    return obj