import threading
import time

import pytest

from cgoro.context import Context
from cgoro.coroutine import Coroutine
from cgoro.schedule import (
    Mutex,
    Semaphore,
    defer,
    spawn,
    this_coroutine_ctx,
    yield_now,
)

EXEC_NUM = 4
FOO_NUM = 100
FOO_LOOP = 30


class _Counter:
    def __init__(self):
        self._lock = threading.Lock()
        self.value = 0

    def inc(self):
        with self._lock:
            self.value += 1
            return self.value

    def dec(self):
        with self._lock:
            self.value -= 1
            return self.value


def _wait_until(pred, timeout=60.0):
    deadline = time.monotonic() + timeout
    while not pred():
        if time.monotonic() > deadline:
            return False
        time.sleep(0.01)
    return True


def _yielder(res):
    for _ in range(FOO_LOOP):
        yield yield_now()
    res.inc()


def _exclusive(mtx, res, active, peak):
    def leave():
        active.dec()
        mtx.unlock()

    for _ in range(FOO_LOOP):
        yield mtx.lock()
        with defer(leave):
            peak.append(active.inc())
            res.inc()
            yield yield_now()


def _lock_once(mtx, res, done):
    yield mtx.lock()
    res.inc()
    done.set()


def _same_thread(mtx, counter, mismatches):
    for _ in range(FOO_LOOP):
        tid1 = threading.get_ident()
        yield mtx.lock()
        tid2 = threading.get_ident()
        if tid1 != tid2:
            mismatches.append((tid1, tid2))
        counter.inc()
        mtx.unlock()


def _hold_until_stopped(mtx, res, stop_at, done, violations):
    yield mtx.lock()
    with defer(mtx.unlock):
        if done.is_set():
            violations.append(stop_at)
        if res.inc() >= stop_at:
            done.set()
            # held until the context stops and destroys this coroutine
            yield Semaphore(0).acquire()


def _probe(seen):
    seen.append((threading.get_ident(), this_coroutine_ctx()))
    yield


def _broken_at_start():
    raise ValueError("boom")
    yield


def _fine(finished):
    yield yield_now()
    finished.append(True)


def test_yield():
    res = _Counter()
    ctx = Context()
    ctx.startup(EXEC_NUM)
    try:
        for _ in range(FOO_NUM):
            spawn(ctx, Coroutine(_yielder(res)))
        assert _wait_until(lambda: res.value >= FOO_NUM)
    finally:
        ctx.shutdown()
    assert ctx.closed() is True
    assert res.value == FOO_NUM


def test_mutex():
    res = _Counter()
    active = _Counter()
    peak = []
    mtx = Mutex()
    ctx = Context()
    ctx.startup(EXEC_NUM)
    try:
        for _ in range(FOO_NUM):
            spawn(ctx, Coroutine(_exclusive(mtx, res, active, peak)))
        assert _wait_until(lambda: res.value >= FOO_NUM * FOO_LOOP)
    finally:
        ctx.shutdown()
    assert ctx.closed() is True
    assert res.value == FOO_NUM * FOO_LOOP
    assert max(peak) == 1


def test_force_stop():
    res = _Counter()
    mtx = Mutex()
    done = threading.Event()
    ctx = Context()
    ctx.startup(EXEC_NUM)
    for _ in range(FOO_NUM):
        spawn(ctx, Coroutine(_lock_once(mtx, res, done)))
    reached = _wait_until(done.is_set)
    time.sleep(0.05)
    assert ctx.closed() is False
    ctx.shutdown()
    assert ctx.closed() is True
    assert reached
    assert res.value == 1


def test_multi_context():
    ctxs = [Context() for _ in range(EXEC_NUM)]
    for ctx in ctxs:
        ctx.startup(1)
    res = [_Counter() for _ in range(EXEC_NUM)]
    mismatches = []
    mtx = Mutex()
    try:
        for i in range(FOO_NUM):
            spawn(ctxs[i % EXEC_NUM], Coroutine(_same_thread(mtx, res[i % EXEC_NUM], mismatches)))
        assert _wait_until(lambda: sum(c.value for c in res) >= FOO_NUM * FOO_LOOP)
    finally:
        for ctx in ctxs:
            ctx.shutdown()
    assert [ctx.closed() for ctx in ctxs] == [True] * EXEC_NUM
    assert mismatches == []
    assert sum(c.value for c in res) == FOO_NUM * FOO_LOOP


def test_multi_ctx_force_stop():
    res1, res2 = _Counter(), _Counter()
    done1, done2 = threading.Event(), threading.Event()
    violations = []
    mtx = Mutex()

    ctx1, ctx2 = Context(), Context()
    ctx1.startup(1)
    ctx2.startup(1)

    target1 = int(FOO_NUM * 0.2)
    target2 = FOO_NUM - target1
    for _ in range(FOO_NUM):
        spawn(ctx1, Coroutine(_hold_until_stopped(mtx, res1, target1, done1, violations)))
        spawn(ctx2, Coroutine(_hold_until_stopped(mtx, res2, target2, done2, violations)))

    deadline = time.monotonic() + 60
    try:
        while res1.value < target1 or res2.value < target2:
            if done1.is_set() and not ctx1.closed():
                ctx1.shutdown()
            if done2.is_set() and not ctx2.closed():
                ctx2.shutdown()
            assert time.monotonic() < deadline
            time.sleep(0.05)
    finally:
        ctx1.shutdown()
        ctx2.shutdown()
    assert violations == []
    assert res1.value >= target1
    assert res2.value >= target2


def test_restart_raises():
    ctx = Context()
    ctx.startup(1)
    assert not ctx.closed()
    ctx.shutdown()
    assert ctx.closed()
    ctx.shutdown()
    with pytest.raises(RuntimeError):
        ctx.startup(1)


def test_double_startup_raises():
    ctx = Context()
    ctx.startup(1)
    try:
        with pytest.raises(RuntimeError):
            ctx.startup(1)
    finally:
        ctx.shutdown()


def test_tasks_run_on_workers_with_their_context():
    ctx = Context()
    ctx.startup(2)
    seen = []
    try:
        spawn(ctx, Coroutine(_probe(seen)))
        assert _wait_until(lambda: seen)
    finally:
        ctx.shutdown()
    thread_id, task_ctx = seen[0]
    assert thread_id != threading.get_ident()
    assert task_ctx is ctx


def test_failing_task_does_not_stop_workers():
    ctx = Context()
    ctx.startup(1)
    finished = []
    try:
        spawn(ctx, Coroutine(_broken_at_start()))
        spawn(ctx, Coroutine(_fine(finished)))
        assert _wait_until(lambda: finished)
        assert ctx.closed() is False
    finally:
        ctx.shutdown()
    assert ctx.closed() is True
    assert finished == [True]