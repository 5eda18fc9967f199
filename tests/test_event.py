import socket
import threading
import time
import types

import pytest

from cgoro.event import Event, EventContext, EventHandler, EventLazySignal


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    a.setblocking(False)
    b.setblocking(False)
    yield a, b
    a.close()
    b.close()


def _pump(handler, seen, rounds=100):
    """Handle events until a callback fired; return the total handled."""
    total = 0
    for _ in range(rounds):
        total += handler.handle(8, 20)
        if seen:
            break
    return total


def test_readable_fd_fires_in_callback(pair):
    a, b = pair
    handler = EventHandler()
    seen = []
    handler.add(a.fileno(), Event.IN, seen.append)
    b.send(b"x")
    _pump(handler, seen)
    handler.close()
    assert seen
    assert seen[0] & Event.IN


def test_writable_fd_fires_out_callback(pair):
    a, _ = pair
    handler = EventHandler()
    seen = []
    handler.add(a, Event.OUT, seen.append)
    handled = _pump(handler, seen)
    handler.close()
    assert handled >= 1
    assert seen[0] & Event.OUT
    assert not seen[0] & Event.IN


def test_oneshot_disarms_until_mod(pair):
    a, b = pair
    handler = EventHandler()
    seen = []
    handler.add(a.fileno(), Event.IN | Event.ONESHOT, seen.append)
    b.send(b"x")
    _pump(handler, seen)
    fired = len(seen)
    assert fired >= 1
    assert seen[0] & Event.ONESHOT

    # data is still pending, but the registration is disarmed
    assert handler.handle(8, 0) == 0
    assert len(seen) == fired

    handler.mod(a.fileno(), Event.IN | Event.ONESHOT, seen.append)
    for _ in range(100):
        handler.handle(8, 20)
        if len(seen) > fired:
            break
    handler.close()
    assert len(seen) == fired + 1


def test_mod_replaces_callback(pair):
    a, b = pair
    handler = EventHandler()
    old, new = [], []
    handler.add(a.fileno(), Event.IN, old.append)
    handler.mod(a.fileno(), Event.IN, new.append)
    b.send(b"x")
    _pump(handler, new)
    handler.close()
    assert old == []
    assert new and new[0] & Event.IN


def test_delete_stops_callbacks(pair):
    a, b = pair
    handler = EventHandler()
    seen = []
    handler.add(a.fileno(), Event.IN, seen.append)
    handler.delete(a.fileno())
    b.send(b"x")
    handler.handle(8, 20)
    handler.close()
    assert seen == []


def test_add_twice_raises(pair):
    a, _ = pair
    handler = EventHandler()
    handler.add(a.fileno(), Event.IN, lambda ev: None)
    with pytest.raises(RuntimeError):
        handler.add(a.fileno(), Event.IN, lambda ev: None)
    handler.close()


def test_mod_unknown_fd_raises(pair):
    a, _ = pair
    handler = EventHandler()
    with pytest.raises(RuntimeError):
        handler.mod(a.fileno(), Event.IN, lambda ev: None)
    handler.close()


def test_closed_handler_rejects_add_and_handles_nothing(pair):
    a, _ = pair
    handler = EventHandler()
    handler.close()
    with pytest.raises(RuntimeError):
        handler.add(a.fileno(), Event.IN, lambda ev: None)
    assert handler.handle(8, 0) == 0


def test_context_routes_by_index(pair):
    a, b = pair
    ectx = EventContext(3)
    assert ectx.handler(1) is ectx.handler(4)
    seen = []
    ectx.add(a.fileno(), Event.IN, seen.append)
    b.send(b"x")
    for _ in range(100):
        ectx.run_handler(a.fileno(), 8, 20)
        if seen:
            break
    ectx.close()
    assert seen and seen[0] & Event.IN


def test_context_requires_partitions():
    with pytest.raises(ValueError):
        EventContext(0)


def test_at_requires_started_context():
    with pytest.raises(RuntimeError):
        EventContext.at(object())


def test_lazy_signal_wakes_waiter():
    ectx = EventContext(1)
    ctx = types.SimpleNamespace(event_ctx=ectx)
    signal = EventLazySignal(ctx, 0, nowait=False)
    outcome = []

    def wait_for_signal():
        outcome.append(signal.wait(5000))

    waiter = threading.Thread(target=wait_for_signal)
    waiter.start()
    handled = 0
    deadline = time.monotonic() + 5
    while waiter.is_alive() and time.monotonic() < deadline:
        signal.emit()
        handled += ectx.run_handler(0, 8, 10)
    waiter.join(5)
    signal.close()
    ectx.close()
    assert outcome == [True]
    assert handled >= 1


def test_nowait_signal_does_not_block():
    ectx = EventContext(1)
    ctx = types.SimpleNamespace(event_ctx=ectx)
    signal = EventLazySignal(ctx, 0, nowait=True)
    start = time.monotonic()
    woke = signal.wait(5000)
    elapsed = time.monotonic() - start
    signal.close()
    ectx.close()
    assert woke is False
    assert elapsed < 5


def test_lazy_signal_close_unregisters():
    ectx = EventContext(1)
    ctx = types.SimpleNamespace(event_ctx=ectx)
    signal = EventLazySignal(ctx, 0)
    fd = signal._fd
    signal.close()
    with pytest.raises(RuntimeError):
        ectx.handler(0).mod(fd, Event.IN, lambda ev: None)
    ectx.close()