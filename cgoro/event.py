"""Readiness notification for file descriptors, split into partitions."""

from __future__ import annotations

import enum
import itertools
import selectors
import socket
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .schedule import LazySignal

Callback = Callable[["Event"], Any]


class Event(enum.IntFlag):
    """Readiness conditions a descriptor can be watched for."""

    IN = 0x1
    OUT = 0x2
    ERR = 0x4
    ONESHOT = 0x8


_READY_MASK = Event.IN | Event.OUT | Event.ERR


def _to_selector_mask(on: Event) -> int:
    mask = 0
    if on & Event.IN:
        mask |= selectors.EVENT_READ
    if on & Event.OUT:
        mask |= selectors.EVENT_WRITE
    return mask


def _from_selector_mask(mask: int) -> Event:
    ev = Event(0)
    if mask & selectors.EVENT_READ:
        ev |= Event.IN
    if mask & selectors.EVENT_WRITE:
        ev |= Event.OUT
    return ev


def _fileno(fd: Any) -> int:
    return fd if isinstance(fd, int) else fd.fileno()


@dataclass(eq=False)
class _Registration:
    tid: int
    on: Event
    fn: Callback
    armed: bool = False


class EventHandler:
    """One selector plus the callbacks registered on it.

    A registration with ``Event.ONESHOT`` is disarmed after it fires once and
    stays disarmed until :meth:`mod` is called for its descriptor.
    """

    def __init__(self) -> None:
        self._selector = selectors.DefaultSelector()
        self._lock = threading.RLock()
        self._regs: dict[int, _Registration] = {}
        self._ids = itertools.count()
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise RuntimeError("event handler is closed")

    def _install(self, fd: int, reg: _Registration, previous: Optional[_Registration]) -> None:
        mask = _to_selector_mask(reg.on)
        was_armed = previous is not None and previous.armed
        try:
            if mask and was_armed:
                self._selector.modify(fd, mask, reg.tid)
            elif mask:
                self._selector.register(fd, mask, reg.tid)
            elif was_armed:
                self._selector.unregister(fd)
        except (KeyError, ValueError, OSError) as exc:
            raise RuntimeError(f"cannot watch fd {fd}: {exc}") from exc
        reg.armed = bool(mask)

    def add(self, fd: Any, on: Event, callback: Callback) -> None:
        """Start watching ``fd``; raise RuntimeError if it is already watched."""
        fd = _fileno(fd)
        with self._lock:
            self._check_open()
            if fd in self._regs:
                raise RuntimeError(f"add failed: fd {fd} is already registered")
            reg = _Registration(next(self._ids), Event(on), callback)
            self._install(fd, reg, None)
            self._regs[fd] = reg

    def mod(self, fd: Any, on: Event, callback: Callback) -> None:
        """Replace the watch on ``fd``, re-arming it; raise RuntimeError if unknown."""
        fd = _fileno(fd)
        with self._lock:
            self._check_open()
            previous = self._regs.get(fd)
            if previous is None:
                raise RuntimeError(f"mod failed: fd {fd} is not registered")
            reg = _Registration(next(self._ids), Event(on), callback)
            self._install(fd, reg, previous)
            self._regs[fd] = reg

    def delete(self, fd: Any) -> None:
        """Stop watching ``fd``; unknown descriptors are ignored."""
        fd = _fileno(fd)
        with self._lock:
            reg = self._regs.pop(fd, None)
            if reg is None or not reg.armed or self._closed:
                return
            try:
                self._selector.unregister(fd)
            except (KeyError, ValueError, OSError):
                pass

    def handle(self, batch_size: int = 128, timeout_ms: float = 50) -> int:
        """Wait up to ``timeout_ms`` and dispatch at most ``batch_size`` events.

        Returns the number of descriptors that became ready.
        """
        timeout = max(timeout_ms, 0) / 1000.0
        with self._lock:
            if self._closed:
                return 0
            idle = not self._selector.get_map()
        if idle:
            if timeout:
                time.sleep(timeout)
            return 0
        try:
            ready = self._selector.select(timeout)
        except (OSError, ValueError):
            return 0
        ready = ready[:batch_size]

        calls: list[tuple[Callback, Event]] = []
        with self._lock:
            for key, mask in ready:
                reg = self._regs.get(key.fd)
                if reg is None or reg.tid != key.data or not reg.armed:
                    continue
                ev = _from_selector_mask(mask)
                if reg.on & Event.ONESHOT:
                    ev |= Event.ONESHOT
                    try:
                        self._selector.unregister(key.fd)
                    except (KeyError, ValueError, OSError):
                        pass
                    reg.armed = False
                if reg.on & ev & _READY_MASK:
                    calls.append((reg.fn, ev))
        for fn, ev in calls:
            fn(ev)
        return len(ready)

    def close(self) -> None:
        """Release the selector; later calls to add or mod raise RuntimeError."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._regs.clear()
            self._selector.close()


class EventContext:
    """A set of event handlers; descriptors are spread over them by number."""

    def __init__(self, n_partition: int) -> None:
        if n_partition < 1:
            raise ValueError("n_partition must be at least 1")
        self._handlers = [EventHandler() for _ in range(n_partition)]

    @staticmethod
    def at(ctx: Any) -> "EventContext":
        """The event state of a started context."""
        event_ctx = getattr(ctx, "event_ctx", None)
        if event_ctx is None:
            raise RuntimeError("context has not been started")
        return event_ctx

    def handler(self, i: int) -> EventHandler:
        return self._handlers[i % len(self._handlers)]

    def add(self, fd: Any, on: Event, callback: Callback) -> None:
        fd = _fileno(fd)
        self.handler(fd).add(fd, on, callback)

    def mod(self, fd: Any, on: Event, callback: Callback) -> None:
        fd = _fileno(fd)
        self.handler(fd).mod(fd, on, callback)

    def delete(self, fd: Any) -> None:
        fd = _fileno(fd)
        self.handler(fd).delete(fd)

    def run_handler(self, pindex: int, batch_size: int, timeout_ms: float) -> int:
        """Dispatch ready events of partition ``pindex``."""
        return self.handler(pindex).handle(batch_size, timeout_ms)

    def close(self) -> None:
        for handler in self._handlers:
            handler.close()


class EventLazySignal(LazySignal):
    """Lazy signal whose emit makes a descriptor readable in an event handler.

    With ``nowait`` the signal only wakes the handler's poll; otherwise
    :meth:`wait` blocks the calling thread until the handler dispatches it.
    """

    def __init__(self, ctx: Any, pindex: int, nowait: bool = False) -> None:
        super().__init__()
        self._ctx = ctx
        self._pindex = pindex
        self._nowait = nowait
        self._reader, self._writer = socket.socketpair()
        self._reader.setblocking(False)
        self._writer.setblocking(False)
        self._fd = self._reader.fileno()
        self._handler().add(self._fd, Event.IN | Event.ONESHOT, self._callback)

    def _handler(self) -> EventHandler:
        return EventContext.at(self._ctx).handler(self._pindex)

    def close(self) -> None:
        """Unregister the descriptor and close it."""
        self._handler().delete(self._fd)
        self._reader.close()
        self._writer.close()

    def _emit(self) -> None:
        try:
            self._writer.send(b"\x01")
        except OSError:
            pass

    def _wait(self, duration_ms: float) -> None:
        if not self._nowait:
            self._cond.wait(max(duration_ms, 0) / 1000.0)
            self._handler().mod(self._fd, Event.IN | Event.ONESHOT, self._callback)

    def _drain(self) -> None:
        while True:
            try:
                if not self._reader.recv(4096):
                    return
            except OSError:
                return

    def _callback(self, ev: Event) -> None:
        with self._lock:
            self._drain()
            if not self._nowait:
                self._cond.notify()