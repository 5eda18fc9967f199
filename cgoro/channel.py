"""Channels between coroutines, multi-way select, timeouts and result collection."""

from __future__ import annotations

import enum
import random
import threading
from collections import deque
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from typing import Any, Callable, Iterator, Optional

from .coroutine import Coroutine, coroutine
from .schedule import Semaphore, spawn
from .timed import TimedContext


@dataclass(frozen=True)
class Nil:
    """Value carried by channels that only signal that something happened."""


class _Status(enum.Enum):
    OK = enum.auto()
    INVALID_SRC = enum.auto()
    INVALID_DST = enum.auto()
    INVALID_ONESHOT = enum.auto()
    IN_PROCESS = enum.auto()


@dataclass(eq=False)
class _Waiter:
    """One pending send or receive, either standalone or a case of a select."""

    value: Any = None
    signal: Optional[Semaphore] = None
    select: Optional["Select"] = None
    key: Any = None
    chan: Optional["Channel"] = None

    def live(self) -> bool:
        return self.select is None or self.select._key is None

    def commit(self) -> None:
        if self.select is not None:
            self.select._key = self.key
            self.select._signal.release()
        elif self.signal is not None:
            self.signal.release()

    def drop(self) -> None:
        chan = self.chan
        if chan is None:
            return
        with chan._lock:
            chan._senders.pop(self, None)
            chan._receivers.pop(self, None)


@contextmanager
def _locked(*waiters: _Waiter) -> Iterator[None]:
    selects = {id(w.select): w.select for w in waiters if w.select is not None}
    with ExitStack() as stack:
        for key in sorted(selects):
            stack.enter_context(selects[key]._lock)
        yield


def _transfer(src: _Waiter, dst: _Waiter) -> _Status:
    if src.select is not None and src.select is dst.select:
        raise RuntimeError("selector deadlock because waiting send and recv on the same channel")
    with _locked(src, dst):
        if not src.live():
            return _Status.INVALID_SRC
        if not dst.live():
            return _Status.INVALID_DST
        dst.value = src.value
        src.commit()
        dst.commit()
    return _Status.OK


def _pop_first(queue: dict) -> _Waiter:
    waiter = next(iter(queue))
    del queue[waiter]
    return waiter


class Channel:
    """A FIFO channel holding up to ``capacity`` buffered values.

    With capacity 0 every send meets a receiver directly. The object is
    shared by reference, so passing it around shares the same channel.
    """

    def __init__(self, capacity: int = 0) -> None:
        if capacity < 0:
            raise ValueError("capacity must not be negative")
        self._capacity = capacity
        self._lock = threading.Lock()
        self._buffer: deque[Any] = deque()
        self._senders: dict[_Waiter, None] = {}
        self._receivers: dict[_Waiter, None] = {}

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        with self._lock:
            return len(self._buffer)

    def __repr__(self) -> str:
        return f"<Channel capacity={self._capacity} buffered={len(self)}>"

    def _buffer_deliver(self, receiver: _Waiter) -> bool:
        if not self._buffer:
            return False
        with _locked(receiver):
            if not receiver.live():
                return False
            receiver.value = self._buffer.popleft()
            receiver.commit()
        return True

    def _buffer_take(self, sender: _Waiter) -> bool:
        if len(self._buffer) >= self._capacity:
            return False
        with _locked(sender):
            if not sender.live():
                return False
            self._buffer.append(sender.value)
            sender.commit()
        return True

    def _request(self, receiver: _Waiter, oneshot: bool = False) -> _Status:
        """A receiver arrives: serve it from the buffer or a waiting sender."""
        with self._lock:
            receiver.chan = self
            if self._buffer_deliver(receiver):
                while self._senders:
                    if self._buffer_take(_pop_first(self._senders)):
                        break
                return _Status.OK
            while self._senders:
                sender = next(iter(self._senders))
                status = _transfer(sender, receiver)
                if status is _Status.OK:
                    del self._senders[sender]
                    return _Status.OK
                if status is _Status.INVALID_SRC:
                    del self._senders[sender]
                    continue
                return _Status.INVALID_DST
            if not oneshot:
                self._receivers[receiver] = None
                return _Status.IN_PROCESS
            return _Status.INVALID_ONESHOT

    def _offer(self, sender: _Waiter, oneshot: bool = False) -> _Status:
        """A sender arrives: hand its value to the buffer or a waiting receiver."""
        with self._lock:
            sender.chan = self
            if self._buffer_take(sender):
                while self._receivers:
                    if self._buffer_deliver(_pop_first(self._receivers)):
                        break
                return _Status.OK
            while self._receivers:
                receiver = next(iter(self._receivers))
                status = _transfer(sender, receiver)
                if status is _Status.OK:
                    del self._receivers[receiver]
                    return _Status.OK
                if status is _Status.INVALID_DST:
                    del self._receivers[receiver]
                    continue
                return _Status.INVALID_SRC
            if not oneshot:
                self._senders[sender] = None
                return _Status.IN_PROCESS
            return _Status.INVALID_ONESHOT

    @coroutine
    def send(self, value: Any):
        """Send ``value``, suspending until a receiver or the buffer takes it."""
        waiter = _Waiter(value=value, signal=Semaphore(0))
        try:
            self._offer(waiter)
            yield waiter.signal.acquire()
        finally:
            waiter.drop()

    @coroutine
    def recv(self):
        """Receive the next value, suspending until one is available."""
        waiter = _Waiter(signal=Semaphore(0))
        try:
            self._request(waiter)
            yield waiter.signal.acquire()
        finally:
            waiter.drop()
        return waiter.value

    def try_send(self, value: Any) -> bool:
        """Send without waiting; return whether the value was taken."""
        return self._offer(_Waiter(value=value), oneshot=True) is _Status.OK


class Case:
    """One channel operation of a :class:`Select`, created by :meth:`Select.on`."""

    def __init__(self, select: "Select", chan: Channel, key: Any) -> None:
        self._select = select
        self._chan = chan
        self._key = key
        self._waiter: Optional[_Waiter] = None

    def _bind(self, waiter: _Waiter, listen: Callable[[], Any]) -> "Case":
        if self._waiter is not None:
            raise RuntimeError("case is already bound to an operation")
        waiter.select = self._select
        waiter.key = self._key
        self._waiter = waiter
        self._select._msgs.append(waiter)
        self._select._listeners.append(listen)
        return self

    def send(self, value: Any) -> "Case":
        """Make this case send ``value`` when chosen."""
        waiter = _Waiter(value=value)
        return self._bind(waiter, lambda: self._chan._offer(waiter))

    def recv(self) -> "Case":
        """Make this case receive a value when chosen; read it from :attr:`value`."""
        waiter = _Waiter()
        return self._bind(waiter, lambda: self._chan._request(waiter))

    @property
    def value(self) -> Any:
        """The value received (or offered) by this case."""
        if self._waiter is None:
            raise RuntimeError("case is not bound to an operation")
        return self._waiter.value


class Select:
    """A one-shot choice among channel operations.

    Bind cases with :meth:`on`, then ``key = yield select()`` to wait for one
    of them; the key of the case that happened is returned.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._signal = Semaphore(0)
        self._key: Any = None
        self._default_key: Any = None
        self._msgs: list[_Waiter] = []
        self._listeners: list[Callable[[], Any]] = []
        self._used = False

    def on(self, key: Any, chan: Channel) -> Case:
        """Create a case identified by ``key`` on ``chan``."""
        if key is None:
            raise ValueError("key not allowed")
        if not isinstance(chan, Channel):
            raise TypeError(f"expected a Channel, got {type(chan).__name__}")
        return Case(self, chan, key)

    def on_default(self, key: Any) -> None:
        """Return ``key`` right away when no case is ready."""
        if self._default_key is not None:
            raise RuntimeError("select already has a default case")
        if key is None:
            raise ValueError("key not allowed")
        self._default_key = key

    @coroutine
    def __call__(self):
        """Wait until a case happens and return its key."""
        if self._used:
            raise RuntimeError("select can only be awaited once")
        self._used = True
        listeners = list(self._listeners)
        random.shuffle(listeners)
        try:
            for listen in listeners:
                listen()
                with self._lock:
                    if self._key is not None:
                        break
            if self._default_key is None:
                yield self._signal.acquire()
                with self._lock:
                    return self._key
            with self._lock:
                if self._key is None:
                    self._key = self._default_key
                return self._key
        finally:
            self._drop()

    def _drop(self) -> None:
        for waiter in self._msgs:
            waiter.drop()
        self._msgs.clear()
        self._listeners.clear()


@coroutine
def _forward(fn: Coroutine, chan: Channel):
    result = yield fn
    yield chan.send(Nil() if result is None else result)


def collect(ctx: Any, fn: Coroutine) -> Channel:
    """Run ``fn`` in ``ctx`` and deliver its result on the returned channel.

    A result of ``None`` is delivered as ``Nil()``.
    """
    chan = Channel(0)
    spawn(ctx, _forward(fn, chan))
    return chan


def timeout(ctx: Any, timeout_ms: float) -> Channel:
    """Channel that receives ``Nil()`` once ``timeout_ms`` milliseconds have passed."""
    chan = Channel(1)
    TimedContext.at(ctx).create_timeout(lambda: chan.try_send(Nil()), timeout_ms)
    return chan