"""Non-blocking TCP and UDP sockets whose waits suspend coroutines."""

from __future__ import annotations

import enum
import errno
import os
import socket
import threading
from typing import Any, Optional, Union

from .coroutine import coroutine
from .event import Event, EventContext
from .schedule import Semaphore
from .timed import TimedContext

_RETRY_ERRNOS = {errno.EAGAIN, errno.EWOULDBLOCK}
_CONNECT_PENDING = {errno.EINPROGRESS, errno.EAGAIN, errno.EWOULDBLOCK}
_NOSIGNAL = getattr(socket, "MSG_NOSIGNAL", 0)
_RCVBUF_SIZE = 1024 * 1024


class Protocol(enum.Enum):
    TCP = "tcp"
    UDP = "udp"
    ICMP = "icmp"  # not supported
    SCTP = "sctp"  # not supported


class AddressFamily(enum.Enum):
    IPv4 = "ipv4"
    IPv6 = "ipv6"


class SocketError(Exception):
    """A failed socket operation: the descriptor, an errno value and a message."""

    def __init__(self, fd: int, err_code: int, err_msg: str) -> None:
        super().__init__(err_msg)
        self.fd = fd
        self.err_code = err_code
        self.err_msg = err_msg

    def __repr__(self) -> str:
        return f"SocketError(fd={self.fd}, err_code={self.err_code}, err_msg={self.err_msg!r})"


class _EventWait:
    """Outcome of waiting for readiness: 1 for the event, -1 for the timeout."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.outcome = 0
        self.signal = Semaphore(0)

    def finish(self, outcome: int) -> None:
        with self._lock:
            if self.outcome != 0:
                return
            self.outcome = outcome
        self.signal.release()


class Socket:
    """A non-blocking socket bound to a context; its blocking calls are coroutines.

    Do not use one socket from more than one context.
    """

    def __init__(
        self,
        ctx: Any,
        protocol: Protocol,
        family: AddressFamily,
        *,
        sock: Optional[socket.socket] = None,
    ) -> None:
        self._ctx = ctx
        self._protocol = Protocol(protocol)
        self._family = AddressFamily(family)
        if self._protocol not in (Protocol.TCP, Protocol.UDP):
            raise SocketError(-1, 0, f"{self._protocol.name} sockets are not supported")
        if sock is None:
            kind = socket.SOCK_STREAM if self._protocol is Protocol.TCP else socket.SOCK_DGRAM
            domain = socket.AF_INET if self._family is AddressFamily.IPv4 else socket.AF_INET6
            try:
                sock = socket.socket(domain, kind)
            except OSError as exc:
                raise SocketError(-1, exc.errno or 0, exc.strerror or str(exc)) from exc
        self._sock = sock
        self._fd = sock.fileno()
        self._closed = False
        self._set_sock_opt()

    @staticmethod
    def create(ctx: Any, protocol: Protocol, family: AddressFamily) -> "Socket":
        """Open a new socket registered with the started context ``ctx``."""
        return Socket(ctx, protocol, family)

    def __repr__(self) -> str:
        return f"<Socket fd={self._fd} {self._protocol.name} {self._family.name}>"

    def fileno(self) -> int:
        return self._fd

    def _error(self, exc: OSError) -> SocketError:
        code = exc.errno or 0
        return SocketError(self._fd, code, exc.strerror or os.strerror(code))

    def _set_sock_opt(self) -> None:
        try:
            self._sock.setblocking(False)
        except OSError as exc:
            self._sock.close()
            raise self._error(exc) from exc
        options = [
            (socket.SO_REUSEADDR, 1),
            (socket.SO_RCVBUF, _RCVBUF_SIZE),
            (getattr(socket, "SO_REUSEPORT", None), 1),
            (getattr(socket, "SO_ZEROCOPY", None), 1),
        ]
        for name, value in options:
            if name is None:
                continue
            try:
                self._sock.setsockopt(socket.SOL_SOCKET, name, value)
            except OSError:
                pass
        try:
            EventContext.at(self._ctx).add(self._fd, Event.ERR | Event.ONESHOT, lambda ev: None)
        except Exception:
            self._sock.close()
            raise

    def _sockaddr(self, ip: str, port: int, *, wildcard: bool) -> tuple:
        if self._family is AddressFamily.IPv4:
            domain, any_addr, label = socket.AF_INET, "0.0.0.0", "Invalid IPv4 address"
        else:
            domain, any_addr, label = socket.AF_INET6, "::", "Invalid IPv6 address"
        if wildcard and ip in ("", any_addr):
            ip = any_addr
        else:
            try:
                socket.inet_pton(domain, ip)
            except (OSError, ValueError) as exc:
                raise SocketError(self._fd, 0, label) from exc
        if self._family is AddressFamily.IPv4:
            return (ip, port)
        return (ip, port, 0, 0)

    @coroutine
    def _wait_event(self, on: Event, timeout_ms: float):
        """Suspend until ``on`` fires; return False if ``timeout_ms`` ran out first."""
        waiter = _EventWait()
        EventContext.at(self._ctx).mod(self._fd, on, lambda ev: waiter.finish(1))
        if timeout_ms > 0:
            TimedContext.at(self._ctx).create_timeout(lambda: waiter.finish(-1), timeout_ms)
        yield waiter.signal.acquire()
        return waiter.outcome == 1

    def bind(self, ip: str, port: int) -> None:
        """Bind to ``ip``; an empty string or the wildcard address binds to all."""
        addr = self._sockaddr(ip, port, wildcard=True)
        try:
            self._sock.bind(addr)
        except OSError as exc:
            raise self._error(exc) from exc

    def listen(self, backlog: int = 1024) -> None:
        if self._protocol is not Protocol.TCP:
            raise SocketError(self._fd, 0, "Listen only supported for TCP sockets")
        try:
            self._sock.listen(backlog)
        except OSError as exc:
            raise self._error(exc) from exc

    @coroutine
    def accept(self, ctx: Any = None):
        """Wait for a connection; the new socket belongs to ``ctx`` or this socket's context."""
        if self._protocol is not Protocol.TCP:
            raise SocketError(self._fd, 0, "Accept only supported for TCP sockets")
        target = self._ctx if ctx is None else ctx
        while True:
            try:
                conn, _ = self._sock.accept()
            except (BlockingIOError, InterruptedError):
                pass
            except OSError as exc:
                raise self._error(exc) from exc
            else:
                return Socket(target, self._protocol, self._family, sock=conn)
            yield self._wait_event(Event.IN | Event.ONESHOT, -1)

    @coroutine
    def connect(self, ip: str, port: int, timeout_ms: float = -1):
        """Connect to ``ip``:``port``; a non-positive timeout waits forever."""
        addr = self._sockaddr(ip, port, wildcard=False)
        try:
            code = self._sock.connect_ex(addr)
        except OSError as exc:
            raise self._error(exc) from exc
        if code == 0:
            return
        if self._protocol is Protocol.UDP and code == errno.EINPROGRESS:
            return
        if code not in _CONNECT_PENDING:
            raise SocketError(self._fd, code, os.strerror(code))
        ready = yield self._wait_event(Event.OUT | Event.ONESHOT, timeout_ms)
        if not ready:
            raise SocketError(self._fd, errno.ETIMEDOUT, "connect timeout")
        try:
            status = self._sock.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        except OSError as exc:
            raise self._error(exc) from exc
        if status != 0:
            raise SocketError(self._fd, status, os.strerror(status))

    @coroutine
    def recv(self, size: int, timeout_ms: float = -1):
        """Receive at most ``size`` bytes, waiting for data to arrive."""
        while True:
            try:
                data = self._sock.recv(size)
            except (ConnectionResetError, BrokenPipeError) as exc:
                raise SocketError(self._fd, exc.errno or 0, "close by other side") from exc
            except (BlockingIOError, InterruptedError):
                pass
            except OSError as exc:
                if exc.errno not in _RETRY_ERRNOS:
                    raise self._error(exc) from exc
            else:
                if data:
                    return data
                if self._protocol is Protocol.TCP:
                    raise SocketError(self._fd, 0, "close by other side")
            ready = yield self._wait_event(Event.IN | Event.ONESHOT, timeout_ms)
            if not ready:
                raise SocketError(self._fd, errno.ETIMEDOUT, "recv timeout")

    @coroutine
    def send(self, data: Union[bytes, bytearray, memoryview, str], timeout_ms: float = -1):
        """Send all of ``data``, waiting whenever the socket buffer is full."""
        if isinstance(data, str):
            data = data.encode()
        view = memoryview(data).cast("B")
        offset = 0
        while offset < len(view):
            try:
                n = self._sock.send(view[offset:], _NOSIGNAL)
            except (ConnectionResetError, BrokenPipeError) as exc:
                raise SocketError(self._fd, exc.errno or 0, "close by other side") from exc
            except (BlockingIOError, InterruptedError):
                n = 0
            except OSError as exc:
                if exc.errno not in _RETRY_ERRNOS:
                    raise self._error(exc) from exc
                n = 0
            if n > 0:
                offset += n
                continue
            ready = yield self._wait_event(Event.OUT | Event.ONESHOT, timeout_ms)
            if not ready:
                raise SocketError(self._fd, errno.ETIMEDOUT, "send timeout")

    @coroutine
    def sendto(self, data: Union[bytes, bytearray, memoryview, str], ip: str, port: int,
               timeout_ms: float = -1):
        """Send one datagram to ``ip``:``port``; return the number of bytes sent."""
        if self._protocol is not Protocol.UDP:
            raise SocketError(self._fd, 0, "send_to only supported for UDP sockets")
        if isinstance(data, str):
            data = data.encode()
        addr = self._sockaddr(ip, port, wildcard=False)
        while True:
            try:
                return self._sock.sendto(data, _NOSIGNAL, addr)
            except (BlockingIOError, InterruptedError):
                pass
            except OSError as exc:
                if exc.errno not in _RETRY_ERRNOS:
                    raise self._error(exc) from exc
            ready = yield self._wait_event(Event.OUT | Event.ONESHOT, timeout_ms)
            if not ready:
                raise SocketError(self._fd, errno.ETIMEDOUT, "send_to timeout")

    @coroutine
    def recvfrom(self, size: int, timeout_ms: float = -1):
        """Receive one datagram; return ``(data, (ip, port))`` of its sender."""
        if self._protocol is not Protocol.UDP:
            raise SocketError(self._fd, 0, "recv_from only supported for UDP sockets")
        while True:
            try:
                data, addr = self._sock.recvfrom(size)
            except (BlockingIOError, InterruptedError):
                pass
            except OSError as exc:
                if exc.errno not in _RETRY_ERRNOS:
                    raise self._error(exc) from exc
            else:
                if data:
                    return data, (addr[0], addr[1])
            ready = yield self._wait_event(Event.IN | Event.ONESHOT, timeout_ms)
            if not ready:
                raise SocketError(self._fd, errno.ETIMEDOUT, "recv_from timeout")

    def close(self) -> None:
        """Stop watching the descriptor and close it; closing twice does nothing."""
        if self._closed:
            return
        self._closed = True
        try:
            EventContext.at(self._ctx).delete(self._fd)
        finally:
            self._sock.close()