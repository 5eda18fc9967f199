# cgoro

Go-style concurrency for Python: generator-based coroutines run by a pool of
worker threads, channels with optional buffering, a `select` over several
channel operations, timers, and non-blocking TCP/UDP sockets driven by a
readiness event loop. It depends on nothing outside the standard library.

## Installing

```
pip install .
```

For running the test suite:

```
pip install ".[test]"
pytest
```

## Coroutines

`cgoro.coroutine.coroutine` turns a generator function into a function that
returns a `Coroutine`. Inside it, `value = yield other` awaits another
coroutine (or a bare generator) and receives its return value; exceptions
travel up the chain. Any other `yield` suspends the whole chain. Nested
awaits are driven without Python recursion, so depth is not limited by the
recursion limit.

A `Coroutine` can also be driven by hand: `resume()` runs it until it
suspends or finishes (raising any unhandled exception), `done()` tells
whether it has finished, `result()` returns its value or re-raises its
error, and `destroy()` closes every frame of the chain, running their
`finally` blocks.

## Running coroutines: `Context`

`cgoro.context.Context` owns the worker threads. `startup(n_worker)` starts
them; `shutdown()` stops and joins them and is safe to call twice;
`closed()` tells whether it has been shut down. A context cannot be started
again. Coroutines still blocked when a context stops are destroyed, which
runs their cleanup code. An exception escaping a task is logged through the
`logging` module and the task is dropped.

`cgoro.schedule.spawn(ctx, fn)` hands a coroutine to a started context.
Inside a running task, `this_coroutine_id()`, `this_coroutine_ctx()` and
`this_coroutine_locals()` describe the current task, and
`yield yield_now()` gives the worker to other runnable tasks.

## Synchronisation (`cgoro.schedule`)

- `Semaphore(vacant)`: `yield sem.acquire()` suspends the coroutine, not the
  thread, until a unit is free; `release()` returns one; `count()` reports
  the free units.
- `Mutex`: `yield mtx.lock()` and `mtx.unlock()`.
- `Condition`: `yield cond.wait(lock)` with a held `threading.Lock`;
  `notify()` reschedules the longest-blocked coroutine.
- `defer(fn)` returns a `DeferGuard` that calls `fn` when its `with` block
  exits, unless `drop()` was called first.

## Channels and select (`cgoro.channel`)

- `Channel(capacity=0)` carries values between coroutines, across contexts
  too. With capacity 0 every send meets a receiver directly. `yield
  chan.send(value)` and `value = yield chan.recv()` suspend as needed;
  `try_send(value)` never waits and returns whether the value was taken.
- `Select`: `sel.on(key, chan)` returns a `Case`; call `.send(value)` or
  `.recv()` on it, optionally add `sel.on_default(key)`, then
  `key = yield sel()`. Cases are tried in random order; a received value is
  read from the case's `value` property. A select can be awaited once, and a
  key may not be `None`.
- `timeout(ctx, timeout_ms)` returns a channel that receives `Nil()` once
  the time has passed.
- `collect(ctx, fn)` runs `fn` in `ctx` and delivers its result on the
  returned channel (`Nil()` when the result is `None`).

## Timers (`cgoro.timed`)

`yield sleep(ctx, timeout_ms)` suspends the running coroutine. The
underlying `TimedContext` (reached with `TimedContext.at(ctx)`) offers
`create_timeout(fn, timeout_ms)` to call a function once a deadline passes.

## Sockets (`cgoro.netsocket`)

`Socket.create(ctx, protocol, family)` with `Protocol.TCP` or `Protocol.UDP`
and `AddressFamily.IPv4` or `AddressFamily.IPv6` opens a non-blocking socket
registered with a started context. `bind(ip, port)` (an empty string or the
wildcard address binds to all) and `listen(backlog=1024)` return at once;
`accept(ctx=None)`, `connect`, `send`, `recv`, `sendto` and `recvfrom` are
coroutines that suspend only the caller. A timeout of zero or less waits
forever. `recv` returns bytes, `recvfrom` returns `(data, (ip, port))`,
`sendto` returns the number of bytes sent. Failures, including timeouts,
raise `SocketError` with `fd`, `err_code` and `err_msg`. `close()` stops
watching the descriptor and closes it.

The lower-level readiness layer lives in `cgoro.event`: the `Event` flags,
`EventHandler`, `EventContext` and `EventLazySignal`.

## Example

```python
import time

from cgoro.channel import Channel
from cgoro.context import Context
from cgoro.coroutine import coroutine
from cgoro.schedule import spawn

received = []


@coroutine
def producer(chan, n):
    for i in range(n):
        yield chan.send(i)


@coroutine
def consumer(chan, n):
    for _ in range(n):
        value = yield chan.recv()
        received.append(value)


ctx = Context()
ctx.startup(4)
chan = Channel(0)
spawn(ctx, consumer(chan, 100))
spawn(ctx, producer(chan, 100))

while len(received) < 100:
    time.sleep(0.05)
ctx.shutdown()
print(sorted(received) == list(range(100)))
```

## What it does not do

- It is a library only: there is no command-line program.
- Only TCP and UDP sockets are supported; `Protocol.ICMP` and
  `Protocol.SCTP` raise `SocketError`.
- Worker threads share the interpreter, so coroutines run concurrently but
  CPU-bound work gains no parallelism.
- The event loop and sockets are meant for Linux and other POSIX systems.