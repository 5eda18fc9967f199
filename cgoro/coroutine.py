"""Generator-backed coroutines with an explicit, heap-allocated call stack."""

from __future__ import annotations

import functools
import inspect
from typing import Any, Callable, Generator, Optional


class Coroutine:
    """A resumable chain of generator frames.

    Inside the wrapped generator, ``value = yield other`` awaits another
    coroutine (or a bare generator) and receives its return value; any other
    ``yield`` suspends the whole chain until the next :meth:`resume`.
    Nested awaits are driven iteratively, so call depth is not limited by
    the interpreter's recursion limit.
    """

    __slots__ = ("_gen", "_stack", "_done", "_value", "_error")

    def __init__(self, gen: Generator[Any, Any, Any]) -> None:
        if not inspect.isgenerator(gen):
            raise TypeError(f"expected a generator, got {type(gen).__name__}")
        self._gen = gen
        self._stack: Optional[list[Coroutine]] = None
        self._done = False
        self._value: Any = None
        self._error: Optional[BaseException] = None

    def __repr__(self) -> str:
        state = "done" if self._done else "pending"
        return f"<Coroutine {getattr(self._gen, '__name__', '?')} {state}>"

    def done(self) -> bool:
        """Whether the coroutine has returned, raised or been destroyed."""
        return self._done

    def result(self) -> Any:
        """Return the coroutine's value, re-raising the error it finished with."""
        if not self._done:
            raise RuntimeError("coroutine has not finished")
        if self._error is not None:
            raise self._error
        return self._value

    def resume(self) -> None:
        """Run the chain until it suspends or the entry frame finishes.

        An exception that no frame handles is raised from here.
        """
        if self._done:
            raise RuntimeError("cannot resume a finished coroutine")
        if self._stack is None:
            self._stack = [self]
        elif self._stack[0] is not self:
            raise RuntimeError("only the entry coroutine of a call chain can be resumed")
        stack = self._stack

        value: Any = None
        error: Optional[BaseException] = None
        while True:
            frame = stack[-1]
            try:
                if error is not None:
                    yielded = frame._gen.throw(error)
                else:
                    yielded = frame._gen.send(value)
            except StopIteration as stop:
                frame._finish(stop.value, None)
                stack.pop()
                if not stack:
                    return
                value, error = stop.value, None
                continue
            except Exception as exc:
                frame._finish(None, exc)
                stack.pop()
                if not stack:
                    raise
                value, error = None, exc
                continue

            value, error = None, None
            if inspect.isgenerator(yielded):
                yielded = Coroutine(yielded)
            if not isinstance(yielded, Coroutine):
                return
            if yielded._done:
                value, error = yielded._value, yielded._error
                continue
            if yielded._stack is not None:
                error = RuntimeError("coroutine is already being awaited")
                continue
            yielded._stack = stack
            stack.append(yielded)

    def destroy(self) -> None:
        """Close every frame of the chain, innermost first, running their cleanup."""
        stack = self._stack if self._stack is not None else [self]
        first_error: Optional[BaseException] = None
        for frame in reversed(stack):
            if frame._done:
                continue
            frame._done = True
            try:
                frame._gen.close()
            except Exception as exc:
                if first_error is None:
                    first_error = exc
        stack.clear()
        self._done = True
        if first_error is not None:
            raise first_error

    def _finish(self, value: Any, error: Optional[BaseException]) -> None:
        self._done = True
        self._value = value
        self._error = error


def _returning(value: Any) -> Generator[Any, Any, Any]:
    """Generator that finishes at once with ``value`` as its return value."""
    yield from ()
    return value


def coroutine(fn: Callable[..., Any]) -> Callable[..., Coroutine]:
    """Make calls to ``fn`` return a :class:`Coroutine`.

    A plain function is accepted too; its return value becomes the result.
    """

    @functools.wraps(fn)
    def wrapper(*args: Any, **kwargs: Any) -> Coroutine:
        produced = fn(*args, **kwargs)
        if inspect.isgenerator(produced):
            return Coroutine(produced)
        return Coroutine(_returning(produced))

    return wrapper