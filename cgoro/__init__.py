"""Go-style coroutines, channels, select, timers and sockets on worker threads."""

__version__ = "0.1.0"

__all__ = [
    "channel",
    "context",
    "coroutine",
    "event",
    "netsocket",
    "schedule",
    "timed",
]