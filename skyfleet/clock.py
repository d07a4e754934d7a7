"""Wall-clock time and cancellable waits.

Every poll loop and deadline check in the allocators goes through a
``Clock`` so tests can advance time without sleeping and callers can stop
an allocation from another thread.
"""

from __future__ import annotations

import threading
import time
from typing import Protocol, runtime_checkable

from skyfleet.errors import AllocationCancelledError


@runtime_checkable
class Clock(Protocol):
    def now(self) -> float:
        """Current wall-clock time in epoch seconds."""
        ...

    def sleep(self, seconds: float, *, cancellable: bool = True) -> None:
        """Block for ``seconds``.

        Raises ``AllocationCancelledError`` if the wait is cancellable and
        the owner asked to stop.
        """
        ...


class SystemClock:
    """Clock backed by ``time.time`` with an optional cancellation event.

    Example:
        >>> stop = threading.Event()
        >>> clock = SystemClock(stop)
        >>> # elsewhere: stop.set() makes the next clock.sleep() raise
    """

    def __init__(self, cancel: threading.Event | None = None) -> None:
        self._cancel = cancel

    @property
    def cancelled(self) -> bool:
        return self._cancel is not None and self._cancel.is_set()

    def now(self) -> float:
        return time.time()

    def sleep(self, seconds: float, *, cancellable: bool = True) -> None:
        if not cancellable or self._cancel is None:
            time.sleep(max(seconds, 0))
            return

        if self._cancel.is_set() or self._cancel.wait(max(seconds, 0)):
            raise AllocationCancelledError("allocation cancelled")
