"""
Deferred-callback scheduling.

The session manager never calls a timer primitive directly; it asks a
``Scheduler`` to run a callback after a delay and keeps the returned
``CancellationHandle``.  Two implementations are provided:

* ``ThreadingScheduler`` -- real wall-clock timers (``threading.Timer``).
* ``ManualScheduler``    -- a fake clock that only moves when
  ``advance()`` is called, for deterministic tests and simulations.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

logger = logging.getLogger(__name__)


class CancellationHandle(Protocol):
    def cancel(self) -> None:
        """Prevent the callback from running if it has not started yet."""


class Scheduler(Protocol):
    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> CancellationHandle:
        """Run ``callback`` once after ``delay_seconds``."""


# ---------------------------------------------------------------------------
# Threading scheduler
# ---------------------------------------------------------------------------

class _TimerHandle:
    def __init__(self, timer: threading.Timer) -> None:
        self._timer = timer

    def cancel(self) -> None:
        self._timer.cancel()


class ThreadingScheduler:
    """Scheduler backed by daemon ``threading.Timer`` threads."""

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> CancellationHandle:
        timer = threading.Timer(max(delay_seconds, 0.0), self._run, args=(callback,))
        timer.daemon = True
        timer.start()
        return _TimerHandle(timer)

    @staticmethod
    def _run(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Scheduled callback failed")


# ---------------------------------------------------------------------------
# Manual scheduler
# ---------------------------------------------------------------------------

class _ScheduledCall:
    def __init__(self, due: datetime, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler with a fake clock.

    Callbacks run synchronously inside ``advance()``, in due-time order
    (ties in scheduling order), with ``now()`` set to each callback's due
    time while it runs.  Callbacks scheduled by other callbacks run in
    the same ``advance()`` call if they fall inside the window.

    Args:
        start: Initial clock value.  Defaults to 2024-01-01 09:00 UTC.
    """

    def __init__(self, start: Optional[datetime] = None) -> None:
        self._now = start or datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)
        self._queue: list[tuple[datetime, int, _ScheduledCall]] = []
        self._seq = itertools.count()

    def now(self) -> datetime:
        """Current fake time."""
        return self._now

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> CancellationHandle:
        call = _ScheduledCall(self._now + timedelta(seconds=max(delay_seconds, 0.0)), callback)
        heapq.heappush(self._queue, (call.due, next(self._seq), call))
        return call

    def advance(self, seconds: float) -> int:
        """Move the clock forward, running every callback that falls due.

        Returns:
            The number of callbacks that ran.
        """
        target = self._now + timedelta(seconds=seconds)
        fired = 0
        while self._queue and self._queue[0][0] <= target:
            due, _, call = heapq.heappop(self._queue)
            if call.cancelled:
                continue
            self._now = due
            call.callback()
            fired += 1
        self._now = target
        return fired

    @property
    def pending(self) -> int:
        """Number of scheduled callbacks that have not run or been cancelled."""
        return sum(1 for _, _, call in self._queue if not call.cancelled)
