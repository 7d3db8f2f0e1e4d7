"""Sliding-window quota limiter for external generation calls.

The limiter admits at most ``capacity`` grants inside any window of
``window_s`` seconds. It keeps a log of grant timestamps and a FIFO queue of
waiting callers. Every state change happens inside an *admission pass*, which
runs under the limiter's lock:

1. Drop grant timestamps that fell out of the window.
2. While waiters are queued and the window has room, grant the oldest waiter.
3. If waiters remain, report how long until the oldest grant expires (plus a
   small safety margin); otherwise go idle.

There is no background timer thread. A blocked caller sleeps on the limiter's
condition for at most the time reported by the last pass and then runs the
next pass itself, so the queue always makes progress without spinning. A call
to ``admit()`` from outside (for instance after advancing a mocked clock) wakes
every waiter that got a slot.

``acquire()`` never fails and has no timeout. Callers that need bounded waits
layer their own timeout around the work that follows the grant.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Optional

from batchgate.core.types import LimiterStats

_LOG = logging.getLogger(__name__)

Clock = Callable[[], float]

# Called with (tag, granted_at) for each grant, under the limiter lock.
GrantCallback = Callable[[Any, float], None]


@dataclass(slots=True)
class _Waiter:
    """A queued admission request. Mutated only under the limiter lock."""

    tag: Any = None
    granted: bool = False


class QuotaLimiter:
    """Sliding-window admission gate with FIFO waiters.

    Thread-safe: all shared state (grant log and wait queue) is guarded by a
    single ``threading.Condition``.

    Attributes:
        capacity: Maximum grants inside one window.
        window_s: Window length in seconds.
        margin_s: Safety margin added to every computed wait.
        name: Label used in log lines (usually the model class).
    """

    def __init__(
        self,
        capacity: int,
        window_s: float,
        *,
        margin_s: float = 0.1,
        clock: Clock = time.monotonic,
        name: Optional[str] = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            capacity: Maximum grants within one window. Must be >= 1.
            window_s: Window length in seconds. Must be > 0.
            margin_s: Extra seconds added to each wait so a waiter wakes just
                after the oldest grant expires. Default 0.1.
            clock: Monotonic time source in seconds. Injected by tests.
            name: Optional label for log lines.

        Raises:
            ValueError: If capacity or window are out of range.
        """
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        if window_s <= 0:
            raise ValueError(f"window_s must be > 0, got {window_s}")
        if margin_s < 0:
            raise ValueError(f"margin_s must be >= 0, got {margin_s}")

        self.capacity = int(capacity)
        self.window_s = float(window_s)
        self.margin_s = float(margin_s)
        self.name = name or "default"

        self._clock = clock
        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        self._grants: Deque[float] = deque()
        self._waiters: Deque[_Waiter] = deque()
        self._total_grants = 0
        self._on_grant: Optional[GrantCallback] = None

    def set_on_grant(self, callback: Optional[GrantCallback]) -> None:
        """Set a callback invoked for every grant.

        Useful for observability and for tests that check grant timing. The
        callback runs under the limiter lock and must not call back into the
        limiter.

        Args:
            callback: Function taking ``(tag, granted_at)``. Pass None to clear.
        """
        with self._lock:
            self._on_grant = callback

    def acquire(self, tag: Any = None) -> None:
        """Block until a grant is available, then record it.

        Args:
            tag: Optional label passed to the grant callback.
        """
        waiter = _Waiter(tag=tag)
        with self._condition:
            self._waiters.append(waiter)
            while True:
                wait_s = self._admit_locked()
                if waiter.granted:
                    return
                # Our own waiter is still queued, so the pass returned a wait.
                self._condition.wait(timeout=wait_s)

    def admit(self) -> Optional[float]:
        """Run one admission pass.

        Returns:
            Seconds until the next pass can grant anything, or None when no
            waiters remain.
        """
        with self._condition:
            return self._admit_locked()

    def _admit_locked(self) -> Optional[float]:
        now = self._clock()
        self._expire_locked(now)

        granted = 0
        while self._waiters and len(self._grants) < self.capacity:
            waiter = self._waiters.popleft()
            self._grants.append(now)
            waiter.granted = True
            granted += 1
            self._total_grants += 1
            if self._on_grant is not None:
                try:
                    self._on_grant(waiter.tag, now)
                except Exception:
                    _LOG.exception("Grant callback failed for limiter %s", self.name)

        if granted:
            self._condition.notify_all()

        if not self._waiters:
            return None

        oldest = self._grants[0]
        wait_s = max(0.0, self.window_s - (now - oldest) + self.margin_s)
        _LOG.debug(
            "Quota %s: %d/%d slots used, %d queued, next pass in %.3fs",
            self.name,
            len(self._grants),
            self.capacity,
            len(self._waiters),
            wait_s,
        )
        return wait_s

    def _expire_locked(self, now: float) -> None:
        cutoff = now - self.window_s
        while self._grants and self._grants[0] <= cutoff:
            self._grants.popleft()

    def stats(self) -> LimiterStats:
        """Return a snapshot of the limiter without changing its state."""
        with self._lock:
            cutoff = self._clock() - self.window_s
            active = sum(1 for granted_at in self._grants if granted_at > cutoff)
            queued = len(self._waiters)

        return LimiterStats(
            active_count=active,
            capacity=self.capacity,
            queued_count=queued,
            available_slots=max(0, self.capacity - active),
            utilization_percent=int(round(active / self.capacity * 100)),
        )

    @property
    def total_grants(self) -> int:
        with self._lock:
            return self._total_grants

    def reset(self) -> None:
        """Forget every recorded grant. For test isolation only.

        Callers still queued are admitted against the fresh window rather than
        dropped, so no thread stays blocked forever.
        """
        with self._condition:
            self._grants.clear()
            self._total_grants = 0
            self._admit_locked()

    def __repr__(self) -> str:
        return (
            f"QuotaLimiter(name={self.name!r}, capacity={self.capacity}, "
            f"window_s={self.window_s})"
        )


__all__ = ["Clock", "GrantCallback", "QuotaLimiter"]
