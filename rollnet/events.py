"""Manual- and auto-reset events with waits on one or many events."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Iterable

# One lock guards every event and every multi-event wait. Setting an event
# must update the waiters registered on it atomically, and a single lock
# keeps that free of lock-ordering problems.
_LOCK = threading.Lock()


def _deadline(timeout_ms: int | None) -> float | None:
    if timeout_ms is None or timeout_ms < 0:
        return None
    return time.monotonic() + timeout_ms / 1000.0


def _remaining(deadline: float | None) -> float | None:
    if deadline is None:
        return None
    return deadline - time.monotonic()


class _MultiWait:
    """Progress of one call to :func:`wait_for_multiple_events`."""

    def __init__(self, wait_all: bool, count: int) -> None:
        self.wait_all = wait_all
        self.events_left = count
        self.fired = -1
        self.still_waiting = True
        self.condition = threading.Condition(_LOCK)

    def record(self, index: int) -> None:
        self.fired = index
        if self.wait_all:
            self.events_left -= 1
        else:
            self.still_waiting = False

    @property
    def done(self) -> bool:
        if self.wait_all:
            return self.events_left == 0
        return self.fired != -1


class Event:
    """A signalable event.

    An auto-reset event releases exactly one waiter per :meth:`set` and then
    returns to the unsignalled state; a manual-reset event stays signalled,
    releasing every waiter, until :meth:`reset` is called.
    """

    def __init__(self, manual_reset: bool = False, initial_state: bool = False) -> None:
        self._auto_reset = not manual_reset
        self._state = False
        self._condition = threading.Condition(_LOCK)
        self._waits: deque[tuple[_MultiWait, int]] = deque()
        if initial_state:
            self.set()

    @property
    def manual_reset(self) -> bool:
        return not self._auto_reset

    @property
    def is_set(self) -> bool:
        """Whether the event is currently signalled."""
        with _LOCK:
            return self._state

    def _prune(self) -> None:
        self._waits = deque(entry for entry in self._waits if entry[0].still_waiting)

    def _try_acquire(self) -> bool:
        if not self._state:
            return False
        if self._auto_reset:
            self._state = False
        return True

    def set(self) -> None:
        """Signal the event."""
        with _LOCK:
            self._state = True
            if self._auto_reset:
                while self._waits:
                    waiter, index = self._waits.popleft()
                    if not waiter.still_waiting:
                        continue
                    # Handed straight to a multi-event waiter: consumed.
                    self._state = False
                    waiter.record(index)
                    waiter.condition.notify()
                    return
                self._condition.notify()
            else:
                for waiter, index in self._waits:
                    if waiter.still_waiting:
                        waiter.record(index)
                        waiter.condition.notify()
                self._waits.clear()
                self._condition.notify_all()

    def reset(self) -> None:
        """Return the event to the unsignalled state."""
        with _LOCK:
            self._state = False

    def wait(self, timeout_ms: int | None = None) -> bool:
        """Wait until the event is signalled.

        ``timeout_ms`` of None or a negative value waits forever; zero only
        checks the current state. Returns False if the wait timed out. An
        auto-reset event is consumed by a successful wait.
        """
        with _LOCK:
            if self._try_acquire():
                return True
            if timeout_ms == 0:
                return False
            deadline = _deadline(timeout_ms)
            while not self._state:
                remaining = _remaining(deadline)
                if remaining is not None and remaining <= 0:
                    return False
                self._condition.wait(remaining)
            if self._auto_reset:
                self._state = False
            return True


def wait_for_multiple_events(
    events: Iterable[Event], wait_all: bool = False, timeout_ms: int | None = None
) -> int | None:
    """Wait for any one, or with ``wait_all`` every one, of ``events``.

    Returns the index of the event that completed the wait (for a wait-all,
    the last one to be signalled), or None if the wait timed out.
    ``timeout_ms`` follows :meth:`Event.wait`.
    """
    event_list = list(events)
    if not event_list:
        raise ValueError("no events to wait for")

    with _LOCK:
        waiter = _MultiWait(wait_all, len(event_list))
        for index, event in enumerate(event_list):
            event._prune()
            if event._try_acquire():
                waiter.record(index)
                if not wait_all:
                    break
            else:
                event._waits.append((waiter, index))

        deadline = _deadline(timeout_ms)
        try:
            if not waiter.done and timeout_ms == 0:
                return None
            while not waiter.done:
                remaining = _remaining(deadline)
                if remaining is not None and remaining <= 0:
                    return None
                waiter.condition.wait(remaining)
            return waiter.fired
        finally:
            waiter.still_waiting = False