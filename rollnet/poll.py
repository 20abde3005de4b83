"""Single-threaded loop that dispatches to registered sinks."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Any

from .buffers import StaticBuffer
from .events import Event, wait_for_multiple_events
from .log import current_time_ms, ensure

MAX_POLLABLE_HANDLES = 64
_SINK_LIST_CAPACITY = 16
_RUN_TIMEOUT_MS = 100


class PollSink:
    """Receiver of poll callbacks; every hook returns False to ask the loop to finish.

    The default hooks count how often each kind of callback arrived and ask
    the loop to keep going.
    """

    @property
    def poll_counts(self) -> Counter[str]:
        """How many times each default hook has been called."""
        return vars(self).setdefault("_poll_counts", Counter())

    def _keep_polling(self, kind: str) -> bool:
        self.poll_counts[kind] += 1
        return True

    def on_handle_poll(self, cookie: Any) -> bool:
        return self._keep_polling("handle")

    def on_msg_poll(self, cookie: Any) -> bool:
        return self._keep_polling("msg")

    def on_periodic_poll(self, cookie: Any, last_fired: int) -> bool:
        return self._keep_polling("periodic")

    def on_loop_poll(self, cookie: Any) -> bool:
        return self._keep_polling("loop")


@dataclass
class _SinkEntry:
    sink: PollSink | None
    cookie: Any = None


@dataclass
class _PeriodicEntry:
    sink: PollSink
    cookie: Any
    interval: int
    last_fired: int = 0


class Poll:
    """Waits on events and calls handle, message, periodic and loop sinks."""

    def __init__(self) -> None:
        self._start_time = 0
        # A never-signalled placeholder keeps the wait list non-empty.
        self._handles: list[Event] = [Event(manual_reset=True)]
        self._handle_sinks: list[_SinkEntry] = [_SinkEntry(None)]
        self._msg_sinks: StaticBuffer[_SinkEntry] = StaticBuffer(_SINK_LIST_CAPACITY)
        self._loop_sinks: StaticBuffer[_SinkEntry] = StaticBuffer(_SINK_LIST_CAPACITY)
        self._periodic_sinks: StaticBuffer[_PeriodicEntry] = StaticBuffer(_SINK_LIST_CAPACITY)

    def register_handle(self, sink: PollSink, handle: Event, cookie: Any = None) -> None:
        """Call ``sink.on_handle_poll`` whenever ``handle`` is signalled."""
        ensure(len(self._handles) < MAX_POLLABLE_HANDLES - 1, "too many pollable handles")
        self._handles.append(handle)
        self._handle_sinks.append(_SinkEntry(sink, cookie))

    def register_msg_loop(self, sink: PollSink, cookie: Any = None) -> None:
        self._msg_sinks.append(_SinkEntry(sink, cookie))

    def register_periodic(self, sink: PollSink, interval: int, cookie: Any = None) -> None:
        """Call ``sink.on_periodic_poll`` every ``interval`` milliseconds."""
        ensure(interval > 0, "periodic interval must be positive")
        self._periodic_sinks.append(_PeriodicEntry(sink, cookie, interval))

    def register_loop(self, sink: PollSink, cookie: Any = None) -> None:
        self._loop_sinks.append(_SinkEntry(sink, cookie))

    def run(self) -> None:
        """Pump repeatedly for as long as some sink reports that it is finished."""
        while self.pump(_RUN_TIMEOUT_MS):
            continue

    def pump(self, timeout: int) -> bool:
        """Wait up to ``timeout`` ms for a handle, then call every sink once.

        Returns True if any sink returned False.
        """
        finished = False
        if self._start_time == 0:
            self._start_time = current_time_ms()
        elapsed = current_time_ms() - self._start_time

        max_wait = self.compute_wait_time(elapsed)
        if max_wait is not None and (timeout < 0 or max_wait < timeout):
            timeout = max_wait

        fired = wait_for_multiple_events(self._handles, False, timeout)
        if fired is not None:
            entry = self._handle_sinks[fired]
            if entry.sink is not None and not entry.sink.on_handle_poll(entry.cookie):
                finished = True

        for entry in self._msg_sinks:
            if not entry.sink.on_msg_poll(entry.cookie):
                finished = True

        for periodic in self._periodic_sinks:
            if periodic.interval + periodic.last_fired <= elapsed:
                periodic.last_fired = (elapsed // periodic.interval) * periodic.interval
                if not periodic.sink.on_periodic_poll(periodic.cookie, periodic.last_fired):
                    finished = True

        for entry in self._loop_sinks:
            if not entry.sink.on_loop_poll(entry.cookie):
                finished = True
        return finished

    def compute_wait_time(self, elapsed: int) -> int | None:
        """Milliseconds until the next periodic sink is due, or None if there is none."""
        wait_time: int | None = None
        for periodic in self._periodic_sinks:
            timeout = periodic.interval + periodic.last_fired - elapsed
            if wait_time is None or timeout < wait_time:
                wait_time = max(timeout, 0)
        return wait_time