"""Diagnostic logging, invariant checks and small platform helpers."""

from __future__ import annotations

import contextlib
import os
import time
from typing import IO

LOG_ENV = "rollnet.log"
LOG_IGNORE_ENV = "rollnet.log.ignore"
LOG_TIMESTAMPS_ENV = "rollnet.log.timestamps"


class InvariantError(AssertionError):
    """Raised when an internal consistency check fails."""


class _LogSink:
    """Lazily opened per-process log file plus the timestamp origin."""

    def __init__(self) -> None:
        self.file: IO[str] | None = None
        self.start_ms = 0

    def open(self) -> IO[str]:
        if self.file is None:
            self.file = open(f"log-{os.getpid()}.log", "w", encoding="utf-8")
        return self.file

    def close(self) -> None:
        if self.file is not None:
            self.file.close()
        self.file = None
        self.start_ms = 0


_sink = _LogSink()


def _close_log() -> None:
    _sink.close()


def _enabled() -> bool:
    return LOG_ENV in os.environ and LOG_IGNORE_ENV not in os.environ


def log(message: str) -> None:
    """Append a message to the process log file when logging is enabled.

    Logging is switched on by the ``rollnet.log`` environment variable and
    suppressed by ``rollnet.log.ignore``. With ``rollnet.log.timestamps`` set,
    each entry is prefixed with seconds elapsed since the first entry.
    """
    if not _enabled():
        return
    stream = _sink.open()
    if LOG_TIMESTAMPS_ENV in os.environ:
        elapsed = 0
        if not _sink.start_ms:
            _sink.start_ms = current_time_ms()
        else:
            elapsed = current_time_ms() - _sink.start_ms
        stream.write(f"{elapsed // 1000}.{elapsed % 1000:03d} : ")
    stream.write(message)
    stream.flush()


def log_flush() -> None:
    """Flush the log file if it has been opened."""
    if _sink.file is not None:
        _sink.file.flush()


def ensure(condition: object, message: str) -> None:
    """Log and raise :class:`InvariantError` unless ``condition`` holds."""
    if not condition:
        text = f"Assertion: {message} (pid:{os.getpid()})"
        log(f"{text}\n\n")
        raise InvariantError(message)


def current_time_ms() -> int:
    """Wall-clock time in whole milliseconds."""
    return time.time_ns() // 1_000_000


def sleep_ms(milliseconds: int) -> None:
    """Block the calling thread for the given number of milliseconds."""
    time.sleep(max(milliseconds, 0) / 1000.0)


def create_directory(path: str | os.PathLike[str]) -> None:
    """Create a single directory, ignoring it if it already exists."""
    with contextlib.suppress(FileExistsError):
        os.mkdir(path)