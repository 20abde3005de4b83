import os
import time

import pytest

from rollnet import log as logmod
from rollnet.log import (
    InvariantError,
    create_directory,
    current_time_ms,
    ensure,
    log,
    log_flush,
    sleep_ms,
)


@pytest.fixture
def in_tmp(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("rollnet.log", raising=False)
    monkeypatch.delenv("rollnet.log.ignore", raising=False)
    monkeypatch.delenv("rollnet.log.timestamps", raising=False)
    logmod._close_log()
    yield tmp_path
    logmod._close_log()


def _log_path(directory):
    return directory / f"log-{os.getpid()}.log"


def test_ensure_raises_with_message():
    with pytest.raises(InvariantError, match="boom"):
        ensure(False, "boom")


def test_ensure_passes_value_through_truthy():
    assert ensure(1, "never") is None
    with pytest.raises(InvariantError):
        ensure(0, "zero is false")


def test_log_disabled_writes_nothing(in_tmp):
    written = log("hidden\n")
    flushed = log_flush()
    assert written is None and flushed is None and list(in_tmp.iterdir()) == []


def test_log_enabled_writes_file(in_tmp, monkeypatch):
    monkeypatch.setenv("rollnet.log", "1")
    first = log("hello\n")
    second = log("world\n")
    log_flush()
    assert first is None and second is None
    assert _log_path(in_tmp).read_text() == "hello\nworld\n"


def test_log_ignore_overrides(in_tmp, monkeypatch):
    monkeypatch.setenv("rollnet.log", "1")
    monkeypatch.setenv("rollnet.log.ignore", "1")
    written = log("hidden\n")
    assert written is None and not _log_path(in_tmp).exists()


def test_log_timestamps_first_entry_is_zero(in_tmp, monkeypatch):
    monkeypatch.setenv("rollnet.log", "1")
    monkeypatch.setenv("rollnet.log.timestamps", "1")
    first = log("first\n")
    second = log("second\n")
    lines = _log_path(in_tmp).read_text().splitlines()
    assert first is None and second is None
    assert lines[0] == "0.000 : first"
    assert lines[1].endswith(" : second")


def test_failed_ensure_is_logged(in_tmp, monkeypatch):
    monkeypatch.setenv("rollnet.log", "1")
    with pytest.raises(InvariantError):
        ensure(False, "queue overflow")
    assert "Assertion: queue overflow" in _log_path(in_tmp).read_text()


def test_current_time_ms_tracks_wall_clock():
    before = int(time.time() * 1000)
    now = current_time_ms()
    after = int(time.time() * 1000)
    assert before - 1 <= now <= after + 1


def test_sleep_ms_waits():
    start = current_time_ms()
    sleep_ms(20)
    elapsed = current_time_ms() - start
    assert elapsed >= 15


def test_create_directory_is_idempotent(tmp_path):
    target = tmp_path / "states"
    create_directory(target)
    create_directory(target)
    assert target.is_dir()