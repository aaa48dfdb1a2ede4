"""Tests for notesync.logging."""

from __future__ import annotations

import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import pytest
import structlog

from notesync.config import LoggingConfig
from notesync.logging import setup_logging
from notesync.storage.models import Note
from notesync.sync.poller import RemotePoller


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()
    root.setLevel(logging.WARNING)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


def _sync_events(log_dir: Path) -> list[dict]:
    text = (log_dir / "sync.log").read_text().strip()
    return [json.loads(line) for line in text.splitlines() if line]


def test_files_follow_config(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(LoggingConfig(), log_dir)

    structlog.get_logger("notesync.cli").info("note_saved", key="groceries", version=2)

    main = (log_dir / "notesync.log").read_text()
    assert "note_saved" in main
    assert "key=groceries" in main
    assert (log_dir / "sync.log").exists()


def test_sync_log_holds_only_engine_events_as_json(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(LoggingConfig(), log_dir)

    structlog.get_logger("notesync.storage.database").info("upsert", key="A")
    structlog.get_logger("notesync.sync.reconciler").info("reconcile_apply", key="A", remote=3)

    events = _sync_events(log_dir)
    assert [e["event"] for e in events] == ["reconcile_apply"]
    assert events[0]["remote"] == 3
    assert events[0]["level"] == "info"
    assert "timestamp" in events[0]


def test_sync_log_can_be_disabled(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(LoggingConfig(sync_log=False), log_dir)

    structlog.get_logger("notesync.sync.poller").warning("poll_fetch_failed")

    assert not (log_dir / "sync.log").exists()
    assert "poll_fetch_failed" in (log_dir / "notesync.log").read_text()


def test_rotation_uses_config(tmp_path: Path):
    setup_logging(LoggingConfig(max_file_mb=2, backup_count=1), tmp_path / "logs")

    rotating = [h for h in logging.getLogger().handlers if isinstance(h, RotatingFileHandler)]
    assert len(rotating) == 2
    assert {h.maxBytes for h in rotating} == {2 * 1024 * 1024}
    assert {h.backupCount for h in rotating} == {1}


def test_level_from_config(tmp_path: Path):
    log_dir = tmp_path / "logs"
    setup_logging(LoggingConfig(log_level="warning"), log_dir)

    log = structlog.get_logger("notesync.test")
    log.info("quiet_event")
    log.warning("loud_event")

    content = (log_dir / "notesync.log").read_text()
    assert "quiet_event" not in content
    assert "loud_event" in content


def test_unknown_level_falls_back_to_info():
    assert LoggingConfig(log_level="chatty").level == logging.INFO
    assert LoggingConfig(log_level="DEBUG").level == logging.DEBUG


def test_console_handler_only_when_requested():
    setup_logging(LoggingConfig(), None)
    assert logging.getLogger().handlers == []

    setup_logging(LoggingConfig(), None, console=True)
    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    assert handlers[0].stream is sys.stderr


def test_console_output(capsys: pytest.CaptureFixture[str]):
    setup_logging(LoggingConfig(), None, console=True)

    structlog.get_logger("notesync.sync.poller").info("poller_started", key="A")

    assert "poller_started" in capsys.readouterr().err


def test_excepthook_left_alone():
    before = sys.excepthook
    setup_logging(LoggingConfig(), None)
    assert sys.excepthook is before


def test_http_loggers_quieted():
    setup_logging(LoggingConfig(log_level="debug"), None)
    assert logging.getLogger("httpx").level == logging.WARNING
    assert logging.getLogger("aiosqlite").level == logging.WARNING


@pytest.mark.asyncio
async def test_poller_events_carry_bound_key(tmp_path: Path, server):
    log_dir = tmp_path / "logs"
    setup_logging(LoggingConfig(), log_dir)
    server.fail_gets = True
    poller = RemotePoller(server, "shared todo", interval=60)

    poller.start()
    await poller.output.wait_for(lambda n: n == Note.empty("shared todo"), timeout=1)
    await poller.stop()

    failures = [e for e in _sync_events(log_dir) if e["event"] == "poll_fetch_failed"]
    assert failures
    assert failures[0]["key"] == "shared todo"
    # Binding happens inside the poller's task, not in the caller.
    assert structlog.contextvars.get_contextvars() == {}
