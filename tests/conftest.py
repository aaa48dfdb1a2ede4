"""Shared fixtures for notesync tests."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
import pytest_asyncio

from notesync.errors import FetchError, NotFound, WriteError
from notesync.storage import Note, NoteStore


@pytest.fixture()
def base_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Redirect all notesync runtime files to a temporary directory.

    Sets ``NOTESYNC_HOME`` so that nothing touches the real ``~/.notesync/``.
    """
    fake_base = tmp_path / ".notesync"
    fake_base.mkdir()
    (fake_base / "logs").mkdir()

    monkeypatch.setenv("NOTESYNC_HOME", str(fake_base))

    return fake_base


class FakeServer:
    """In-memory stand-in for the notes server (implements ``NoteTransport``)."""

    def __init__(self) -> None:
        self.notes: dict[str, Note] = {}
        self.get_calls: list[str] = []
        self.put_calls: list[Note] = []
        self.fail_gets = False
        self.fail_puts = False
        self.get_delay = 0.0
        self.put_delay = 0.0
        self.active_gets = 0
        self.max_active_gets = 0

    async def get_note(self, key: str) -> Note:
        self.get_calls.append(key)
        self.active_gets += 1
        self.max_active_gets = max(self.max_active_gets, self.active_gets)
        try:
            if self.get_delay:
                await asyncio.sleep(self.get_delay)
            if self.fail_gets:
                raise FetchError("server unreachable")
            if key not in self.notes:
                raise NotFound(key)
            return self.notes[key]
        finally:
            self.active_gets -= 1

    async def put_note(self, note: Note) -> str:
        self.put_calls.append(note)
        if self.put_delay:
            await asyncio.sleep(self.put_delay)
        if self.fail_puts:
            raise WriteError("server unreachable")
        self.notes[note.key] = note
        return '{"ok": true}'


@pytest.fixture()
def server() -> FakeServer:
    return FakeServer()


@pytest_asyncio.fixture()
async def store(tmp_path: Path):
    """Provide a fresh on-disk note store for each test."""
    note_store = NoteStore(tmp_path / "notes.db")
    await note_store.connect()
    yield note_store
    await note_store.close()
