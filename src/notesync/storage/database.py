"""Async SQLite note store with observable per-key cells."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite
import structlog

from notesync.observable import ObservableCell
from notesync.storage.models import Note

log = structlog.get_logger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS notes (
    key TEXT PRIMARY KEY NOT NULL,
    content TEXT NOT NULL DEFAULT '',
    version INTEGER NOT NULL DEFAULT 0 CHECK (version >= 0),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);
"""

_UPSERT_INCREMENT = """
INSERT INTO notes (key, content, version, updated_at)
VALUES (?, ?, ? + 1, ?)
ON CONFLICT (key) DO UPDATE SET
    content = excluded.content,
    version = notes.version + 1,
    updated_at = excluded.updated_at
RETURNING *
"""

# Sync writes never bump the version and never overwrite an equal or newer row.
_UPSERT_IF_NEWER = """
INSERT INTO notes (key, content, version, updated_at)
VALUES (?, ?, ?, ?)
ON CONFLICT (key) DO UPDATE SET
    content = excluded.content,
    version = excluded.version,
    updated_at = excluded.updated_at
WHERE excluded.version > notes.version
RETURNING *
"""


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class NoteStore:
    """Durable key -> note storage exposing one observable cell per key."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None
        self._cells: dict[str, ObservableCell[Note | None]] = {}
        self._all_cell: ObservableCell[list[Note]] | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "NoteStore not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # -- queries --------------------------------------------------------------

    async def get(self, key: str) -> Note | None:
        cur = await self.conn.execute("SELECT * FROM notes WHERE key = ?", (key,))
        row = await cur.fetchone()
        return self._row_to_note(row) if row else None

    async def list_notes(self) -> list[Note]:
        cur = await self.conn.execute("SELECT * FROM notes ORDER BY key")
        rows = await cur.fetchall()
        return [self._row_to_note(r) for r in rows]

    async def exists(self, key: str) -> bool:
        cur = await self.conn.execute("SELECT 1 FROM notes WHERE key = ?", (key,))
        return await cur.fetchone() is not None

    # -- writes ---------------------------------------------------------------

    async def upsert(self, note: Note, *, increment_version: bool = True) -> Note | None:
        """Insert or update *note*.

        With *increment_version* (a user save) the stored version becomes
        exactly one more than the previous local version, or ``note.version + 1``
        when the key is new.  Without it (a sync write) the row is only
        replaced when *note* carries a strictly higher version; ``None`` is
        returned when nothing was written.
        """
        sql = _UPSERT_INCREMENT if increment_version else _UPSERT_IF_NEWER
        cur = await self.conn.execute(sql, (note.key, note.content, note.version, _now_iso()))
        row = await cur.fetchone()
        await self.conn.commit()
        if row is None:
            log.debug("upsert_skipped", key=note.key, version=note.version)
            return None

        stored = self._row_to_note(row)
        log.debug("upsert", key=stored.key, version=stored.version, increment=increment_version)
        await self._publish(stored.key, stored)
        return stored

    async def delete(self, note: Note) -> bool:
        cur = await self.conn.execute("DELETE FROM notes WHERE key = ?", (note.key,))
        await self.conn.commit()
        deleted = cur.rowcount > 0
        if deleted:
            await self._publish(note.key, None)
        return deleted

    # -- observation ----------------------------------------------------------

    def observe(self, key: str) -> ObservableCell[Note | None]:
        """Return the live cell for *key*; it is populated asynchronously.

        Must be called on the store's event loop.  A cell is only cached once
        its initial load has been scheduled.
        """
        cell = self._cells.get(key)
        if cell is None:
            loop = asyncio.get_running_loop()
            cell = ObservableCell(f"local:{key}", loop=loop)
            self._spawn(loop, self._load(key, cell))
            self._cells[key] = cell
        return cell

    def observe_all(self) -> ObservableCell[list[Note]]:
        """Return the live cell holding every stored note, ordered by key."""
        if self._all_cell is None:
            loop = asyncio.get_running_loop()
            cell: ObservableCell[list[Note]] = ObservableCell("local:*", loop=loop)
            self._spawn(loop, self._load_all(cell))
            self._all_cell = cell
        return self._all_cell

    async def _load(self, key: str, cell: ObservableCell[Note | None]) -> None:
        note = await self.get(key)
        # A write may have published while the read was in flight.
        if not cell.has_value:
            cell.set_value(note)

    async def _load_all(self, cell: ObservableCell[list[Note]]) -> None:
        notes = await self.list_notes()
        if not cell.has_value:
            cell.set_value(notes)

    async def _publish(self, key: str, note: Note | None) -> None:
        cell = self._cells.get(key)
        if cell is not None:
            cell.set_value(note)
        if self._all_cell is not None:
            self._all_cell.set_value(await self.list_notes())

    def _spawn(self, loop: asyncio.AbstractEventLoop, coro) -> None:
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -- row -> model helpers -------------------------------------------------

    @staticmethod
    def _row_to_note(row: aiosqlite.Row) -> Note:
        return Note(key=row["key"], content=row["content"], version=row["version"])
