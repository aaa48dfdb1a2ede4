"""Fire-and-forget outbound writes, at most one PUT in flight per key."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from notesync.errors import WriteError

if TYPE_CHECKING:
    from notesync.storage.models import Note
    from notesync.sync.api import NoteTransport

log = structlog.get_logger(__name__)


class RemoteWriter:
    """Pushes notes to the server in the background.

    While a PUT for a key is in flight, newer notes for that key wait in a
    single slot; each submit replaces the waiting note, so only the latest
    one is sent next.  Failures are logged and never retried.
    """

    def __init__(self, api: NoteTransport, *, timeout: float = 10.0) -> None:
        self._api = api
        self._timeout = timeout
        self._inflight: dict[str, asyncio.Task] = {}
        self._pending: dict[str, Note] = {}
        self.sent = 0
        self.failed = 0
        self.superseded = 0
        self.abandoned = 0

    def submit(self, note: Note) -> None:
        task = self._inflight.get(note.key)
        if task is not None and not task.done():
            if note.key in self._pending:
                self.superseded += 1
                log.debug("remote_write_superseded", key=note.key, version=self._pending[note.key].version)
            self._pending[note.key] = note
            return
        self._inflight[note.key] = asyncio.get_running_loop().create_task(
            self._run(note), name=f"put:{note.key}"
        )

    def is_busy(self, key: str) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    async def drain(self, timeout: float | None = None) -> bool:
        """Wait for outstanding writes; return False if *timeout* expired first."""
        tasks = [t for t in self._inflight.values() if not t.done()]
        if not tasks:
            return True
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            log.warning("remote_writes_abandoned", count=len(pending))
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            return False
        return True

    async def _run(self, note: Note) -> None:
        key = note.key
        structlog.contextvars.bind_contextvars(key=key)
        current: Note | None = note
        try:
            while current is not None:
                await self._put(current)
                current = self._pending.pop(key, None)
        finally:
            # A cancelled run abandons the note it was sending and any waiting one.
            waiting = self._pending.pop(key, None)
            if current is not None:
                self.abandoned += 1 + (waiting is not None)
                log.warning("remote_write_abandoned", version=current.version)
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

    async def _put(self, note: Note) -> None:
        try:
            await asyncio.wait_for(self._api.put_note(note), timeout=self._timeout)
        except TimeoutError:
            self.failed += 1
            log.warning("remote_write_failed", version=note.version, error="timeout")
        except WriteError as exc:
            self.failed += 1
            log.warning("remote_write_failed", version=note.version, error=str(exc))
        except Exception:
            self.failed += 1
            log.exception("remote_write_crashed", version=note.version)
        else:
            self.sent += 1
            log.info("remote_write_ok", version=note.version)
