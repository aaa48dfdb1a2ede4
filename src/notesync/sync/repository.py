"""Synchronized note repository — the public surface of the sync engine."""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from typing import TYPE_CHECKING, TypeVar

import structlog

from notesync.config import SyncConfig
from notesync.sync.poller import RemotePoller
from notesync.sync.reconciler import Reconciler
from notesync.sync.registry import PollerRegistry, SyncEntry
from notesync.sync.writer import RemoteWriter

if TYPE_CHECKING:
    from notesync.observable import ObservableCell
    from notesync.storage.database import NoteStore
    from notesync.storage.models import Note
    from notesync.sync.api import NoteTransport

log = structlog.get_logger(__name__)

R = TypeVar("R")


def _check_key(key: str) -> None:
    if not key:
        msg = "Note key must be a non-empty string"
        raise ValueError(msg)


class SyncedNoteRepository:
    """Keeps notes consistent between the local store and the server.

    ``get_synced`` hands out one live, merged view per key (always the newest
    version seen from either side).  ``save_synced`` writes locally, bumping
    the version by one, and pushes the result to the server in the background.

    The engine lives on the event loop it was created on.  The ``get_*``
    methods may be called from other threads: creating a key's cells and
    poller is handed to the loop, and the calling thread blocks until done.

    The store and the transport are owned by the caller; ``close`` only stops
    the engine's own background work.
    """

    def __init__(
        self,
        store: NoteStore,
        api: NoteTransport,
        config: SyncConfig | None = None,
    ) -> None:
        self._store = store
        self._api = api
        self._config = config or SyncConfig()
        self._loop: asyncio.AbstractEventLoop | None = None
        with contextlib.suppress(RuntimeError):
            self._loop = asyncio.get_running_loop()
        self._registry = PollerRegistry(self._create_entry, max_entries=self._config.max_pollers)
        self._writer = RemoteWriter(api, timeout=self._config.fetch_timeout_seconds)

    @property
    def registry(self) -> PollerRegistry:
        return self._registry

    @property
    def writer(self) -> RemoteWriter:
        return self._writer

    # -- synced ---------------------------------------------------------------

    def get_synced(self, key: str) -> ObservableCell[Note | None]:
        """Return the merged live view for *key*.

        Repeated calls return the same cell.  The first call starts the key's
        poller and returns immediately; the cell resolves asynchronously.
        """
        _check_key(key)
        return self._entry(key).stream

    async def resolve(self, key: str, timeout: float | None = None) -> Note:
        """Return *key*'s merged note once the first remote poll is reconciled.

        Raises ``TimeoutError`` when nothing settles within *timeout* seconds.
        """
        _check_key(key)
        entry = self._registry.get_or_create(key)

        async def _settle() -> Note:
            await entry.poller.results.wait_for()
            await entry.reconciler.drain()
            return await entry.stream.wait_for()

        return await asyncio.wait_for(_settle(), timeout)

    async def save_synced(self, note: Note) -> Note:
        """Save *note* locally (version + 1) and push it to the server.

        Only the local write is awaited.  The remote write is fire-and-forget:
        its failure is logged and does not touch the local copy.
        """
        stored = await self.upsert_local(note)
        self.upsert_remote(stored)
        return stored

    # -- local ----------------------------------------------------------------

    def get_local(self, key: str) -> ObservableCell[Note | None]:
        _check_key(key)
        return self._on_loop(self._store.observe, key)

    def get_all_local(self) -> ObservableCell[list[Note]]:
        return self._on_loop(self._store.observe_all)

    async def upsert_local(self, note: Note, *, increment_version: bool = True) -> Note:
        stored = await self._store.upsert(note, increment_version=increment_version)
        if stored is None:
            # Only reachable for a non-incrementing write that lost to a newer row.
            current = await self._store.get(note.key)
            if current is None:
                msg = f"Note {note.key!r} vanished during a conditional write"
                raise RuntimeError(msg)
            return current
        log.info("note_saved", key=stored.key, version=stored.version)
        return stored

    async def delete_local(self, note: Note) -> bool:
        return await self._store.delete(note)

    async def exists_local(self, key: str) -> bool:
        return await self._store.exists(key)

    # -- remote ---------------------------------------------------------------

    def get_remote(self, key: str) -> ObservableCell[Note]:
        _check_key(key)
        return self._entry(key).poller.output

    def upsert_remote(self, note: Note) -> None:
        self._writer.submit(note)

    # -- lifecycle ------------------------------------------------------------

    def get_status(self) -> dict:
        return {
            "registry": self._registry.get_status(),
            "writes": {
                "sent": self._writer.sent,
                "failed": self._writer.failed,
                "superseded": self._writer.superseded,
                "abandoned": self._writer.abandoned,
            },
        }

    async def close(self) -> None:
        """Flush pending remote writes (bounded) and stop every poller."""
        await self._writer.drain(timeout=self._config.write_drain_seconds)
        await self._registry.shutdown()

    async def __aenter__(self) -> SyncedNoteRepository:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- internals ------------------------------------------------------------

    def _entry(self, key: str) -> SyncEntry:
        return self._on_loop(self._registry.get_or_create, key)

    def _on_loop(self, func: Callable[..., R], *args: object) -> R:
        """Run *func* on the engine's loop, blocking when called from another thread."""
        current: asyncio.AbstractEventLoop | None = None
        with contextlib.suppress(RuntimeError):
            current = asyncio.get_running_loop()
        if self._loop is None:
            if current is None:
                msg = "SyncedNoteRepository needs a running event loop"
                raise RuntimeError(msg)
            self._loop = current
        if current is self._loop:
            return func(*args)

        async def _call() -> R:
            return func(*args)

        return asyncio.run_coroutine_threadsafe(_call(), self._loop).result()

    def _create_entry(self, key: str) -> SyncEntry:
        poller = RemotePoller(
            self._api,
            key,
            interval=self._config.poll_interval,
            fetch_timeout=self._config.fetch_timeout_seconds,
        )
        reconciler = Reconciler(self._store, key, poller.output)
        reconciler.start()
        poller.start()
        return SyncEntry(key=key, poller=poller, reconciler=reconciler)
