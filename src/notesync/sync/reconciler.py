"""Reconciler — merges a key's local cell and remote poller output into one stream."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from notesync.observable import ObservableCell, Subscription
from notesync.storage.models import Note

if TYPE_CHECKING:
    from notesync.storage.database import NoteStore

log = structlog.get_logger(__name__)


class Reconciler:
    """Last-writer-wins-by-version merge for one key.

    Local emissions pass straight through to ``merged``.  A remote note is
    applied only when it is strictly newer than the merged value, and it is
    applied by writing it to the local store (without bumping the version);
    the store's own emission then updates ``merged``.  The reconciler is the
    only publisher on ``merged``.
    """

    def __init__(
        self,
        store: NoteStore,
        key: str,
        remote: ObservableCell[Note],
    ) -> None:
        self.key = key
        self._store = store
        self._remote = remote
        self.merged: ObservableCell[Note | None] = ObservableCell(f"synced:{key}")
        self._subscriptions: list[Subscription] = []
        self._applying_version = -1
        self._tasks: set[asyncio.Task] = set()
        self.applied = 0
        self.discarded = 0

    def start(self) -> ObservableCell[Note | None]:
        if not self._subscriptions:
            local = self._store.observe(self.key)
            self._subscriptions.append(local.subscribe(self._on_local))
            self._subscriptions.append(self._remote.subscribe(self._on_remote))
        return self.merged

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.dispose()
        self._subscriptions.clear()

    # -- upstream handlers ----------------------------------------------------

    def _on_local(self, note: Note | None) -> None:
        self.merged.set_value(note)

    def _on_remote(self, theirs: Note | None) -> None:
        if theirs is None:
            return

        ours = self.merged.value
        if ours is not None and ours.version >= theirs.version:
            self.discarded += 1
            log.debug("reconcile_discard", key=self.key, local=ours.version, remote=theirs.version)
            return
        if theirs.version <= self._applying_version:
            log.debug("reconcile_already_applying", key=self.key, remote=theirs.version)
            return

        self._applying_version = theirs.version
        log.info(
            "reconcile_apply",
            key=self.key,
            local=ours.version if ours else None,
            remote=theirs.version,
        )
        task = asyncio.get_running_loop().create_task(self._apply(theirs))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _apply(self, theirs: Note) -> None:
        structlog.contextvars.bind_contextvars(key=self.key)
        try:
            stored = await self._store.upsert(theirs, increment_version=False)
        except Exception:
            log.exception("reconcile_write_failed", version=theirs.version)
            return
        finally:
            # The store has published by now, so ``merged`` guards replays again.
            if self._applying_version == theirs.version:
                self._applying_version = -1
        if stored is None:
            log.debug("reconcile_write_skipped", version=theirs.version)
        else:
            self.applied += 1

    async def drain(self) -> None:
        """Wait for pending write-backs to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
