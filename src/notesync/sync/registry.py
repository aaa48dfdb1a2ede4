"""Poller registry — one poller and merged stream per key."""

from __future__ import annotations

import asyncio
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from notesync.observable import ObservableCell
from notesync.storage.models import Note
from notesync.sync.poller import RemotePoller
from notesync.sync.reconciler import Reconciler

log = structlog.get_logger(__name__)


@dataclass
class SyncEntry:
    """Everything the engine keeps alive for one key."""

    key: str
    poller: RemotePoller
    reconciler: Reconciler

    @property
    def stream(self) -> ObservableCell[Note | None]:
        return self.reconciler.merged

    async def close(self) -> None:
        self.reconciler.close()
        await self.poller.stop()
        await self.reconciler.drain()


EntryFactory = Callable[[str], SyncEntry]


class PollerRegistry:
    """Lazily creates and caches a ``SyncEntry`` per key.

    ``get_or_create`` is atomic per key: the steady-state read takes no lock,
    and creation re-checks under a lock so concurrent first accesses share a
    single poller.  With ``max_entries`` unset, entries live until
    ``shutdown``; otherwise the least recently used entry is evicted.

    The factory runs on the calling thread.  Factories that start asyncio
    work must therefore be invoked on the loop; ``SyncedNoteRepository``
    hands calls from other threads over to it.
    """

    def __init__(self, factory: EntryFactory, *, max_entries: int | None = None) -> None:
        self._factory = factory
        self._max_entries = max_entries
        self._entries: OrderedDict[str, SyncEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._closing: set[asyncio.Task] = set()
        self.created = 0

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> SyncEntry | None:
        return self._entries.get(key)

    def get_or_create(self, key: str) -> SyncEntry:
        entry = self._entries.get(key)
        if entry is not None:
            self._touch(key)
            return entry

        evicted: list[SyncEntry] = []
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._factory(key)
                self._entries[key] = entry
                self.created += 1
                log.info("poller_registered", key=key, active=len(self._entries))
                if self._max_entries is not None:
                    while len(self._entries) > self._max_entries:
                        _, old = self._entries.popitem(last=False)
                        evicted.append(old)

        for old in evicted:
            log.info("poller_evicted", key=old.key)
            self._close_later(old)
        return entry

    async def evict(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None:
            return False
        log.info("poller_evicted", key=key)
        await entry.close()
        return True

    async def shutdown(self) -> None:
        """Stop every poller and forget all entries."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        await asyncio.gather(*(entry.close() for entry in entries))
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        log.info("registry_shutdown", stopped=len(entries))

    def get_status(self) -> dict:
        return {
            "active": list(self._entries),
            "max_entries": self._max_entries,
            "pollers": [entry.poller.get_status() for entry in self._entries.values()],
        }

    def _touch(self, key: str) -> None:
        if self._max_entries is None:
            return
        with self._lock:
            if key in self._entries:
                self._entries.move_to_end(key)

    def _close_later(self, entry: SyncEntry) -> None:
        task = asyncio.get_running_loop().create_task(entry.close())
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
