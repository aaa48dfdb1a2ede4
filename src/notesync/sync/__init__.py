"""Sync module — poller, reconciler, registry, and the synced repository."""

from notesync.sync.api import NoteAPI, NoteTransport
from notesync.sync.poller import PollResult, RemotePoller
from notesync.sync.reconciler import Reconciler
from notesync.sync.registry import PollerRegistry, SyncEntry
from notesync.sync.repository import SyncedNoteRepository
from notesync.sync.writer import RemoteWriter

__all__ = [
    "NoteAPI",
    "NoteTransport",
    "PollResult",
    "PollerRegistry",
    "Reconciler",
    "RemotePoller",
    "RemoteWriter",
    "SyncEntry",
    "SyncedNoteRepository",
]
