"""notesync storage layer: async SQLite note store and the Note model."""

from notesync.storage.database import NoteStore
from notesync.storage.models import Note

__all__ = ["Note", "NoteStore"]
