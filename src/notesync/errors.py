"""Error taxonomy for the note synchronization engine."""

from __future__ import annotations


class NoteSyncError(Exception):
    """Base class for all notesync errors."""


class DecodeError(NoteSyncError):
    """Raised when a payload cannot be decoded into a Note."""


class FetchError(NoteSyncError):
    """Raised when reading a note from the server fails (network, timeout, non-2xx)."""


class NotFound(FetchError):
    """Raised when the server has no record for the requested key."""


class WriteError(NoteSyncError):
    """Raised when writing a note to the server fails (network, timeout, non-2xx)."""
