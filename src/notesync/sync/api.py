"""Async client for the shared notes server, using httpx.

Endpoints:
- GET /notes/{key} (fetch a note; 404 when the server has no record)
- PUT /notes/{key} (upsert, body: {"title": ..., "content": ..., "version": ...})

The key is percent-encoded as a single path segment.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable
from urllib.parse import quote

import httpx
import structlog

from notesync.config import ServerConfig
from notesync.errors import FetchError, NotFound, WriteError
from notesync.storage.models import Note

log = structlog.get_logger(__name__)


@runtime_checkable
class NoteTransport(Protocol):
    """What the sync engine needs from a remote store.

    ``NoteAPI`` is the HTTP implementation; tests substitute in-memory fakes.
    """

    async def get_note(self, key: str) -> Note:
        """Return the remote note or raise ``NotFound``/``FetchError``/``DecodeError``."""
        ...

    async def put_note(self, note: Note) -> str:
        """Upsert *note* remotely or raise ``WriteError``."""
        ...


def note_path(key: str) -> str:
    return f"/notes/{quote(key, safe='')}"


class NoteAPI:
    """Async notes-server client.  Owned by the caller; use as an async context manager."""

    def __init__(
        self,
        config: ServerConfig,
        *,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> NoteAPI:
        kw: dict = {
            "base_url": self._config.base_url.rstrip("/"),
            "timeout": self._config.timeout_seconds,
        }
        if self._transport is not None:
            kw["transport"] = self._transport
        self._client = httpx.AsyncClient(**kw)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            msg = "NoteAPI not open. Use 'async with NoteAPI(...)' first."
            raise RuntimeError(msg)
        return self._client

    async def get_note(self, key: str) -> Note:
        """Fetch the server's copy of *key*.

        Raises ``NotFound`` when the server has no record, ``FetchError`` on
        transport errors and non-2xx responses, and ``DecodeError`` when the
        body is not a valid note.
        """
        try:
            resp = await self.client.get(note_path(key))
        except httpx.HTTPError as exc:
            raise FetchError(f"GET {key!r} failed: {exc!r}") from exc

        if resp.status_code == 404:
            raise NotFound(f"No remote note for {key!r}")
        if not resp.is_success:
            raise FetchError(f"GET {key!r} returned {resp.status_code}")

        log.debug("note_fetched", key=key, body=resp.text)
        return Note.decode(resp.content)

    async def put_note(self, note: Note) -> str:
        """Upsert *note* on the server and return the acknowledgement body."""
        try:
            resp = await self.client.put(note_path(note.key), json=note.to_wire())
        except httpx.HTTPError as exc:
            raise WriteError(f"PUT {note.key!r} failed: {exc!r}") from exc

        if not resp.is_success:
            raise WriteError(f"PUT {note.key!r} returned {resp.status_code}: {resp.text}")

        log.info("note_put", key=note.key, version=note.version, response=resp.text)
        return resp.text
