"""Remote poller — fetches one key from the server on a fixed interval."""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from notesync.errors import DecodeError, FetchError, NotFound, NoteSyncError
from notesync.observable import ObservableCell
from notesync.storage.models import Note

if TYPE_CHECKING:
    from notesync.sync.api import NoteTransport

log = structlog.get_logger(__name__)

DEFAULT_INTERVAL = 3.0
DEFAULT_FETCH_TIMEOUT = 10.0


@dataclass(frozen=True)
class PollResult:
    """Outcome of one fetch attempt."""

    key: str
    note: Note | None = None
    error: NoteSyncError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RemotePoller:
    """Polls the server for one key and publishes what it finds.

    Ticks are scheduled against the loop clock (``start + n * interval``), so a
    slow fetch does not push later ticks back.  At most one fetch is in flight;
    a tick that would overlap it is skipped.
    """

    def __init__(
        self,
        api: NoteTransport,
        key: str,
        *,
        interval: float = DEFAULT_INTERVAL,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
    ) -> None:
        self.key = key
        self._api = api
        self._interval = interval
        self._fetch_timeout = fetch_timeout
        self.output: ObservableCell[Note] = ObservableCell(f"remote:{key}")
        self.results: ObservableCell[PollResult] = ObservableCell(f"poll:{key}")
        self._stop_event = asyncio.Event()
        self._stopped = False
        self._task: asyncio.Task | None = None
        self._inflight: asyncio.Task | None = None
        self._first_fetch_done = False
        self.fetch_count = 0
        self.failure_count = 0
        self.skipped_ticks = 0
        self._last_fetch_at: datetime | None = None
        self._last_error: str | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def value(self) -> Note | None:
        return self.output.value

    def start(self) -> RemotePoller:
        """Begin polling; the first fetch fires immediately.  Returns the poller as its handle."""
        if self.is_running or self._stopped:
            return self
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=f"poller:{self.key}")
        log.info("poller_started", key=self.key, interval=self._interval)
        return self

    async def stop(self) -> None:
        """Stop polling.  Safe to call repeatedly.

        Waits for the loop to exit and for any in-flight fetch to finish; a
        result arriving after the stop is discarded.
        """
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None
        if self._inflight is not None and not self._inflight.done():
            await asyncio.gather(self._inflight, return_exceptions=True)
        log.info("poller_stopped", key=self.key, fetches=self.fetch_count)

    def get_status(self) -> dict:
        return {
            "key": self.key,
            "running": self.is_running,
            "fetches": self.fetch_count,
            "failures": self.failure_count,
            "skipped_ticks": self.skipped_ticks,
            "version": self.value.version if self.value else None,
            "last_fetch_at": self._last_fetch_at.isoformat() if self._last_fetch_at else None,
            "last_error": self._last_error,
        }

    # -- internals ------------------------------------------------------------

    async def _loop(self) -> None:
        # Fetch tasks are created from here and inherit the bound key.
        structlog.contextvars.bind_contextvars(key=self.key)
        loop = asyncio.get_running_loop()
        next_tick = loop.time()
        while not self._stop_event.is_set():
            self._tick()

            next_tick += self._interval
            now = loop.time()
            if next_tick <= now:
                missed = int((now - next_tick) // self._interval) + 1
                next_tick += missed * self._interval
                log.debug("poll_ticks_missed", missed=missed)

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=next_tick - now)

    def _tick(self) -> None:
        if self._inflight is not None and not self._inflight.done():
            self.skipped_ticks += 1
            log.debug("poll_tick_skipped")
            return
        self._inflight = asyncio.get_running_loop().create_task(
            self._fetch_once(), name=f"fetch:{self.key}"
        )

    async def _fetch_once(self) -> None:
        note: Note | None = None
        error: NoteSyncError | None = None
        try:
            note = await asyncio.wait_for(self._api.get_note(self.key), timeout=self._fetch_timeout)
        except TimeoutError:
            error = FetchError(f"GET {self.key!r} timed out after {self._fetch_timeout}s")
        except (FetchError, DecodeError) as exc:
            error = exc
        except Exception as exc:
            log.exception("poll_fetch_crashed")
            error = FetchError(f"GET {self.key!r} crashed: {exc!r}")

        if self._stopped:
            log.debug("poll_result_discarded")
            return

        first = not self._first_fetch_done
        self._first_fetch_done = True
        self.fetch_count += 1
        self._last_fetch_at = datetime.now(UTC)

        if error is None:
            self._last_error = None
            self.results.set_value(PollResult(self.key, note=note))
            self.output.set_value(note)  # type: ignore[arg-type]
            return

        self._last_error = str(error)
        if isinstance(error, NotFound):
            log.info("poll_not_found")
        else:
            self.failure_count += 1
            log.warning("poll_fetch_failed", error=str(error))
        self.results.set_value(PollResult(self.key, error=error))

        if first:
            self.output.set_value(Note.empty(self.key))
