"""Observable value cells delivered on a single asyncio event loop.

A cell holds the latest value and notifies subscribers, in order, on the loop
that owns it.  ``set_value`` must be called on that loop; producers running on
other threads use ``post_value``, which marshals the update onto the loop.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import AsyncIterator, Callable
from typing import Generic, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")

Callback = Callable[[T], None]


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET = _Unset()


class Subscription:
    """Handle returned by ``ObservableCell.subscribe``; call ``dispose`` to detach."""

    def __init__(self, cell: ObservableCell, callback: Callable) -> None:
        self._cell = cell
        self._callback = callback
        self.active = True

    def dispose(self) -> None:
        if self.active:
            self.active = False
            self._cell._remove(self._callback)


class ObservableCell(Generic[T]):
    """Latest-value holder with in-order subscriber notification."""

    def __init__(
        self,
        name: str = "",
        *,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self.name = name
        if loop is None:
            with contextlib.suppress(RuntimeError):
                loop = asyncio.get_running_loop()
        self._loop = loop
        self._value: T | _Unset = UNSET
        self._callbacks: list[Callback] = []
        self._version = 0

    # -- state ----------------------------------------------------------------

    @property
    def value(self) -> T | None:
        """Current value, or None when the cell has not been populated yet."""
        return None if self._value is UNSET else self._value  # type: ignore[return-value]

    @property
    def has_value(self) -> bool:
        return self._value is not UNSET

    @property
    def emissions(self) -> int:
        """Number of values published so far."""
        return self._version

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    # -- publishing -----------------------------------------------------------

    def set_value(self, value: T) -> None:
        """Publish *value* and notify subscribers synchronously, in order."""
        self._check_thread()
        self._value = value
        self._version += 1
        for callback in list(self._callbacks):
            try:
                callback(value)
            except Exception:
                log.exception("observer_failed", cell=self.name)

    def post_value(self, value: T) -> None:
        """Thread-safe publish: schedule ``set_value`` on the owning loop."""
        self.loop.call_soon_threadsafe(self.set_value, value)

    # -- subscribing ----------------------------------------------------------

    def subscribe(self, callback: Callback, *, replay: bool = True) -> Subscription:
        """Attach *callback*; with *replay* the current value is delivered first."""
        self._callbacks.append(callback)
        subscription = Subscription(self, callback)
        if replay and self.has_value:
            callback(self._value)  # type: ignore[arg-type]
        return subscription

    def _remove(self, callback: Callable) -> None:
        with contextlib.suppress(ValueError):
            self._callbacks.remove(callback)

    @property
    def subscriber_count(self) -> int:
        return len(self._callbacks)

    async def updates(self) -> AsyncIterator[T]:
        """Iterate over published values, starting with the current one."""
        queue: asyncio.Queue[T] = asyncio.Queue()
        subscription = self.subscribe(queue.put_nowait)
        try:
            while True:
                yield await queue.get()
        finally:
            subscription.dispose()

    async def wait_for(
        self,
        predicate: Callable[[T], bool] = lambda v: v is not None,
        timeout: float | None = None,
    ) -> T:
        """Wait until the cell holds a value matching *predicate* and return it."""
        future: asyncio.Future[T] = self.loop.create_future()

        def _check(value: T) -> None:
            if not future.done() and predicate(value):
                future.set_result(value)

        subscription = self.subscribe(_check)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            subscription.dispose()

    # -- internals ------------------------------------------------------------

    def _check_thread(self) -> None:
        current: asyncio.AbstractEventLoop | None = None
        with contextlib.suppress(RuntimeError):
            current = asyncio.get_running_loop()
        if self._loop is None:
            self._loop = current
            return
        # Only the owning loop may publish while it runs.
        if current is not self._loop and self._loop.is_running():
            msg = f"ObservableCell {self.name!r} set off its loop; use post_value()"
            raise RuntimeError(msg)

    def __repr__(self) -> str:
        return f"ObservableCell({self.name!r}, value={self._value!r})"
