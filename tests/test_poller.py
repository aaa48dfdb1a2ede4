"""Tests for the RemotePoller."""

from __future__ import annotations

import asyncio

import pytest
import pytest_asyncio

from notesync.errors import FetchError, NotFound
from notesync.storage.models import Note
from notesync.sync.poller import PollResult, RemotePoller

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def make_poller(server):
    """Build pollers against the fake server and stop them all afterwards."""
    pollers: list[RemotePoller] = []

    def factory(key: str = "A", **kw) -> RemotePoller:
        kw.setdefault("interval", 0.02)
        poller = RemotePoller(server, key, **kw)
        pollers.append(poller)
        return poller

    yield factory
    for poller in pollers:
        await poller.stop()


# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_fetch_is_immediate(server, make_poller):
    server.notes["A"] = Note(key="A", content="hello", version=3)
    poller = make_poller(interval=60).start()

    note = await poller.output.wait_for(timeout=1)

    assert note == Note(key="A", content="hello", version=3)
    assert server.get_calls == ["A"]
    assert poller.value == note


@pytest.mark.asyncio
async def test_polls_repeatedly(server, make_poller):
    server.notes["A"] = Note(key="A", version=1)
    poller = make_poller().start()

    await asyncio.sleep(0.15)

    assert poller.fetch_count >= 3
    assert set(server.get_calls) == {"A"}


@pytest.mark.asyncio
async def test_start_twice_is_noop(make_poller):
    poller = make_poller(interval=60)
    poller.start()
    task = poller._task
    assert poller.start() is poller
    assert poller._task is task


@pytest.mark.asyncio
async def test_picks_up_remote_changes(server, make_poller):
    server.notes["A"] = Note(key="A", content="v1", version=1)
    poller = make_poller().start()
    await poller.output.wait_for(timeout=1)

    server.notes["A"] = Note(key="A", content="v2", version=2)
    note = await poller.output.wait_for(lambda n: n.version == 2, timeout=1)
    assert note.content == "v2"


# ---------------------------------------------------------------------------
# Overlap and timeouts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_overlapping_ticks_are_skipped(server, make_poller):
    server.notes["A"] = Note(key="A", version=1)
    server.get_delay = 0.1
    poller = make_poller(interval=0.02).start()

    await asyncio.sleep(0.25)

    assert server.max_active_gets == 1
    assert poller.skipped_ticks > 0


@pytest.mark.asyncio
async def test_fetch_timeout_counts_as_failure(server, make_poller):
    server.get_delay = 1.0
    poller = make_poller(interval=60, fetch_timeout=0.05).start()

    result = await poller.results.wait_for(timeout=1)

    assert isinstance(result.error, FetchError)
    assert "timed out" in str(result.error)
    assert poller.failure_count == 1
    assert poller.is_running


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_first_failure_publishes_empty_note(server, make_poller):
    server.fail_gets = True
    poller = make_poller().start()

    assert await poller.output.wait_for(timeout=1) == Note.empty("A")

    await asyncio.sleep(0.1)
    # Later failures leave the published value alone.
    assert poller.output.emissions == 1
    assert poller.failure_count >= 2
    assert poller.is_running


@pytest.mark.asyncio
async def test_first_not_found_publishes_empty_note(server, make_poller):
    poller = make_poller().start()

    assert await poller.output.wait_for(timeout=1) == Note.empty("A")
    await asyncio.sleep(0.08)

    assert poller.output.emissions == 1
    assert poller.failure_count == 0
    assert isinstance(poller.results.value.error, NotFound)


@pytest.mark.asyncio
async def test_failure_after_success_keeps_last_value(server, make_poller):
    server.notes["A"] = Note(key="A", content="kept", version=4)
    poller = make_poller().start()
    await poller.output.wait_for(timeout=1)
    emissions = poller.output.emissions

    server.fail_gets = True
    await poller.results.wait_for(lambda r: not r.ok, timeout=1)
    await asyncio.sleep(0.05)

    assert poller.value == Note(key="A", content="kept", version=4)
    assert poller.output.emissions <= emissions + 1


@pytest.mark.asyncio
async def test_every_outcome_is_published_to_results(server, make_poller):
    server.notes["A"] = Note(key="A", version=1)
    poller = make_poller().start()
    outcomes: list[PollResult] = []
    poller.results.subscribe(outcomes.append)

    await asyncio.sleep(0.05)
    server.fail_gets = True
    await asyncio.sleep(0.05)

    assert any(r.ok for r in outcomes)
    assert any(not r.ok for r in outcomes)
    assert all(r.key == "A" for r in outcomes)


@pytest.mark.asyncio
async def test_unexpected_exception_does_not_kill_poller():
    class Broken:
        async def get_note(self, key):
            raise RuntimeError("bug in transport")

    poller = RemotePoller(Broken(), "A", interval=0.02).start()
    try:
        result = await poller.results.wait_for(timeout=1)
        assert isinstance(result.error, FetchError)
        await asyncio.sleep(0.05)
        assert poller.is_running
        assert poller.fetch_count >= 2
    finally:
        await poller.stop()


# ---------------------------------------------------------------------------
# Stop
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_stop_halts_fetching_and_is_idempotent(server, make_poller):
    server.notes["A"] = Note(key="A", version=1)
    poller = make_poller().start()
    await asyncio.sleep(0.05)

    await poller.stop()
    calls = len(server.get_calls)
    await asyncio.sleep(0.08)

    assert len(server.get_calls) == calls
    assert not poller.is_running
    await poller.stop()


@pytest.mark.asyncio
async def test_inflight_result_after_stop_is_discarded(server, make_poller):
    server.notes["A"] = Note(key="A", version=1)
    server.get_delay = 0.1
    poller = make_poller(interval=60).start()
    await asyncio.sleep(0.01)

    await poller.stop()

    assert server.get_calls == ["A"]
    assert not poller.output.has_value
    assert not poller.results.has_value


@pytest.mark.asyncio
async def test_get_status(server, make_poller):
    server.notes["A"] = Note(key="A", version=7)
    poller = make_poller(interval=60).start()
    await poller.output.wait_for(timeout=1)

    status = poller.get_status()
    assert status["key"] == "A"
    assert status["running"] is True
    assert status["fetches"] == 1
    assert status["version"] == 7
    assert status["last_error"] is None
