"""Tests for the fire-and-forget RemoteWriter."""

from __future__ import annotations

import asyncio

import pytest

from notesync.storage.models import Note
from notesync.sync.writer import RemoteWriter


def _note(key: str, version: int) -> Note:
    return Note(key=key, content=f"{key}@{version}", version=version)


@pytest.mark.asyncio
async def test_submit_sends_in_background(server):
    writer = RemoteWriter(server)
    server.put_delay = 0.02

    writer.submit(_note("A", 1))
    assert server.put_calls == []  # nothing awaited yet
    assert writer.is_busy("A")

    assert await writer.drain(timeout=1)
    assert server.put_calls == [_note("A", 1)]
    assert writer.sent == 1
    assert not writer.is_busy("A")


@pytest.mark.asyncio
async def test_failures_are_absorbed(server):
    server.fail_puts = True
    writer = RemoteWriter(server)

    writer.submit(_note("A", 1))
    await writer.drain(timeout=1)

    assert writer.failed == 1
    assert writer.sent == 0


@pytest.mark.asyncio
async def test_one_put_in_flight_per_key_latest_wins(server):
    server.put_delay = 0.05
    writer = RemoteWriter(server)

    writer.submit(_note("A", 1))
    await asyncio.sleep(0.01)
    writer.submit(_note("A", 2))
    writer.submit(_note("A", 3))
    await writer.drain(timeout=1)

    assert [n.version for n in server.put_calls] == [1, 3]
    assert writer.superseded == 1
    assert server.notes["A"].version == 3


@pytest.mark.asyncio
async def test_keys_are_written_independently(server):
    server.put_delay = 0.05
    writer = RemoteWriter(server)

    writer.submit(_note("A", 1))
    writer.submit(_note("B", 1))
    await asyncio.sleep(0.01)

    assert {n.key for n in server.put_calls} == {"A", "B"}
    await writer.drain(timeout=1)


@pytest.mark.asyncio
async def test_put_timeout_is_a_failure(server):
    server.put_delay = 1.0
    writer = RemoteWriter(server, timeout=0.05)

    writer.submit(_note("A", 1))
    await writer.drain(timeout=1)

    assert writer.failed == 1


@pytest.mark.asyncio
async def test_drain_gives_up_after_timeout(server):
    server.put_delay = 1.0
    writer = RemoteWriter(server)

    writer.submit(_note("A", 1))

    assert await writer.drain(timeout=0.05) is False
    assert not writer.is_busy("A")


@pytest.mark.asyncio
async def test_abandoned_queue_is_not_replayed_after_drain_timeout(server):
    server.put_delay = 1.0
    writer = RemoteWriter(server)

    writer.submit(_note("A", 6))
    await asyncio.sleep(0.01)
    writer.submit(_note("A", 7))  # waits behind v6

    assert await writer.drain(timeout=0.05) is False
    assert writer.abandoned == 2

    server.put_delay = 0.0
    writer.submit(_note("A", 8))
    assert await writer.drain(timeout=1)

    assert server.put_calls[-1].version == 8
    assert 7 not in [n.version for n in server.put_calls]
    assert server.notes["A"].version == 8
    assert not writer.is_busy("A")


@pytest.mark.asyncio
async def test_drain_with_nothing_pending(server):
    assert await RemoteWriter(server).drain(timeout=0) is True
