"""
Unit tests for nostream.relay_pool module.

Tests filter matching, the in-memory pool and the reset sequence.
"""

import asyncio

import pytest

from nostream.constants import KIND_GIFT_WRAP
from nostream.event import Event
from nostream.relay_pool import MemoryRelayPool, RelayPool, gift_wrap_filter, matches_filter

TAG = "c" * 64


def _wrap(created_at, tag=TAG, recipient="b" * 64):
    return Event(
        kind=KIND_GIFT_WRAP,
        content="payload",
        created_at=created_at,
        pubkey="e" * 64,
        tags=[["p", recipient], ["d", tag]],
    ).with_id()


class TestFilters:
    """Test filter construction and matching."""

    def test_gift_wrap_filter(self):
        assert gift_wrap_filter(TAG) == {"kinds": [KIND_GIFT_WRAP], "#d": [TAG]}
        assert gift_wrap_filter(TAG, since=1, until=2, recipient="b" * 64) == {
            "kinds": [KIND_GIFT_WRAP],
            "#d": [TAG],
            "#p": ["b" * 64],
            "since": 1,
            "until": 2,
        }

    def test_time_bounds_inclusive(self):
        event = _wrap(100)
        assert matches_filter(event, {"since": 100, "until": 100})
        assert not matches_filter(event, {"since": 101})
        assert not matches_filter(event, {"until": 99})

    def test_tag_conditions(self):
        event = _wrap(100)
        assert matches_filter(event, gift_wrap_filter(TAG, recipient="b" * 64))
        assert not matches_filter(event, gift_wrap_filter("d" * 64))
        assert not matches_filter(event, gift_wrap_filter(TAG, recipient="a" * 64))
        assert matches_filter(event, {"#d": ["x", TAG]})

    def test_ids_authors_kinds(self):
        event = _wrap(100)
        assert matches_filter(event, {"ids": [event.id], "authors": ["e" * 64], "kinds": [KIND_GIFT_WRAP]})
        assert not matches_filter(event, {"ids": ["0" * 64]})
        assert not matches_filter(event, {"authors": ["f" * 64]})
        assert not matches_filter(event, {"kinds": [1]})


class TestMemoryRelayPool:
    """Test the in-process relay pool."""

    @pytest.mark.asyncio
    async def test_publish_and_fetch(self, pool, relays):
        event = _wrap(100)
        acks = await asyncio.gather(*pool.publish(relays, event))

        assert acks == relays
        assert pool.events == [event]
        assert await pool.fetch_events(gift_wrap_filter(TAG)) == [event]
        assert await pool.fetch_events(gift_wrap_filter(TAG, since=101)) == []

    @pytest.mark.asyncio
    async def test_failing_relay_rejects(self, relays):
        pool = MemoryRelayPool(relays, failing=[relays[0]])
        results = await asyncio.gather(*pool.publish(relays, _wrap(1)), return_exceptions=True)

        assert isinstance(results[0], ConnectionError)
        assert results[1:] == relays[1:]

    @pytest.mark.asyncio
    async def test_stream_receives_stored_and_live_events(self, pool, relays):
        stored = _wrap(1)
        await asyncio.gather(*pool.publish(relays, stored))

        received = []
        eose = []
        stream = pool.subscribe([gift_wrap_filter(TAG)], received.append, on_eose=lambda: eose.append(True))
        live = _wrap(2)
        other = _wrap(3, tag="d" * 64)
        await asyncio.gather(*pool.publish(relays, live))
        await asyncio.gather(*pool.publish(relays, other))

        assert received == [stored, live]
        assert eose == [True]

        stream.stop()
        await asyncio.gather(*pool.publish(relays, _wrap(4)))
        assert len(received) == 2

    @pytest.mark.asyncio
    async def test_close_disconnects(self, pool, relays):
        stream = pool.subscribe([{}], lambda event: None)
        await pool.close()

        assert not pool.connected
        assert stream.stopped
        with pytest.raises(ConnectionError):
            await pool.publish(relays, _wrap(1))[0]

    @pytest.mark.asyncio
    async def test_reset_reconnects(self, pool):
        await pool.close()
        await pool.reset()
        assert pool.connected
        assert pool.resets == 1


class RecordingPool(RelayPool):
    """Pool that records the calls made by the base class."""

    cleanup_delay = 0
    stabilization_delay = 0

    def __init__(self):
        self.calls = []

    async def fetch_events(self, filter):
        return []

    def subscribe(self, filters, on_event, on_eose=None, relays=None):
        raise NotImplementedError

    def publish(self, relays, event):
        return []

    async def close(self, relays=None):
        self.calls.append("close")

    async def connect(self):
        self.calls.append("connect")


@pytest.mark.asyncio
async def test_reset_closes_then_connects():
    pool = RecordingPool()
    await pool.reset()
    assert pool.calls == ["close", "connect"]
