"""
Nostream - Subscription lifecycle tests.

Tests registration, replacement, timeouts, cleanup and debouncing.
"""

import asyncio
import logging

import pytest

from nostream.errors import ErrorCode, SubscriptionError
from nostream.subscription import (
    DebouncedSubscriptionManager,
    SubscriptionManager,
    generate_subscription_id,
)


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe(make_stream):
    manager = SubscriptionManager()
    stream = make_stream()
    handle = manager.subscribe("chat", stream, filters=[{"kinds": [1059]}], relays=["wss://r"])

    assert manager.has_subscription("chat")
    assert manager.active_count == 1
    assert manager.active_ids() == ["chat"]
    assert handle.filters == [{"kinds": [1059]}]
    assert handle.relays == ["wss://r"]

    assert manager.unsubscribe("chat") is True
    assert manager.unsubscribe("chat") is False
    assert stream.stop_calls == 1
    assert manager.active_count == 0


@pytest.mark.asyncio
async def test_replacing_subscription_stops_old_stream(make_stream):
    manager = SubscriptionManager()
    first, second = make_stream(), make_stream()

    manager.subscribe("chat", first)
    manager.subscribe("chat", second)

    assert manager.active_count == 1
    assert first.stop_calls == 1
    assert second.stop_calls == 0
    manager.cleanup()


@pytest.mark.asyncio
async def test_timeout_force_unsubscribes(make_stream, caplog):
    manager = SubscriptionManager(default_timeout=0.05)
    stream = make_stream()
    manager.subscribe("chat", stream)

    with caplog.at_level(logging.WARNING, logger="nostream.subscription"):
        await asyncio.sleep(0.15)

    assert not manager.has_subscription("chat")
    assert stream.stop_calls == 1
    assert "timed out" in caplog.text
    assert ErrorCode.E501_SUBSCRIPTION_TIMEOUT.value in caplog.text


@pytest.mark.asyncio
async def test_manual_stop_never_double_fires(make_stream):
    manager = SubscriptionManager(default_timeout=0.05)
    stream = make_stream()
    handle = manager.subscribe("chat", stream)

    assert handle.stop() is True
    assert handle.stop() is False
    await asyncio.sleep(0.1)

    assert stream.stop_calls == 1
    assert handle.stopped


@pytest.mark.asyncio
async def test_stale_handle_does_not_stop_replacement(make_stream):
    manager = SubscriptionManager()
    old_handle = manager.subscribe("chat", make_stream())
    new_stream = make_stream()
    manager.subscribe("chat", new_stream)

    assert old_handle.stop() is False
    assert manager.has_subscription("chat")
    assert new_stream.stop_calls == 0
    manager.cleanup()


@pytest.mark.asyncio
async def test_renew_extends_lifetime(make_stream):
    manager = SubscriptionManager(default_timeout=0.1)
    stream = make_stream()
    manager.subscribe("chat", stream)

    await asyncio.sleep(0.06)
    assert manager.renew("chat", timeout=0.2)
    await asyncio.sleep(0.08)
    assert manager.has_subscription("chat")

    assert manager.renew("missing") is False
    manager.cleanup()


@pytest.mark.asyncio
async def test_stop_errors_are_logged_not_raised(make_stream, caplog):
    manager = SubscriptionManager()
    manager.subscribe("chat", make_stream(fail_on_stop=True))

    with caplog.at_level(logging.ERROR, logger="nostream.subscription"):
        assert manager.unsubscribe("chat") is True
    assert "Error stopping subscription chat" in caplog.text


@pytest.mark.asyncio
async def test_cleanup_destroys_manager(make_stream):
    manager = SubscriptionManager()
    streams = [make_stream() for _ in range(3)]
    for index, stream in enumerate(streams):
        manager.subscribe(f"sub-{index}", stream)

    manager.cleanup()

    assert manager.active_count == 0
    assert manager.is_destroyed
    assert all(stream.stop_calls == 1 for stream in streams)
    with pytest.raises(SubscriptionError) as exc_info:
        manager.subscribe("late", make_stream())
    assert exc_info.value.code == ErrorCode.E502_MANAGER_DESTROYED


@pytest.mark.asyncio
async def test_async_context_manager(make_stream):
    stream = make_stream()
    async with SubscriptionManager() as manager:
        manager.subscribe("chat", stream)
    assert stream.stop_calls == 1
    assert manager.is_destroyed


@pytest.mark.asyncio
async def test_sync_context_manager_and_handle_scope(make_stream):
    stream = make_stream()
    with SubscriptionManager() as manager:
        with manager.subscribe("chat", stream):
            assert manager.has_subscription("chat")
        assert not manager.has_subscription("chat")
    assert stream.stop_calls == 1


@pytest.mark.asyncio
async def test_debounce_keeps_last_subscription(make_stream):
    manager = DebouncedSubscriptionManager(debounce=0.05)
    first, second, third = make_stream(), make_stream(), make_stream()

    manager.subscribe("chat", first)
    manager.subscribe("chat", second)
    handle = manager.subscribe("chat", third)

    assert manager.has_pending("chat")
    assert not manager.has_subscription("chat")
    assert first.stop_calls == 1
    assert second.stop_calls == 1

    await asyncio.sleep(0.1)

    assert manager.has_subscription("chat")
    assert manager.get("chat") is handle
    assert third.stop_calls == 0
    manager.cleanup()
    assert third.stop_calls == 1


@pytest.mark.asyncio
async def test_debounced_cleanup_cancels_pending(make_stream):
    manager = DebouncedSubscriptionManager(debounce=0.05)
    stream = make_stream()
    manager.subscribe("chat", stream)

    manager.cleanup()
    await asyncio.sleep(0.1)

    assert not manager.has_subscription("chat")
    assert stream.stop_calls == 1


@pytest.mark.asyncio
async def test_debounced_handle_stop_before_activation(make_stream):
    manager = DebouncedSubscriptionManager(debounce=0.05)
    stream = make_stream()
    handle = manager.subscribe("chat", stream)

    assert handle.stop() is True
    await asyncio.sleep(0.1)

    assert not manager.has_subscription("chat")
    assert stream.stop_calls == 1


def test_generate_subscription_id():
    first = generate_subscription_id()
    second = generate_subscription_id("nip17")
    assert first.startswith("sub_")
    assert second.startswith("nip17_")
    assert first != generate_subscription_id()
