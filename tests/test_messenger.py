"""
Nostream - Messenger integration tests.

Exercises sending, history synchronization and live listening between
several identities sharing an in-memory relay pool.
"""

import asyncio

import pytest

from nostream.chat_store import ChatStore
from nostream.config import Config
from nostream.constants import KIND_GIFT_WRAP
from nostream.errors import ErrorCode, InvalidRecipientSet, PublishFailed, StorageFailure, SubscriptionError
from nostream.keys import encode_npub
from nostream.messenger import ChatRoom, Messenger
from nostream.publisher import PublishCoordinator
from nostream.storage import ChatStorage
from nostream.subscription import DebouncedSubscriptionManager, SubscriptionManager


@pytest.fixture
def make_messenger(pool, relays, recording_sleep):
    def factory(key_material, storage=None):
        return Messenger(
            key_material,
            pool,
            ChatStore(),
            PublishCoordinator(pool, relays, sleep=recording_sleep),
            SubscriptionManager(),
            relays,
            storage=storage,
            batch_delay=0.01,
        )

    return factory


@pytest.mark.asyncio
async def test_send_publishes_tagged_wraps(alice, bob, pool, make_messenger):
    messenger = make_messenger(alice)
    rumor = await messenger.send_message([bob.npub], "hi bob", subject="Plans")

    tag = messenger.conversation_tag([bob.npub])
    assert len(pool.events) == 2
    assert all(event.kind == KIND_GIFT_WRAP for event in pool.events)
    assert all(event.get_tag_values("d") == [tag] for event in pool.events)
    assert sorted(event.get_tag_values("p")[0] for event in pool.events) == sorted(
        [alice.public_key, bob.public_key]
    )

    assert rumor.content == "hi bob"
    assert ["subject", "Plans"] in rumor.tags
    assert [m.id for m in messenger.get_messages(tag)] == [rumor.id]


@pytest.mark.asyncio
async def test_conversation_tag_is_shared(alice, bob, make_messenger):
    assert make_messenger(alice).conversation_tag([bob.npub]) == make_messenger(bob).conversation_tag(
        [alice.public_key]
    )


@pytest.mark.asyncio
async def test_recipient_syncs_history(alice, bob, make_messenger):
    sender = make_messenger(alice)
    receiver = make_messenger(bob)

    first = await sender.send_message([bob.public_key], "one")
    second = await sender.send_message([bob.public_key], "two")

    assert await receiver.sync_history([alice.npub]) is True
    tag = receiver.conversation_tag([alice.npub])
    assert {m.id for m in receiver.get_messages(tag)} == {first.id, second.id}
    assert all(m.pubkey == alice.public_key for m in receiver.get_messages(tag))

    assert await receiver.sync_history([alice.npub]) is False


@pytest.mark.asyncio
async def test_sync_keeps_conversations_apart(alice, bob, carol, make_messenger):
    await make_messenger(alice).send_message([bob.public_key], "from alice")
    await make_messenger(carol).send_message([bob.public_key], "from carol")
    await make_messenger(alice).send_message([bob.public_key, carol.public_key], "to the group")

    receiver = make_messenger(bob)
    await receiver.sync_history([alice.public_key])
    await receiver.sync_history([alice.public_key, carol.public_key])

    direct = receiver.get_messages(receiver.conversation_tag([alice.public_key]))
    group = receiver.get_messages(receiver.conversation_tag([alice.public_key, carol.public_key]))
    assert [m.content for m in direct] == ["from alice"]
    assert [m.content for m in group] == ["to the group"]


@pytest.mark.asyncio
async def test_sender_sees_own_messages_after_sync(alice, bob, make_messenger):
    await make_messenger(alice).send_message([bob.public_key], "note to self copy")

    fresh_device = make_messenger(alice)
    await fresh_device.sync_history([bob.public_key])
    messages = fresh_device.get_messages(fresh_device.conversation_tag([bob.public_key]))
    assert [m.content for m in messages] == ["note to self copy"]


@pytest.mark.asyncio
async def test_listen_delivers_new_messages(alice, bob, make_messenger):
    sender = make_messenger(alice)
    receiver = make_messenger(bob)
    received = []

    handle = receiver.listen([alice.npub], timeout=5, on_messages=lambda tag, rumors: received.extend(rumors))
    assert receiver.subscriptions.has_subscription(handle.id)

    rumor = await sender.send_message([bob.public_key], "live")
    await asyncio.sleep(0.05)

    tag = receiver.conversation_tag([alice.npub])
    assert [m.id for m in receiver.get_messages(tag)] == [rumor.id]
    assert [m.id for m in received] == [rumor.id]

    handle.stop()
    await sender.send_message([bob.public_key], "after stop")
    await asyncio.sleep(0.05)
    assert len(receiver.get_messages(tag)) == 1


@pytest.mark.asyncio
async def test_listen_again_replaces_subscription(alice, bob, make_messenger):
    receiver = make_messenger(bob)
    first = receiver.listen([alice.npub])
    second = receiver.listen([alice.public_key])

    assert first.stopped
    assert receiver.subscriptions.active_count == 1
    second.stop()


@pytest.mark.asyncio
async def test_send_without_recipients(alice, make_messenger):
    with pytest.raises(InvalidRecipientSet):
        await make_messenger(alice).send_message([], "nobody")


@pytest.mark.asyncio
async def test_failed_send_is_not_stored(alice, bob, pool, relays, make_messenger):
    messenger = make_messenger(alice)
    pool.failing = set(relays)

    with pytest.raises(PublishFailed):
        await messenger.send_message([bob.public_key], "lost")

    assert messenger.get_messages(messenger.conversation_tag([bob.public_key])) == []


@pytest.mark.asyncio
async def test_state_persists_between_sessions(alice, bob, temp_dir, make_messenger):
    storage = ChatStorage(temp_dir / "chat.json")
    messenger = make_messenger(alice, storage=storage)
    rumor = await messenger.send_message([bob.public_key], "remember me")
    assert storage.path.exists()

    restored = make_messenger(alice, storage=ChatStorage(temp_dir / "chat.json"))
    await restored.load()
    assert [m.id for m in restored.get_messages(restored.conversation_tag([bob.public_key]))] == [rumor.id]


@pytest.mark.asyncio
async def test_logout_releases_everything(alice, bob, pool, make_messenger):
    messenger = make_messenger(alice)
    await messenger.send_message([bob.public_key], "bye")
    messenger.listen([bob.public_key])

    await messenger.logout()

    assert messenger.subscriptions.is_destroyed
    assert messenger.subscriptions.active_count == 0
    assert messenger.publisher.publish_count == 0
    assert not pool.connected


@pytest.mark.asyncio
async def test_from_config(alice, pool, temp_dir, monkeypatch):
    monkeypatch.setenv("NOSTREAM_STORAGE_DATA_DIR", str(temp_dir))
    monkeypatch.setenv("NOSTREAM_PUBLISH_TIMEOUT", "7.5")
    config = Config(temp_dir / "config.toml")

    messenger = Messenger.from_config(config, alice, pool)

    assert messenger.publisher.publish_timeout == 7.5
    assert messenger.relays == config.get("relays", "urls")
    assert isinstance(messenger.subscriptions, DebouncedSubscriptionManager)
    assert messenger.storage.path.parent == temp_dir
    assert messenger.store.lookback == 10 * 24 * 60 * 60


@pytest.mark.asyncio
async def test_concurrent_sends_share_storage(alice, bob, carol, temp_dir, make_messenger):
    storage = ChatStorage(temp_dir / "chat.json")
    messenger = make_messenger(alice, storage=storage)

    to_bob, to_carol = await asyncio.gather(
        messenger.send_message([bob.public_key], "hi bob"),
        messenger.send_message([carol.public_key], "hi carol"),
    )

    restored = make_messenger(alice, storage=ChatStorage(temp_dir / "chat.json"))
    await restored.load()
    assert [m.id for m in restored.get_messages(restored.conversation_tag([bob.public_key]))] == [to_bob.id]
    assert [m.id for m in restored.get_messages(restored.conversation_tag([carol.public_key]))] == [to_carol.id]
    assert [p.name for p in temp_dir.iterdir()] == ["chat.json"]


@pytest.mark.asyncio
async def test_storage_failure_after_publish_keeps_message(alice, bob, pool, temp_dir, make_messenger):
    blocker = temp_dir / "file"
    blocker.write_text("x", encoding="utf-8")
    messenger = make_messenger(alice, storage=ChatStorage(blocker / "chat.json"))

    rumor = await messenger.send_message([bob.public_key], "published anyway")

    assert len(pool.events) == 2
    assert [m.id for m in messenger.get_messages(messenger.conversation_tag([bob.public_key]))] == [rumor.id]
    assert messenger.store.dirty

    with pytest.raises(StorageFailure) as exc_info:
        await messenger.save()
    assert exc_info.value.code == ErrorCode.E602_STORAGE_SAVE_FAILED

    await messenger.logout()
    assert not pool.connected


@pytest.mark.asyncio
async def test_listen_after_cleanup_closes_stream(alice, bob, pool, make_messenger):
    messenger = make_messenger(bob)
    messenger.subscriptions.cleanup()

    with pytest.raises(SubscriptionError) as exc_info:
        messenger.listen([alice.public_key])
    assert exc_info.value.code == ErrorCode.E502_MANAGER_DESTROYED
    assert pool._streams == set()


@pytest.mark.asyncio
async def test_listen_reports_only_new_messages(alice, bob, make_messenger):
    sender = make_messenger(alice)
    receiver = make_messenger(bob)
    old = await sender.send_message([bob.public_key], "already synced")
    await receiver.sync_history([alice.public_key])
    received = []

    handle = receiver.listen([alice.public_key], timeout=5, on_messages=lambda tag, rumors: received.append(rumors))
    await asyncio.sleep(0.05)
    assert received == []

    new = await sender.send_message([bob.public_key], "fresh")
    await asyncio.sleep(0.05)
    handle.stop()

    assert [[m.id for m in batch] for batch in received] == [[new.id]]
    tag = receiver.conversation_tag([alice.public_key])
    assert [m.id for m in receiver.get_messages(tag)] == [old.id, new.id]


@pytest.mark.asyncio
async def test_chat_room_reaches_every_participant(alice, bob, carol, make_messenger):
    creator = make_messenger(alice)
    room = await creator.store_chat_room([bob.npub, carol.public_key])

    participants = sorted([alice.public_key, bob.public_key, carol.public_key])
    assert room.recipients == participants
    assert room.recipients_npub == [encode_npub(p) for p in participants]

    for key_material in (alice, bob, carol):
        rooms = await make_messenger(key_material).load_chat_rooms()
        assert list(rooms) == [room.key]
        assert rooms[room.key].recipients == participants


@pytest.mark.asyncio
async def test_chat_room_stored_once(alice, bob, pool, make_messenger):
    messenger = make_messenger(alice)

    assert await messenger.store_chat_room([bob.public_key]) is not None
    published = len(pool.events)
    assert published == 2

    assert await messenger.store_chat_room([bob.npub]) is None
    assert len(pool.events) == published


@pytest.mark.asyncio
async def test_chat_room_skips_other_records(alice, bob, make_messenger):
    messenger = make_messenger(alice)
    self_tag = messenger._self_tag(alice.public_key)
    await messenger.send_message([bob.public_key], "not a room", tags=[["d", self_tag]])
    await messenger.store_chat_room([bob.public_key])

    rooms = await make_messenger(alice).load_chat_rooms()
    assert list(rooms) == [",".join(sorted([alice.public_key, bob.public_key]))]


def test_chat_room_parsing():
    room = ChatRoom.from_json('{"recipients": ["b", "a"], "recipientsNPubkeys": ["npub1b", "npub1a"]}')
    assert room.key == "a,b"
    assert ChatRoom.from_json(room.to_json()).recipients == ["a", "b"]

    for raw in ("not json", "[]", '{"recipients": "a"}'):
        with pytest.raises(ValueError):
            ChatRoom.from_json(raw)
