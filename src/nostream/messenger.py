"""
Nostream - Private messaging facade.

Ties the envelope codec, conversation tags, chat store, publish
coordinator and subscription manager together into the operations a
chat client needs: send a message, read a conversation, backfill its
history from relays, and listen for new messages.
"""

import functools
import json
import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .batcher import EventBatcher
from .chat_store import ChatStore, TimeRange
from .config import Config
from .constants import (
    CHAT_DATA_FILENAME,
    DEFAULT_TAG_SALT,
    MESSAGE_DEBOUNCE,
    SECONDS_PER_DAY,
    TWO_DAYS,
)
from .envelope import build_chat_draft, create_rumor, unwrap_many, wrap, wrap_many
from .errors import InvalidRecipientSet, StorageFailure
from .event import Event, now, short_id
from .keys import KeyMaterial, encode_npub
from .publisher import PublishCoordinator
from .relay_pool import RelayPool, gift_wrap_filter
from .storage import ChatStorage
from .subscription import DebouncedSubscriptionManager, SubscriptionHandle, SubscriptionManager
from .tags import derive_tag, normalize_recipients

logger = logging.getLogger(__name__)

MessagesCallback = Callable[[str, List[Event]], None]


@dataclass
class ChatRoom:
    """A conversation the local user takes part in, shared across devices.

    Attributes:
        recipients: Hex keys of every participant, sorted
        recipients_npub: The same keys in npub form
    """

    recipients: List[str]
    recipients_npub: List[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        return ",".join(self.recipients)

    def to_json(self) -> str:
        return json.dumps({"recipients": self.recipients, "recipientsNPubkeys": self.recipients_npub})

    @staticmethod
    def from_json(raw: str) -> "ChatRoom":
        """
        Raises:
            ValueError: If ``raw`` is not a chat room record
        """
        data = json.loads(raw)
        if not isinstance(data, dict) or not isinstance(data.get("recipients"), list):
            raise ValueError("Not a chat room record")
        recipients = sorted(str(r) for r in data["recipients"])
        npubs = [str(r) for r in data.get("recipientsNPubkeys") or []]
        return ChatRoom(recipients=recipients, recipients_npub=npubs)


class Messenger:
    """
    Private direct messages for one local identity.

    Attributes:
        key_material: The local user's key
        pool: Relay transport
        store: Per-conversation message cache
        publisher: Publish coordinator used for outgoing wraps
        subscriptions: Owner of live relay subscriptions
        relays: Relays to publish to and subscribe on
        storage: Optional persistence backend for the store
    """

    def __init__(
        self,
        key_material: KeyMaterial,
        pool: RelayPool,
        store: ChatStore,
        publisher: PublishCoordinator,
        subscriptions: SubscriptionManager,
        relays: Optional[Iterable[str]] = None,
        storage: Optional[ChatStorage] = None,
        tag_salt: str = DEFAULT_TAG_SALT,
        batch_delay: float = MESSAGE_DEBOUNCE,
    ):
        self.key_material = key_material
        self.pool = pool
        self.store = store
        self.publisher = publisher
        self.subscriptions = subscriptions
        self.relays = list(publisher.relays if relays is None else relays)
        self.storage = storage
        self.tag_salt = tag_salt
        self.batch_delay = batch_delay
        self.chat_rooms: Dict[str, ChatRoom] = {}

    @classmethod
    def from_config(cls, config: Config, key_material: KeyMaterial, pool: RelayPool) -> "Messenger":
        """Build a messenger with every collaborator configured from ``config``."""
        relays = config.get("relays", "urls")
        store = ChatStore(
            lookback=config.get("sync", "lookback_days") * SECONDS_PER_DAY,
            freshness_buffer=config.get("sync", "freshness_minutes") * 60,
        )
        publisher = PublishCoordinator(
            pool,
            relays,
            cooldown=config.get("publish", "cooldown"),
            rapid_cooldown=config.get("publish", "rapid_cooldown"),
            publish_timeout=config.get("publish", "timeout"),
            max_consecutive_failures=config.get("publish", "max_consecutive_failures"),
        )
        subscriptions = DebouncedSubscriptionManager(
            default_timeout=config.get("subscriptions", "timeout"),
            debounce=config.get("subscriptions", "debounce"),
        )
        storage = ChatStorage(config.data_dir / CHAT_DATA_FILENAME)
        return cls(
            key_material,
            pool,
            store,
            publisher,
            subscriptions,
            relays=relays,
            storage=storage,
            tag_salt=config.get("sync", "tag_salt"),
            batch_delay=config.get("subscriptions", "debounce"),
        )

    @property
    def public_key(self) -> str:
        return self.key_material.public_key

    def conversation_tag(self, recipients: Iterable[str]) -> str:
        """Tag of the conversation between the local user and ``recipients``."""
        participants = normalize_recipients(recipients, current_user=self.public_key)
        return derive_tag(participants, self.tag_salt)

    async def send_message(
        self,
        recipients: Sequence[str],
        content: str,
        tags: Optional[Iterable[Sequence[str]]] = None,
        subject: Optional[str] = None,
        reply_to: Optional[str] = None,
    ) -> Event:
        """
        Send a private message to one or more recipients.

        One gift wrap is published per recipient plus one for the local
        user, each tagged with the conversation tag.

        Returns:
            The rumor that was sent (also added to the local store)

        Raises:
            InvalidRecipientSet: If there are no recipients
            PublishFailed: If no copy reached any relay
        """
        targets = normalize_recipients(recipients, ignore_current_user=True)
        if not targets:
            raise InvalidRecipientSet()

        tag = self.conversation_tag(targets)
        extra_tags = [["d", tag]] + [list(t) for t in tags or []]

        draft = replace(build_chat_draft(content, targets, subject=subject, reply_to=reply_to), created_at=now())
        rumor = create_rumor(draft, self.key_material)
        wraps = wrap_many(draft, self.key_material, targets, extra_tags)

        report = await self.publisher.publish_many(wraps, self.relays)
        logger.info(f"Sent message {short_id(rumor.id)} to {tag[:10]} ({len(report.published)}/{report.total} copies)")

        await self.store.add_messages(tag, [rumor])
        await self._persist()
        return rumor

    def get_messages(self, tag: str) -> List[Event]:
        return self.store.get_messages(tag)

    async def _fetch_range(self, tag: str, time_range: TimeRange) -> List[Event]:
        # Wrap timestamps sit up to two days before the rumor they carry
        filter = gift_wrap_filter(
            tag,
            since=max(0, time_range.since - TWO_DAYS),
            until=time_range.until,
            recipient=self.public_key,
        )
        wraps = await self.pool.fetch_events(filter)
        rumors = [
            rumor
            for rumor in unwrap_many(wraps, self.key_material)
            if time_range.since <= rumor.created_at <= time_range.until
        ]
        logger.debug(
            f"Fetched {len(wraps)} wraps, {len(rumors)} messages for {tag[:10]} "
            f"[{time_range.since}, {time_range.until}]"
        )
        return rumors

    async def sync_history(self, recipients: Iterable[str]) -> bool:
        """
        Fetch the slices of a conversation's history the store is missing.

        Returns:
            True if relays were queried, False if the store was fresh
        """
        tag = self.conversation_tag(recipients)
        if not self.store.should_fetch_range(tag):
            logger.debug(f"History of {tag[:10]} is fresh, skipping fetch")
            return False

        ranges = self.store.get_missing_ranges(tag)
        for time_range in ranges:
            rumors = await self._fetch_range(tag, time_range)
            await self.store.add_messages(tag, rumors)
            self.store.update_time_range(tag, time_range.since, time_range.until)

        self.store.mark_fetched(tag)
        await self._persist()
        return bool(ranges)

    async def _ingest(
        self,
        tag: str,
        on_messages: Optional[MessagesCallback],
        wraps: List[Event],
    ) -> None:
        rumors = unwrap_many(wraps, self.key_material)
        if not rumors:
            return
        added = await self.store.add_messages(tag, rumors)
        if added and on_messages is not None:
            on_messages(tag, added)

    def listen(
        self,
        recipients: Iterable[str],
        timeout: Optional[float] = None,
        on_messages: Optional[MessagesCallback] = None,
    ) -> SubscriptionHandle:
        """
        Subscribe to new gift wraps of a conversation.

        Incoming wraps are batched, unwrapped and merged into the store.
        Listening to the same conversation again replaces the previous
        subscription. Must be called from a running event loop.
        """
        tag = self.conversation_tag(recipients)
        batcher = EventBatcher(functools.partial(self._ingest, tag, on_messages), delay=self.batch_delay)
        filter = gift_wrap_filter(tag, since=now() - TWO_DAYS, recipient=self.public_key)

        stream = _BatchedStream(self.pool.subscribe([filter], batcher.push, relays=self.relays), batcher)
        try:
            return self.subscriptions.subscribe(
                f"nip17-{tag[:16]}",
                stream,
                timeout=timeout,
                filters=[filter],
                relays=self.relays,
            )
        except Exception:
            stream.stop()
            raise

    def _self_tag(self, public_key: str) -> str:
        return derive_tag([public_key], self.tag_salt)

    async def store_chat_room(self, recipients: Iterable[str]) -> Optional[ChatRoom]:
        """
        Record a conversation so every participant's devices can list it.

        The room record is gift wrapped to each participant (the local
        user included) under that participant's own tag.

        Returns:
            The stored room, or None if it was already known

        Raises:
            InvalidRecipientSet: If there are no recipients
            PublishFailed: If no copy reached any relay
        """
        targets = normalize_recipients(recipients, ignore_current_user=True)
        if not targets:
            raise InvalidRecipientSet()

        participants = sorted(normalize_recipients(targets, current_user=self.public_key))
        room = ChatRoom(participants, [encode_npub(p) for p in participants])
        if room.key in self.chat_rooms:
            logger.debug(f"Chat room {room.key[:16]} already stored")
            return None

        content = room.to_json()
        wraps = [
            wrap(build_chat_draft(content, [p]), self.key_material, p, [["d", self._self_tag(p)]])
            for p in participants
        ]
        report = await self.publisher.publish_many(wraps, self.relays)
        logger.info(f"Stored chat room with {len(participants)} participants ({len(report.published)}/{report.total} copies)")

        self.chat_rooms[room.key] = room
        return room

    async def load_chat_rooms(self) -> Dict[str, ChatRoom]:
        """
        Fetch the chat rooms stored for the local user.

        Records that do not decrypt or do not parse are skipped.

        Returns:
            Known rooms keyed by their comma-joined participant list
        """
        filter = gift_wrap_filter(self._self_tag(self.public_key), recipient=self.public_key)
        wraps = await self.pool.fetch_events(filter)
        for rumor in unwrap_many(wraps, self.key_material):
            try:
                room = ChatRoom.from_json(rumor.content)
            except ValueError as e:
                logger.debug(f"Skipping chat room record {short_id(rumor.id)}: {e}")
                continue
            self.chat_rooms[room.key] = room
        logger.debug(f"Loaded {len(self.chat_rooms)} chat rooms")
        return dict(self.chat_rooms)

    async def load(self) -> None:
        """Load persisted conversations into the store."""
        if self.storage is not None:
            self.store.load_dict(self.storage.load())

    async def save(self) -> None:
        """Persist the store.

        Raises:
            StorageFailure: If writing fails
        """
        if self.storage is None:
            return
        await self.storage.save(self.store.to_dict())
        self.store.mark_clean()

    async def _persist(self) -> None:
        # The store stays dirty on failure, so the next persist retries
        if not self.store.dirty:
            return
        try:
            await self.save()
        except StorageFailure as e:
            logger.error(f"Could not persist conversations: {e}")

    async def logout(self) -> None:
        """Stop all subscriptions, forget publish history, close the pool."""
        await self._persist()
        self.subscriptions.cleanup()
        self.publisher.reset()
        self.chat_rooms.clear()
        await self.pool.close()
        logger.info("Logged out")


class _BatchedStream:
    """Relay stream whose stop() also hands over events still being batched."""

    def __init__(self, stream, batcher: EventBatcher):
        self.stream = stream
        self.batcher = batcher

    def stop(self) -> None:
        self.stream.stop()
        self.batcher.drain()
