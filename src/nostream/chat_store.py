"""
Nostream - Time-range synchronization store.

Keeps one ChatRecord per conversation tag: the unwrapped messages sorted
by created_at, plus ``since``/``until`` watermarks marking the span of time
for which the store believes it holds a complete message set. From those
watermarks it computes which slices of history still have to be fetched.

Mutation of a single tag is serialized with a per-tag asyncio.Lock;
different tags never block each other.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from .constants import (
    DEFAULT_MESSAGE_HISTORY_DAYS,
    REFRESH_INTERVAL_MINUTES,
    SECONDS_PER_DAY,
    STORAGE_FORMAT_VERSION,
)
from .errors import ErrorCode, StorageFailure
from .event import Event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeRange:
    """Inclusive range of unix seconds."""

    since: int
    until: int

    def to_dict(self) -> Dict[str, int]:
        return {"since": self.since, "until": self.until}


@dataclass
class ChatRecord:
    """Cached state of one conversation."""

    messages: List[Event] = field(default_factory=list)
    since: Optional[int] = None
    until: Optional[int] = None
    last_fetched: Optional[int] = None

    def has_watermarks(self) -> bool:
        return self.since is not None and self.until is not None

    def widen(self, since: int, until: int) -> None:
        self.since = since if self.since is None else min(self.since, since)
        self.until = until if self.until is None else max(self.until, until)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "messages": [message.to_dict() for message in self.messages],
            "since": self.since,
            "until": self.until,
            "last_fetched": self.last_fetched,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "ChatRecord":
        messages = [Event.from_dict(item) for item in data.get("messages", [])]
        messages.sort(key=lambda m: m.created_at)
        return ChatRecord(
            messages=messages,
            since=data.get("since"),
            until=data.get("until"),
            last_fetched=data.get("last_fetched"),
        )


class ChatStore:
    """
    Per-conversation message cache with gap computation.

    Attributes:
        lookback: Default history window in seconds
        freshness_buffer: How long a completed fetch stays fresh, in seconds
    """

    def __init__(
        self,
        lookback: int = DEFAULT_MESSAGE_HISTORY_DAYS * SECONDS_PER_DAY,
        freshness_buffer: int = REFRESH_INTERVAL_MINUTES * 60,
        clock: Callable[[], float] = time.time,
    ):
        self.lookback = lookback
        self.freshness_buffer = freshness_buffer
        self._clock = clock
        self._records: Dict[str, ChatRecord] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._dirty = False

    def _now(self) -> int:
        return int(self._clock())

    def _lock_for(self, tag: str) -> asyncio.Lock:
        lock = self._locks.get(tag)
        if lock is None:
            lock = self._locks[tag] = asyncio.Lock()
        return lock

    @property
    def dirty(self) -> bool:
        """True when records changed since the last mark_clean()."""
        return self._dirty

    def mark_clean(self) -> None:
        self._dirty = False

    def tags(self) -> List[str]:
        return list(self._records)

    def has_record(self, tag: str) -> bool:
        return tag in self._records

    async def add_messages(self, tag: str, batch: Iterable[Event]) -> List[Event]:
        """
        Merge a batch of rumors into a conversation.

        Duplicates (same id) are dropped, the list is re-sorted, and the
        watermarks widen to cover the batch.

        Returns:
            The messages of the batch that were not already stored, in
            batch order
        """
        batch = list(batch)
        async with self._lock_for(tag):
            record = self._records.setdefault(tag, ChatRecord())
            known = {message.id for message in record.messages}

            added: List[Event] = []
            for message in batch:
                if message.id in known:
                    continue
                known.add(message.id)
                record.messages.append(message)
                added.append(message)

            if batch:
                record.messages.sort(key=lambda m: m.created_at)
                record.widen(
                    min(m.created_at for m in batch),
                    max(m.created_at for m in batch),
                )
            self._dirty = True

        if added:
            logger.debug(f"Added {len(added)} messages to {tag[:10]} (total: {len(record.messages)})")
        return added

    def get_messages(self, tag: str) -> List[Event]:
        """Return a sorted copy of the messages of a conversation."""
        record = self._records.get(tag)
        return list(record.messages) if record else []

    def get_time_range(self, tag: str) -> Optional[TimeRange]:
        record = self._records.get(tag)
        if record is None or not record.has_watermarks():
            return None
        return TimeRange(record.since, record.until)

    def update_time_range(self, tag: str, since: int, until: int) -> None:
        """Widen the watermarks after a completed fetch of ``[since, until]``.

        Slices that came back empty still count as covered afterwards.
        """
        if since > until:
            raise ValueError(f"Invalid time range: {since} > {until}")
        self._records.setdefault(tag, ChatRecord()).widen(since, until)
        self._dirty = True

    def mark_fetched(self, tag: str) -> None:
        """Record that a full gap-fill pass for ``tag`` just completed."""
        self._records.setdefault(tag, ChatRecord()).last_fetched = self._now()
        self._dirty = True

    def get_missing_ranges(self, tag: str, now: Optional[int] = None) -> List[TimeRange]:
        """
        Compute the slices of history that still need fetching.

        - Unknown conversation: the whole default window ``[now-W, now]``
        - Otherwise a backward range ending just before ``since`` (bounded
          by ``now-2W``), so history loads progressively
        - And a forward range after ``until`` when it is older than the
          freshness buffer

        Returned ranges never overlap each other or ``[since, until]``.
        """
        now = self._now() if now is None else now
        record = self._records.get(tag)

        if record is None or not record.has_watermarks():
            return [TimeRange(now - self.lookback, now)]

        ranges = []
        lower = max(now - 2 * self.lookback, record.since - self.lookback)
        upper = record.since - 1
        if lower <= upper:
            ranges.append(TimeRange(lower, upper))

        if record.until < now - self.freshness_buffer:
            ranges.append(TimeRange(record.until + 1, now))

        return ranges

    def should_fetch_range(
        self,
        tag: str,
        since: Optional[int] = None,
        until: Optional[int] = None,
        now: Optional[int] = None,
    ) -> bool:
        """
        Decide whether a fetch is needed.

        Without an explicit range, a fetch is skipped only when the default
        window is covered and the last full pass is within the freshness
        buffer. With an explicit range, a fetch is needed when the range
        reaches outside the watermarks.
        """
        record = self._records.get(tag)
        if record is None or not record.has_watermarks():
            return True

        now = self._now() if now is None else now

        if since is None and until is None:
            covered = (
                record.since <= now - self.lookback
                and record.until >= now - self.freshness_buffer
            )
            fresh = (
                record.last_fetched is not None
                and record.last_fetched >= now - self.freshness_buffer
            )
            return not (covered and fresh)

        requested_since = now - self.lookback if since is None else since
        requested_until = now if until is None else until
        return requested_since < record.since or requested_until > record.until

    def wipe(self, tag: Optional[str] = None) -> None:
        """Drop one conversation, or every conversation when ``tag`` is None."""
        if tag is None:
            self._records.clear()
            self._locks.clear()
            logger.info("Wiped all chat records")
        else:
            self._records.pop(tag, None)
            self._locks.pop(tag, None)
            logger.info(f"Wiped chat record {tag[:10]}")
        self._dirty = True

    def to_dict(self) -> Dict[str, Any]:
        """Convert the store to the JSON-compatible persisted layout."""
        return {
            "version": STORAGE_FORMAT_VERSION,
            "chats": {tag: record.to_dict() for tag, record in self._records.items()},
        }

    def load_dict(self, data: Dict[str, Any]) -> None:
        """Replace the in-memory records with a persisted layout.

        Raises:
            StorageFailure: If the layout cannot be parsed
        """
        chats = data.get("chats", {})
        if not isinstance(chats, dict):
            raise StorageFailure(ErrorCode.E601_STORAGE_LOAD_FAILED, "Persisted chats must be an object")
        try:
            records = {tag: ChatRecord.from_dict(raw) for tag, raw in chats.items()}
        except (ValueError, TypeError, AttributeError) as e:
            raise StorageFailure(
                ErrorCode.E601_STORAGE_LOAD_FAILED,
                f"Corrupted chat record: {e}",
            ) from e

        self._records = records
        self._locks.clear()
        self._dirty = False
        logger.info(f"Loaded {len(records)} chat records")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], **kwargs: Any) -> "ChatStore":
        store = cls(**kwargs)
        store.load_dict(data)
        return store
