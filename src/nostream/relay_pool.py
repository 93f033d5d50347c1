"""
Nostream - Relay pool interface.

The raw relay transport (websockets, wire framing, signature checks) is
not part of this package. Messaging code talks to relays only through the
RelayPool interface defined here; applications plug in a real transport
by subclassing it.

MemoryRelayPool is a complete in-process implementation backed by a list
of events, useful for offline use and for exercising the messaging layer.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .constants import KIND_GIFT_WRAP, POOL_CLEANUP_DELAY, POOL_STABILIZATION_DELAY
from .event import Event, short_id
from .subscription import Stream

logger = logging.getLogger(__name__)

Filter = Dict[str, Any]
EventCallback = Callable[[Event], None]


def gift_wrap_filter(
    tag: str,
    since: Optional[int] = None,
    until: Optional[int] = None,
    recipient: Optional[str] = None,
) -> Filter:
    """Build the relay filter for the gift wraps of one conversation.

    Args:
        tag: Conversation tag carried in the ``d`` tag of every wrap
        since: Lower created_at bound, inclusive
        until: Upper created_at bound, inclusive
        recipient: Restrict to wraps addressed to this key (``p`` tag)
    """
    result: Filter = {"kinds": [KIND_GIFT_WRAP], "#d": [tag]}
    if recipient:
        result["#p"] = [recipient]
    if since is not None:
        result["since"] = since
    if until is not None:
        result["until"] = until
    return result


def matches_filter(event: Event, filter: Filter) -> bool:
    """Check an event against a relay filter (ids, authors, kinds, #x, since, until)."""
    if "ids" in filter and event.id not in filter["ids"]:
        return False
    if "authors" in filter and event.pubkey not in filter["authors"]:
        return False
    if "kinds" in filter and event.kind not in filter["kinds"]:
        return False
    if "since" in filter and event.created_at < filter["since"]:
        return False
    if "until" in filter and event.created_at > filter["until"]:
        return False
    for key, wanted in filter.items():
        if key.startswith("#") and len(key) == 2:
            if not set(event.get_tag_values(key[1])) & set(wanted):
                return False
    return True


class RelayPool(ABC):
    """Abstract relay transport.

    Attributes:
        cleanup_delay: Pause after closing connections during reset()
        stabilization_delay: Pause after reconnecting during reset()
    """

    cleanup_delay = POOL_CLEANUP_DELAY
    stabilization_delay = POOL_STABILIZATION_DELAY

    @abstractmethod
    async def fetch_events(self, filter: Filter) -> List[Event]:
        """One-shot query; returns when every relay has sent end-of-stored-events."""

    @abstractmethod
    def subscribe(
        self,
        filters: List[Filter],
        on_event: EventCallback,
        on_eose: Optional[Callable[[], None]] = None,
        relays: Optional[Iterable[str]] = None,
    ) -> Stream:
        """Open a live subscription. The returned stream has stop()."""

    @abstractmethod
    def publish(self, relays: Iterable[str], event: Event) -> List[Awaitable[Any]]:
        """Send an event; returns one awaitable per relay that resolves on
        acknowledgement and raises on rejection."""

    @abstractmethod
    async def close(self, relays: Optional[Iterable[str]] = None) -> None:
        """Close connections to the given relays, or to all of them."""

    @abstractmethod
    async def connect(self) -> None:
        """(Re)open connections to the configured relays."""

    async def reset(self) -> None:
        """Tear down and rebuild every connection.

        Called by the publish coordinator after repeated failures.
        """
        logger.info("Resetting relay pool")
        await self.close()
        await asyncio.sleep(self.cleanup_delay)
        await self.connect()
        await asyncio.sleep(self.stabilization_delay)
        logger.info("Relay pool reset complete")


class MemoryStream:
    """Live subscription on a MemoryRelayPool."""

    def __init__(self, pool: "MemoryRelayPool", filters: List[Filter], on_event: EventCallback):
        self.pool = pool
        self.filters = filters
        self.on_event = on_event
        self.stopped = False

    def deliver(self, event: Event) -> None:
        if not self.stopped and any(matches_filter(event, f) for f in self.filters):
            self.on_event(event)

    def stop(self) -> None:
        self.stopped = True
        self.pool._streams.discard(self)


class MemoryRelayPool(RelayPool):
    """In-process relay pool.

    Every "relay" shares one event list. Relays listed in ``failing`` reject
    every publish.
    """

    cleanup_delay = 0
    stabilization_delay = 0

    def __init__(self, relays: Iterable[str] = (), failing: Iterable[str] = ()):
        self.relays = list(relays)
        self.failing = set(failing)
        self.events: List[Event] = []
        self.connected = True
        self.resets = 0
        self._streams = set()

    async def fetch_events(self, filter: Filter) -> List[Event]:
        return [event for event in self.events if matches_filter(event, filter)]

    def subscribe(self, filters, on_event, on_eose=None, relays=None) -> MemoryStream:
        stream = MemoryStream(self, list(filters), on_event)
        self._streams.add(stream)
        for event in self.events:
            stream.deliver(event)
        if on_eose is not None:
            on_eose()
        return stream

    async def _publish_one(self, relay: str, event: Event) -> str:
        if not self.connected or relay in self.failing:
            raise ConnectionError(f"{relay} rejected {short_id(event.id)}")
        if all(existing.id != event.id for existing in self.events):
            self.events.append(event)
            for stream in list(self._streams):
                stream.deliver(event)
        return relay

    def publish(self, relays, event):
        return [self._publish_one(relay, event) for relay in relays]

    async def close(self, relays=None) -> None:
        if relays is None:
            self.connected = False
            for stream in list(self._streams):
                stream.stop()

    async def connect(self) -> None:
        self.connected = True

    async def reset(self) -> None:
        self.resets += 1
        await super().reset()
