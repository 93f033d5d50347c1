"""
Nostream - Publish coordination.

Sends events to the relay pool with the delivery policy used for chat
messages:
- rapid consecutive publishes are spaced out by a short cooldown
- each relay acknowledgement is raced against a timeout
- a publish succeeds when at least one relay acknowledged it
- after repeated failed publishes the pool is reset before the next try
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .constants import (
    MAX_CONSECUTIVE_FAILURES,
    PUBLISH_COOLDOWN,
    PUBLISH_TIMEOUT,
    RAPID_PUBLISH_COOLDOWN,
)
from .errors import ErrorCode, PublishFailed
from .event import Event, short_id
from .relay_pool import RelayPool

logger = logging.getLogger(__name__)


@dataclass
class PublishReport:
    """Outcome of publishing a group of events (one message, many copies)."""

    published: List[Event] = field(default_factory=list)
    failed: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return bool(self.published)

    @property
    def total(self) -> int:
        return len(self.published) + len(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "published": [event.id for event in self.published],
            "failed": self.failed,
        }


class PublishCoordinator:
    """
    Publishes events and tracks delivery health.

    Attributes:
        publish_count: Publish attempts since creation or the last reset()
        last_publish_time: Clock reading of the last successful publish
        consecutive_failures: Failed publishes since the last success
    """

    def __init__(
        self,
        pool: RelayPool,
        relays: Iterable[str],
        cooldown: float = PUBLISH_COOLDOWN,
        rapid_cooldown: float = RAPID_PUBLISH_COOLDOWN,
        publish_timeout: float = PUBLISH_TIMEOUT,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.pool = pool
        self.relays = list(relays)
        self.cooldown = cooldown
        self.rapid_cooldown = rapid_cooldown
        self.publish_timeout = publish_timeout
        self.max_consecutive_failures = max_consecutive_failures
        self._clock = clock
        self._sleep = sleep

        self.publish_count = 0
        self.last_publish_time: Optional[float] = None
        self.consecutive_failures = 0

    async def _prepare(self) -> None:
        self.publish_count += 1

        if self.last_publish_time is not None and self.publish_count > 1:
            elapsed = self._clock() - self.last_publish_time
            if elapsed < self.cooldown:
                logger.debug(f"Rapid publish #{self.publish_count} ({elapsed:.2f}s since last), cooling down")
                await self._sleep(self.rapid_cooldown)

        if self.consecutive_failures >= self.max_consecutive_failures:
            logger.warning(f"{self.consecutive_failures} consecutive publish failures, resetting relay pool")
            await self.pool.reset()

    async def _await_ack(self, ack: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(ack, timeout=self.publish_timeout)
        except asyncio.TimeoutError as e:
            raise PublishFailed(
                ErrorCode.E202_PUBLISH_TIMEOUT,
                f"Publish timeout ({self.publish_timeout}s)",
            ) from e

    async def _send(self, event: Event, relays: Optional[Iterable[str]]) -> Event:
        targets = list(self.relays if relays is None else relays)
        if not targets:
            raise PublishFailed(ErrorCode.E203_NO_RELAYS, "No relays available for publishing")

        acks = self.pool.publish(targets, event)
        results = await asyncio.gather(*(self._await_ack(ack) for ack in acks), return_exceptions=True)

        errors: Dict[str, str] = {}
        for relay, result in zip(targets, results):
            if isinstance(result, BaseException):
                errors[relay] = str(result) or type(result).__name__
                logger.debug(f"Relay {relay} rejected {short_id(event.id)}: {errors[relay]}")

        acknowledged = len(targets) - len(errors)
        logger.info(f"Published {short_id(event.id)} to {acknowledged}/{len(targets)} relays")

        if acknowledged == 0:
            raise PublishFailed(details={"event": event.id, "relays": errors})
        return event

    def _record_success(self) -> None:
        self.consecutive_failures = 0
        self.last_publish_time = self._clock()

    def _record_failure(self) -> None:
        self.consecutive_failures += 1
        logger.warning(f"Publish failed, consecutive failures: {self.consecutive_failures}")

    async def publish_event(self, event: Event, relays: Optional[Iterable[str]] = None) -> Event:
        """
        Publish one signed event.

        Args:
            event: Signed event
            relays: Target relays; defaults to the coordinator's relays

        Returns:
            The published event

        Raises:
            PublishFailed: If no relay acknowledged the event
        """
        await self._prepare()
        try:
            result = await self._send(event, relays)
        except Exception:
            self._record_failure()
            raise
        self._record_success()
        return result

    async def publish_many(self, events: Iterable[Event], relays: Optional[Iterable[str]] = None) -> PublishReport:
        """
        Publish several events concurrently as one logical send.

        The cooldown and failure policy apply once per call. Partial success
        counts as success.

        Raises:
            PublishFailed: If every event failed
        """
        events = list(events)
        report = PublishReport()
        if not events:
            return report

        await self._prepare()
        results = await asyncio.gather(*(self._send(event, relays) for event in events), return_exceptions=True)

        for event, result in zip(events, results):
            if isinstance(result, PublishFailed):
                report.failed[event.id] = result.to_dict()
            elif isinstance(result, BaseException):
                report.failed[event.id] = {"message": str(result) or type(result).__name__}
            else:
                report.published.append(event)

        if not report.success:
            self._record_failure()
            raise PublishFailed(
                message=f"Failed to publish any of {len(events)} events",
                details=report.to_dict(),
            )

        self._record_success()
        if report.failed:
            logger.warning(f"Published {len(report.published)}/{report.total} events")
        return report

    def reset(self) -> None:
        """Forget publish history (used on logout)."""
        self.publish_count = 0
        self.last_publish_time = None
        self.consecutive_failures = 0

    def stats(self) -> Dict[str, Any]:
        return {
            "publish_count": self.publish_count,
            "last_publish_time": self.last_publish_time,
            "consecutive_failures": self.consecutive_failures,
            "relays": list(self.relays),
        }
