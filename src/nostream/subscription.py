"""
Nostream - Subscription lifecycle management.

Every live relay subscription is registered under an id together with a
timeout timer. Registering an id that is already live replaces the old
subscription; the timer force-stops a subscription that outlives its
timeout. A stream is stopped at most once, whether the stop comes from
the caller, a replacement, the timer, or cleanup().
"""

import asyncio
import logging
import secrets
import time
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from .constants import MESSAGE_DEBOUNCE, SUBSCRIPTION_TIMEOUT
from .errors import ErrorCode, SubscriptionError, SubscriptionTimeout

logger = logging.getLogger(__name__)


class Stream(Protocol):
    """Anything returned by a relay subscription: it can be stopped."""

    def stop(self) -> None:
        ...


def generate_subscription_id(prefix: str = "sub") -> str:
    """Generate a unique subscription id such as ``sub_1700000000000_1a2b3c4d``."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


class SubscriptionHandle:
    """
    A registered subscription.

    Attributes:
        id: Subscription id
        filters: Filters the stream was opened with
        relays: Relays the stream was opened on
        stream: Underlying relay stream
        timer: Pending timeout timer, if armed
    """

    def __init__(
        self,
        manager: "SubscriptionManager",
        subscription_id: str,
        stream: Stream,
        filters: Iterable[Dict[str, Any]] = (),
        relays: Iterable[str] = (),
    ):
        self.id = subscription_id
        self.stream = stream
        self.filters = list(filters)
        self.relays = list(relays)
        self.timer: Optional[asyncio.TimerHandle] = None
        self._manager = manager
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> bool:
        """Stop the stream and remove it from its manager.

        Returns:
            True if the handle was still registered
        """
        return self._manager._dispose(self)

    def _cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None

    def _stop_stream(self) -> None:
        self._cancel_timer()
        if self._stopped:
            return
        self._stopped = True
        self.stream.stop()

    def __enter__(self) -> "SubscriptionHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def __repr__(self) -> str:
        return f"SubscriptionHandle(id={self.id!r}, stopped={self._stopped})"


class SubscriptionManager:
    """
    Owns live subscriptions and guarantees their cleanup.

    Usable as a (sync or async) context manager: leaving the block calls
    cleanup(), after which the manager refuses new subscriptions.
    """

    def __init__(self, default_timeout: float = SUBSCRIPTION_TIMEOUT):
        """
        Args:
            default_timeout: Lifetime in seconds of subscriptions registered
                without an explicit timeout
        """
        self.default_timeout = default_timeout
        self._subscriptions: Dict[str, SubscriptionHandle] = {}
        self._destroyed = False

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    @property
    def active_count(self) -> int:
        return len(self._subscriptions)

    def active_ids(self) -> List[str]:
        return list(self._subscriptions)

    def has_subscription(self, subscription_id: str) -> bool:
        return subscription_id in self._subscriptions

    def get(self, subscription_id: str) -> Optional[SubscriptionHandle]:
        return self._subscriptions.get(subscription_id)

    def _check_alive(self, subscription_id: str) -> None:
        if self._destroyed:
            raise SubscriptionError(
                ErrorCode.E502_MANAGER_DESTROYED,
                "SubscriptionManager has been destroyed",
                {"id": subscription_id},
            )

    def subscribe(
        self,
        subscription_id: str,
        stream: Stream,
        timeout: Optional[float] = None,
        filters: Iterable[Dict[str, Any]] = (),
        relays: Iterable[str] = (),
    ) -> SubscriptionHandle:
        """
        Register a stream, replacing any live subscription with the same id.

        Must be called from a running event loop (the timeout timer is
        scheduled on it).

        Raises:
            SubscriptionError: If the manager has been cleaned up
        """
        self._check_alive(subscription_id)
        handle = SubscriptionHandle(self, subscription_id, stream, filters, relays)
        self._register(handle, timeout)
        return handle

    def _register(self, handle: SubscriptionHandle, timeout: Optional[float]) -> None:
        self.unsubscribe(handle.id)
        self._subscriptions[handle.id] = handle
        self._arm(handle, timeout)
        logger.debug(f"Subscription {handle.id} registered ({self.active_count} active)")

    def _arm(self, handle: SubscriptionHandle, timeout: Optional[float]) -> None:
        timeout = self.default_timeout if timeout is None else timeout
        handle._cancel_timer()
        loop = asyncio.get_running_loop()
        handle.timer = loop.call_later(timeout, self._on_timeout, handle, timeout)

    def _on_timeout(self, handle: SubscriptionHandle, timeout: float) -> None:
        handle.timer = None
        if self._subscriptions.get(handle.id) is not handle:
            return
        error = SubscriptionTimeout(details={"id": handle.id, "timeout": timeout})
        logger.warning(f"Subscription {handle.id} timed out after {timeout}s [{error.code.value}]")
        self.unsubscribe(handle.id)

    def _stop_handle(self, handle: SubscriptionHandle) -> None:
        try:
            handle._stop_stream()
        except Exception as e:
            # A misbehaving stream must not prevent the rest of the cleanup
            logger.error(f"Error stopping subscription {handle.id}: {e}", exc_info=True)

    def _dispose(self, handle: SubscriptionHandle) -> bool:
        if self._subscriptions.get(handle.id) is handle:
            return self.unsubscribe(handle.id)
        self._stop_handle(handle)
        return False

    def unsubscribe(self, subscription_id: str) -> bool:
        """Stop and forget a subscription.

        Returns:
            True if it was registered, False otherwise
        """
        handle = self._subscriptions.pop(subscription_id, None)
        if handle is None:
            return False
        self._stop_handle(handle)
        logger.debug(f"Subscription {subscription_id} stopped")
        return True

    def renew(self, subscription_id: str, timeout: Optional[float] = None) -> bool:
        """Re-arm the timeout of a live subscription.

        Returns:
            False if no such subscription is registered
        """
        handle = self._subscriptions.get(subscription_id)
        if handle is None:
            return False
        self._arm(handle, timeout)
        return True

    def cleanup(self) -> None:
        """Stop every subscription and refuse new ones."""
        for subscription_id in list(self._subscriptions):
            self.unsubscribe(subscription_id)
        self._subscriptions.clear()
        self._destroyed = True
        logger.debug("Subscription manager cleaned up")

    def __enter__(self) -> "SubscriptionManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cleanup()

    async def __aenter__(self) -> "SubscriptionManager":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.cleanup()


class DebouncedSubscriptionManager(SubscriptionManager):
    """
    Subscription manager that delays registration by a debounce window.

    Rapid re-subscriptions under the same id collapse into the last one;
    the streams of superseded requests are stopped without ever being
    registered.
    """

    def __init__(self, default_timeout: float = SUBSCRIPTION_TIMEOUT, debounce: float = MESSAGE_DEBOUNCE):
        super().__init__(default_timeout)
        self.debounce = debounce
        self._pending: Dict[str, Tuple[asyncio.TimerHandle, SubscriptionHandle]] = {}

    def has_pending(self, subscription_id: str) -> bool:
        return subscription_id in self._pending

    def subscribe(
        self,
        subscription_id: str,
        stream: Stream,
        timeout: Optional[float] = None,
        filters: Iterable[Dict[str, Any]] = (),
        relays: Iterable[str] = (),
        debounce: Optional[float] = None,
    ) -> SubscriptionHandle:
        self._check_alive(subscription_id)
        self._cancel_pending(subscription_id)

        handle = SubscriptionHandle(self, subscription_id, stream, filters, relays)
        delay = self.debounce if debounce is None else debounce
        timer = asyncio.get_running_loop().call_later(delay, self._activate, handle, timeout)
        self._pending[subscription_id] = (timer, handle)
        return handle

    def _activate(self, handle: SubscriptionHandle, timeout: Optional[float]) -> None:
        self._pending.pop(handle.id, None)
        if self._destroyed:
            self._stop_handle(handle)
            return
        self._register(handle, timeout)

    def _cancel_pending(self, subscription_id: str) -> bool:
        pending = self._pending.pop(subscription_id, None)
        if pending is None:
            return False
        timer, handle = pending
        timer.cancel()
        self._stop_handle(handle)
        return True

    def _dispose(self, handle: SubscriptionHandle) -> bool:
        pending = self._pending.get(handle.id)
        if pending is not None and pending[1] is handle:
            return self._cancel_pending(handle.id)
        return super()._dispose(handle)

    def cleanup(self) -> None:
        for subscription_id in list(self._pending):
            self._cancel_pending(subscription_id)
        super().cleanup()
