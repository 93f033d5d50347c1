"""
Nostream - Event batching.

Live subscriptions deliver gift wraps one at a time, often in bursts.
EventBatcher collects them and hands them on as a single batch once no
new event has arrived for ``delay`` seconds.
"""

import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional, Set

from .constants import MESSAGE_DEBOUNCE

logger = logging.getLogger(__name__)


class EventBatcher:
    """Timer-driven accumulator.

    Attributes:
        delay: Quiet period in seconds before a batch is delivered
    """

    def __init__(self, on_flush: Callable[[List[Any]], Any], delay: float = MESSAGE_DEBOUNCE):
        """
        Args:
            on_flush: Receives each batch; may be a plain function or a
                coroutine function
            delay: Quiet period in seconds
        """
        self.on_flush = on_flush
        self.delay = delay
        self._pending: List[Any] = []
        self._timer: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._pending)

    def push(self, event: Any) -> None:
        """Queue an event and restart the quiet-period timer."""
        if self._closed:
            logger.debug("Dropping event pushed to a closed batcher")
            return
        self._pending.append(event)
        if self._timer is not None:
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().call_later(self.delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        batch = self._take()
        if batch:
            self._deliver(batch)

    def _take(self) -> List[Any]:
        batch, self._pending = self._pending, []
        return batch

    def _deliver(self, batch: List[Any]) -> Optional[asyncio.Task]:
        result = self.on_flush(batch)
        if not inspect.isawaitable(result):
            return None
        task = asyncio.ensure_future(result)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Batch handler failed: {task.exception()}", exc_info=task.exception())

    async def flush(self) -> int:
        """Deliver pending events now and wait for the handler.

        Returns:
            Number of events delivered
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch = self._take()
        if batch:
            task = self._deliver(batch)
            if task is not None:
                await task
        return len(batch)

    def drain(self) -> int:
        """Synchronous close: stop accepting events and hand over what is
        pending without waiting for the handler."""
        self._closed = True
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        batch = self._take()
        if batch:
            self._deliver(batch)
        return len(batch)

    async def close(self) -> int:
        """Stop accepting events, deliver what is pending, and wait for
        in-flight handlers."""
        self._closed = True
        delivered = await self.flush()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        return delivered
