"""
Event Dispatcher: demultiplex the venue's single event stream per order.

A venue exposes one infinite, non-restartable stream of order events. The
dispatcher is its only consumer: a background pump task reads the stream and
routes each event by order id to a per-order asyncio.Queue, so a scenario
waiting on its order suspends only itself.

Features:
- Events for an order id nobody has registered yet are buffered and flushed,
  in arrival order, when the id is registered (venues commonly emit ACCEPTED
  before submit() returns the id). The buffer holds at most
  ``pending_memory`` order ids; the oldest id is evicted first, so orders
  placed on the account outside the harness cannot grow it without bound
- Events are never coalesced or reordered within an order
- Events for orders already closed by their scenario are logged as late
- A failing or ending stream is reported to every waiter as a
  VenueConnectionError
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional

from conformance.core.json_utils import dumps
from conformance.core.utils import BoundedSet
from conformance.errors import HarnessError, VenueConnectionError
from conformance.models import OrderEvent

log = logging.getLogger("conformance")

_STREAM_FAILED = object()


class EventDispatcher:
    """
    Per-order routing of venue events.

    Usage:
        dispatcher = EventDispatcher(venue.order_events())
        dispatcher.start()

        order_id = await gateway.submit(spec)
        dispatcher.register(order_id)
        event = await dispatcher.next_event(order_id, timeout=5.0)
        dispatcher.unregister(order_id)

        await dispatcher.stop()
    """

    DEFAULT_CLOSED_MEMORY = 10_000
    DEFAULT_LATE_HISTORY = 1_000
    DEFAULT_PENDING_MEMORY = 1_000

    def __init__(
        self,
        source: AsyncIterator[OrderEvent],
        log_event: Optional[Callable[..., None]] = None,
        closed_memory: int = DEFAULT_CLOSED_MEMORY,
        pending_memory: int = DEFAULT_PENDING_MEMORY,
    ) -> None:
        self._source = source
        self._log = log_event or self._default_log

        self._queues: Dict[str, asyncio.Queue] = {}
        # Events that arrived before their order id was registered
        self._pending: Dict[str, List[OrderEvent]] = {}
        self._pending_memory = pending_memory
        self._closed = BoundedSet(maxlen=closed_memory)
        self.late_events: Deque[OrderEvent] = deque(maxlen=self.DEFAULT_LATE_HISTORY)

        self._task: Optional[asyncio.Task] = None
        self._error: Optional[HarnessError] = None

        self._stats = {
            "events_received": 0,
            "events_routed": 0,
            "events_buffered": 0,
            "events_evicted": 0,
            "late_events": 0,
        }

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.debug(dumps({"event": event, **kwargs}))

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def error(self) -> Optional[HarnessError]:
        return self._error

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._pump(), name="ct-event-dispatcher")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._log("dispatcher_stopped", **self._stats)

    async def _pump(self) -> None:
        self._log("dispatcher_started")
        try:
            async for event in self._source:
                self._route(event)
            self._fail(VenueConnectionError("venue event stream ended"))
        except asyncio.CancelledError:
            raise
        except HarnessError as exc:
            self._fail(exc)
        except Exception as exc:
            self._fail(VenueConnectionError(f"venue event stream failed: {exc}", error_type=type(exc).__name__))

    def _fail(self, error: HarnessError) -> None:
        self._error = error
        log.error(dumps({"event": "dispatcher_stream_failed", "error": error.message}))
        for queue in self._queues.values():
            queue.put_nowait(_STREAM_FAILED)

    def _route(self, event: OrderEvent) -> None:
        self._stats["events_received"] += 1
        queue = self._queues.get(event.order_id)
        if queue is not None:
            queue.put_nowait(event)
            self._stats["events_routed"] += 1
            return

        if event.order_id in self._closed:
            self._stats["late_events"] += 1
            self.late_events.append(event)
            log.warning(dumps({
                "event": "dispatcher_late_event",
                "order_id": event.order_id,
                "state": event.state.name,
            }))
            return

        if event.order_id not in self._pending and len(self._pending) >= self._pending_memory:
            self._evict_oldest_pending()
        self._pending.setdefault(event.order_id, []).append(event)
        self._stats["events_buffered"] += 1
        log.debug(dumps({
            "event": "dispatcher_event_buffered",
            "order_id": event.order_id,
            "state": event.state.name,
        }))

    def _evict_oldest_pending(self) -> None:
        # dicts keep insertion order: the first key is the oldest buffered id
        order_id = next(iter(self._pending))
        dropped = self._pending.pop(order_id)
        self._stats["events_evicted"] += len(dropped)
        log.warning(dumps({
            "event": "dispatcher_pending_evicted",
            "order_id": order_id,
            "events": len(dropped),
            "states": [e.state.name for e in dropped],
        }))

    def register(self, order_id: str) -> asyncio.Queue:
        """Open the per-order queue, flushing anything buffered for ``order_id``."""
        if order_id in self._queues:
            raise ValueError(f"order {order_id} already registered")
        queue: asyncio.Queue = asyncio.Queue()
        for event in self._pending.pop(order_id, []):
            queue.put_nowait(event)
        if self._error is not None:
            queue.put_nowait(_STREAM_FAILED)
        self._queues[order_id] = queue
        return queue

    def unregister(self, order_id: str) -> List[OrderEvent]:
        """
        Close the per-order queue.

        Returns events still queued for the order, which the caller never
        consumed.
        """
        queue = self._queues.pop(order_id, None)
        self._closed.add(order_id)
        leftover: List[OrderEvent] = []
        if queue is None:
            return leftover
        while not queue.empty():
            item = queue.get_nowait()
            if item is not _STREAM_FAILED:
                leftover.append(item)
        return leftover

    async def next_event(self, order_id: str, timeout: float) -> Optional[OrderEvent]:
        """
        Next event for ``order_id``, or None if none arrives within ``timeout``.

        Raises:
            VenueConnectionError: the event stream failed
        """
        queue = self._queues[order_id]
        try:
            item = await asyncio.wait_for(queue.get(), timeout=max(0.0, timeout))
        except asyncio.TimeoutError:
            return None
        if item is _STREAM_FAILED:
            # Leave the marker for any later reader of this queue
            queue.put_nowait(_STREAM_FAILED)
            raise self._error
        return item

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "registered": len(self._queues),
            "pending_orders": len(self._pending),
        }
