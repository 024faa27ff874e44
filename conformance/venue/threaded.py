"""
Async wrapper around a blocking venue SDK using a shared thread pool.

Most broker SDKs are synchronous and deliver order updates on their own
callback thread. ThreadedVenueAdapter presents such a client through the
async VenueAdapter interface:

- blocking calls run on a bounded ThreadPoolExecutor with a timeout
- read-only calls (quotes, holdings) retry with jittered backoff
- submit/cancel never retry: a retried submit could place a second order
- SDK callback events are handed to the event loop thread-safely
"""

from __future__ import annotations

import asyncio
import logging
import random
from concurrent.futures import ThreadPoolExecutor
from typing import Any, AsyncIterator, Callable, Mapping, Optional, Protocol

from conformance.core.json_utils import dumps
from conformance.errors import CommandTimeout, HarnessError, Unreachable
from conformance.models import (
    CancelAck,
    Connection,
    HoldingsSnapshot,
    Instrument,
    OrderEvent,
    OrderSpec,
    Quote,
)
from conformance.venue.adapter import VenueAdapter

log = logging.getLogger("conformance")


class BlockingVenueClient(Protocol):
    """Shape of a synchronous SDK the threaded adapter can drive."""

    name: str

    def connect(self, credentials: Mapping[str, Any]) -> Connection: ...

    def disconnect(self) -> None: ...

    def submit(self, spec: OrderSpec) -> str: ...

    def cancel(self, order_id: str) -> CancelAck: ...

    def get_holdings(self, instrument: Instrument) -> HoldingsSnapshot: ...

    def get_quote(self, instrument: Instrument) -> Quote: ...

    def set_event_callback(self, callback: Callable[[OrderEvent], None]) -> None: ...


class ThreadedVenueAdapter(VenueAdapter):
    def __init__(
        self,
        client: BlockingVenueClient,
        timeout: float = 10.0,
        max_workers: int = 4,
        read_retries: int = 2,
        supports_concurrent_orders: bool = False,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._read_retries = read_retries
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="ct-venue")
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: asyncio.Queue[OrderEvent] = asyncio.Queue()
        self._stream_taken = False
        self.name = getattr(client, "name", "threaded")
        self.supports_concurrent_orders = supports_concurrent_orders

    def _on_sdk_event(self, event: OrderEvent) -> None:
        # Runs on the SDK's callback thread
        if self._loop is None or self._loop.is_closed():
            return
        asyncio.run_coroutine_threadsafe(self._events.put(event), self._loop)

    async def connect(self, credentials: Mapping[str, Any]) -> Connection:
        self._loop = asyncio.get_running_loop()
        self._client.set_event_callback(self._on_sdk_event)
        return await self._call(lambda: self._client.connect(credentials), what="connect")

    async def disconnect(self, connection: Connection) -> None:
        try:
            await self._call(self._client.disconnect, what="disconnect")
        finally:
            # prefer graceful shutdown to avoid leaking threads between runs
            self._executor.shutdown(wait=True)

    async def submit(self, spec: OrderSpec) -> str:
        return await self._call(lambda: self._client.submit(spec), what="submit")

    async def cancel(self, order_id: str) -> CancelAck:
        return await self._call(lambda: self._client.cancel(order_id), what="cancel")

    async def order_events(self) -> AsyncIterator[OrderEvent]:
        if self._stream_taken:
            raise RuntimeError("order event stream is not restartable")
        self._stream_taken = True
        while True:
            yield await self._events.get()

    async def get_holdings(self, instrument: Instrument) -> HoldingsSnapshot:
        return await self._call(
            lambda: self._client.get_holdings(instrument),
            what="get_holdings",
            retries=self._read_retries,
        )

    async def get_quote(self, instrument: Instrument) -> Quote:
        return await self._call(
            lambda: self._client.get_quote(instrument),
            what="get_quote",
            retries=self._read_retries,
        )

    async def _call(self, fn: Callable[[], Any], what: str, retries: int = 0) -> Any:
        loop = asyncio.get_running_loop()
        backoff = 0.2
        for attempt in range(retries + 1):
            try:
                return await asyncio.wait_for(loop.run_in_executor(self._executor, fn), timeout=self._timeout)
            except HarnessError:
                # Typed venue answers (rejections, not-found) are results, not transport failures
                raise
            except asyncio.TimeoutError as exc:
                if attempt >= retries:
                    raise CommandTimeout(f"{what} timed out after {self._timeout}s", command=what) from exc
            except Exception as exc:
                if attempt >= retries:
                    raise Unreachable(f"{what} failed: {exc}", command=what) from exc
            log.warning(dumps({"event": "venue_read_retry", "command": what, "attempt": attempt + 1}))
            await asyncio.sleep(backoff + random.uniform(0, backoff * 0.5))
            backoff *= 2
