"""
VenueGateway: the single command path into the venue.

Every mutation (submit, cancel) goes through one asyncio.Lock, so commands
reach the venue strictly one at a time even when several scenarios run
concurrently. Reads (holdings) are not serialized.

Each call is bounded by ``command_timeout_sec``. Adapter failures are
normalised into the harness taxonomy:

- typed HarnessErrors from the adapter pass through unchanged
- asyncio.TimeoutError becomes CommandTimeout
- anything else becomes VenueConnectionError
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from conformance.core.json_utils import dumps
from conformance.errors import (
    AlreadyTerminal,
    CommandTimeout,
    HarnessError,
    OrderNotFound,
    VenueConnectionError,
)
from conformance.models import CancelAck, HoldingsSnapshot, Instrument, OrderSpec
from conformance.monitoring.metrics import HarnessMetrics
from conformance.venue.adapter import VenueAdapter

log = logging.getLogger("conformance")


@dataclass
class VenueGatewayConfig:
    """Configuration for VenueGateway."""
    command_timeout_sec: float = 10.0
    log_event_callback: Optional[Callable[..., None]] = None


class VenueGateway:
    """
    Serialized, deadline-bounded access to a VenueAdapter.

    Usage:
        gateway = VenueGateway(venue, metrics=metrics)
        order_id = await gateway.submit(spec)
        ack = await gateway.cancel(order_id)
    """

    def __init__(
        self,
        venue: VenueAdapter,
        metrics: Optional[HarnessMetrics] = None,
        config: Optional[VenueGatewayConfig] = None,
    ) -> None:
        self.venue = venue
        self.metrics = metrics
        self.config = config or VenueGatewayConfig()
        self._command_lock = asyncio.Lock()
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    async def submit(self, spec: OrderSpec) -> str:
        """
        Submit ``spec`` and return the venue order id.

        Raises:
            OrderRejected / OrderInvalid: venue refused the order
            CommandTimeout: no answer within the command timeout
            VenueConnectionError: transport failure
        """
        self._log_event("order_submit", venue=self.venue.name, **spec.describe())
        started = time.monotonic()
        async with self._command_lock:
            order_id = await self._call(lambda: self.venue.submit(spec), what="submit")
        if self.metrics:
            self.metrics.orders_submitted.labels(
                venue=self.venue.name,
                order_type=spec.order_type.name,
                side=spec.side.name,
            ).inc()
        self._log_event(
            "order_submitted",
            venue=self.venue.name,
            order_id=order_id,
            latency_ms=int((time.monotonic() - started) * 1000),
        )
        return order_id

    async def cancel(self, order_id: str) -> CancelAck:
        """
        Request cancellation of ``order_id``.

        Raises:
            OrderNotFound / AlreadyTerminal: venue refused the cancel
            CommandTimeout: no answer within the command timeout
            VenueConnectionError: transport failure
        """
        outcome = "error"
        try:
            async with self._command_lock:
                ack = await self._call(lambda: self.venue.cancel(order_id), what="cancel")
            outcome = "acked" if ack.accepted else "refused"
            return ack
        except AlreadyTerminal:
            outcome = "already_terminal"
            raise
        except OrderNotFound:
            outcome = "not_found"
            raise
        except CommandTimeout:
            outcome = "timeout"
            raise
        finally:
            if self.metrics:
                self.metrics.orders_cancelled.labels(venue=self.venue.name, outcome=outcome).inc()
            self._log_event("order_cancel", venue=self.venue.name, order_id=order_id, outcome=outcome)

    async def holdings(self, instrument: Instrument) -> HoldingsSnapshot:
        return await self._call(lambda: self.venue.get_holdings(instrument), what="get_holdings")

    async def _call(self, fn: Callable[[], Awaitable[Any]], what: str) -> Any:
        try:
            return await asyncio.wait_for(fn(), timeout=self.config.command_timeout_sec)
        except HarnessError:
            raise
        except asyncio.TimeoutError as exc:
            raise CommandTimeout(
                f"{what} timed out after {self.config.command_timeout_sec}s",
                command=what,
                venue=self.venue.name,
            ) from exc
        except Exception as exc:
            raise VenueConnectionError(
                f"{what} failed: {exc}",
                command=what,
                venue=self.venue.name,
                error_type=type(exc).__name__,
            ) from exc
