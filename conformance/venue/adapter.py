"""
Venue adapter interface.

The harness depends only on this capability set, so any venue (broker,
exchange, simulator) can be conformance-tested without harness changes.
Connection handling, wire protocol and authentication live entirely in
the adapter.

Error contract (see conformance.errors):
    connect      -> AuthFailed | Unreachable
    submit       -> OrderRejected | OrderInvalid
    cancel       -> OrderNotFound | AlreadyTerminal
Any other exception escaping an adapter is treated as a lost connection.
"""

from __future__ import annotations

import abc
from typing import Any, AsyncIterator, Mapping

from conformance.models import (
    CancelAck,
    Connection,
    HoldingsSnapshot,
    Instrument,
    OrderEvent,
    OrderSpec,
    Quote,
)


class VenueAdapter(abc.ABC):
    """Async capability set consumed by the harness."""

    #: Name used in logs, metrics and reports.
    name: str = "venue"

    #: True only if the venue documents that several in-flight orders on the
    #: same account never alias each other's state. The harness runs
    #: scenarios sequentially otherwise.
    supports_concurrent_orders: bool = False

    @abc.abstractmethod
    async def connect(self, credentials: Mapping[str, Any]) -> Connection:
        """Open the session. Raises AuthFailed or Unreachable."""

    @abc.abstractmethod
    async def disconnect(self, connection: Connection) -> None:
        """Close the session. Must be safe to call after a failed run."""

    @abc.abstractmethod
    async def submit(self, spec: OrderSpec) -> str:
        """Submit an order and return the venue order id."""

    @abc.abstractmethod
    async def cancel(self, order_id: str) -> CancelAck:
        """Request cancellation. The outcome arrives as an order event."""

    @abc.abstractmethod
    def order_events(self) -> AsyncIterator[OrderEvent]:
        """
        Infinite stream of order events for the whole account.

        Not restartable: the harness consumes it exactly once.
        """

    @abc.abstractmethod
    async def get_holdings(self, instrument: Instrument) -> HoldingsSnapshot:
        """Query current holdings."""

    @abc.abstractmethod
    async def get_quote(self, instrument: Instrument) -> Quote:
        """Query current bid/ask/last."""
