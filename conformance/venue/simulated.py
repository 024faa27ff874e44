"""
SimulatedVenue: in-memory venue implementing the full adapter interface.

Used by the test suite and by dry runs of the harness. It is a test double,
not a matching engine: orders fill at the touch, resting orders are matched
only when a new quote is set, and there is no queue position or liquidity
model.

Fault injection knobs (SimulatedVenueConfig) let tests provoke each failure
category the harness must detect:

- ignore_cancels:      cancel is acknowledged but nothing happens
- skip_accept:         orders jump from SUBMITTED straight to a fill
- holdings_skew:       every fill moves holdings by this much extra
- holdings_lag_sec:    holdings update only after a delay
- fail_connect:        "auth" or "unreachable"
- inject_event():      push arbitrary events into the stream
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Union

from conformance.core.json_utils import dumps
from conformance.core.utils import to_decimal
from conformance.errors import (
    AlreadyTerminal,
    AuthFailed,
    OrderInvalid,
    OrderNotFound,
    OrderRejected,
    Unreachable,
    VenueConnectionError,
)
from conformance.models import (
    CancelAck,
    Connection,
    HoldingsSnapshot,
    Instrument,
    OrderEvent,
    OrderSpec,
    OrderState,
    OrderType,
    Quote,
    Side,
)
from conformance.venue.adapter import VenueAdapter

log = logging.getLogger("conformance")

_STREAM_CLOSED = object()


@dataclass
class SimulatedVenueConfig:
    """Venue rules and fault injection for SimulatedVenue."""
    lot_size: Decimal = Decimal("1")
    pip_size: Decimal = Decimal("0.0001")
    max_distance_pips: Optional[Decimal] = None

    # Market orders fill in this many equal events (last one FILLED)
    partial_fill_chunks: int = 1
    # Delay before each event reaches the stream
    event_latency_sec: float = 0.0

    emit_submitted_echo: bool = False
    supports_concurrent_orders: bool = False

    # Faults
    ignore_cancels: bool = False
    skip_accept: bool = False
    holdings_skew: Decimal = Decimal("0")
    holdings_lag_sec: float = 0.0
    fail_connect: Optional[str] = None


@dataclass
class _SimOrder:
    order_id: str
    spec: OrderSpec
    state: OrderState = OrderState.SUBMITTED
    filled: Decimal = Decimal("0")
    triggered: bool = False


class SimulatedVenue(VenueAdapter):
    """
    In-memory venue for harness tests and dry runs.

    Usage:
        venue = SimulatedVenue(config=SimulatedVenueConfig(lot_size=Decimal("1000")))
        venue.set_quote("EURUSD", "1.1000", "1.1002")
        conn = await venue.connect({})
        order_id = await venue.submit(spec)
    """

    name = "simulated"

    def __init__(
        self,
        config: Optional[SimulatedVenueConfig] = None,
        positions: Optional[Dict[str, Decimal]] = None,
    ) -> None:
        self.config = config or SimulatedVenueConfig()
        self.supports_concurrent_orders = self.config.supports_concurrent_orders
        self._quotes: Dict[str, Quote] = {}
        # Symbols whose quote time was pinned by the caller (stale-quote tests)
        self._pinned_quote_time: set = set()
        self._positions: Dict[str, Decimal] = dict(positions or {})
        self._orders: Dict[str, _SimOrder] = {}
        self._queue: asyncio.Queue[Union[OrderEvent, object]] = asyncio.Queue()
        self._ids = itertools.count(1)
        self._connected = False
        self._stream_taken = False
        self.submitted: List[OrderSpec] = []
        self.cancel_requests: List[str] = []

    # ------------------------------------------------------------------
    # Market simulation controls
    # ------------------------------------------------------------------

    def set_quote(
        self,
        symbol: str,
        bid: Any,
        ask: Any,
        last: Any = None,
        timestamp: Optional[float] = None,
    ) -> Quote:
        """Set the current quote and match any resting orders against it."""
        quote = Quote(
            bid=to_decimal(bid),
            ask=to_decimal(ask),
            last=to_decimal(last) if last is not None else None,
            timestamp=timestamp if timestamp is not None else time.time(),
        )
        self._quotes[symbol] = quote
        if timestamp is not None:
            self._pinned_quote_time.add(symbol)
        else:
            self._pinned_quote_time.discard(symbol)
        self._match_resting(symbol)
        return quote

    def drift(self, symbol: str, delta: Any) -> Quote:
        """Shift bid and ask by ``delta`` price units."""
        q = self._quotes[symbol]
        d = to_decimal(delta)
        return self.set_quote(symbol, q.bid + d, q.ask + d, q.last + d if q.last is not None else None)

    def inject_event(self, event: OrderEvent) -> None:
        """Push a raw event into the stream, bypassing order bookkeeping."""
        self._queue.put_nowait(event)

    def drop_connection(self) -> None:
        """Terminate the event stream as a lost connection would."""
        self._connected = False
        self._queue.put_nowait(_STREAM_CLOSED)

    def order_state(self, order_id: str) -> OrderState:
        return self._orders[order_id].state

    def open_orders(self) -> List[str]:
        return [o.order_id for o in self._orders.values() if not o.state.is_terminal]

    # ------------------------------------------------------------------
    # VenueAdapter
    # ------------------------------------------------------------------

    async def connect(self, credentials: Mapping[str, Any]) -> Connection:
        if self.config.fail_connect == "auth":
            raise AuthFailed("simulated venue rejected credentials")
        if self.config.fail_connect == "unreachable":
            raise Unreachable("simulated venue unreachable")
        self._connected = True
        log.info(dumps({"event": "sim_connected", "account": credentials.get("account_id")}))
        return Connection(venue=self.name, account_id=credentials.get("account_id"))

    async def disconnect(self, connection: Connection) -> None:
        if self._connected:
            self._connected = False
            self._queue.put_nowait(_STREAM_CLOSED)

    async def submit(self, spec: OrderSpec) -> str:
        self._require_connected()
        self.submitted.append(spec)
        if spec.quantity % self.config.lot_size != 0:
            raise OrderInvalid(
                f"quantity {spec.quantity} is not a multiple of {self.config.lot_size}",
                quantity=spec.quantity,
                lot_size=self.config.lot_size,
            )
        quote = self._quotes.get(spec.instrument.symbol)
        if quote is None:
            raise OrderRejected(f"no market for {spec.instrument.symbol}")
        self._check_distance(spec, quote)

        order = _SimOrder(order_id=f"SIM-{next(self._ids)}", spec=spec)
        self._orders[order.order_id] = order

        if self.config.emit_submitted_echo:
            self._emit(OrderEvent(order.order_id, OrderState.SUBMITTED))
        if not self.config.skip_accept:
            self._transition(order, OrderState.ACCEPTED)

        if spec.order_type is OrderType.MARKET:
            self._fill_at_touch(order, quote, chunks=self.config.partial_fill_chunks)
        else:
            self._try_match(order, quote)
        return order.order_id

    async def cancel(self, order_id: str) -> CancelAck:
        self._require_connected()
        self.cancel_requests.append(order_id)
        order = self._orders.get(order_id)
        if order is None:
            raise OrderNotFound(f"unknown order {order_id}", order_id=order_id)
        if order.state.is_terminal:
            raise AlreadyTerminal(
                f"order {order_id} already {order.state.name}",
                order_id=order_id,
                state=order.state.name,
            )
        if not self.config.ignore_cancels:
            self._transition(order, OrderState.CANCELED)
        return CancelAck(order_id=order_id)

    async def order_events(self) -> AsyncIterator[OrderEvent]:
        if self._stream_taken:
            raise RuntimeError("order event stream is not restartable")
        self._stream_taken = True
        while True:
            item = await self._queue.get()
            if item is _STREAM_CLOSED:
                raise VenueConnectionError("simulated venue event stream closed")
            yield item

    async def get_holdings(self, instrument: Instrument) -> HoldingsSnapshot:
        self._require_connected()
        return HoldingsSnapshot(positions=dict(self._positions))

    async def get_quote(self, instrument: Instrument) -> Quote:
        self._require_connected()
        quote = self._quotes.get(instrument.symbol)
        if quote is None:
            return Quote(bid=Decimal("0"), ask=Decimal("0"), timestamp=0.0)
        if instrument.symbol in self._pinned_quote_time:
            return quote
        return replace(quote, timestamp=time.time())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_connected(self) -> None:
        if not self._connected:
            raise Unreachable("simulated venue not connected")

    def _check_distance(self, spec: OrderSpec, quote: Quote) -> None:
        if self.config.max_distance_pips is None:
            return
        limit = self.config.max_distance_pips * self.config.pip_size
        for px in (spec.limit_price, spec.stop_price):
            if px is not None and abs(px - quote.mid) > limit:
                raise OrderRejected(
                    f"price {px} further than {self.config.max_distance_pips} pips from market",
                    price=px,
                    market=quote.mid,
                )

    def _emit(self, event: OrderEvent) -> None:
        if self.config.event_latency_sec > 0:
            loop = asyncio.get_running_loop()
            loop.call_later(self.config.event_latency_sec, self._queue.put_nowait, event)
        else:
            self._queue.put_nowait(event)

    def _transition(
        self,
        order: _SimOrder,
        state: OrderState,
        fill_qty: Decimal = Decimal("0"),
        fill_price: Optional[Decimal] = None,
    ) -> None:
        order.state = state
        self._emit(OrderEvent(order.order_id, state, fill_qty=fill_qty, fill_price=fill_price))

    def _apply_position(self, symbol: str, delta: Decimal) -> None:
        delta += self.config.holdings_skew
        def _apply() -> None:
            self._positions[symbol] = self._positions.get(symbol, Decimal("0")) + delta

        if self.config.holdings_lag_sec > 0:
            asyncio.get_running_loop().call_later(self.config.holdings_lag_sec, _apply)
        else:
            _apply()

    def _fill_at_touch(self, order: _SimOrder, quote: Quote, chunks: int = 1) -> None:
        px = quote.ask if order.spec.side is Side.BUY else quote.bid
        remaining = order.spec.quantity - order.filled
        chunks = max(1, chunks)
        chunk = (remaining / chunks).quantize(self.config.lot_size) if chunks > 1 else remaining
        if chunk <= 0:
            chunk = remaining
        while order.filled < order.spec.quantity:
            qty = min(chunk, order.spec.quantity - order.filled)
            order.filled += qty
            self._apply_position(order.spec.instrument.symbol, qty * order.spec.side.sign)
            state = OrderState.FILLED if order.filled >= order.spec.quantity else OrderState.PARTIALLY_FILLED
            self._transition(order, state, fill_qty=qty, fill_price=px)

    def _try_match(self, order: _SimOrder, quote: Quote) -> None:
        spec = order.spec
        buy = spec.side is Side.BUY
        if spec.order_type.has_stop_price and not order.triggered:
            touched = quote.ask >= spec.stop_price if buy else quote.bid <= spec.stop_price
            if not touched:
                return
            order.triggered = True
            if spec.order_type is OrderType.STOP_MARKET:
                self._fill_at_touch(order, quote)
                return
        if spec.order_type.has_limit_price:
            marketable = quote.ask <= spec.limit_price if buy else quote.bid >= spec.limit_price
            if marketable:
                self._fill_at_touch(order, quote)

    def _match_resting(self, symbol: str) -> None:
        quote = self._quotes[symbol]
        for order in list(self._orders.values()):
            if order.spec.instrument.symbol != symbol or order.state.is_terminal:
                continue
            if order.state is OrderState.SUBMITTED and not self.config.skip_accept:
                continue
            self._try_match(order, quote)


def create_simulated_venue(profile) -> SimulatedVenue:
    """Adapter factory for dry runs: a venue quoting the profile's symbol mid-range."""
    venue = SimulatedVenue(
        config=SimulatedVenueConfig(
            lot_size=profile.lot_size,
            pip_size=profile.pip_size,
            max_distance_pips=profile.max_distance_pips,
        )
    )
    mid = (profile.high_price + profile.low_price) / 2
    half_spread = profile.pip_size
    venue.set_quote(profile.symbol, mid - half_spread, mid + half_spread, last=mid)
    return venue
