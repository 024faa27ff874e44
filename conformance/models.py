"""
Domain types shared by the harness and venue adapters.

Prices and quantities are Decimal throughout: conformance checks compare
fill totals for exact equality, which floats cannot guarantee.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, auto
from typing import Dict, Optional

from conformance.core.utils import now_ms


class AssetClass(Enum):
    FOREX = auto()
    EQUITY = auto()
    FUTURE = auto()
    CRYPTO = auto()
    CFD = auto()


class Side(Enum):
    BUY = auto()
    SELL = auto()

    @property
    def sign(self) -> int:
        return 1 if self is Side.BUY else -1

    @property
    def opposite(self) -> "Side":
        return Side.SELL if self is Side.BUY else Side.BUY


class OrderType(Enum):
    MARKET = auto()
    LIMIT = auto()
    STOP_MARKET = auto()
    STOP_LIMIT = auto()

    @property
    def has_limit_price(self) -> bool:
        return self in (OrderType.LIMIT, OrderType.STOP_LIMIT)

    @property
    def has_stop_price(self) -> bool:
        return self in (OrderType.STOP_MARKET, OrderType.STOP_LIMIT)


class TimeInForce(Enum):
    GTC = auto()
    DAY = auto()
    IOC = auto()


class OrderState(Enum):
    """
    Order lifecycle states as observed from the venue.

    State Diagram:

    SUBMITTED ────┬──────────> ACCEPTED ─────────┬──────> FILLED
                  │               │                │
                  │               ▼                │
                  │       PARTIALLY_FILLED ────────┤
                  │               │  (recurs)      │
                  ▼               ▼                ▼
          REJECTED/INVALID     CANCELED        CANCELED
    """
    SUBMITTED = auto()         # Sent to venue, no acknowledgement yet
    ACCEPTED = auto()          # Venue accepted, working
    PARTIALLY_FILLED = auto()  # Some quantity filled, remainder working
    FILLED = auto()            # Completely filled (terminal)
    CANCELED = auto()          # Canceled (terminal)
    REJECTED = auto()          # Rejected by venue (terminal)
    INVALID = auto()           # Venue deemed order invalid (terminal)

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    OrderState.FILLED,
    OrderState.CANCELED,
    OrderState.REJECTED,
    OrderState.INVALID,
})


class ExpectedOutcome(Enum):
    """What a scenario expects its order to do."""
    FILLED = auto()            # Reaches FILLED before the deadline
    RESTING = auto()           # Still open at the deadline, then canceled
    REJECTED = auto()          # Venue rejects the order
    INVALID = auto()           # Venue deems the order invalid
    QUANTITY_INVALID = auto()  # Builder refuses the quantity; nothing submitted


@dataclass(frozen=True)
class Instrument:
    symbol: str
    asset_class: AssetClass

    def __str__(self) -> str:
        return f"{self.symbol}/{self.asset_class.name}"


@dataclass(frozen=True)
class OrderSpec:
    """Concrete order to submit."""
    instrument: Instrument
    side: Side
    quantity: Decimal
    order_type: OrderType
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None
    time_in_force: TimeInForce = TimeInForce.GTC

    def __post_init__(self) -> None:
        if self.quantity <= 0:
            raise ValueError(f"quantity must be > 0, got {self.quantity}")
        if self.order_type.has_limit_price and self.limit_price is None:
            raise ValueError(f"{self.order_type.name} order requires a limit price")
        if self.order_type.has_stop_price and self.stop_price is None:
            raise ValueError(f"{self.order_type.name} order requires a stop price")
        if not self.order_type.has_limit_price and self.limit_price is not None:
            raise ValueError(f"{self.order_type.name} order must not carry a limit price")
        if not self.order_type.has_stop_price and self.stop_price is not None:
            raise ValueError(f"{self.order_type.name} order must not carry a stop price")

    @property
    def signed_quantity(self) -> Decimal:
        return self.quantity * self.side.sign

    def describe(self) -> Dict[str, object]:
        return {
            "symbol": self.instrument.symbol,
            "side": self.side.name,
            "qty": self.quantity,
            "type": self.order_type.name,
            "limit_px": self.limit_price,
            "stop_px": self.stop_price,
            "tif": self.time_in_force.name,
        }


@dataclass(frozen=True)
class Quote:
    bid: Decimal
    ask: Decimal
    last: Optional[Decimal] = None
    timestamp: float = field(default_factory=time.time)

    @property
    def mid(self) -> Decimal:
        return (self.bid + self.ask) / 2

    @property
    def spread(self) -> Decimal:
        return self.ask - self.bid

    def age_sec(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.timestamp


@dataclass(frozen=True)
class OrderEvent:
    """
    Asynchronous order update pushed by a venue.

    fill_qty is the quantity filled by this event alone, not the cumulative
    total.
    """
    order_id: str
    state: OrderState
    fill_qty: Decimal = Decimal("0")
    fill_price: Optional[Decimal] = None
    timestamp_ms: int = field(default_factory=now_ms)
    message: Optional[str] = None


@dataclass(frozen=True)
class HoldingsSnapshot:
    """Venue-reported holdings at a point in time."""
    positions: Dict[str, Decimal]
    timestamp_ms: int = field(default_factory=now_ms)

    def quantity(self, instrument: Instrument) -> Decimal:
        return self.positions.get(instrument.symbol, Decimal("0"))


@dataclass(frozen=True)
class Connection:
    venue: str
    account_id: Optional[str] = None
    connected_at_ms: int = field(default_factory=now_ms)


@dataclass(frozen=True)
class CancelAck:
    order_id: str
    accepted: bool = True
    message: Optional[str] = None
