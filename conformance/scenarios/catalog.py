"""
Scenario Catalog: the battery of order-lifecycle scenarios to run.

A catalog is plain data. Adding an order type to the battery means adding
entries that name it plus a PricePolicy able to price it; the catalog
itself has no order-type logic.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

from conformance.config.venue_profile import VenueProfile
from conformance.models import ExpectedOutcome, Instrument, OrderType, Side


@dataclass(frozen=True)
class ScenarioEntry:
    """
    One scenario row.

    setup_position: signed quantity to trade (with a market order) before
    the scenario order, moving the account from its baseline to
    baseline + setup_position.
    """
    label: str
    instrument: Instrument
    order_type: OrderType
    price_policy: str
    side: Side
    quantity: Decimal
    expected_outcome: ExpectedOutcome
    deadline_sec: float
    setup_position: Optional[Decimal] = None

    def __post_init__(self) -> None:
        if not self.label:
            raise ValueError("scenario label must not be empty")
        if self.deadline_sec <= 0:
            raise ValueError(f"{self.label}: deadline_sec must be > 0")
        if self.setup_position is not None and self.setup_position == 0:
            raise ValueError(f"{self.label}: setup_position must be non-zero or None")

    def describe(self) -> Dict[str, object]:
        return {
            "label": self.label,
            "symbol": self.instrument.symbol,
            "order_type": self.order_type.name,
            "policy": self.price_policy,
            "side": self.side.name,
            "qty": self.quantity,
            "expected": self.expected_outcome.name,
            "deadline_sec": self.deadline_sec,
            "setup_position": self.setup_position,
        }


class ScenarioCatalog:
    """
    Ordered, restartable collection of scenarios with unique labels.

    Iterating twice yields the same entries in the same order.
    """

    def __init__(self, entries: Iterable[ScenarioEntry]) -> None:
        self._entries = tuple(entries)
        seen: Dict[str, ScenarioEntry] = {}
        for entry in self._entries:
            if entry.label in seen:
                raise ValueError(f"duplicate scenario label {entry.label!r}")
            seen[entry.label] = entry
        self._by_label = seen

    def __iter__(self) -> Iterator[ScenarioEntry]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, label: str) -> bool:
        return label in self._by_label

    @property
    def labels(self) -> List[str]:
        return [e.label for e in self._entries]

    def get(self, label: str) -> ScenarioEntry:
        return self._by_label[label]

    def filter(self, labels: Sequence[str]) -> "ScenarioCatalog":
        """
        Catalog restricted to ``labels``, keeping catalog order.

        A label ending in ``*`` selects every label with that prefix.

        Raises:
            KeyError: a label (or prefix) matches nothing
        """
        wanted: List[ScenarioEntry] = []
        for label in labels:
            if label.endswith("*"):
                matched = [e for e in self._entries if e.label.startswith(label[:-1])]
            else:
                matched = [self._by_label[label]] if label in self._by_label else []
            if not matched:
                raise KeyError(f"no scenario matches {label!r}")
            wanted.extend(matched)
        keep = {e.label for e in wanted}
        return ScenarioCatalog(e for e in self._entries if e.label in keep)

    def select(self, predicate: Callable[[ScenarioEntry], bool]) -> "ScenarioCatalog":
        return ScenarioCatalog(e for e in self._entries if predicate(e))


# (label, setup sign, side, multiple of the base quantity)
_POSITION_TRANSITIONS = (
    ("LongFromZero", 0, Side.BUY, 1),
    ("CloseFromLong", 1, Side.SELL, 1),
    ("ShortFromZero", 0, Side.SELL, 1),
    ("CloseFromShort", -1, Side.BUY, 1),
    ("ShortFromLong", 1, Side.SELL, 2),
    ("LongFromShort", -1, Side.BUY, 2),
)

# (label prefix, order type, price policy) for orders expected to fill
_FILL_ORDER_TYPES = (
    ("MarketOrder", OrderType.MARKET, "market"),
    ("LimitOrder", OrderType.LIMIT, "aggressive"),
    ("StopMarketOrder", OrderType.STOP_MARKET, "aggressive"),
)

_NO_FILL_ORDER_TYPES = (
    ("LimitOrder", OrderType.LIMIT),
    ("StopMarketOrder", OrderType.STOP_MARKET),
)


def default_catalog(
    profile: VenueProfile,
    market_deadline_sec: float = 15.0,
    resting_deadline_sec: float = 20.0,
) -> ScenarioCatalog:
    """
    Standard battery for a venue profile:

    - market, marketable limit and touch-stop orders across the six
      position transitions
    - limit and stop-market no-fill orders, long and short, at the profile
      bounds and at a quote-derived safe distance
    - a lot-size violation the builder must refuse (reject mode only)
    """
    instrument = profile.instrument
    qty = profile.default_quantity
    entries: List[ScenarioEntry] = []

    for prefix, order_type, policy in _FILL_ORDER_TYPES:
        for name, setup_sign, side, multiple in _POSITION_TRANSITIONS:
            entries.append(ScenarioEntry(
                label=f"{prefix}/{name}",
                instrument=instrument,
                order_type=order_type,
                price_policy=policy,
                side=side,
                quantity=qty * multiple,
                expected_outcome=ExpectedOutcome.FILLED,
                deadline_sec=market_deadline_sec,
                setup_position=qty * setup_sign if setup_sign else None,
            ))

    for name, order_type in _NO_FILL_ORDER_TYPES:
        for policy in ("bounds", "safe_park"):
            for side, direction in ((Side.BUY, "long"), (Side.SELL, "short")):
                entries.append(ScenarioEntry(
                    label=f"{name}/{direction}/{policy}",
                    instrument=instrument,
                    order_type=order_type,
                    price_policy=policy,
                    side=side,
                    quantity=qty,
                    expected_outcome=ExpectedOutcome.RESTING,
                    deadline_sec=resting_deadline_sec,
                ))

    if profile.lot_mode == "reject":
        entries.append(ScenarioEntry(
            label="MarketOrder/QuantityNotLotMultiple",
            instrument=instrument,
            order_type=OrderType.MARKET,
            price_policy="market",
            side=Side.BUY,
            quantity=profile.lot_size * Decimal("1.5"),
            expected_outcome=ExpectedOutcome.QUANTITY_INVALID,
            deadline_sec=market_deadline_sec,
        ))

    return ScenarioCatalog(entries)
