"""
Price policies: map the current market to test order prices.

A policy either parks an order where it will not execute ("no-fill") or
places it where it will ("fill"). Adding an order type to the scenario
matrix means teaching the policies its prices; the catalog and driver stay
unchanged.

Trigger sides used throughout:

    limit buy   executes when ask <= limit
    limit sell  executes when bid >= limit
    stop buy    triggers when ask >= stop
    stop sell   triggers when bid <= stop
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from typing import Dict, Iterator, Optional

from conformance.errors import PriceUnavailable
from conformance.models import OrderType, Quote, Side


@dataclass(frozen=True)
class PriceContext:
    """Everything a policy may look at when pricing an order."""
    quote: Quote
    high_price: Decimal
    low_price: Decimal
    pip_size: Decimal


@dataclass(frozen=True)
class OrderPrices:
    limit_price: Optional[Decimal] = None
    stop_price: Optional[Decimal] = None

    def as_list(self):
        return [p for p in (self.limit_price, self.stop_price) if p is not None]


def crosses_market(order_type: OrderType, side: Side, prices: OrderPrices, quote: Quote) -> bool:
    """True if an order at ``prices`` would execute (or trigger) against ``quote``."""
    buy = side is Side.BUY
    if order_type.has_stop_price:
        if buy:
            return quote.ask >= prices.stop_price
        return quote.bid <= prices.stop_price
    if order_type is OrderType.LIMIT:
        if buy:
            return quote.ask <= prices.limit_price
        return quote.bid >= prices.limit_price
    return True


def no_fill_headroom(order_type: OrderType, side: Side, prices: OrderPrices, quote: Quote) -> Decimal:
    """
    How far the market may move toward the order before it executes.

    Negative when the order already crosses.
    """
    buy = side is Side.BUY
    if order_type.has_stop_price:
        return prices.stop_price - quote.ask if buy else quote.bid - prices.stop_price
    if order_type is OrderType.LIMIT:
        return quote.ask - prices.limit_price if buy else prices.limit_price - quote.bid
    return Decimal("0")


def distance_from_market(price: Decimal, quote: Quote) -> Decimal:
    return abs(price - quote.mid)


class PricePolicy(abc.ABC):
    """Strategy mapping market state to order prices."""

    name: str = ""
    #: Whether orders priced by this policy are expected to execute.
    fills: bool = False

    @abc.abstractmethod
    def prices(self, order_type: OrderType, side: Side, ctx: PriceContext) -> OrderPrices:
        """Return the limit/stop prices for an order of this type and side."""

    def supports(self, order_type: OrderType) -> bool:
        return order_type is not OrderType.MARKET

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


class MarketPolicy(PricePolicy):
    """Market orders carry no price."""
    name = "market"
    fills = True

    def supports(self, order_type: OrderType) -> bool:
        return order_type is OrderType.MARKET

    def prices(self, order_type: OrderType, side: Side, ctx: PriceContext) -> OrderPrices:
        return OrderPrices()


class BoundsPolicy(PricePolicy):
    """
    Venue-calibrated fixed prices.

    Limit sell / stop buy at ``high_price``, limit buy / stop sell at
    ``low_price``. The venue profile promises both are far from market yet
    inside the venue's accepted distance.
    """
    name = "bounds"
    fills = False

    def prices(self, order_type: OrderType, side: Side, ctx: PriceContext) -> OrderPrices:
        buy = side is Side.BUY
        if order_type is OrderType.LIMIT:
            return OrderPrices(limit_price=ctx.low_price if buy else ctx.high_price)
        if order_type is OrderType.STOP_MARKET:
            return OrderPrices(stop_price=ctx.high_price if buy else ctx.low_price)
        if order_type is OrderType.STOP_LIMIT:
            px = ctx.high_price if buy else ctx.low_price
            return OrderPrices(limit_price=px, stop_price=px)
        raise ValueError(f"{self.name} policy cannot price {order_type.name} orders")


class SafeParkPolicy(PricePolicy):
    """
    Park the order ``margin_pips`` away from the side that would execute it.

    Prices are snapped to the pip grid away from the market, so rounding
    never eats into the margin.
    """
    name = "safe_park"
    fills = False

    def __init__(self, margin_pips: Decimal) -> None:
        if margin_pips <= 0:
            raise ValueError("margin_pips must be > 0")
        self.margin_pips = margin_pips

    def prices(self, order_type: OrderType, side: Side, ctx: PriceContext) -> OrderPrices:
        margin = self.margin_pips * ctx.pip_size
        buy = side is Side.BUY
        q = ctx.quote
        if order_type is OrderType.LIMIT:
            px = _snap(q.bid - margin, ctx.pip_size, ROUND_FLOOR) if buy else _snap(q.ask + margin, ctx.pip_size, ROUND_CEILING)
            return OrderPrices(limit_price=_positive(px))
        if order_type in (OrderType.STOP_MARKET, OrderType.STOP_LIMIT):
            px = _snap(q.ask + margin, ctx.pip_size, ROUND_CEILING) if buy else _snap(q.bid - margin, ctx.pip_size, ROUND_FLOOR)
            px = _positive(px)
            if order_type is OrderType.STOP_LIMIT:
                return OrderPrices(limit_price=px, stop_price=px)
            return OrderPrices(stop_price=px)
        raise ValueError(f"{self.name} policy cannot price {order_type.name} orders")


class AggressivePolicy(PricePolicy):
    """
    Marketable prices: limits through the touch by ``margin_pips``, stops
    at the touch so they trigger on the current quote.
    """
    name = "aggressive"
    fills = True

    def __init__(self, margin_pips: Decimal) -> None:
        if margin_pips < 0:
            raise ValueError("margin_pips must be >= 0")
        self.margin_pips = margin_pips

    def prices(self, order_type: OrderType, side: Side, ctx: PriceContext) -> OrderPrices:
        margin = self.margin_pips * ctx.pip_size
        buy = side is Side.BUY
        q = ctx.quote
        through = _snap(q.ask + margin, ctx.pip_size, ROUND_CEILING) if buy else _positive(_snap(q.bid - margin, ctx.pip_size, ROUND_FLOOR))
        if order_type is OrderType.LIMIT:
            return OrderPrices(limit_price=through)
        touch = q.ask if buy else q.bid
        if order_type is OrderType.STOP_MARKET:
            return OrderPrices(stop_price=touch)
        if order_type is OrderType.STOP_LIMIT:
            return OrderPrices(limit_price=through, stop_price=touch)
        raise ValueError(f"{self.name} policy cannot price {order_type.name} orders")


def _snap(px: Decimal, pip_size: Decimal, rounding: str) -> Decimal:
    return (px / pip_size).to_integral_value(rounding=rounding) * pip_size


def _positive(px: Decimal) -> Decimal:
    if px <= 0:
        raise PriceUnavailable(f"policy produced non-positive price {px}", price=px)
    return px


class PolicyRegistry:
    """Price policies by name; scenario entries refer to policies by name."""

    def __init__(self) -> None:
        self._policies: Dict[str, PricePolicy] = {}

    def register(self, policy: PricePolicy) -> PricePolicy:
        if not policy.name:
            raise ValueError(f"{policy!r} has no name")
        if policy.name in self._policies:
            raise ValueError(f"price policy {policy.name!r} already registered")
        self._policies[policy.name] = policy
        return policy

    def get(self, name: str) -> PricePolicy:
        try:
            return self._policies[name]
        except KeyError:
            raise KeyError(f"unknown price policy {name!r} (known: {sorted(self._policies)})") from None

    def __contains__(self, name: str) -> bool:
        return name in self._policies

    def __iter__(self) -> Iterator[PricePolicy]:
        return iter(self._policies.values())


def default_policies(safe_margin_pips: Decimal, aggressive_margin_pips: Decimal) -> PolicyRegistry:
    registry = PolicyRegistry()
    registry.register(MarketPolicy())
    registry.register(BoundsPolicy())
    registry.register(SafeParkPolicy(safe_margin_pips))
    registry.register(AggressivePolicy(aggressive_margin_pips))
    return registry
