"""
Order Parameter Builder: turn a scenario row into a concrete OrderSpec.

Steps, each of which can fail the build before anything reaches the venue:

1. Quantity through the LotSizeRule (QuantityInvalid, or a logged adjustment)
2. Validated quote from the PriceOracle (PriceUnavailable)
3. Prices from the named PricePolicy
4. No-fill prices must not already cross the market (PriceCrossesMarket)
5. Every price must sit within the venue's maximum distance from market
   (OrderRejected); prices are never clamped into range
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Union

from conformance.config.venue_profile import VenueProfile
from conformance.core.json_utils import dumps
from conformance.errors import OrderBuildError, OrderRejected, PriceCrossesMarket, UnknownPricePolicy
from conformance.execution.lot_size import LotSizeMode, LotSizeRule, QuantityAdjustment
from conformance.execution.price_policy import (
    PolicyRegistry,
    PriceContext,
    PricePolicy,
    crosses_market,
    default_policies,
    distance_from_market,
    no_fill_headroom,
)
from conformance.market.price_oracle import PriceOracle
from conformance.models import Instrument, OrderSpec, OrderType, Quote, Side, TimeInForce

log = logging.getLogger("conformance")


@dataclass(frozen=True)
class BuiltOrder:
    """An order ready to submit plus the market it was priced against."""
    spec: OrderSpec
    quote: Quote
    policy_name: str
    quantity_adjustment: QuantityAdjustment

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.spec.describe(),
            "policy": self.policy_name,
            "quote_bid": self.quote.bid,
            "quote_ask": self.quote.ask,
            "requested_qty": self.quantity_adjustment.requested,
            "qty_adjusted": self.quantity_adjustment.adjusted,
        }


@dataclass
class OrderBuilderConfig:
    """Venue calibration the builder needs."""
    high_price: Decimal
    low_price: Decimal
    pip_size: Decimal = Decimal("0.0001")
    # Maximum distance from market in price units; None disables the check
    max_distance: Optional[Decimal] = None
    log_event_callback: Optional[Callable[..., None]] = None


class OrderParameterBuilder:
    """
    Builds guaranteed-fill / guaranteed-no-fill orders from live quotes.

    Usage:
        builder = OrderParameterBuilder.from_profile(oracle, profile)
        built = await builder.build(profile.instrument, OrderType.LIMIT, "bounds", Side.SELL, Decimal("1000"))
        order_id = await gateway.submit(built.spec)
    """

    def __init__(
        self,
        oracle: PriceOracle,
        lot_rule: LotSizeRule,
        policies: PolicyRegistry,
        config: OrderBuilderConfig,
    ) -> None:
        self.oracle = oracle
        self.lot_rule = lot_rule
        self.policies = policies
        self.config = config
        self._log_event = config.log_event_callback or self._default_log

    @classmethod
    def from_profile(
        cls,
        oracle: PriceOracle,
        profile: VenueProfile,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> "OrderParameterBuilder":
        lot_rule = LotSizeRule(
            lot_size=profile.lot_size,
            min_quantity=profile.min_quantity,
            mode=LotSizeMode(profile.lot_mode),
        )
        policies = default_policies(profile.safe_margin_pips, profile.aggressive_margin_pips)
        config = OrderBuilderConfig(
            high_price=profile.high_price,
            low_price=profile.low_price,
            pip_size=profile.pip_size,
            max_distance=profile.max_distance,
            log_event_callback=log_event_callback,
        )
        return cls(oracle, lot_rule, policies, config)

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def resolve_policy(self, policy: Union[str, PricePolicy], order_type: OrderType) -> PricePolicy:
        """
        Policy that will price ``order_type``; no venue access.

        Raises:
            UnknownPricePolicy: no policy registered under that name
            OrderBuildError: the policy cannot price this order type
        """
        if isinstance(policy, str):
            if policy not in self.policies:
                raise UnknownPricePolicy(
                    f"unknown price policy {policy!r}",
                    policy=policy,
                    known=sorted(p.name for p in self.policies),
                )
            policy = self.policies.get(policy)
        if not policy.supports(order_type):
            raise OrderBuildError(
                f"price policy {policy.name!r} cannot price {order_type.name} orders",
                policy=policy.name,
                order_type=order_type.name,
            )
        return policy

    async def build(
        self,
        instrument: Instrument,
        order_type: OrderType,
        policy: Union[str, PricePolicy],
        side: Side,
        quantity: Decimal,
        time_in_force: TimeInForce = TimeInForce.GTC,
    ) -> BuiltOrder:
        """
        Build an order.

        Raises:
            QuantityInvalid: quantity violates the lot-size rule
            PriceUnavailable: no valid quote
            PriceCrossesMarket: a no-fill price would execute immediately
            OrderRejected: a price is beyond the venue's distance limit
            UnknownPricePolicy / OrderBuildError: see resolve_policy
        """
        pol = self.resolve_policy(policy, order_type)

        adjustment = self.lot_rule.apply(quantity)
        if adjustment.adjusted:
            self._log_event(
                "quantity_adjusted",
                symbol=instrument.symbol,
                requested=adjustment.requested,
                quantity=adjustment.quantity,
                mode=adjustment.mode.value,
            )

        quote = await self.oracle.quote(instrument)
        ctx = PriceContext(
            quote=quote,
            high_price=self.config.high_price,
            low_price=self.config.low_price,
            pip_size=self.config.pip_size,
        )
        prices = pol.prices(order_type, side, ctx)

        if not pol.fills and crosses_market(order_type, side, prices, quote):
            raise PriceCrossesMarket(
                f"{pol.name} {side.name} {order_type.name} at {prices.as_list()} already crosses "
                f"market {quote.bid}/{quote.ask}",
                policy=pol.name,
                limit_price=prices.limit_price,
                stop_price=prices.stop_price,
                bid=quote.bid,
                ask=quote.ask,
            )

        max_distance = self.config.max_distance
        if max_distance is not None:
            for px in prices.as_list():
                distance = distance_from_market(px, quote)
                if distance > max_distance:
                    raise OrderRejected(
                        f"price {px} is {distance} from market {quote.mid}, beyond venue limit {max_distance}",
                        price=px,
                        market=quote.mid,
                        distance=distance,
                        max_distance=max_distance,
                    )

        spec = OrderSpec(
            instrument=instrument,
            side=side,
            quantity=adjustment.quantity,
            order_type=order_type,
            limit_price=prices.limit_price,
            stop_price=prices.stop_price,
            time_in_force=time_in_force,
        )
        built = BuiltOrder(spec=spec, quote=quote, policy_name=pol.name, quantity_adjustment=adjustment)

        fields: Dict[str, Any] = built.to_dict()
        if not pol.fills:
            fields["headroom_pips"] = no_fill_headroom(order_type, side, prices, quote) / self.config.pip_size
        self._log_event("order_built", **fields)
        return built
