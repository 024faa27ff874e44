"""
Lot-size rule: venue quantity increments.

Requested quantities that are not a multiple of the lot size are either
rejected or rounded, depending on the configured mode. Rounding is never
silent: the result records requested vs. used quantity.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_CEILING, ROUND_FLOOR, Decimal
from enum import Enum
from typing import Optional

from conformance.errors import QuantityInvalid


class LotSizeMode(Enum):
    REJECT = "reject"
    ROUND_DOWN = "round_down"
    ROUND_UP = "round_up"


@dataclass(frozen=True)
class QuantityAdjustment:
    requested: Decimal
    quantity: Decimal
    mode: LotSizeMode

    @property
    def adjusted(self) -> bool:
        return self.requested != self.quantity


@dataclass(frozen=True)
class LotSizeRule:
    lot_size: Decimal
    min_quantity: Optional[Decimal] = None
    mode: LotSizeMode = LotSizeMode.REJECT

    @property
    def minimum(self) -> Decimal:
        return self.min_quantity if self.min_quantity is not None else self.lot_size

    def is_valid(self, quantity: Decimal) -> bool:
        return quantity >= self.minimum and quantity % self.lot_size == 0

    def apply(self, quantity: Decimal) -> QuantityAdjustment:
        """
        Return the quantity to submit.

        Raises:
            QuantityInvalid: quantity violates the rule in REJECT mode, or
                rounds to less than the minimum
        """
        if quantity <= 0:
            raise QuantityInvalid(f"quantity must be > 0, got {quantity}", requested=quantity)

        if self.is_valid(quantity):
            return QuantityAdjustment(requested=quantity, quantity=quantity, mode=self.mode)

        if self.mode is LotSizeMode.REJECT:
            raise QuantityInvalid(
                f"quantity {quantity} is not a multiple of lot size {self.lot_size}"
                if quantity % self.lot_size != 0
                else f"quantity {quantity} below minimum {self.minimum}",
                requested=quantity,
                lot_size=self.lot_size,
                minimum=self.minimum,
            )

        rounding = ROUND_FLOOR if self.mode is LotSizeMode.ROUND_DOWN else ROUND_CEILING
        lots = (quantity / self.lot_size).to_integral_value(rounding=rounding)
        rounded = lots * self.lot_size
        if rounded < self.minimum:
            raise QuantityInvalid(
                f"quantity {quantity} rounds to {rounded}, below minimum {self.minimum}",
                requested=quantity,
                rounded=rounded,
                minimum=self.minimum,
            )
        return QuantityAdjustment(requested=quantity, quantity=rounded, mode=self.mode)
