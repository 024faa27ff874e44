"""
Verdict evaluation: does what the order did match what the scenario expected?

Two entry points:
- expected_error(): a build/submission error that IS the expected outcome
- check_verdict(): raises when a completed lifecycle does not match
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from conformance.errors import (
    FillPriceOutOfRange,
    HarnessError,
    OrderInvalid,
    OrderRejected,
    OutcomeMismatch,
    QuantityInvalid,
    ScenarioTimeout,
)
from conformance.execution.lifecycle_driver import Verdict
from conformance.models import ExpectedOutcome, OrderState, OrderType, Quote, Side
from conformance.scenarios.catalog import ScenarioEntry

_EXPECTED_ERRORS = {
    ExpectedOutcome.QUANTITY_INVALID: QuantityInvalid,
    ExpectedOutcome.REJECTED: OrderRejected,
    ExpectedOutcome.INVALID: OrderInvalid,
}

_EXPECTED_STATES = {
    ExpectedOutcome.REJECTED: OrderState.REJECTED,
    ExpectedOutcome.INVALID: OrderState.INVALID,
}


def expected_error(entry: ScenarioEntry, exc: HarnessError) -> bool:
    """True if ``exc`` is exactly the failure the scenario asks for."""
    expected = _EXPECTED_ERRORS.get(entry.expected_outcome)
    return expected is not None and isinstance(exc, expected)


def check_verdict(
    entry: ScenarioEntry,
    verdict: Verdict,
    quote: Optional[Quote] = None,
    fill_price_tolerance: Decimal = Decimal("0"),
) -> None:
    """
    Raise unless ``verdict`` satisfies ``entry.expected_outcome``.

    Raises:
        ScenarioTimeout: a fill was expected but the deadline passed first
        FillPriceOutOfRange: a market fill priced outside the quoted spread
        OutcomeMismatch: any other disagreement
    """
    outcome = entry.expected_outcome
    state = verdict.terminal_state
    details = {
        "order_id": verdict.order_id,
        "expected": outcome.name,
        "terminal_state": state.name,
        "filled_qty": verdict.filled_qty,
    }

    if outcome is ExpectedOutcome.FILLED:
        if state is OrderState.FILLED:
            if entry.order_type is OrderType.MARKET and quote is not None:
                _check_fill_prices(verdict, quote, fill_price_tolerance)
            return
        if verdict.deadline_reached:
            raise ScenarioTimeout(
                f"{entry.label}: order not filled within {entry.deadline_sec}s (ended {state.name})",
                deadline_sec=entry.deadline_sec,
                **details,
            )
        raise OutcomeMismatch(f"{entry.label}: expected FILLED, order ended {state.name}", **details)

    if outcome is ExpectedOutcome.RESTING:
        if state is OrderState.CANCELED and verdict.deadline_reached and verdict.filled_qty == 0:
            return
        if verdict.filled_qty > 0:
            raise OutcomeMismatch(f"{entry.label}: no-fill order executed {verdict.filled_qty}", **details)
        if not verdict.deadline_reached:
            raise OutcomeMismatch(f"{entry.label}: order ended {state.name} before the deadline", **details)
        raise OutcomeMismatch(f"{entry.label}: expected CANCELED after deadline, got {state.name}", **details)

    if outcome in _EXPECTED_STATES:
        if state is _EXPECTED_STATES[outcome]:
            return
        raise OutcomeMismatch(f"{entry.label}: expected {outcome.name}, order ended {state.name}", **details)

    # QUANTITY_INVALID: the order should never have been submitted
    raise OutcomeMismatch(f"{entry.label}: expected {outcome.name} but the order was submitted", **details)


def _check_fill_prices(verdict: Verdict, quote: Quote, tolerance: Decimal) -> None:
    low = quote.bid - tolerance
    high = quote.ask + tolerance
    for t in verdict.transitions:
        if t.fill_qty <= 0:
            continue
        if not (low <= t.fill_price <= high):
            raise FillPriceOutOfRange(
                f"order {verdict.order_id}: fill at {t.fill_price} outside [{low}, {high}]",
                order_id=verdict.order_id,
                fill_price=t.fill_price,
                bid=quote.bid,
                ask=quote.ask,
                tolerance=tolerance,
                side=verdict.spec.side.name,
            )


def setup_order_side(setup_position: Decimal) -> Side:
    return Side.BUY if setup_position > 0 else Side.SELL
