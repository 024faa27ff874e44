"""
Order State Machine - enforce the documented venue order lifecycle.

Every event a venue reports for an order under test is checked here:
- Only the transitions in VALID_TRANSITIONS are legal
- A SUBMITTED echo while still SUBMITTED acknowledges the initial state and
  is not recorded as a transition
- Cumulative fill never exceeds the order quantity, and equals it exactly
  once the order is FILLED

Violations raise (UnexpectedTransition / FillAccountingError) instead of
being blocked and logged: for a conformance harness an illegal transition is
the finding, not noise to survive.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from conformance.core.json_utils import dumps
from conformance.core.utils import now_ms
from conformance.errors import FillAccountingError, UnexpectedTransition
from conformance.models import OrderEvent, OrderSpec, OrderState

log = logging.getLogger("conformance")

_ZERO = Decimal("0")


@dataclass
class StateTransition:
    """Record of a state transition."""
    from_state: OrderState
    to_state: OrderState
    timestamp_ms: int
    fill_qty: Decimal = _ZERO
    fill_price: Optional[Decimal] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "from": self.from_state.name,
            "to": self.to_state.name,
            "ts_ms": self.timestamp_ms,
            "fill_qty": self.fill_qty,
            "fill_price": self.fill_price,
            "message": self.message,
        }


@dataclass
class OrderStateRecord:
    """
    Complete state record for an order under test.

    Tracks current state, all transitions, and accumulated fill info.
    """
    order_id: str
    spec: OrderSpec

    state: OrderState = OrderState.SUBMITTED
    filled_qty: Decimal = _ZERO
    fill_notional: Decimal = _ZERO

    created_at_ms: int = 0
    last_updated_ms: int = 0

    transitions: List[StateTransition] = field(default_factory=list)
    echoes: int = 0

    def __post_init__(self):
        now = now_ms()
        if self.created_at_ms == 0:
            self.created_at_ms = now
        self.last_updated_ms = now

    @property
    def remaining_qty(self) -> Decimal:
        return self.spec.quantity - self.filled_qty

    @property
    def avg_fill_price(self) -> Optional[Decimal]:
        if self.filled_qty <= 0:
            return None
        return self.fill_notional / self.filled_qty

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


# Valid state transitions
VALID_TRANSITIONS: Dict[OrderState, List[OrderState]] = {
    OrderState.SUBMITTED: [
        OrderState.ACCEPTED,          # Venue acknowledged
        OrderState.REJECTED,          # Venue rejected
        OrderState.INVALID,           # Venue deemed order malformed
    ],
    OrderState.ACCEPTED: [
        OrderState.PARTIALLY_FILLED,  # First partial fill
        OrderState.FILLED,            # Fully filled
        OrderState.CANCELED,          # Cancelled
    ],
    OrderState.PARTIALLY_FILLED: [
        OrderState.PARTIALLY_FILLED,  # Additional partial fill
        OrderState.FILLED,            # Final fill
        OrderState.CANCELED,          # Cancel remainder
    ],
    # Terminal states - no transitions allowed
    OrderState.FILLED: [],
    OrderState.CANCELED: [],
    OrderState.REJECTED: [],
    OrderState.INVALID: [],
}

_FILL_STATES = (OrderState.PARTIALLY_FILLED, OrderState.FILLED)


class OrderStateMachine:
    """
    Validates and records order state transitions.

    Provides:
    - Transition validation against VALID_TRANSITIONS
    - Exact fill accounting per order
    - Callback hooks for state changes and fills
    - Audit trail of all transitions

    Not thread-safe: events are applied from the event loop only.
    """

    def __init__(
        self,
        log_event: Optional[Callable[..., None]] = None,
        on_state_change: Optional[Callable[[OrderStateRecord, OrderState, OrderState], None]] = None,
        on_fill: Optional[Callable[[OrderStateRecord, Decimal, Decimal], None]] = None,
    ) -> None:
        """
        Args:
            log_event: Callback for structured logging
            on_state_change: Called after any recorded transition
            on_fill: Called with (record, fill_qty, fill_price) for every
                event carrying a fill
        """
        self._log_event = log_event or self._default_log
        self._on_state_change = on_state_change
        self._on_fill = on_fill

        self._orders: Dict[str, OrderStateRecord] = {}

        self._stats = {
            "total_created": 0,
            "total_filled": 0,
            "total_cancelled": 0,
            "total_rejected": 0,
            "violations": 0,
        }

    def _default_log(self, event: str, **kwargs) -> None:
        log.info(dumps({"event": event, **kwargs}))

    def create_order(self, order_id: str, spec: OrderSpec) -> OrderStateRecord:
        """Start tracking ``order_id`` in SUBMITTED state."""
        if order_id in self._orders:
            raise ValueError(f"order {order_id} already tracked")
        record = OrderStateRecord(order_id=order_id, spec=spec)
        self._orders[order_id] = record
        self._stats["total_created"] += 1
        log.debug("order_created id=%s %s", order_id, spec.describe())
        return record

    def get_order(self, order_id: str) -> Optional[OrderStateRecord]:
        return self._orders.get(order_id)

    def apply(self, event: OrderEvent) -> Optional[StateTransition]:
        """
        Apply a venue event to its order.

        Returns:
            The recorded transition, or None for a SUBMITTED echo

        Raises:
            KeyError: order is not tracked
            UnexpectedTransition: transition not in VALID_TRANSITIONS
            FillAccountingError: fill quantities do not add up
        """
        record = self._orders[event.order_id]
        from_state = record.state
        to_state = event.state

        if from_state is OrderState.SUBMITTED and to_state is OrderState.SUBMITTED:
            record.echoes += 1
            log.debug("order_submitted_echo id=%s", event.order_id)
            return None

        if not self._is_valid_transition(from_state, to_state):
            self._stats["violations"] += 1
            self._log_event(
                "order_state_invalid_transition",
                order_id=event.order_id,
                from_state=from_state.name,
                to_state=to_state.name,
            )
            raise UnexpectedTransition(
                event.order_id,
                from_state,
                to_state,
                filled_qty=record.filled_qty,
                venue_message=event.message,
            )

        self._check_fill(record, event)

        transition = StateTransition(
            from_state=from_state,
            to_state=to_state,
            timestamp_ms=event.timestamp_ms,
            fill_qty=event.fill_qty,
            fill_price=event.fill_price,
            message=event.message,
        )
        record.transitions.append(transition)
        record.state = to_state
        record.last_updated_ms = now_ms()

        if event.fill_qty > 0:
            record.filled_qty += event.fill_qty
            record.fill_notional += event.fill_qty * event.fill_price

        if to_state is OrderState.FILLED:
            self._stats["total_filled"] += 1
        elif to_state is OrderState.CANCELED:
            self._stats["total_cancelled"] += 1
        elif to_state in (OrderState.REJECTED, OrderState.INVALID):
            self._stats["total_rejected"] += 1

        if from_state is OrderState.SUBMITTED and to_state is OrderState.ACCEPTED:
            # Routine ack
            log.debug("order_ack id=%s", event.order_id)
        else:
            self._log_event(
                "order_state_transition",
                order_id=event.order_id,
                from_state=from_state.name,
                to_state=to_state.name,
                fill_qty=event.fill_qty,
                fill_price=event.fill_price,
                filled_qty=record.filled_qty,
                remaining_qty=record.remaining_qty,
            )

        if event.fill_qty > 0 and self._on_fill:
            self._on_fill(record, event.fill_qty, event.fill_price)

        if self._on_state_change:
            try:
                self._on_state_change(record, from_state, to_state)
            except Exception as e:
                self._log_event(
                    "order_state_callback_error",
                    error=str(e),
                    order_id=event.order_id,
                )

        return transition

    def _check_fill(self, record: OrderStateRecord, event: OrderEvent) -> None:
        qty = event.fill_qty
        order_id = event.order_id

        def fail(message: str, **details: Any) -> None:
            self._stats["violations"] += 1
            self._log_event("order_fill_accounting_error", order_id=order_id, reason=message)
            raise FillAccountingError(
                f"order {order_id}: {message}",
                order_id=order_id,
                order_qty=record.spec.quantity,
                filled_qty=record.filled_qty,
                fill_qty=qty,
                **details,
            )

        if qty < 0:
            fail("negative fill quantity")
        if qty > 0 and event.state not in _FILL_STATES:
            fail(f"fill reported on {event.state.name} event")
        if event.state is OrderState.PARTIALLY_FILLED and qty == 0:
            fail("partial fill event without quantity")
        if qty > 0 and (event.fill_price is None or event.fill_price <= 0):
            fail("fill without a positive price", fill_price=event.fill_price)

        cumulative = record.filled_qty + qty
        if cumulative > record.spec.quantity:
            fail("cumulative fill exceeds order quantity", cumulative=cumulative)
        if event.state is OrderState.FILLED and cumulative != record.spec.quantity:
            fail("FILLED with fill total different from order quantity", cumulative=cumulative)

    def _is_valid_transition(self, from_state: OrderState, to_state: OrderState) -> bool:
        return to_state in VALID_TRANSITIONS.get(from_state, [])

    def is_terminal(self, order_id: str) -> bool:
        """Check if order is in a terminal state."""
        record = self._orders.get(order_id)
        if not record:
            return True  # Non-existent orders are effectively terminal
        return record.is_terminal

    def get_active_orders(self) -> List[OrderStateRecord]:
        return [rec for rec in self._orders.values() if not rec.is_terminal]

    def get_stats(self) -> Dict[str, Any]:
        return {**self._stats, "active_orders": len(self.get_active_orders())}
