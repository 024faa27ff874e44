"""
Order Lifecycle Driver: submit one order and follow it to a terminal state.

The driver owns the state record of the order under test. It never
fabricates a transition: every state change comes from a venue event, and
every event is validated by the OrderStateMachine.

Waiting is always bounded:
- the scenario deadline for the order to reach a terminal state
- after the deadline, a cancel and ``cancel_confirm_timeout_sec`` for its
  outcome (CANCELED, or a FILLED that raced the cancel)
- ``idempotence_settle_sec`` to observe that a redundant cancel of a
  terminal order produced no new event
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from conformance.core.json_utils import dumps
from conformance.errors import (
    AlreadyTerminal,
    CancelNotConfirmed,
    HarnessError,
    LifecycleViolation,
    OrderNotFound,
)
from conformance.execution.event_dispatcher import EventDispatcher
from conformance.execution.order_state_machine import (
    OrderStateMachine,
    OrderStateRecord,
    StateTransition,
)
from conformance.execution.venue_gateway import VenueGateway
from conformance.models import ExpectedOutcome, OrderSpec, OrderState
from conformance.monitoring.metrics import HarnessMetrics

log = logging.getLogger("conformance")


@dataclass
class DriverConfig:
    """Configuration for OrderLifecycleDriver."""
    cancel_confirm_timeout_sec: float = 10.0
    check_cancel_idempotence: bool = True
    idempotence_settle_sec: float = 0.25
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class Verdict:
    """Observed lifecycle of one order."""
    order_id: str
    spec: OrderSpec
    expected_outcome: Optional[ExpectedOutcome]
    terminal_state: OrderState
    terminal: bool
    transitions: List[StateTransition] = field(default_factory=list)
    elapsed_sec: float = 0.0
    deadline_reached: bool = False
    cancel_requested: bool = False
    filled_qty: Decimal = Decimal("0")
    avg_fill_price: Optional[Decimal] = None
    ack_latency_ms: Optional[int] = None
    idempotence_checked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "order": self.spec.describe(),
            "expected_outcome": self.expected_outcome.name if self.expected_outcome else None,
            "terminal_state": self.terminal_state.name,
            "terminal": self.terminal,
            "transitions": [t.to_dict() for t in self.transitions],
            "elapsed_sec": round(self.elapsed_sec, 3),
            "deadline_reached": self.deadline_reached,
            "cancel_requested": self.cancel_requested,
            "filled_qty": self.filled_qty,
            "avg_fill_price": self.avg_fill_price,
            "ack_latency_ms": self.ack_latency_ms,
            "idempotence_checked": self.idempotence_checked,
        }


class OrderLifecycleDriver:
    """
    Drives a single order through submit -> events -> terminal state.

    Usage:
        driver = OrderLifecycleDriver(gateway, dispatcher, metrics=metrics)
        verdict = await driver.execute(built.spec, ExpectedOutcome.RESTING, deadline_sec=20)

    Errors propagate to the caller:
        SubmissionError      venue refused the order synchronously
        LifecycleViolation   illegal transition or fill accounting error
        CancelNotConfirmed   no terminal state after the post-deadline cancel
        VenueConnectionError event stream or transport lost

    Errors raised after a successful submit carry the partial Verdict
    (transitions seen so far) as ``exc.verdict``.
    """

    def __init__(
        self,
        gateway: VenueGateway,
        dispatcher: EventDispatcher,
        metrics: Optional[HarnessMetrics] = None,
        config: Optional[DriverConfig] = None,
        on_fill: Optional[Callable[[OrderStateRecord, Decimal, Decimal], None]] = None,
    ) -> None:
        self.gateway = gateway
        self.dispatcher = dispatcher
        self.metrics = metrics
        self.config = config or DriverConfig()
        self._log_event = self.config.log_event_callback or self._default_log
        self.state_machine = OrderStateMachine(log_event=self._log_event, on_fill=on_fill)

    @property
    def venue_name(self) -> str:
        return self.gateway.venue.name

    def _default_log(self, event: str, **kwargs: Any) -> None:
        log.info(dumps({"event": event, **kwargs}))

    async def execute(
        self,
        spec: OrderSpec,
        expected_outcome: Optional[ExpectedOutcome],
        deadline_sec: float,
    ) -> Verdict:
        started = time.monotonic()
        order_id = await self.gateway.submit(spec)
        submitted_at = time.monotonic()

        self.dispatcher.register(order_id)
        record = self.state_machine.create_order(order_id, spec)
        verdict = Verdict(
            order_id=order_id,
            spec=spec,
            expected_outcome=expected_outcome,
            terminal_state=record.state,
            terminal=False,
        )
        try:
            await self._await_terminal(record, started + deadline_sec, verdict, submitted_at)

            if not record.is_terminal:
                verdict.deadline_reached = True
                verdict.cancel_requested = True
                self._log_event(
                    "order_deadline_reached",
                    order_id=order_id,
                    state=record.state.name,
                    expected=expected_outcome.name if expected_outcome else None,
                    deadline_sec=deadline_sec,
                )
                await self._cancel_and_confirm(record, verdict, submitted_at)

            if self.config.check_cancel_idempotence:
                await self._check_cancel_idempotence(record)
                verdict.idempotence_checked = True

        except HarnessError as exc:
            if isinstance(exc, LifecycleViolation):
                if self.metrics:
                    self.metrics.lifecycle_violations.labels(venue=self.venue_name).inc()
                self._log_event("lifecycle_violation", order_id=order_id, error=exc.to_dict())
                if not record.is_terminal:
                    await self._best_effort_cancel(order_id)
            exc.verdict = self._settle(verdict, record, started)
            raise
        finally:
            leftover = self.dispatcher.unregister(order_id)
            if leftover:
                log.warning(dumps({
                    "event": "order_events_unconsumed",
                    "order_id": order_id,
                    "states": [e.state.name for e in leftover],
                }))

        self._settle(verdict, record, started)
        self._log_event(
            "order_lifecycle_complete",
            order_id=order_id,
            terminal_state=record.state.name,
            filled_qty=record.filled_qty,
            elapsed_sec=round(verdict.elapsed_sec, 3),
            deadline_reached=verdict.deadline_reached,
        )
        return verdict

    def _settle(self, verdict: Verdict, record: OrderStateRecord, started: float) -> Verdict:
        """Copy what was observed for ``record`` into ``verdict``."""
        verdict.terminal_state = record.state
        verdict.terminal = record.is_terminal
        verdict.transitions = list(record.transitions)
        verdict.elapsed_sec = time.monotonic() - started
        verdict.filled_qty = record.filled_qty
        verdict.avg_fill_price = record.avg_fill_price
        return verdict

    async def _await_terminal(
        self,
        record: OrderStateRecord,
        deadline: float,
        verdict: Verdict,
        submitted_at: float,
    ) -> None:
        """Consume events until the order is terminal or ``deadline`` (monotonic) passes."""
        while not record.is_terminal:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            event = await self.dispatcher.next_event(record.order_id, timeout=remaining)
            if event is None:
                return
            if verdict.ack_latency_ms is None:
                verdict.ack_latency_ms = int((time.monotonic() - submitted_at) * 1000)
                if self.metrics:
                    self.metrics.ack_latency_ms.labels(venue=self.venue_name).observe(verdict.ack_latency_ms)
            transition = self.state_machine.apply(event)
            if transition is not None and self.metrics:
                self.metrics.transitions_total.labels(
                    venue=self.venue_name,
                    to_state=transition.to_state.name,
                ).inc()

    async def _cancel_and_confirm(self, record: OrderStateRecord, verdict: Verdict, submitted_at: float) -> None:
        order_id = record.order_id
        try:
            ack = await self.gateway.cancel(order_id)
            if not ack.accepted:
                self._log_event("cancel_refused", order_id=order_id, message=ack.message)
        except AlreadyTerminal:
            # The terminal event is already on its way
            self._log_event("cancel_raced_terminal", order_id=order_id)
        except OrderNotFound as exc:
            raise LifecycleViolation(
                f"venue does not know open order {order_id}",
                order_id=order_id,
                state=record.state.name,
            ) from exc

        timeout = self.config.cancel_confirm_timeout_sec
        await self._await_terminal(record, time.monotonic() + timeout, verdict, submitted_at)
        if not record.is_terminal:
            raise CancelNotConfirmed(
                f"order {order_id} not terminal {timeout}s after cancel",
                order_id=order_id,
                state=record.state.name,
                cancel_confirm_timeout_sec=timeout,
            )
        if record.state is OrderState.FILLED:
            self._log_event("order_filled_during_cancel", order_id=order_id)

    async def _check_cancel_idempotence(self, record: OrderStateRecord) -> None:
        """
        Cancel an order that is already terminal: the venue must answer
        AlreadyTerminal and must not emit any further event.
        """
        order_id = record.order_id
        try:
            ack = await self.gateway.cancel(order_id)
        except AlreadyTerminal:
            pass
        except OrderNotFound:
            # A rejected order may never have existed at the venue
            if record.state not in (OrderState.REJECTED, OrderState.INVALID):
                raise LifecycleViolation(
                    f"cancel of {record.state.name} order {order_id} answered not-found",
                    order_id=order_id,
                    state=record.state.name,
                )
        else:
            raise LifecycleViolation(
                f"cancel of {record.state.name} order {order_id} was acknowledged",
                order_id=order_id,
                state=record.state.name,
                accepted=ack.accepted,
            )

        settle_deadline = time.monotonic() + self.config.idempotence_settle_sec
        while True:
            remaining = settle_deadline - time.monotonic()
            if remaining <= 0:
                return
            event = await self.dispatcher.next_event(order_id, timeout=remaining)
            if event is None:
                return
            # Any event after a terminal state is illegal; apply() raises
            self.state_machine.apply(event)

    async def _best_effort_cancel(self, order_id: str) -> None:
        try:
            await self.gateway.cancel(order_id)
        except HarnessError as exc:
            log.warning(dumps({
                "event": "best_effort_cancel_failed",
                "order_id": order_id,
                "error": exc.message,
            }))
