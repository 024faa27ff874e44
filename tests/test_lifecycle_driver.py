"""
Tests for OrderLifecycleDriver against the simulated venue.
"""
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from conformance.errors import (
    AlreadyTerminal,
    CancelNotConfirmed,
    LifecycleViolation,
    OrderNotFound,
    OrderRejected,
    UnexpectedTransition,
)
from conformance.execution.event_dispatcher import EventDispatcher
from conformance.execution.lifecycle_driver import DriverConfig, OrderLifecycleDriver
from conformance.execution.venue_gateway import VenueGateway, VenueGatewayConfig
from conformance.models import CancelAck, ExpectedOutcome, OrderEvent, OrderState, OrderType, Side
from conformance.monitoring.metrics import HarnessMetrics
from conformance.venue.simulated import SimulatedVenue, SimulatedVenueConfig

from conftest import make_spec

RESTING_BUY = dict(order_type=OrderType.LIMIT, limit_price="1.0500")


async def make_driver(venue, metrics=None, on_fill=None, **cfg):
    await venue.connect({})
    dispatcher = EventDispatcher(venue.order_events(), log_event=MagicMock())
    dispatcher.start()
    gateway = VenueGateway(venue, metrics=metrics, config=VenueGatewayConfig(
        command_timeout_sec=1.0, log_event_callback=MagicMock(),
    ))
    cfg.setdefault("cancel_confirm_timeout_sec", 0.2)
    cfg.setdefault("idempotence_settle_sec", 0.02)
    driver = OrderLifecycleDriver(
        gateway,
        dispatcher,
        metrics=metrics,
        config=DriverConfig(log_event_callback=MagicMock(), **cfg),
        on_fill=on_fill,
    )
    return driver, dispatcher


def make_venue(**cfg):
    cfg.setdefault("lot_size", Decimal("1000"))
    venue = SimulatedVenue(config=SimulatedVenueConfig(**cfg))
    venue.set_quote("EURUSD", "1.1000", "1.1002")
    return venue


class AcksTerminalCancels(SimulatedVenue):
    """Acknowledges cancels of finished orders instead of refusing them."""

    async def cancel(self, order_id):
        if order_id in self._orders and self._orders[order_id].state.is_terminal:
            self.cancel_requests.append(order_id)
            return CancelAck(order_id=order_id)
        return await super().cancel(order_id)


class FillsOnCancel(SimulatedVenue):
    """Fills a working order at the moment its cancel arrives."""

    async def cancel(self, order_id):
        order = self._orders[order_id]
        if not order.state.is_terminal:
            self._fill_at_touch(order, self._quotes[order.spec.instrument.symbol])
            raise AlreadyTerminal(f"order {order_id} filled", order_id=order_id)
        return await super().cancel(order_id)


class ForgetsOrders(SimulatedVenue):
    async def cancel(self, order_id):
        raise OrderNotFound(f"unknown order {order_id}", order_id=order_id)


class EchoesAfterFill(SimulatedVenue):
    """Emits a CANCELED after every FILLED order."""

    async def submit(self, spec):
        order_id = await super().submit(spec)
        self.inject_event(OrderEvent(order_id, OrderState.CANCELED))
        return order_id


def sim(cls, **cfg):
    cfg.setdefault("lot_size", Decimal("1000"))
    venue = cls(config=SimulatedVenueConfig(**cfg))
    venue.set_quote("EURUSD", "1.1000", "1.1002")
    return venue


class TestHappyPaths:

    @pytest.mark.asyncio
    async def test_market_order_fills(self):
        metrics = HarnessMetrics()
        driver, dispatcher = await make_driver(make_venue(), metrics=metrics)
        verdict = await driver.execute(make_spec(), ExpectedOutcome.FILLED, deadline_sec=1)
        assert verdict.terminal_state is OrderState.FILLED
        assert verdict.filled_qty == Decimal("1000")
        assert verdict.avg_fill_price == Decimal("1.1002")
        assert not verdict.deadline_reached
        assert verdict.idempotence_checked
        assert verdict.ack_latency_ms is not None
        assert metrics.registry.get_sample_value(
            "conformance_transitions_total", {"venue": "simulated", "to_state": "FILLED"},
        ) == 1.0
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_partial_fills_accumulate(self):
        fills = []
        driver, dispatcher = await make_driver(
            make_venue(partial_fill_chunks=3),
            on_fill=lambda record, qty, px: fills.append(qty),
        )
        verdict = await driver.execute(make_spec(side=Side.SELL, quantity="3000"), ExpectedOutcome.FILLED, 1)
        assert [t.to_state for t in verdict.transitions] == [
            OrderState.ACCEPTED,
            OrderState.PARTIALLY_FILLED,
            OrderState.PARTIALLY_FILLED,
            OrderState.FILLED,
        ]
        assert fills == [Decimal("1000")] * 3
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_submitted_echo_is_not_a_transition(self):
        driver, dispatcher = await make_driver(make_venue(emit_submitted_echo=True))
        verdict = await driver.execute(make_spec(), ExpectedOutcome.FILLED, 1)
        assert verdict.transitions[0].to_state is OrderState.ACCEPTED
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_resting_order_cancelled_at_deadline(self):
        venue = make_venue()
        driver, dispatcher = await make_driver(venue)
        verdict = await driver.execute(make_spec(**RESTING_BUY), ExpectedOutcome.RESTING, deadline_sec=0.05)
        assert verdict.deadline_reached
        assert verdict.cancel_requested
        assert verdict.terminal_state is OrderState.CANCELED
        assert verdict.filled_qty == Decimal("0")
        # Deadline cancel plus the idempotence check
        assert venue.cancel_requests == [verdict.order_id, verdict.order_id]
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_fill_racing_cancel_is_accepted(self):
        driver, dispatcher = await make_driver(sim(FillsOnCancel))
        verdict = await driver.execute(make_spec(**RESTING_BUY), ExpectedOutcome.RESTING, deadline_sec=0.05)
        assert verdict.deadline_reached
        assert verdict.terminal_state is OrderState.FILLED
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_synchronous_rejection_propagates(self):
        driver, dispatcher = await make_driver(make_venue(max_distance_pips=Decimal("100")))
        with pytest.raises(OrderRejected):
            await driver.execute(make_spec(**RESTING_BUY), ExpectedOutcome.RESTING, 1)
        assert dispatcher.get_stats()["registered"] == 0
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_idempotence_check_can_be_disabled(self):
        venue = make_venue()
        driver, dispatcher = await make_driver(venue, check_cancel_idempotence=False)
        verdict = await driver.execute(make_spec(), ExpectedOutcome.FILLED, 1)
        assert not verdict.idempotence_checked
        assert venue.cancel_requests == []
        await dispatcher.stop()


class TestViolations:

    @pytest.mark.asyncio
    async def test_ignored_cancel_times_out(self):
        driver, dispatcher = await make_driver(make_venue(ignore_cancels=True), cancel_confirm_timeout_sec=0.05)
        with pytest.raises(CancelNotConfirmed) as ei:
            await driver.execute(make_spec(**RESTING_BUY), ExpectedOutcome.RESTING, deadline_sec=0.05)
        assert ei.value.details["state"] == "ACCEPTED"
        trace = ei.value.verdict
        assert trace.deadline_reached and trace.cancel_requested
        assert [t.to_state for t in trace.transitions] == [OrderState.ACCEPTED]
        assert trace.terminal_state is OrderState.ACCEPTED and not trace.terminal
        assert dispatcher.get_stats()["registered"] == 0
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_fill_without_accept(self):
        metrics = HarnessMetrics()
        venue = make_venue(skip_accept=True)
        driver, dispatcher = await make_driver(venue, metrics=metrics)
        with pytest.raises(UnexpectedTransition):
            await driver.execute(make_spec(), ExpectedOutcome.FILLED, 1)
        assert metrics.registry.get_sample_value(
            "conformance_lifecycle_violations_total", {"venue": "simulated"},
        ) == 1.0
        # Best-effort cleanup cancel was attempted
        assert len(venue.cancel_requests) == 1
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_event_after_terminal(self):
        driver, dispatcher = await make_driver(sim(EchoesAfterFill))
        with pytest.raises(UnexpectedTransition) as ei:
            await driver.execute(make_spec(), ExpectedOutcome.FILLED, 1)
        assert ei.value.from_state is OrderState.FILLED
        assert ei.value.to_state is OrderState.CANCELED
        trace = ei.value.verdict
        assert trace.terminal_state is OrderState.FILLED
        assert trace.filled_qty == Decimal("1000")
        assert [t.to_state for t in trace.transitions] == [OrderState.ACCEPTED, OrderState.FILLED]
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_acknowledged_cancel_of_filled_order(self):
        driver, dispatcher = await make_driver(sim(AcksTerminalCancels))
        with pytest.raises(LifecycleViolation, match="acknowledged"):
            await driver.execute(make_spec(), ExpectedOutcome.FILLED, 1)
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_open_order_unknown_to_venue(self):
        driver, dispatcher = await make_driver(sim(ForgetsOrders))
        with pytest.raises(LifecycleViolation, match="does not know"):
            await driver.execute(make_spec(**RESTING_BUY), ExpectedOutcome.RESTING, deadline_sec=0.05)
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_not_found_after_fill_is_violation(self):
        driver, dispatcher = await make_driver(sim(ForgetsOrders))
        with pytest.raises(LifecycleViolation, match="not-found"):
            await driver.execute(make_spec(), ExpectedOutcome.FILLED, 1)
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_rejected_submit_carries_no_trace(self):
        driver, dispatcher = await make_driver(make_venue(max_distance_pips=Decimal("100")))
        with pytest.raises(OrderRejected) as ei:
            await driver.execute(make_spec(**RESTING_BUY), ExpectedOutcome.RESTING, 1)
        assert ei.value.verdict is None
        await dispatcher.stop()
