"""
Tests for VenueGateway command serialization and error normalisation.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from conformance.errors import (
    AlreadyTerminal,
    CommandTimeout,
    OrderRejected,
    VenueConnectionError,
)
from conformance.execution.venue_gateway import VenueGateway, VenueGatewayConfig
from conformance.models import CancelAck, HoldingsSnapshot
from conformance.monitoring.metrics import HarnessMetrics

from conftest import EURUSD, make_spec


def make_venue():
    venue = MagicMock()
    venue.name = "fake"
    venue.submit = AsyncMock(return_value="X-1")
    venue.cancel = AsyncMock(return_value=CancelAck(order_id="X-1"))
    venue.get_holdings = AsyncMock(return_value=HoldingsSnapshot(positions={}))
    return venue


def make_gateway(venue, metrics=None, timeout=1.0):
    return VenueGateway(
        venue,
        metrics=metrics,
        config=VenueGatewayConfig(command_timeout_sec=timeout, log_event_callback=MagicMock()),
    )


def sample(metrics, name, **labels):
    return metrics.registry.get_sample_value(name, labels) or 0.0


class TestSubmit:

    @pytest.mark.asyncio
    async def test_returns_order_id_and_counts(self):
        metrics = HarnessMetrics()
        gw = make_gateway(make_venue(), metrics)
        assert await gw.submit(make_spec()) == "X-1"
        assert sample(
            metrics, "conformance_orders_submitted_total",
            venue="fake", order_type="MARKET", side="BUY",
        ) == 1.0

    @pytest.mark.asyncio
    async def test_typed_error_passes_through(self):
        venue = make_venue()
        venue.submit.side_effect = OrderRejected("too far")
        with pytest.raises(OrderRejected):
            await make_gateway(venue).submit(make_spec())

    @pytest.mark.asyncio
    async def test_unknown_error_is_connection_error(self):
        venue = make_venue()
        venue.submit.side_effect = OSError("reset by peer")
        with pytest.raises(VenueConnectionError) as ei:
            await make_gateway(venue).submit(make_spec())
        assert ei.value.details["error_type"] == "OSError"

    @pytest.mark.asyncio
    async def test_timeout(self):
        venue = make_venue()

        async def slow(spec):
            await asyncio.sleep(5)

        venue.submit = slow
        with pytest.raises(CommandTimeout):
            await make_gateway(venue, timeout=0.01).submit(make_spec())

    @pytest.mark.asyncio
    async def test_commands_are_serialized(self):
        venue = make_venue()
        active = 0
        peak = 0

        async def submit(spec):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return "X"

        venue.submit = submit
        gw = make_gateway(venue)
        await asyncio.gather(*(gw.submit(make_spec()) for _ in range(5)))
        assert peak == 1


class TestCancel:

    @pytest.mark.asyncio
    async def test_acked(self):
        metrics = HarnessMetrics()
        gw = make_gateway(make_venue(), metrics)
        ack = await gw.cancel("X-1")
        assert ack.accepted
        assert sample(metrics, "conformance_cancel_requests_total", venue="fake", outcome="acked") == 1.0

    @pytest.mark.asyncio
    async def test_already_terminal_recorded(self):
        metrics = HarnessMetrics()
        venue = make_venue()
        venue.cancel.side_effect = AlreadyTerminal("done", order_id="X-1")
        with pytest.raises(AlreadyTerminal):
            await make_gateway(venue, metrics).cancel("X-1")
        assert sample(
            metrics, "conformance_cancel_requests_total", venue="fake", outcome="already_terminal",
        ) == 1.0

    @pytest.mark.asyncio
    async def test_transport_error_recorded_as_error(self):
        metrics = HarnessMetrics()
        venue = make_venue()
        venue.cancel.side_effect = ConnectionResetError()
        with pytest.raises(VenueConnectionError):
            await make_gateway(venue, metrics).cancel("X-1")
        assert sample(metrics, "conformance_cancel_requests_total", venue="fake", outcome="error") == 1.0


class TestHoldings:

    @pytest.mark.asyncio
    async def test_holdings_passthrough(self):
        venue = make_venue()
        snap = await make_gateway(venue).holdings(EURUSD)
        assert snap.positions == {}
        venue.get_holdings.assert_awaited_once_with(EURUSD)
