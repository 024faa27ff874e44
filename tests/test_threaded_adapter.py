"""
Tests for ThreadedVenueAdapter bridging a blocking SDK into asyncio.
"""
import asyncio
import threading
import time
from decimal import Decimal

import pytest

from conformance.errors import CommandTimeout, OrderRejected, Unreachable
from conformance.models import (
    CancelAck,
    Connection,
    HoldingsSnapshot,
    OrderEvent,
    OrderState,
    Quote,
)
from conformance.venue.threaded import ThreadedVenueAdapter

from conftest import EURUSD, make_spec


class FakeBlockingClient:
    """Synchronous SDK double that reports order updates from its own thread."""

    name = "fake-sdk"

    def __init__(self):
        self.callback = None
        self.quote_failures = 0
        self.holdings_delay = 0.0
        self.reject_submits = False
        self.cancel_error = None
        self.disconnected = False
        self.submits = 0

    def connect(self, credentials):
        return Connection(venue=self.name, account_id=credentials.get("account_id"))

    def disconnect(self):
        self.disconnected = True

    def set_event_callback(self, callback):
        self.callback = callback

    def submit(self, spec):
        if self.reject_submits:
            raise OrderRejected("market closed")
        self.submits += 1
        order_id = f"F-{self.submits}"
        threading.Thread(
            target=self.callback,
            args=(OrderEvent(order_id, OrderState.ACCEPTED),),
            daemon=True,
        ).start()
        return order_id

    def cancel(self, order_id):
        if self.cancel_error:
            raise self.cancel_error
        return CancelAck(order_id=order_id)

    def get_holdings(self, instrument):
        time.sleep(self.holdings_delay)
        return HoldingsSnapshot(positions={instrument.symbol: Decimal("1000")})

    def get_quote(self, instrument):
        if self.quote_failures > 0:
            self.quote_failures -= 1
            raise ConnectionError("temporary failure")
        return Quote(bid=Decimal("1.1"), ask=Decimal("1.1002"))


@pytest.fixture
def client():
    return FakeBlockingClient()


async def connected(client, **kwargs):
    adapter = ThreadedVenueAdapter(client, **kwargs)
    conn = await adapter.connect({"account_id": "acc-1"})
    return adapter, conn


class TestThreadedAdapter:

    @pytest.mark.asyncio
    async def test_connect_and_name(self, client):
        adapter, conn = await connected(client)
        assert adapter.name == "fake-sdk"
        assert conn.account_id == "acc-1"
        await adapter.disconnect(conn)
        assert client.disconnected

    @pytest.mark.asyncio
    async def test_sdk_thread_events_reach_stream(self, client):
        adapter, conn = await connected(client)
        stream = adapter.order_events()
        order_id = await adapter.submit(make_spec())
        event = await asyncio.wait_for(stream.__anext__(), timeout=2)
        assert event.order_id == order_id
        assert event.state is OrderState.ACCEPTED
        await adapter.disconnect(conn)

    @pytest.mark.asyncio
    async def test_stream_not_restartable(self, client):
        adapter, conn = await connected(client)
        first = adapter.order_events()
        second = adapter.order_events()
        client.callback(OrderEvent("F-9", OrderState.ACCEPTED))
        await asyncio.wait_for(first.__anext__(), timeout=2)
        with pytest.raises(RuntimeError):
            await second.__anext__()
        await adapter.disconnect(conn)

    @pytest.mark.asyncio
    async def test_typed_error_not_wrapped(self, client):
        client.reject_submits = True
        adapter, conn = await connected(client)
        with pytest.raises(OrderRejected):
            await adapter.submit(make_spec())
        await adapter.disconnect(conn)

    @pytest.mark.asyncio
    async def test_read_retries_transient_failure(self, client):
        client.quote_failures = 1
        adapter, conn = await connected(client, read_retries=1)
        quote = await adapter.get_quote(EURUSD)
        assert quote.ask == Decimal("1.1002")
        await adapter.disconnect(conn)

    @pytest.mark.asyncio
    async def test_read_gives_up_after_retries(self, client):
        client.quote_failures = 5
        adapter, conn = await connected(client, read_retries=1)
        with pytest.raises(Unreachable):
            await adapter.get_quote(EURUSD)
        await adapter.disconnect(conn)

    @pytest.mark.asyncio
    async def test_cancel_never_retried(self, client):
        client.cancel_error = ConnectionError("socket closed")
        adapter, conn = await connected(client, read_retries=3)
        with pytest.raises(Unreachable):
            await adapter.cancel("F-1")
        await adapter.disconnect(conn)

    @pytest.mark.asyncio
    async def test_timeout(self, client):
        client.holdings_delay = 0.5
        adapter, conn = await connected(client, timeout=0.05, read_retries=0)
        with pytest.raises(CommandTimeout):
            await adapter.get_holdings(EURUSD)
        client.holdings_delay = 0.0
        await adapter.disconnect(conn)
