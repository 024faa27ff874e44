"""
Tests for EventDispatcher routing, buffering and stream failure.
"""
import asyncio
from unittest.mock import MagicMock

import pytest

from conformance.errors import VenueConnectionError
from conformance.execution.event_dispatcher import EventDispatcher
from conformance.models import OrderEvent, OrderState

_END = object()


class FakeStream:
    """Async event source fed by the test."""

    def __init__(self):
        self.queue = asyncio.Queue()

    def push(self, order_id, state=OrderState.ACCEPTED):
        self.queue.put_nowait(OrderEvent(order_id, state))

    def end(self):
        self.queue.put_nowait(_END)

    def fail(self, exc):
        self.queue.put_nowait(exc)

    async def events(self):
        while True:
            item = await self.queue.get()
            if item is _END:
                return
            if isinstance(item, Exception):
                raise item
            yield item


async def settle():
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.fixture
def stream():
    return FakeStream()


@pytest.fixture
def dispatcher(stream):
    return EventDispatcher(stream.events(), log_event=MagicMock())


class TestRouting:

    @pytest.mark.asyncio
    async def test_routes_by_order_id(self, stream, dispatcher):
        dispatcher.start()
        dispatcher.register("A")
        dispatcher.register("B")
        stream.push("B", OrderState.ACCEPTED)
        stream.push("A", OrderState.REJECTED)
        a = await dispatcher.next_event("A", timeout=1)
        b = await dispatcher.next_event("B", timeout=1)
        assert a.state is OrderState.REJECTED
        assert b.state is OrderState.ACCEPTED
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_order_preserved_within_order(self, stream, dispatcher):
        dispatcher.start()
        dispatcher.register("A")
        for state in (OrderState.ACCEPTED, OrderState.PARTIALLY_FILLED, OrderState.FILLED):
            stream.push("A", state)
        got = [(await dispatcher.next_event("A", timeout=1)).state for _ in range(3)]
        assert got == [OrderState.ACCEPTED, OrderState.PARTIALLY_FILLED, OrderState.FILLED]
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self, dispatcher):
        dispatcher.start()
        dispatcher.register("A")
        assert await dispatcher.next_event("A", timeout=0.01) is None
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_events_before_register_are_buffered(self, stream, dispatcher):
        dispatcher.start()
        stream.push("A", OrderState.ACCEPTED)
        stream.push("A", OrderState.CANCELED)
        await settle()
        assert dispatcher.get_stats()["events_buffered"] == 2
        dispatcher.register("A")
        first = await dispatcher.next_event("A", timeout=1)
        second = await dispatcher.next_event("A", timeout=1)
        assert (first.state, second.state) == (OrderState.ACCEPTED, OrderState.CANCELED)
        assert dispatcher.get_stats()["pending_orders"] == 0
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_pending_buffer_evicts_oldest_order(self, stream):
        dispatcher = EventDispatcher(stream.events(), log_event=MagicMock(), pending_memory=2)
        dispatcher.start()
        for order_id in ("X1", "X2", "X1", "X3"):
            stream.push(order_id)
        await settle()
        stats = dispatcher.get_stats()
        assert stats["pending_orders"] == 2
        assert stats["events_evicted"] == 2
        dispatcher.register("X1")
        assert await dispatcher.next_event("X1", timeout=0.01) is None
        dispatcher.register("X3")
        assert (await dispatcher.next_event("X3", timeout=1)).order_id == "X3"
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_double_register_raises(self, dispatcher):
        dispatcher.register("A")
        with pytest.raises(ValueError):
            dispatcher.register("A")

    @pytest.mark.asyncio
    async def test_unregister_returns_leftovers(self, stream, dispatcher):
        dispatcher.start()
        dispatcher.register("A")
        stream.push("A", OrderState.ACCEPTED)
        await settle()
        leftover = dispatcher.unregister("A")
        assert [e.state for e in leftover] == [OrderState.ACCEPTED]
        await dispatcher.stop()

    @pytest.mark.asyncio
    async def test_late_events_recorded(self, stream, dispatcher):
        dispatcher.start()
        dispatcher.register("A")
        dispatcher.unregister("A")
        stream.push("A", OrderState.FILLED)
        await settle()
        assert dispatcher.get_stats()["late_events"] == 1
        assert dispatcher.late_events[0].state is OrderState.FILLED
        await dispatcher.stop()


class TestStreamFailure:

    @pytest.mark.asyncio
    async def test_stream_error_reaches_all_waiters(self, stream, dispatcher):
        dispatcher.start()
        dispatcher.register("A")
        dispatcher.register("B")
        stream.fail(RuntimeError("socket closed"))
        with pytest.raises(VenueConnectionError):
            await dispatcher.next_event("A", timeout=1)
        with pytest.raises(VenueConnectionError):
            await dispatcher.next_event("B", timeout=1)
        # Marker stays for later readers
        with pytest.raises(VenueConnectionError):
            await dispatcher.next_event("A", timeout=1)
        assert dispatcher.error.details["error_type"] == "RuntimeError"
        assert not dispatcher.running

    @pytest.mark.asyncio
    async def test_stream_end_is_connection_error(self, stream, dispatcher):
        dispatcher.start()
        stream.end()
        await settle()
        assert isinstance(dispatcher.error, VenueConnectionError)
        dispatcher.register("late")
        with pytest.raises(VenueConnectionError):
            await dispatcher.next_event("late", timeout=1)

    @pytest.mark.asyncio
    async def test_harness_error_passes_through(self, stream, dispatcher):
        cause = VenueConnectionError("gone", reason="test")
        dispatcher.start()
        stream.fail(cause)
        await settle()
        assert dispatcher.error is cause

    @pytest.mark.asyncio
    async def test_stop_is_idempotent_before_start(self, dispatcher):
        await dispatcher.stop()
        assert not dispatcher.running
