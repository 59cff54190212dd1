"""Tests for the EventBus pub/sub system."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeConnection, make_event

from waswarm.event_bus import (
    EventBus,
    InboundMessageEvent,
    SessionAbandonedEvent,
    SessionOpenedEvent,
)


@pytest.fixture
def bus() -> EventBus:
    """Create a fresh EventBus for each test."""
    return EventBus()


class TestEventBus:
    async def test_subscribe_and_emit(self, bus: EventBus) -> None:
        received: list[SessionOpenedEvent] = []

        async def listener(event: SessionOpenedEvent) -> None:
            received.append(event)

        bus.subscribe(SessionOpenedEvent, listener)
        bus.emit(SessionOpenedEvent(account_id="1"))
        await bus.drain()

        assert received == [SessionOpenedEvent(account_id="1")]

    async def test_only_matching_type_delivered(self, bus: EventBus) -> None:
        received: list = []

        async def listener(event) -> None:
            received.append(event)

        bus.subscribe(SessionAbandonedEvent, listener)
        bus.emit(SessionOpenedEvent(account_id="1"))
        await bus.drain()

        assert received == []

    async def test_many_listeners_each_fail_soft(self, bus: EventBus) -> None:
        """One observer raising does not stop the others."""
        received: list[str] = []

        async def broken(event: InboundMessageEvent) -> None:
            raise RuntimeError("boom")

        async def healthy(event: InboundMessageEvent) -> None:
            received.append(event.account_id)

        bus.subscribe(InboundMessageEvent, broken)
        bus.subscribe(InboundMessageEvent, healthy)
        event = make_event(account_id="42", text="hi")
        bus.emit(InboundMessageEvent(event=event, text="hi", connection=FakeConnection("42")))
        await bus.drain()

        assert received == ["42"]

    async def test_unsubscribe(self, bus: EventBus) -> None:
        received: list = []

        async def listener(event) -> None:
            received.append(event)

        unsubscribe = bus.subscribe(SessionOpenedEvent, listener)
        unsubscribe()
        unsubscribe()  # idempotent
        bus.emit(SessionOpenedEvent(account_id="1"))
        await bus.drain()

        assert received == []

    async def test_emit_does_not_block(self, bus: EventBus) -> None:
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(event) -> None:
            started.set()
            await release.wait()

        bus.subscribe(SessionOpenedEvent, slow)
        bus.emit(SessionOpenedEvent(account_id="1"))

        await asyncio.wait_for(started.wait(), timeout=1.0)
        release.set()
        await bus.drain(timeout=1.0)

    async def test_drain_without_pending(self, bus: EventBus) -> None:
        await bus.drain()
