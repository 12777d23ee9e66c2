"""Shared fixtures and test doubles."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional

import pytest

from resell_negotiation.config import Settings
from resell_negotiation.repositories.memory import InMemoryDocumentStore
from resell_negotiation.services.chat_registry import ChatRegistry
from resell_negotiation.services.container import build_container
from resell_negotiation.services.message_channel import MessageChannel
from resell_negotiation.services.notifications import NegotiationEvent, NotificationSink
from resell_negotiation.services.offer_ledger import OfferLedger

BUYER = "buyer-1"
SELLER = "seller-1"


class FakeClock:
    """Controllable clock returning aware UTC datetimes."""

    def __init__(self, start: Optional[datetime] = None, step: timedelta = timedelta(0)):
        self.now = start or datetime(2024, 9, 1, 12, 0, tzinfo=timezone.utc)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events: List[NegotiationEvent] = []

    async def publish(self, event: NegotiationEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> List[NegotiationEvent]:
        return [e for e in self.events if e.type == event_type]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def channel(store, sink, clock):
    return MessageChannel(store, sink=sink, clock=clock)


@pytest.fixture
def registry(store, channel, clock):
    return ChatRegistry(store, channel, clock=clock)


@pytest.fixture
def ledger(store, channel, sink, clock):
    return OfferLedger(store, channel, sink=sink, clock=clock)


@pytest.fixture
def open_chat(registry):
    """Coroutine factory that opens the standard buyer/seller chat."""

    async def _open(item_id: str = "item-1", title: str = "Desk Lamp", price: float = 100.0) -> str:
        return await registry.create_or_get_chat(item_id, title, price, BUYER, "Alice", SELLER, "Bob")

    return _open


@pytest.fixture
def services(sink):
    return build_container(settings=Settings(), pricing_model=None, sink=sink)
