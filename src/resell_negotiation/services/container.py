"""Wiring of the negotiation components."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import structlog

from ..config import Settings, load_settings
from ..domain.models import utcnow
from ..repositories.base import DocumentStore
from ..repositories.memory import InMemoryDocumentStore
from .chat_registry import ChatRegistry
from .llm import PricingModel, create_pricing_model
from .message_channel import MessageChannel
from .notifications import LoggingSink, NotificationSink
from .offer_ledger import OfferLedger, OfferSweeper
from .pricing import AdvisorTimeouts, PricingAdvisor
from .work_queue import KeyedWorkQueue

logger = structlog.get_logger()

_FROM_SETTINGS = object()


@dataclass
class ServiceContainer:
    """Shared component instances for one running service."""

    settings: Settings
    store: DocumentStore
    queue: KeyedWorkQueue
    sink: NotificationSink
    channel: MessageChannel
    registry: ChatRegistry
    ledger: OfferLedger
    advisor: PricingAdvisor
    sweeper: OfferSweeper
    clock: Callable = utcnow

    async def start(self) -> None:
        await self.sweeper.start()

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.queue.cleanup()


def build_container(
    settings: Optional[Settings] = None,
    store: Optional[DocumentStore] = None,
    pricing_model=_FROM_SETTINGS,
    sink: Optional[NotificationSink] = None,
    clock: Callable = utcnow,
) -> ServiceContainer:
    """Build every component around one store and one work queue.

    ``pricing_model`` defaults to the Gemini client from settings; pass None
    to force fallback mode or a PricingModel to substitute the model.
    """
    settings = settings or load_settings()
    store = store or InMemoryDocumentStore()
    sink = sink or LoggingSink()
    model: Optional[PricingModel] = (
        create_pricing_model(settings) if pricing_model is _FROM_SETTINGS else pricing_model
    )

    queue = KeyedWorkQueue("negotiation")
    channel = MessageChannel(store, sink=sink, queue=queue, clock=clock)
    registry = ChatRegistry(store, channel, clock=clock)
    ledger = OfferLedger(
        store,
        channel,
        sink=sink,
        clock=clock,
        lifetime=timedelta(hours=settings.offer_expiration_hours),
    )
    advisor = PricingAdvisor(model, AdvisorTimeouts.from_settings(settings))
    sweeper = OfferSweeper(ledger, interval=settings.offer_sweep_interval)
    logger.info("services_built", ai_enabled=advisor.enabled)
    return ServiceContainer(
        settings=settings,
        store=store,
        queue=queue,
        sink=sink,
        channel=channel,
        registry=registry,
        ledger=ledger,
        advisor=advisor,
        sweeper=sweeper,
        clock=clock,
    )
