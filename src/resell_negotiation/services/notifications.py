"""Negotiation events and the sink that consumes them."""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from ..domain.models import utcnow
from .policies import best_effort

logger = structlog.get_logger()


class EventType(str, Enum):
    NEW_MESSAGE = "new_message"
    NEW_OFFER = "new_offer"
    OFFER_ACCEPTED = "offer_accepted"
    OFFER_DECLINED = "offer_declined"
    OFFER_COUNTERED = "offer_countered"
    OFFER_EXPIRED = "offer_expired"


class NegotiationEvent(BaseModel):
    type: EventType
    chat_id: str
    recipient_ids: List[str] = []
    payload: Dict[str, Any] = {}
    created_at: datetime = Field(default_factory=utcnow)


class NotificationSink(ABC):
    """Consumer of negotiation events (badges, toasts, push)."""

    @abstractmethod
    async def publish(self, event: NegotiationEvent) -> None:
        """Deliver a single event."""
        pass


class LoggingSink(NotificationSink):
    """Default sink: records events in the log only."""

    async def publish(self, event: NegotiationEvent) -> None:
        logger.info(
            "event_published",
            event_type=event.type.value,
            chat_id=event.chat_id,
            recipients=event.recipient_ids,
        )


async def notify(sink: Optional[NotificationSink], event: NegotiationEvent) -> bool:
    if sink is None:
        return True
    return await best_effort(
        "notify", sink.publish(event), event_type=event.type.value, chat_id=event.chat_id
    )
