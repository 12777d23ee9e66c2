"""Request and response bodies for the HTTP surface."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..domain.models import MessageType, Offer
from ..domain.offers import is_expired, time_remaining, within_recommended_range
from ..services.chat_registry import MAX_TITLE_LENGTH
from ..services.pricing import ChatContext


class ChatCreate(BaseModel):
    item_id: str
    item_title: str = Field(min_length=1, max_length=MAX_TITLE_LENGTH)
    item_price: float
    buyer_id: str
    buyer_name: str
    seller_id: str
    seller_name: str
    item_image_ref: Optional[str] = None


class MessageCreate(BaseModel):
    """Defines the structure for message creation requests"""

    sender_id: str
    sender_name: str
    content: str
    type: MessageType = MessageType.TEXT
    offer_amount: Optional[float] = None
    image_ref: Optional[str] = None


class MessageEdit(BaseModel):
    editor_id: str
    content: str


class ReadReceipt(BaseModel):
    reader_id: str


class OfferCreate(BaseModel):
    chat_id: str
    item_id: str
    buyer_id: str
    seller_id: str
    amount: float
    original_price: float
    message: Optional[str] = None
    proposed_by: Optional[str] = None


class OfferResponse(BaseModel):
    response: str
    counter_amount: Optional[float] = None


class OfferView(Offer):
    """Offer with its presentation fields resolved against the current time."""

    is_expired: bool
    seconds_remaining: float
    formatted_amount_text: str
    discount_percent: int
    within_recommended_range: bool

    @classmethod
    def from_offer(cls, offer: Offer, now: datetime) -> "OfferView":
        return cls(
            **offer.model_dump(),
            is_expired=is_expired(offer, now),
            seconds_remaining=time_remaining(offer, now).total_seconds(),
            formatted_amount_text=offer.formatted_amount,
            discount_percent=offer.discount_percentage,
            within_recommended_range=within_recommended_range(offer.amount, offer.original_price),
        )


class PriceSuggestionRequest(BaseModel):
    title: str
    description: str = ""
    condition: str
    category: str


class MarketResearchRequest(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    category: str
    min_price: Optional[float] = None
    max_price: Optional[float] = None


class AssistantQuery(BaseModel):
    query: str
    context: Optional[ChatContext] = None


class AssistantReply(BaseModel):
    reply: str


class UnreadTotal(BaseModel):
    user_id: str
    unread: int
