"""Domain models for marketplace negotiation."""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_price(amount: float) -> str:
    return f"${amount:,.2f}"


class ItemCategory(str, Enum):
    """Listing categories."""

    TEXTBOOKS = "Textbooks"
    ELECTRONICS = "Electronics"
    CLOTHING = "Clothing"
    FURNITURE = "Furniture"
    SPORTS = "Sports & Recreation"
    TICKETS = "Tickets"
    DORM = "Dorm Supplies"
    TECH_GEAR = "Tech Gear"
    OTHER = "Other"

    @classmethod
    def parse(cls, value) -> "ItemCategory":
        """Resolve a category by value or member name; unknown input maps to OTHER."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for member in cls:
            if text in (member.value.lower(), member.name.lower()):
                return member
        return cls.OTHER


class ItemCondition(str, Enum):
    """Listing conditions."""

    NEW = "New"
    LIKE_NEW = "Like New"
    GOOD = "Good"
    FAIR = "Fair"
    POOR = "Poor"

    @classmethod
    def parse(cls, value) -> "ItemCondition":
        """Resolve a condition by value or member name; unknown input maps to FAIR."""
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower().replace("_", " ")
        for member in cls:
            if text in (member.value.lower(), member.name.lower().replace("_", " ")):
                return member
        return cls.FAIR


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    OFFER = "offer"
    SYSTEM = "system"


class MessageStatus(str, Enum):
    """Delivery status; only ever advances sent -> delivered -> read."""

    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    @property
    def rank(self) -> int:
        return _STATUS_ORDER.index(self)


_STATUS_ORDER = [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ]


class OfferStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COUNTERED = "countered"
    EXPIRED = "expired"


class MarketTrend(str, Enum):
    STABLE = "stable"
    INCREASING = "increasing"
    DECREASING = "decreasing"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value) -> "MarketTrend":
        text = str(value or "").strip().lower()
        for member in cls:
            if text == member.value:
                return member
        return cls.UNKNOWN


class AnalysisSource(str, Enum):
    """Where a price analysis came from."""

    MODEL = "model"
    TEXT_EXTRACTION = "text_extraction"
    FALLBACK = "fallback"


class Chat(BaseModel):
    """A buyer-seller conversation about a single listing."""

    id: str = ""
    item_id: str
    item_title: str
    item_price: float
    item_image_ref: Optional[str] = None
    buyer_id: str
    buyer_name: str
    seller_id: str
    seller_name: str
    participant_ids: List[str] = []
    last_message_preview: str = "Chat started"
    last_message_timestamp: datetime = Field(default_factory=utcnow)
    last_message_sender_id: str = ""
    buyer_unread_count: int = 0
    seller_unread_count: int = 0
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    current_offer_amount: Optional[float] = None
    offer_status: Optional[OfferStatus] = None

    @model_validator(mode="after")
    def _fill_participants(self) -> "Chat":
        if not self.participant_ids:
            self.participant_ids = [self.buyer_id, self.seller_id]
        if not self.last_message_sender_id:
            self.last_message_sender_id = self.buyer_id
        return self

    def role_of(self, viewer_id: str) -> Optional[str]:
        if viewer_id == self.buyer_id:
            return "buyer"
        if viewer_id == self.seller_id:
            return "seller"
        return None

    def unread_field_for(self, viewer_id: str) -> Optional[str]:
        """Name of the unread counter that belongs to the viewer."""
        role = self.role_of(viewer_id)
        return f"{role}_unread_count" if role else None

    def unread_count_for(self, viewer_id: str) -> int:
        role = self.role_of(viewer_id)
        if role == "buyer":
            return self.buyer_unread_count
        if role == "seller":
            return self.seller_unread_count
        return 0

    def other_participant(self, viewer_id: str) -> str:
        return self.seller_id if viewer_id == self.buyer_id else self.buyer_id

    def name_of(self, participant_id: str) -> str:
        return self.buyer_name if participant_id == self.buyer_id else self.seller_name


class Message(BaseModel):
    """A single chat message."""

    id: str = ""
    chat_id: str
    sender_id: str
    sender_name: str
    content: str
    type: MessageType = MessageType.TEXT
    status: MessageStatus = MessageStatus.SENT
    timestamp: datetime = Field(default_factory=utcnow)
    image_ref: Optional[str] = None
    offer_amount: Optional[float] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None

    @property
    def is_offer(self) -> bool:
        return self.type == MessageType.OFFER and self.offer_amount is not None


class Offer(BaseModel):
    """A proposed price tied to a chat."""

    id: str = ""
    chat_id: str
    item_id: str
    buyer_id: str
    seller_id: str
    amount: float
    original_price: float
    message: Optional[str] = None
    proposed_by: str = ""
    status: OfferStatus = OfferStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    responded_at: Optional[datetime] = None
    expires_at: datetime
    previous_offer_id: Optional[str] = None
    superseded_by: Optional[str] = None

    @model_validator(mode="after")
    def _default_proposer(self) -> "Offer":
        if not self.proposed_by:
            self.proposed_by = self.buyer_id
        return self

    @property
    def responder_id(self) -> str:
        return self.seller_id if self.proposed_by == self.buyer_id else self.buyer_id

    @property
    def formatted_amount(self) -> str:
        return format_price(self.amount)

    @property
    def formatted_original_price(self) -> str:
        return format_price(self.original_price)

    @property
    def discount_percentage(self) -> int:
        if self.original_price <= 0:
            return 0
        return int(((self.original_price - self.amount) / self.original_price) * 100)


class PriceRange(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    min: float = 0.0
    max: float = 0.0


class PriceAnalysis(BaseModel):
    """Suggested price for a listing. Produced fresh per request."""

    model_config = ConfigDict(frozen=True)

    suggested_price: float
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str
    comparable_items: List[str] = []
    market_trend: MarketTrend = MarketTrend.UNKNOWN
    source: AnalysisSource = AnalysisSource.MODEL

    @property
    def is_low_confidence(self) -> bool:
        """True when the analysis was not produced by the model's JSON contract."""
        return self.source != AnalysisSource.MODEL


class MarketInsights(BaseModel):
    """Category-level market research."""

    model_config = ConfigDict(frozen=True)

    category: ItemCategory
    average_price: float
    price_range: PriceRange
    demand_level: str
    seasonal_trends: str
    recommendations: List[str] = []
    popular_items: List[str] = []
    source: AnalysisSource = AnalysisSource.MODEL


class ItemSnapshot(BaseModel):
    """The slice of a listing the trend report needs."""

    title: str
    price: float
    category: ItemCategory
    condition: ItemCondition = ItemCondition.GOOD


class TrendSummary(BaseModel):
    """Per-category activity computed from current listings."""

    category_counts: Dict[ItemCategory, int] = {}
    average_prices: Dict[ItemCategory, float] = {}

    def most_active(self, limit: int = 3) -> List[ItemCategory]:
        ranked = sorted(self.category_counts.items(), key=lambda pair: pair[1], reverse=True)
        return [category for category, _ in ranked[:limit]]

    def render(self) -> str:
        lines = ["Current Marketplace Trends:", "", "Most Active Categories:"]
        for category in self.most_active():
            lines.append(f"- {category.value}: {self.category_counts[category]} items")
        lines.extend(["", "Average Prices by Category:"])
        ranked = sorted(self.average_prices.items(), key=lambda pair: pair[1], reverse=True)
        for category, average in ranked[:5]:
            lines.append(f"- {category.value}: {format_price(average)}")
        return "\n".join(lines)
