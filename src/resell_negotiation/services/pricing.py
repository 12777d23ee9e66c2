"""AI price suggestions with deterministic fallbacks.

Every public advisor call returns a usable result. Timeouts, transport
errors, unparseable responses and a missing API key are absorbed here and
answered from the lookup tables in ``pricing_tables``.
"""

import json
import math
import re
from collections import defaultdict
from enum import Enum
from typing import Iterable, List, Optional, Tuple, Union

import pydantic
import structlog
from pydantic import BaseModel, ConfigDict, Field

from ..config import Settings
from ..domain.errors import (
    NetworkError,
    OperationTimeoutError,
    ParseError,
    ServiceDisabledError,
    ValidationError,
)
from ..domain.models import (
    AnalysisSource,
    ItemCategory,
    ItemCondition,
    ItemSnapshot,
    MarketInsights,
    MarketTrend,
    PriceAnalysis,
    PriceRange,
    TrendSummary,
)
from ..metrics import PRICING_FALLBACKS
from .deadline import race_with_deadline
from .llm import PricingModel
from .pricing_tables import (
    BASE_PRICES,
    CANNED_REPLIES,
    CAPABILITY_MENU,
    CONDITION_MULTIPLIERS,
    EXTRACTED_CONFIDENCE,
    FALLBACK_CONFIDENCE,
    MARKET_TABLE,
    SAFETY_TIPS,
)

logger = structlog.get_logger()

PERSONA = (
    "You are a marketplace pricing expert for a student resale marketplace at Texas Tech "
    "University. Buyers are students aged 18-25 on college budgets."
)


class ChatContext(str, Enum):
    PRICE_HELP = "price_help"
    SELLING_TIPS = "selling_tips"
    BUYING_ADVICE = "buying_advice"
    GENERAL_MARKETPLACE = "general_marketplace"
    TECH_SUPPORT = "tech_support"


class TransactionType(str, Enum):
    SELLING = "selling"
    BUYING = "buying"


_CONTEXT_FOCUS = {
    ChatContext.PRICE_HELP: "Focus on pricing strategies and market value analysis.",
    ChatContext.SELLING_TIPS: "Provide selling optimization and listing improvement tips.",
    ChatContext.BUYING_ADVICE: "Give buying advice and safety tips for students.",
    ChatContext.GENERAL_MARKETPLACE: "Discuss general marketplace functionality and features.",
    ChatContext.TECH_SUPPORT: "Help with app technical issues and how-to questions.",
}

_CONTEXT_REPLIES = {
    ChatContext.PRICE_HELP: "price",
    ChatContext.SELLING_TIPS: "sell",
    ChatContext.BUYING_ADVICE: "buy",
}

# Checked in order; the first matching group picks the canned reply.
_REPLY_KEYWORDS = [
    ("safety", ("safety", "safe", "scam", "meet")),
    ("price", ("price", "pricing", "worth", "cost")),
    ("sell", ("sell",)),
    ("buy", ("buy", "purchase")),
]


class AdvisorTimeouts(BaseModel):
    """Per-operation deadlines in seconds."""

    price_analysis: float = 30.0
    market_research: float = 45.0
    chat_reply: float = 20.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "AdvisorTimeouts":
        return cls(
            price_analysis=settings.price_analysis_timeout,
            market_research=settings.market_research_timeout,
            chat_reply=settings.chat_reply_timeout,
        )


def build_price_prompt(
    title: str, description: str, condition: ItemCondition, category: ItemCategory
) -> str:
    return f"""{PERSONA}
Analyze this item and suggest an optimal selling price.

Item Details:
- Title: {title}
- Description: {description}
- Condition: {condition.value}
- Category: {category.value}

Respond with only a JSON object in this format:
{{
    "suggestedPrice": 0.00,
    "confidence": 0.0,
    "reasoning": "explanation here",
    "comparableItems": ["item1", "item2"],
    "marketTrend": "stable|increasing|decreasing"
}}
Confidence is a number between 0 and 1."""


def build_market_prompt(category: ItemCategory, price_range: Optional[PriceRange]) -> str:
    interest = ""
    if price_range is not None:
        interest = f"Price Range of Interest: ${price_range.min:.2f} - ${price_range.max:.2f}\n"
    return f"""{PERSONA}
Provide market research for {category.value} items on the marketplace.
{interest}
Respond with only a JSON object in this format:
{{
    "averagePrice": 0.00,
    "priceRange": {{"min": 0.00, "max": 0.00}},
    "demandLevel": "high|medium|low",
    "seasonalTrends": "description",
    "recommendations": ["tip1", "tip2", "tip3"],
    "popularItems": ["item1", "item2"]
}}"""


def build_chat_prompt(query: str, context: Optional[ChatContext]) -> str:
    focus = f"{_CONTEXT_FOCUS[context]}\n" if context else ""
    return f"""You are the assistant for a student resale marketplace at Texas Tech University. You help with:
- Price recommendations and market analysis
- Selling and buying tips
- Marketplace best practices
- Safety guidelines for student transactions

Keep responses helpful, concise, and relevant to college students.
{focus}
User Query: {query}

Response:"""


_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL | re.IGNORECASE)
_DOLLAR_AMOUNT = re.compile(r"\$\s*((?:\d{1,3}(?:,\d{3})+|\d+)(?:\.\d{1,2})?)")
_LIST_MARKER = re.compile(r"^\s*(?:[-*•]|\d+[.)])\s*")


def extract_json_object(text: str) -> dict:
    """Pull the JSON object out of a model response, fenced or bare."""
    fenced = _FENCED_JSON.search(text or "")
    if fenced:
        candidate = fenced.group(1)
    else:
        start, end = (text or "").find("{"), (text or "").rfind("}")
        if start == -1 or end <= start:
            raise ParseError("No JSON object in model response")
        candidate = text[start : end + 1]
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON in model response: {e}") from e
    if not isinstance(data, dict):
        raise ParseError("Model response JSON is not an object")
    return data


def normalize_confidence(value: float) -> float:
    """Map a model-reported confidence onto [0, 1].

    Values up to 1 are taken as-is, (1, 10] as a ten-point scale and
    (10, 100] as a percentage; anything else is clamped.
    """
    if value != value or value <= 0:
        return 0.0
    if value <= 1:
        return float(value)
    if value <= 10:
        return value / 10
    if value <= 100:
        return value / 100
    return 1.0


def extract_dollar_amount(text: str) -> Optional[float]:
    for match in _DOLLAR_AMOUNT.finditer(text or ""):
        amount = float(match.group(1).replace(",", ""))
        if 0 < amount < math.inf:
            return amount
    return None


class _PriceAnalysisPayload(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    suggested_price: float = Field(alias="suggestedPrice", gt=0)
    confidence: float
    reasoning: str = ""
    comparable_items: List[str] = Field(default_factory=list, alias="comparableItems")
    market_trend: str = Field("unknown", alias="marketTrend")


class _MarketInsightsPayload(BaseModel):
    model_config = ConfigDict(allow_inf_nan=False)

    average_price: float = Field(alias="averagePrice", ge=0)
    price_range: PriceRange = Field(default_factory=PriceRange, alias="priceRange")
    demand_level: str = Field("unknown", alias="demandLevel")
    seasonal_trends: str = Field("", alias="seasonalTrends")
    recommendations: List[str] = []
    popular_items: List[str] = Field(default_factory=list, alias="popularItems")


def parse_price_analysis(text: str) -> PriceAnalysis:
    """Parse the JSON contract, falling back to a dollar amount found in the raw text."""
    try:
        try:
            payload = _PriceAnalysisPayload.model_validate(extract_json_object(text))
        except pydantic.ValidationError as e:
            raise ParseError(f"Price analysis violates contract: {e.error_count()} errors") from e
    except ParseError:
        amount = extract_dollar_amount(text)
        if amount is None:
            raise
        logger.info("price_extracted_from_text", suggested_price=amount)
        return PriceAnalysis(
            suggested_price=amount,
            confidence=EXTRACTED_CONFIDENCE,
            reasoning="Price extracted from an unstructured AI response.",
            comparable_items=[],
            market_trend=MarketTrend.UNKNOWN,
            source=AnalysisSource.TEXT_EXTRACTION,
        )
    return PriceAnalysis(
        suggested_price=round(payload.suggested_price, 2),
        confidence=normalize_confidence(payload.confidence),
        reasoning=payload.reasoning,
        comparable_items=payload.comparable_items,
        market_trend=MarketTrend.parse(payload.market_trend),
        source=AnalysisSource.MODEL,
    )


def parse_market_insights(text: str, category: ItemCategory) -> MarketInsights:
    try:
        payload = _MarketInsightsPayload.model_validate(extract_json_object(text))
    except pydantic.ValidationError as e:
        raise ParseError(f"Market insights violate contract: {e.error_count()} errors") from e
    return MarketInsights(
        category=category,
        average_price=payload.average_price,
        price_range=payload.price_range,
        demand_level=payload.demand_level.lower(),
        seasonal_trends=payload.seasonal_trends,
        recommendations=payload.recommendations,
        popular_items=payload.popular_items,
        source=AnalysisSource.MODEL,
    )


def fallback_price_analysis(category: ItemCategory, condition: ItemCondition) -> PriceAnalysis:
    """basePrice[category] x multiplier[condition], flagged as a low-confidence estimate."""
    base = BASE_PRICES[category]
    multiplier = CONDITION_MULTIPLIERS[condition]
    return PriceAnalysis(
        suggested_price=round(base * multiplier, 2),
        confidence=FALLBACK_CONFIDENCE,
        reasoning=(
            f"Rule-based estimate, not AI-verified: {category.value} items start from a base "
            f"price of ${base:.2f}, adjusted by {multiplier:.2f} for {condition.value} condition."
        ),
        comparable_items=[],
        market_trend=MarketTrend.UNKNOWN,
        source=AnalysisSource.FALLBACK,
    )


def fallback_market_insights(category: ItemCategory) -> MarketInsights:
    average, (low, high), demand, seasonal, recommendations, popular = MARKET_TABLE[category]
    return MarketInsights(
        category=category,
        average_price=average,
        price_range=PriceRange(min=low, max=high),
        demand_level=demand,
        seasonal_trends=seasonal,
        recommendations=list(recommendations),
        popular_items=list(popular),
        source=AnalysisSource.FALLBACK,
    )


def fallback_chat_reply(query: str, context: Optional[ChatContext] = None) -> str:
    """Keyword-matched canned reply; the capability menu when nothing matches."""
    text = (query or "").lower()
    for reply, keywords in _REPLY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return CANNED_REPLIES[reply]
    if context in _CONTEXT_REPLIES:
        return CANNED_REPLIES[_CONTEXT_REPLIES[context]]
    return CAPABILITY_MENU


def _resolve_context(value: Optional[Union[ChatContext, str]]) -> Optional[ChatContext]:
    if not value:
        return None
    try:
        return ChatContext(value)
    except ValueError:
        logger.warning("unknown_chat_context", context=str(value))
        return None


def _fallback_reason(error: BaseException) -> str:
    if isinstance(error, ServiceDisabledError):
        return "disabled"
    if isinstance(error, OperationTimeoutError):
        return "timeout"
    if isinstance(error, ParseError):
        return "parse"
    if isinstance(error, NetworkError):
        return "network"
    return "error"


class PricingAdvisor:
    """Price analysis, market research and assistant replies.

    With no model configured the advisor runs permanently in fallback mode.
    """

    def __init__(self, model: Optional[PricingModel] = None, timeouts: Optional[AdvisorTimeouts] = None):
        self.model = model
        self.timeouts = timeouts or AdvisorTimeouts()

    @property
    def enabled(self) -> bool:
        return self.model is not None

    async def _invoke(self, operation: str, prompt: str, timeout: float) -> str:
        if self.model is None:
            raise ServiceDisabledError("No API key configured for the pricing model")
        result = await race_with_deadline(self.model.generate(prompt), timeout)
        if result.timed_out:
            raise OperationTimeoutError(
                f"{operation} exceeded {timeout}s", details={"operation": operation, "timeout": timeout}
            )
        return result.value

    def _fallback(self, operation: str, error: Exception, value):
        reason = _fallback_reason(error)
        PRICING_FALLBACKS.labels(operation=operation, reason=reason).inc()
        if reason == "disabled":
            logger.info("pricing_fallback_used", operation=operation, reason=reason)
        else:
            logger.warning("pricing_fallback_used", operation=operation, reason=reason, error=str(error))
        return value

    async def suggest_price(
        self,
        title: str,
        description: str,
        condition: Union[ItemCondition, str],
        category: Union[ItemCategory, str],
    ) -> PriceAnalysis:
        """Suggest a price for a listing. Never raises."""
        category = ItemCategory.parse(category)
        condition = ItemCondition.parse(condition)
        prompt = build_price_prompt(title, description, condition, category)
        try:
            text = await self._invoke("price_analysis", prompt, self.timeouts.price_analysis)
            analysis = parse_price_analysis(text)
        except Exception as e:
            return self._fallback("price_analysis", e, fallback_price_analysis(category, condition))
        logger.info(
            "price_analysis_completed",
            source=analysis.source.value,
            suggested_price=analysis.suggested_price,
        )
        return analysis

    async def market_research(
        self,
        category: Union[ItemCategory, str],
        price_range: Optional[Union[PriceRange, Tuple[float, float]]] = None,
    ) -> MarketInsights:
        """Category market insights. Never raises."""
        category = ItemCategory.parse(category)
        if isinstance(price_range, tuple):
            price_range = PriceRange(min=price_range[0], max=price_range[1])
        prompt = build_market_prompt(category, price_range)
        try:
            text = await self._invoke("market_research", prompt, self.timeouts.market_research)
            return parse_market_insights(text, category)
        except Exception as e:
            return self._fallback("market_research", e, fallback_market_insights(category))

    async def chat_reply(self, query: str, context: Optional[Union[ChatContext, str]] = None) -> str:
        """Assistant reply to a free-text question. Never raises.

        An unrecognised context is dropped and the query answered without one.
        """
        context = _resolve_context(context)
        try:
            text = await self._invoke("chat_reply", build_chat_prompt(query, context), self.timeouts.chat_reply)
            if not text or not text.strip():
                raise ParseError("Empty assistant reply")
            return text.strip()
        except Exception as e:
            return self._fallback("chat_reply", e, fallback_chat_reply(query, context))

    async def find_similar_items(self, item: str, category: Union[ItemCategory, str]) -> List[str]:
        """Up to seven related item names; empty when the model is unavailable."""
        category = ItemCategory.parse(category)
        prompt = (
            f'Given this item: "{item}" in the {category.value} category, suggest 5-7 similar '
            "items that college students might buy or sell. Return only a simple list of item "
            "names, one per line."
        )
        try:
            text = await self._invoke("similar_items", prompt, self.timeouts.chat_reply)
        except Exception as e:
            return self._fallback("similar_items", e, [])
        names = [_LIST_MARKER.sub("", line).strip() for line in text.splitlines()]
        return [name for name in names if name][:7]

    async def optimize_description(
        self, description: str, title: str, category: Union[ItemCategory, str]
    ) -> str:
        """Rewrite a listing description for student buyers; the original on any failure."""
        category = ItemCategory.parse(category)
        prompt = f"""Optimize this item description for a student marketplace.

Title: {title}
Category: {category.value}
Original Description: {description}

Make it appealing to college students, keep it concise and honest.
Return only the optimized description:"""
        try:
            text = await self._invoke("optimize_description", prompt, self.timeouts.chat_reply)
        except Exception as e:
            return self._fallback("optimize_description", e, description)
        return text.strip() or description

    @staticmethod
    def safety_tips(transaction_type: Union[TransactionType, str]) -> List[str]:
        try:
            transaction_type = TransactionType(transaction_type)
        except ValueError:
            raise ValidationError(
                f"Unknown transaction type: {transaction_type}",
                details={"allowed": [t.value for t in TransactionType]},
            ) from None
        return list(SAFETY_TIPS[transaction_type.value])

    @staticmethod
    def analyze_trends(items: Iterable[ItemSnapshot]) -> TrendSummary:
        """Listing counts and average prices per category."""
        counts = defaultdict(int)
        totals = defaultdict(float)
        for item in items:
            counts[item.category] += 1
            totals[item.category] += item.price
        return TrendSummary(
            category_counts=dict(counts),
            average_prices={category: round(totals[category] / counts[category], 2) for category in counts},
        )
