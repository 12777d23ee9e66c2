"""Pure offer rules shared by the ledger, the sweeper and the HTTP layer."""

import math
from datetime import datetime, timedelta
from numbers import Real

from .errors import ValidationError
from .models import Offer, OfferStatus

OFFER_LIFETIME = timedelta(hours=24)

# Advisory window relative to the listing price; offers outside it are logged, not rejected.
MIN_OFFER_RATIO = 0.1
MAX_OFFER_RATIO = 0.9

RESPONSES = (OfferStatus.ACCEPTED, OfferStatus.DECLINED, OfferStatus.COUNTERED)


def validate_amount(value, field: str = "amount") -> float:
    """Return value as a float, or raise ValidationError unless it is positive and finite."""
    if isinstance(value, bool) or not isinstance(value, Real):
        raise ValidationError(f"{field} must be a number", details={"field": field})
    amount = float(value)
    if not math.isfinite(amount) or amount <= 0:
        raise ValidationError(
            f"{field} must be a positive finite number",
            details={"field": field, "value": str(value)},
        )
    return amount


def is_expired(offer: Offer, now: datetime) -> bool:
    return now >= offer.expires_at


def time_remaining(offer: Offer, now: datetime) -> timedelta:
    return max(offer.expires_at - now, timedelta(0))


def within_recommended_range(amount: float, original_price: float) -> bool:
    if original_price <= 0:
        return True
    ratio = amount / original_price
    return MIN_OFFER_RATIO <= ratio <= MAX_OFFER_RATIO


def parse_response(value) -> OfferStatus:
    """Resolve a respond() argument to one of the allowed response statuses."""
    try:
        status = OfferStatus(value)
    except ValueError:
        raise ValidationError(f"Unknown offer response: {value}", details={"response": str(value)})
    if status not in RESPONSES:
        raise ValidationError(
            f"Response must be one of {[r.value for r in RESPONSES]}",
            details={"response": status.value},
        )
    return status
