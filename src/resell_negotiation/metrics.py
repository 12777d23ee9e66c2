"""Prometheus counters for the negotiation service."""

from prometheus_client import CollectorRegistry, Counter

# Registry for isolated metric collection
CUSTOM_REGISTRY = CollectorRegistry()

REQUESTS = Counter("requests_total", "Total HTTP requests", registry=CUSTOM_REGISTRY)
ERRORS = Counter("errors_total", "Total HTTP requests that failed", registry=CUSTOM_REGISTRY)
PRICING_FALLBACKS = Counter(
    "pricing_fallbacks_total",
    "Advisor results served from the deterministic fallback path",
    ["operation", "reason"],
    registry=CUSTOM_REGISTRY,
)
BEST_EFFORT_FAILURES = Counter(
    "best_effort_failures_total",
    "Failures absorbed by a declared best-effort policy",
    ["policy"],
    registry=CUSTOM_REGISTRY,
)
OFFERS_EXPIRED = Counter(
    "offers_expired_total", "Pending offers transitioned to expired", registry=CUSTOM_REGISTRY
)
