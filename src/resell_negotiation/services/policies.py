"""Declared best-effort policies.

These are the only writes whose failures are absorbed instead of surfaced.
"""

from typing import Any, Awaitable

import structlog

from ..metrics import BEST_EFFORT_FAILURES

logger = structlog.get_logger()

BEST_EFFORT_POLICIES = {
    "unread_increment": "Recipient unread counter bump after a message is stored",
    "notify": "Delivery of negotiation events to the notification sink",
    "mark_delivered": "Advancing messages to delivered when a reader connects",
}


async def best_effort(policy: str, awaitable: Awaitable[Any], **context: Any) -> bool:
    """Await under a declared policy: failures are logged and counted, never raised.

    Returns True when the operation succeeded.
    """
    if policy not in BEST_EFFORT_POLICIES:
        raise ValueError(f"Undeclared best-effort policy: {policy}")
    try:
        await awaitable
    except Exception as e:
        BEST_EFFORT_FAILURES.labels(policy=policy).inc()
        logger.warning("best_effort_failed", policy=policy, error=str(e), **context)
        return False
    return True
