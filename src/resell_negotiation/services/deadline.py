"""Race an awaitable against a deadline."""

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Optional, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class DeadlineResult(Generic[T]):
    """Tagged outcome of race_with_deadline: completed with a value, or timed out."""

    completed: bool
    value: Optional[T] = None
    elapsed: float = 0.0

    @property
    def timed_out(self) -> bool:
        return not self.completed


def _discard_straggler(task: asyncio.Future) -> None:
    # Late results are dropped here; nothing downstream ever sees them.
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.debug("straggler_failed", error=str(error))
    else:
        logger.debug("straggler_result_discarded")


async def race_with_deadline(awaitable: Awaitable[T], timeout: float) -> DeadlineResult[T]:
    """Run awaitable until it finishes or timeout seconds pass, whichever is first.

    On timeout the task is cancelled and its eventual outcome discarded. If
    the awaitable raises before the deadline, the exception propagates.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=max(timeout, 0))
    except asyncio.CancelledError:
        task.cancel()
        raise
    elapsed = loop.time() - started
    if task in done:
        return DeadlineResult(completed=True, value=task.result(), elapsed=elapsed)
    task.cancel()
    task.add_done_callback(_discard_straggler)
    logger.warning("deadline_exceeded", timeout=timeout, elapsed=round(elapsed, 3))
    return DeadlineResult(completed=False, elapsed=elapsed)
