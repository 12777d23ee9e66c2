"""Per-key serialization of async mutations."""

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict

import structlog

logger = structlog.get_logger()


@dataclass
class QueuedTask:
    """A submitted coroutine function with its arguments and result future."""

    key: str
    task: Callable[..., Awaitable[Any]]
    args: tuple
    kwargs: dict
    future: asyncio.Future


class KeyedWorkQueue:
    """Runs submitted tasks one at a time per key, in submission order.

    Tasks under different keys run concurrently. A task must not submit to
    its own key, or it will wait on itself.
    """

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self._queues: Dict[str, Deque[QueuedTask]] = {}
        self._workers: Dict[str, asyncio.Task] = {}

    def pending(self, key: str) -> int:
        return len(self._queues.get(key, ()))

    @property
    def active_keys(self) -> int:
        return len(self._workers)

    async def submit(
        self,
        key: str,
        task: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any
    ) -> Any:
        """Enqueue a task under key and wait for its result."""
        loop = asyncio.get_running_loop()
        future = loop.create_future()
        self._queues.setdefault(key, deque()).append(
            QueuedTask(key=key, task=task, args=args, kwargs=kwargs, future=future)
        )
        if key not in self._workers:
            self._workers[key] = loop.create_task(self._drain(key))
        return await future

    async def _drain(self, key: str) -> None:
        queue = self._queues[key]
        try:
            while queue:
                request = queue.popleft()
                if request.future.done():
                    continue
                try:
                    result = await request.task(*request.args, **request.kwargs)
                except asyncio.CancelledError:
                    request.future.cancel()
                    raise
                except Exception as e:
                    logger.debug("queued_task_failed", queue=self.name, key=key, error=str(e))
                    if not request.future.done():
                        request.future.set_exception(e)
                else:
                    if not request.future.done():
                        request.future.set_result(result)
        except asyncio.CancelledError:
            logger.info("work_queue_cancelled", queue=self.name, key=key)
            while queue:
                queue.popleft().future.cancel()
        finally:
            self._queues.pop(key, None)
            self._workers.pop(key, None)

    async def cleanup(self) -> None:
        """Cancel all workers and drop queued tasks."""
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)
        logger.info("work_queue_cleaned_up", queue=self.name)
