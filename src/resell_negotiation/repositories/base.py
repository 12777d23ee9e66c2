"""Abstract document store interface."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from uuid import uuid4

CHATS = "chats"
OFFERS = "offers"
USERS = "users"
ITEMS = "items"


def messages_collection(chat_id: str) -> str:
    return f"{CHATS}/{chat_id}/messages"


@dataclass(frozen=True)
class Filter:
    """Single-field query predicate."""

    field: str
    op: str
    value: Any

    def matches(self, data: Dict[str, Any]) -> bool:
        current = data.get(self.field)
        if self.op == "==":
            return current == self.value
        if self.op == "!=":
            return self.field in data and current != self.value
        if self.op == "<=":
            return current is not None and current <= self.value
        if self.op == ">=":
            return current is not None and current >= self.value
        if self.op == "array_contains":
            return isinstance(current, (list, tuple)) and self.value in current
        raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass(frozen=True)
class Increment:
    """Field transform applied atomically by update()."""

    amount: int = 1


@dataclass
class Document:
    id: str
    data: Dict[str, Any] = field(default_factory=dict)


class WriteBatch(ABC):
    """Group of writes committed atomically."""

    def __init__(self) -> None:
        self._operations: List[tuple] = []

    def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> "WriteBatch":
        self._operations.append(("set", collection, doc_id, data))
        return self

    def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> "WriteBatch":
        self._operations.append(("update", collection, doc_id, fields))
        return self

    def delete(self, collection: str, doc_id: str) -> "WriteBatch":
        self._operations.append(("delete", collection, doc_id, None))
        return self

    def __len__(self) -> int:
        return len(self._operations)

    @abstractmethod
    async def commit(self) -> None:
        """Apply every queued write, or none of them."""
        pass


_CLOSED = object()


class Subscription:
    """Cold, cancellable stream of query snapshots.

    Nothing is registered with the store until the first snapshot is awaited;
    the current result set is delivered first, then one snapshot per change.
    The stream never ends on its own: call ``unsubscribe()`` (or leave the
    ``async with`` block) to stop delivery.
    """

    def __init__(
        self,
        register: Callable[["Subscription"], Awaitable[None]],
        unregister: Callable[["Subscription"], None],
        transform: Optional[Callable[[List[Document]], Any]] = None,
    ) -> None:
        self._register = register
        self._unregister = unregister
        self._transform = transform
        self._queue: asyncio.Queue = asyncio.Queue()
        self._started = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, snapshot: List[Document]) -> None:
        if not self._closed:
            self._queue.put_nowait(snapshot)

    def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._started:
            self._unregister(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        if self._closed:
            raise StopAsyncIteration
        if not self._started:
            self._started = True
            await self._register(self)
        snapshot = await self._queue.get()
        if snapshot is _CLOSED or self._closed:
            raise StopAsyncIteration
        return self._transform(snapshot) if self._transform else snapshot

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.unsubscribe()


class DocumentStore(ABC):
    """Abstract remote collection API.

    Partial ``update`` writes are last-write-wins per field. Missing documents
    raise NotFoundError on update; transport failures raise NetworkError.
    """

    def new_id(self) -> str:
        return uuid4().hex

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Fetch a document by id."""
        pass

    @abstractmethod
    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        """Insert a document under a generated id and return the id."""
        pass

    @abstractmethod
    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        """Create or replace a whole document."""
        pass

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        """Merge fields into an existing document."""
        pass

    @abstractmethod
    async def delete(self, collection: str, doc_id: str) -> None:
        """Remove a document if present."""
        pass

    @abstractmethod
    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        """Return documents matching every filter."""
        pass

    @abstractmethod
    def batch(self) -> WriteBatch:
        """Start an atomic write batch."""
        pass

    @abstractmethod
    def watch(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        transform: Optional[Callable[[List[Document]], Any]] = None,
    ) -> Subscription:
        """Live query: a subscription yielding the full result set on every change."""
        pass
