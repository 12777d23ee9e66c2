"""In-memory document store with live queries."""

import asyncio
import copy
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import structlog

from ..domain.errors import NotFoundError
from .base import Document, DocumentStore, Filter, Increment, Subscription, WriteBatch

logger = structlog.get_logger()


@dataclass
class _Watch:
    collection: str
    filters: Sequence[Filter]
    order_by: Optional[str]
    descending: bool
    subscription: Subscription


class InMemoryWriteBatch(WriteBatch):
    """Write batch applied under the store lock."""

    def __init__(self, store: "InMemoryDocumentStore") -> None:
        super().__init__()
        self._store = store

    async def commit(self) -> None:
        await self._store._commit(self._operations)


class InMemoryDocumentStore(DocumentStore):
    """Async-safe in-memory document store.

    Every operation yields to the event loop (optionally sleeping ``latency``
    seconds) so it behaves like a network round-trip.
    """

    def __init__(self, latency: float = 0.0) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._watches: List[_Watch] = []
        self._lock = asyncio.Lock()
        self.latency = latency
        logger.info("document_store_initialized", backend="memory")

    async def _round_trip(self) -> None:
        await asyncio.sleep(self.latency)

    def _docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    async def get(self, collection: str, doc_id: str) -> Optional[Document]:
        await self._round_trip()
        async with self._lock:
            data = self._docs(collection).get(doc_id)
            return Document(doc_id, copy.deepcopy(data)) if data is not None else None

    async def add(self, collection: str, data: Dict[str, Any]) -> str:
        doc_id = self.new_id()
        await self.set(collection, doc_id, data)
        return doc_id

    async def set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        await self._round_trip()
        async with self._lock:
            self._apply_set(collection, doc_id, data)
            self._notify({collection})

    async def update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        await self._round_trip()
        async with self._lock:
            if doc_id not in self._docs(collection):
                raise NotFoundError(collection, doc_id)
            self._apply_update(collection, doc_id, fields)
            self._notify({collection})

    async def delete(self, collection: str, doc_id: str) -> None:
        await self._round_trip()
        async with self._lock:
            if self._docs(collection).pop(doc_id, None) is not None:
                self._notify({collection})

    async def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Document]:
        await self._round_trip()
        async with self._lock:
            results = self._select(collection, filters, order_by, descending)
        return results[:limit] if limit is not None else results

    def batch(self) -> WriteBatch:
        return InMemoryWriteBatch(self)

    def watch(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order_by: Optional[str] = None,
        descending: bool = False,
        transform: Optional[Callable[[List[Document]], Any]] = None,
    ) -> Subscription:
        watch: Dict[str, _Watch] = {}

        async def register(subscription: Subscription) -> None:
            await self._round_trip()
            async with self._lock:
                # Unsubscribed during the round trip; nothing left to unregister it.
                if subscription.closed:
                    return
                entry = _Watch(collection, tuple(filters), order_by, descending, subscription)
                watch["entry"] = entry
                self._watches.append(entry)
                subscription.push(self._select(collection, filters, order_by, descending))
            logger.debug("watch_registered", collection=collection)

        def unregister(subscription: Subscription) -> None:
            entry = watch.pop("entry", None)
            if entry in self._watches:
                self._watches.remove(entry)
                logger.debug("watch_removed", collection=collection)

        return Subscription(register, unregister, transform)

    @property
    def active_watches(self) -> int:
        return len(self._watches)

    async def _commit(self, operations: List[tuple]) -> None:
        await self._round_trip()
        async with self._lock:
            for kind, collection, doc_id, _ in operations:
                if kind == "update" and doc_id not in self._docs(collection):
                    raise NotFoundError(collection, doc_id)
            touched = set()
            for kind, collection, doc_id, payload in operations:
                if kind == "set":
                    self._apply_set(collection, doc_id, payload)
                elif kind == "update":
                    self._apply_update(collection, doc_id, payload)
                else:
                    self._docs(collection).pop(doc_id, None)
                touched.add(collection)
            self._notify(touched)

    def _apply_set(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        stored = copy.deepcopy(data)
        stored["id"] = doc_id
        self._docs(collection)[doc_id] = stored

    def _apply_update(self, collection: str, doc_id: str, fields: Dict[str, Any]) -> None:
        stored = self._docs(collection)[doc_id]
        for name, value in fields.items():
            if isinstance(value, Increment):
                stored[name] = (stored.get(name) or 0) + value.amount
            else:
                stored[name] = copy.deepcopy(value)

    def _select(
        self,
        collection: str,
        filters: Iterable[Filter],
        order_by: Optional[str],
        descending: bool,
    ) -> List[Document]:
        filters = list(filters)
        results = [
            Document(doc_id, copy.deepcopy(data))
            for doc_id, data in self._docs(collection).items()
            if all(f.matches(data) for f in filters)
        ]
        if order_by:
            results.sort(key=lambda doc: doc.data.get(order_by), reverse=descending)
        return results

    def _notify(self, collections: Iterable[str]) -> None:
        changed = set(collections)
        for entry in list(self._watches):
            if entry.collection in changed:
                entry.subscription.push(
                    self._select(entry.collection, entry.filters, entry.order_by, entry.descending)
                )
