"""Chat creation, deduplication and summary queries."""

from typing import Callable, List, Optional

import structlog

from ..domain.errors import NetworkError, NotFoundError, ValidationError
from ..domain.models import Chat, utcnow
from ..repositories.base import CHATS, Document, DocumentStore, Filter, Subscription, messages_collection
from .message_channel import MessageChannel, message_key

logger = structlog.get_logger()

SEED_MESSAGE = "Hi! I'm interested in your {item_title}."
CHATS_PAGE_SIZE = 30
MAX_TITLE_LENGTH = 100


def _active_chats_newest_first(documents: List[Document]) -> List[Chat]:
    chats = [Chat.model_validate(doc.data) for doc in documents]
    chats = [chat for chat in chats if chat.is_active]
    return sorted(chats, key=lambda c: c.last_message_timestamp, reverse=True)


class ChatRegistry:
    """Owns chat documents: at most one chat per (item, buyer, seller)."""

    def __init__(
        self,
        store: DocumentStore,
        channel: MessageChannel,
        clock: Callable = utcnow,
    ) -> None:
        self._store = store
        self._channel = channel
        self._queue = channel.queue
        self._clock = clock

    async def create_or_get_chat(
        self,
        item_id: str,
        item_title: str,
        item_price: float,
        buyer_id: str,
        buyer_name: str,
        seller_id: str,
        seller_name: str,
        item_image_ref: Optional[str] = None,
    ) -> str:
        """Return the chat for this buyer, seller and item, creating and seeding it if needed.

        A failed seed message does not undo chat creation; the chat stays
        visible and the caller can send again.
        """
        if not item_id or not buyer_id or not seller_id:
            raise ValidationError("item_id, buyer_id and seller_id are required")
        if buyer_id == seller_id:
            raise ValidationError("Cannot start a chat with yourself", details={"user_id": buyer_id})
        if not item_title or len(item_title) > MAX_TITLE_LENGTH:
            raise ValidationError(
                f"item_title must be 1-{MAX_TITLE_LENGTH} characters",
                details={"length": len(item_title or "")},
            )
        return await self._queue.submit(
            f"chat:{item_id}:{buyer_id}:{seller_id}",
            self._find_or_create,
            item_id,
            item_title,
            item_price,
            buyer_id,
            buyer_name,
            seller_id,
            seller_name,
            item_image_ref,
        )

    async def _find_or_create(
        self,
        item_id: str,
        item_title: str,
        item_price: float,
        buyer_id: str,
        buyer_name: str,
        seller_id: str,
        seller_name: str,
        item_image_ref: Optional[str],
    ) -> str:
        existing = await self.find_existing_chat(item_id, buyer_id, seller_id)
        if existing is not None:
            if not existing.is_active:
                await self._store.update(CHATS, existing.id, {"is_active": True})
                logger.info("chat_reactivated", chat_id=existing.id)
            return existing.id

        now = self._clock()
        chat = Chat(
            item_id=item_id,
            item_title=item_title,
            item_price=item_price,
            item_image_ref=item_image_ref,
            buyer_id=buyer_id,
            buyer_name=buyer_name,
            seller_id=seller_id,
            seller_name=seller_name,
            last_message_timestamp=now,
            created_at=now,
        )
        chat_id = await self._store.add(CHATS, chat.model_dump(exclude={"id"}))
        logger.info("chat_created", chat_id=chat_id, item_id=item_id)

        try:
            await self._channel.send_text(
                chat_id, buyer_id, buyer_name, SEED_MESSAGE.format(item_title=item_title)
            )
        except NetworkError as e:
            logger.warning("seed_message_failed", chat_id=chat_id, error=str(e))
        return chat_id

    async def find_existing_chat(self, item_id: str, buyer_id: str, seller_id: str) -> Optional[Chat]:
        documents = await self._store.query(
            CHATS,
            [
                Filter("item_id", "==", item_id),
                Filter("buyer_id", "==", buyer_id),
                Filter("seller_id", "==", seller_id),
            ],
            order_by="created_at",
        )
        return Chat.model_validate(documents[0].data) if documents else None

    async def find_chat(self, chat_id: str) -> Optional[Chat]:
        doc = await self._store.get(CHATS, chat_id)
        return Chat.model_validate(doc.data) if doc is not None else None

    async def get_chat(self, chat_id: str) -> Chat:
        chat = await self.find_chat(chat_id)
        if chat is None:
            raise NotFoundError("chat", chat_id)
        return chat

    async def list_chats(
        self, viewer_id: str, include_archived: bool = False, limit: Optional[int] = CHATS_PAGE_SIZE
    ) -> List[Chat]:
        """Chats the viewer takes part in, most recent activity first."""
        documents = await self._store.query(
            CHATS,
            [Filter("participant_ids", "array_contains", viewer_id)],
            order_by="last_message_timestamp",
            descending=True,
        )
        chats = [Chat.model_validate(doc.data) for doc in documents]
        if not include_archived:
            chats = [chat for chat in chats if chat.is_active]
        return chats[:limit]

    def observe_chats(self, viewer_id: str) -> Subscription:
        """Live list of the viewer's active chats, most recent activity first."""
        return self._store.watch(
            CHATS,
            [Filter("participant_ids", "array_contains", viewer_id)],
            order_by="last_message_timestamp",
            descending=True,
            transform=_active_chats_newest_first,
        )

    async def chat_for_item(self, viewer_id: str, item_id: str) -> Optional[Chat]:
        for chat in await self.list_chats(viewer_id):
            if chat.item_id == item_id:
                return chat
        return None

    async def archive(self, chat_id: str) -> None:
        """Hide a chat without deleting anything."""
        await self._store.update(CHATS, chat_id, {"is_active": False})
        logger.info("chat_archived", chat_id=chat_id)

    async def delete(self, chat_id: str) -> int:
        """Delete a chat and all of its messages. Offers that referenced it are left as they are.

        Returns the number of messages removed.
        """
        return await self._queue.submit(message_key(chat_id), self._delete, chat_id)

    async def _delete(self, chat_id: str) -> int:
        await self.get_chat(chat_id)
        collection = messages_collection(chat_id)
        messages = await self._store.query(collection)
        batch = self._store.batch()
        for doc in messages:
            batch.delete(collection, doc.id)
        batch.delete(CHATS, chat_id)
        await batch.commit()
        logger.info("chat_deleted", chat_id=chat_id, messages_deleted=len(messages))
        return len(messages)

    async def unread_total(self, viewer_id: str) -> int:
        """Unread messages across the viewer's active chats."""
        chats = await self.list_chats(viewer_id, limit=None)
        return sum(chat.unread_count_for(viewer_id) for chat in chats)
