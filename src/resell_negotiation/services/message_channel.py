"""Ordered, live-updating chat messages."""

from typing import Callable, List, Optional

import structlog

from ..domain.errors import InvalidStateError, NotFoundError, ValidationError
from ..domain.models import Chat, Message, MessageStatus, MessageType, format_price, utcnow
from ..domain.offers import validate_amount
from ..repositories.base import (
    CHATS,
    Document,
    DocumentStore,
    Filter,
    Increment,
    Subscription,
    messages_collection,
)
from .notifications import EventType, NegotiationEvent, NotificationSink, notify
from .policies import best_effort
from .work_queue import KeyedWorkQueue

logger = structlog.get_logger()

MAX_MESSAGE_LENGTH = 500
MESSAGES_PAGE_SIZE = 50


def message_key(chat_id: str) -> str:
    """Work-queue key that serializes writes to one chat's message stream."""
    return f"messages:{chat_id}"


def sort_messages(documents: List[Document]) -> List[Message]:
    messages = [Message.model_validate(doc.data) for doc in documents]
    return sorted(messages, key=lambda m: m.timestamp)


class MessageChannel:
    """Appends messages to chats and keeps the chat summary in step."""

    def __init__(
        self,
        store: DocumentStore,
        sink: Optional[NotificationSink] = None,
        queue: Optional[KeyedWorkQueue] = None,
        clock: Callable = utcnow,
    ) -> None:
        self._store = store
        self._sink = sink
        self._queue = queue or KeyedWorkQueue("messages")
        self._clock = clock

    @property
    def queue(self) -> KeyedWorkQueue:
        return self._queue

    async def send(
        self,
        chat_id: str,
        sender_id: str,
        sender_name: str,
        content: str,
        type: MessageType = MessageType.TEXT,
        offer_amount: Optional[float] = None,
        image_ref: Optional[str] = None,
    ) -> Message:
        """Append a message and update the parent chat's last-message summary.

        The message write always happens before the summary write, so a chat
        never previews a message that is not stored yet.
        """
        type = MessageType(type)
        content = self._validate_content(content)
        if type == MessageType.OFFER:
            offer_amount = validate_amount(offer_amount, "offer_amount")
        if type == MessageType.IMAGE and not image_ref:
            raise ValidationError("Image messages require an image reference")
        return await self._queue.submit(
            message_key(chat_id),
            self._append,
            chat_id,
            sender_id,
            sender_name,
            content,
            type,
            offer_amount,
            image_ref,
        )

    async def send_text(self, chat_id: str, sender_id: str, sender_name: str, content: str) -> Message:
        return await self.send(chat_id, sender_id, sender_name, content)

    async def send_offer_message(
        self, chat_id: str, sender_id: str, sender_name: str, amount: float, note: str = ""
    ) -> Message:
        content = note or f"Made an offer of {format_price(amount)}"
        return await self.send(
            chat_id, sender_id, sender_name, content, MessageType.OFFER, offer_amount=amount
        )

    async def send_image(self, chat_id: str, sender_id: str, sender_name: str, image_ref: str) -> Message:
        return await self.send(
            chat_id, sender_id, sender_name, "Sent an image", MessageType.IMAGE, image_ref=image_ref
        )

    async def send_system(self, chat_id: str, sender_id: str, sender_name: str, content: str) -> Message:
        return await self.send(chat_id, sender_id, sender_name, content, MessageType.SYSTEM)

    async def _append(
        self,
        chat_id: str,
        sender_id: str,
        sender_name: str,
        content: str,
        type: MessageType,
        offer_amount: Optional[float],
        image_ref: Optional[str],
    ) -> Message:
        chat = await self._load_chat(chat_id)
        if chat.role_of(sender_id) is None:
            raise ValidationError(
                f"{sender_id} is not a participant of chat {chat_id}",
                details={"chat_id": chat_id, "sender_id": sender_id},
            )

        collection = messages_collection(chat_id)
        timestamp = self._clock()
        latest = await self._store.query(collection, order_by="timestamp", descending=True, limit=1)
        if latest and latest[0].data["timestamp"] > timestamp:
            timestamp = latest[0].data["timestamp"]

        message = Message(
            chat_id=chat_id,
            sender_id=sender_id,
            sender_name=sender_name,
            content=content,
            type=type,
            timestamp=timestamp,
            image_ref=image_ref,
            offer_amount=offer_amount,
        )
        message_id = await self._store.add(collection, message.model_dump(exclude={"id"}))
        message = message.model_copy(update={"id": message_id})

        await self._store.update(
            CHATS,
            chat_id,
            {
                "last_message_preview": content,
                "last_message_timestamp": timestamp,
                "last_message_sender_id": sender_id,
            },
        )

        recipient_id = chat.other_participant(sender_id)
        await best_effort(
            "unread_increment",
            self._store.update(CHATS, chat_id, {chat.unread_field_for(recipient_id): Increment(1)}),
            chat_id=chat_id,
        )
        await notify(
            self._sink,
            NegotiationEvent(
                type=EventType.NEW_MESSAGE,
                chat_id=chat_id,
                recipient_ids=[recipient_id],
                payload={"message_id": message_id, "sender_id": sender_id, "type": type.value},
            ),
        )
        logger.info(
            "message_sent",
            chat_id=chat_id,
            message_id=message_id,
            message_type=type.value,
        )
        return message

    def observe(self, chat_id: str) -> Subscription:
        """Live message list for a chat, re-sorted by timestamp on every change."""
        return self._store.watch(
            messages_collection(chat_id), order_by="timestamp", transform=sort_messages
        )

    async def messages(self, chat_id: str, limit: int = MESSAGES_PAGE_SIZE, offset: int = 0) -> List[Message]:
        """Get a page of messages in timestamp order."""
        await self._load_chat(chat_id)
        documents = await self._store.query(messages_collection(chat_id), order_by="timestamp")
        return sort_messages(documents)[offset : offset + limit]

    async def mark_read(self, chat_id: str, reader_id: str) -> int:
        """Mark every message not sent by reader_id as read and clear the reader's unread count.

        Idempotent. Returns how many messages changed status.
        """
        return await self._queue.submit(message_key(chat_id), self._mark_read, chat_id, reader_id)

    async def _mark_read(self, chat_id: str, reader_id: str) -> int:
        chat = await self._load_chat(chat_id)
        unread_field = self._participant_field(chat, reader_id)
        collection = messages_collection(chat_id)
        unread = await self._store.query(
            collection,
            [Filter("sender_id", "!=", reader_id), Filter("status", "!=", MessageStatus.READ)],
        )
        batch = self._store.batch()
        for doc in unread:
            batch.update(collection, doc.id, {"status": MessageStatus.READ})
        batch.update(CHATS, chat_id, {unread_field: 0})
        await batch.commit()
        logger.info("messages_marked_read", chat_id=chat_id, reader_id=reader_id, count=len(unread))
        return len(unread)

    async def mark_delivered(self, chat_id: str, recipient_id: str) -> int:
        """Advance sent messages addressed to recipient_id to delivered."""
        return await self._queue.submit(
            message_key(chat_id), self._mark_delivered, chat_id, recipient_id
        )

    async def _mark_delivered(self, chat_id: str, recipient_id: str) -> int:
        chat = await self._load_chat(chat_id)
        self._participant_field(chat, recipient_id)
        collection = messages_collection(chat_id)
        sent = await self._store.query(
            collection,
            [Filter("sender_id", "!=", recipient_id), Filter("status", "==", MessageStatus.SENT)],
        )
        if not sent:
            return 0
        batch = self._store.batch()
        for doc in sent:
            batch.update(collection, doc.id, {"status": MessageStatus.DELIVERED})
        await batch.commit()
        return len(sent)

    async def advance_status(self, chat_id: str, message_id: str, status: MessageStatus) -> Message:
        """Move a single message forward along sent -> delivered -> read."""
        status = MessageStatus(status)
        return await self._queue.submit(
            message_key(chat_id), self._advance_status, chat_id, message_id, status
        )

    async def _advance_status(self, chat_id: str, message_id: str, status: MessageStatus) -> Message:
        message = await self._load_message(chat_id, message_id)
        if status.rank < message.status.rank:
            raise InvalidStateError(
                f"Message status cannot move from {message.status.value} to {status.value}",
                details={"message_id": message_id},
            )
        if status != message.status:
            await self._store.update(messages_collection(chat_id), message_id, {"status": status})
        return message.model_copy(update={"status": status})

    async def edit(self, chat_id: str, message_id: str, editor_id: str, content: str) -> Message:
        """Replace the text of a message; only its sender may edit, and only text messages."""
        content = self._validate_content(content)
        return await self._queue.submit(
            message_key(chat_id), self._edit, chat_id, message_id, editor_id, content
        )

    async def _edit(self, chat_id: str, message_id: str, editor_id: str, content: str) -> Message:
        message = await self._load_message(chat_id, message_id)
        if message.sender_id != editor_id:
            raise ValidationError("Only the sender can edit a message", details={"message_id": message_id})
        if message.type != MessageType.TEXT:
            raise InvalidStateError(
                f"{message.type.value} messages cannot be edited", details={"message_id": message_id}
            )
        changes = {"content": content, "is_edited": True, "edited_at": self._clock()}
        await self._store.update(messages_collection(chat_id), message_id, changes)
        logger.info("message_edited", chat_id=chat_id, message_id=message_id)
        return message.model_copy(update=changes)

    async def _load_chat(self, chat_id: str) -> Chat:
        doc = await self._store.get(CHATS, chat_id)
        if doc is None:
            raise NotFoundError("chat", chat_id)
        return Chat.model_validate(doc.data)

    async def _load_message(self, chat_id: str, message_id: str) -> Message:
        doc = await self._store.get(messages_collection(chat_id), message_id)
        if doc is None:
            raise NotFoundError("message", message_id)
        return Message.model_validate(doc.data)

    @staticmethod
    def _participant_field(chat: Chat, viewer_id: str) -> str:
        field = chat.unread_field_for(viewer_id)
        if field is None:
            raise ValidationError(
                f"{viewer_id} is not a participant of chat {chat.id}",
                details={"chat_id": chat.id, "viewer_id": viewer_id},
            )
        return field

    @staticmethod
    def _validate_content(content: str) -> str:
        text = (content or "").strip()
        if not text:
            raise ValidationError("Message content cannot be empty")
        if len(text) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                f"Message content exceeds {MAX_MESSAGE_LENGTH} characters",
                details={"length": len(text)},
            )
        return text
