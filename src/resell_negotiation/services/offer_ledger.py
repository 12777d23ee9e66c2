"""Offer lifecycle: create, respond, expire."""

import asyncio
from datetime import timedelta
from typing import Callable, List, Optional

import structlog

from ..domain.errors import InvalidStateError, NotFoundError, ValidationError
from ..domain.models import Chat, Offer, OfferStatus, format_price, utcnow
from ..domain.offers import (
    OFFER_LIFETIME,
    is_expired,
    parse_response,
    validate_amount,
    within_recommended_range,
)
from ..metrics import OFFERS_EXPIRED
from ..repositories.base import CHATS, OFFERS, DocumentStore, Filter
from .message_channel import MessageChannel
from .notifications import EventType, NegotiationEvent, NotificationSink, notify

logger = structlog.get_logger()

_RESPONSE_EVENTS = {
    OfferStatus.ACCEPTED: EventType.OFFER_ACCEPTED,
    OfferStatus.DECLINED: EventType.OFFER_DECLINED,
    OfferStatus.COUNTERED: EventType.OFFER_COUNTERED,
}


def offer_key(chat_id: str) -> str:
    """Work-queue key that serializes offer mutations within one chat."""
    return f"offers:{chat_id}"


class OfferLedger:
    """Tracks offers per chat; at most one offer per chat is pending at a time.

    Countering closes the original offer (status countered, amount set to the
    counter amount) and opens a new pending offer from the other party that
    links back through ``previous_offer_id``.
    """

    def __init__(
        self,
        store: DocumentStore,
        channel: MessageChannel,
        sink: Optional[NotificationSink] = None,
        clock: Callable = utcnow,
        lifetime: timedelta = OFFER_LIFETIME,
    ) -> None:
        self._store = store
        self._channel = channel
        self._sink = sink
        self._queue = channel.queue
        self._clock = clock
        self.lifetime = lifetime

    async def create_offer(
        self,
        chat_id: str,
        item_id: str,
        buyer_id: str,
        seller_id: str,
        amount: float,
        original_price: float,
        message: Optional[str] = None,
        proposed_by: Optional[str] = None,
    ) -> Offer:
        """Open a pending offer, superseding any offer still pending in the chat."""
        amount = validate_amount(amount)
        original_price = validate_amount(original_price, "original_price")
        proposer = proposed_by or buyer_id
        if proposer not in (buyer_id, seller_id):
            raise ValidationError("Offers can only be proposed by the buyer or the seller")
        return await self._queue.submit(
            offer_key(chat_id),
            self._open_offer,
            chat_id,
            item_id,
            buyer_id,
            seller_id,
            amount,
            original_price,
            message,
            proposer,
        )

    async def _open_offer(
        self,
        chat_id: str,
        item_id: str,
        buyer_id: str,
        seller_id: str,
        amount: float,
        original_price: float,
        message: Optional[str],
        proposer: str,
    ) -> Offer:
        chat = await self._load_chat(chat_id)
        if chat.role_of(buyer_id) != "buyer" or chat.role_of(seller_id) != "seller":
            raise ValidationError(
                "Offer parties do not match the chat",
                details={"chat_id": chat_id, "buyer_id": buyer_id, "seller_id": seller_id},
            )
        now = self._clock()
        prior = await self.pending_offers(chat_id)
        offer = Offer(
            id=self._store.new_id(),
            chat_id=chat_id,
            item_id=item_id,
            buyer_id=buyer_id,
            seller_id=seller_id,
            amount=amount,
            original_price=original_price,
            message=message,
            proposed_by=proposer,
            created_at=now,
            expires_at=now + self.lifetime,
            previous_offer_id=prior[-1].id if prior else None,
        )

        batch = self._store.batch()
        batch.set(OFFERS, offer.id, offer.model_dump())
        for stale in prior:
            closed = OfferStatus.EXPIRED if is_expired(stale, now) else OfferStatus.COUNTERED
            batch.update(
                OFFERS, stale.id, {"status": closed, "responded_at": now, "superseded_by": offer.id}
            )
        await batch.commit()

        await self._store.update(
            CHATS, chat_id, {"current_offer_amount": amount, "offer_status": OfferStatus.PENDING}
        )
        await self._channel.send_offer_message(
            chat_id, proposer, chat.name_of(proposer), amount, note=message or ""
        )
        await notify(
            self._sink,
            NegotiationEvent(
                type=EventType.NEW_OFFER,
                chat_id=chat_id,
                recipient_ids=[chat.other_participant(proposer)],
                payload={"offer_id": offer.id, "amount": amount},
            ),
        )
        if not within_recommended_range(amount, original_price):
            logger.info(
                "offer_outside_recommended_range",
                offer_id=offer.id,
                amount=amount,
                original_price=original_price,
            )
        logger.info("offer_created", offer_id=offer.id, chat_id=chat_id, amount=amount)
        return offer

    async def respond(
        self, offer_id: str, response: OfferStatus, counter_amount: Optional[float] = None
    ) -> Offer:
        """Accept, decline or counter a pending offer and return the updated offer.

        Late responses are rejected: a non-pending offer, or one whose expiry
        has passed, raises InvalidStateError and is left unchanged.
        """
        response = parse_response(response)
        if response == OfferStatus.COUNTERED:
            if counter_amount is None:
                raise ValidationError("counter_amount is required to counter an offer")
            counter_amount = validate_amount(counter_amount, "counter_amount")
        offer = await self._load_offer(offer_id)
        return await self._queue.submit(
            offer_key(offer.chat_id), self._apply_response, offer_id, response, counter_amount
        )

    async def _apply_response(
        self, offer_id: str, response: OfferStatus, counter_amount: Optional[float]
    ) -> Offer:
        offer = await self._load_offer(offer_id)
        now = self._clock()
        if offer.status == OfferStatus.PENDING and is_expired(offer, now):
            await self._expire(offer)
            raise InvalidStateError(
                f"Offer {offer_id} expired before it was answered",
                details={"offer_id": offer_id, "status": OfferStatus.EXPIRED.value},
            )
        if offer.status != OfferStatus.PENDING:
            raise InvalidStateError(
                f"Offer {offer_id} is already {offer.status.value}",
                details={"offer_id": offer_id, "status": offer.status.value},
            )

        changes = {"status": response, "responded_at": now}
        counter = None
        batch = self._store.batch()
        if response == OfferStatus.COUNTERED:
            counter = Offer(
                id=self._store.new_id(),
                chat_id=offer.chat_id,
                item_id=offer.item_id,
                buyer_id=offer.buyer_id,
                seller_id=offer.seller_id,
                amount=counter_amount,
                original_price=offer.original_price,
                proposed_by=offer.responder_id,
                created_at=now,
                expires_at=now + self.lifetime,
                previous_offer_id=offer.id,
            )
            changes.update(amount=counter_amount, superseded_by=counter.id)
            batch.set(OFFERS, counter.id, counter.model_dump())
        batch.update(OFFERS, offer_id, changes)
        await batch.commit()
        updated = offer.model_copy(update=changes)
        logger.info("offer_responded", offer_id=offer_id, response=response.value)

        chat = await self._find_chat(offer.chat_id)
        if chat is None:
            logger.warning("offer_chat_missing", offer_id=offer_id, chat_id=offer.chat_id)
            return updated

        responder = offer.responder_id
        if counter is not None:
            await self._store.update(
                CHATS,
                chat.id,
                {"current_offer_amount": counter.amount, "offer_status": OfferStatus.PENDING},
            )
            await self._channel.send_offer_message(
                chat.id,
                responder,
                chat.name_of(responder),
                counter.amount,
                note=f"Countered with {format_price(counter.amount)}",
            )
        else:
            await self._store.update(CHATS, chat.id, {"offer_status": response})
            await self._channel.send_system(
                chat.id,
                responder,
                chat.name_of(responder),
                f"Offer of {offer.formatted_amount} {response.value}",
            )
        payload = {"offer_id": offer_id, "amount": updated.amount}
        if counter is not None:
            payload["counter_offer_id"] = counter.id
        await notify(
            self._sink,
            NegotiationEvent(
                type=_RESPONSE_EVENTS[response],
                chat_id=chat.id,
                recipient_ids=[offer.proposed_by],
                payload=payload,
            ),
        )
        return updated

    async def get_offer(self, offer_id: str) -> Offer:
        """Fetch an offer, expiring it first if it is pending past its deadline."""
        offer = await self._load_offer(offer_id)
        if offer.status == OfferStatus.PENDING and is_expired(offer, self._clock()):
            expired = await self._queue.submit(offer_key(offer.chat_id), self._expire_if_stale, offer_id)
            return expired or await self._load_offer(offer_id)
        return offer

    async def offers_for_chat(self, chat_id: str) -> List[Offer]:
        documents = await self._store.query(OFFERS, [Filter("chat_id", "==", chat_id)], order_by="created_at")
        return [Offer.model_validate(doc.data) for doc in documents]

    async def pending_offers(self, chat_id: str) -> List[Offer]:
        documents = await self._store.query(
            OFFERS,
            [Filter("chat_id", "==", chat_id), Filter("status", "==", OfferStatus.PENDING)],
            order_by="created_at",
        )
        return [Offer.model_validate(doc.data) for doc in documents]

    async def pending_offer(self, chat_id: str) -> Optional[Offer]:
        pending = await self.pending_offers(chat_id)
        return pending[-1] if pending else None

    async def sweep_expired(self) -> List[Offer]:
        """Transition every pending offer past its expiry to expired. Returns the offers changed."""
        documents = await self._store.query(
            OFFERS,
            [Filter("status", "==", OfferStatus.PENDING), Filter("expires_at", "<=", self._clock())],
        )
        expired = []
        for doc in documents:
            offer = Offer.model_validate(doc.data)
            result = await self._queue.submit(offer_key(offer.chat_id), self._expire_if_stale, offer.id)
            if result is not None:
                expired.append(result)
        if expired:
            logger.info("offers_swept", count=len(expired))
        return expired

    async def _expire_if_stale(self, offer_id: str) -> Optional[Offer]:
        offer = await self._load_offer(offer_id)
        if offer.status != OfferStatus.PENDING or not is_expired(offer, self._clock()):
            return None
        return await self._expire(offer)

    async def _expire(self, offer: Offer) -> Offer:
        await self._store.update(OFFERS, offer.id, {"status": OfferStatus.EXPIRED})
        OFFERS_EXPIRED.inc()
        chat = await self._find_chat(offer.chat_id)
        if chat is not None:
            if chat.offer_status == OfferStatus.PENDING:
                await self._store.update(CHATS, chat.id, {"offer_status": OfferStatus.EXPIRED})
            await notify(
                self._sink,
                NegotiationEvent(
                    type=EventType.OFFER_EXPIRED,
                    chat_id=chat.id,
                    recipient_ids=[offer.buyer_id, offer.seller_id],
                    payload={"offer_id": offer.id, "amount": offer.amount},
                ),
            )
        logger.info("offer_expired", offer_id=offer.id, chat_id=offer.chat_id)
        return offer.model_copy(update={"status": OfferStatus.EXPIRED})

    async def _load_offer(self, offer_id: str) -> Offer:
        doc = await self._store.get(OFFERS, offer_id)
        if doc is None:
            raise NotFoundError("offer", offer_id)
        return Offer.model_validate(doc.data)

    async def _load_chat(self, chat_id: str) -> Chat:
        chat = await self._find_chat(chat_id)
        if chat is None:
            raise NotFoundError("chat", chat_id)
        return chat

    async def _find_chat(self, chat_id: str) -> Optional[Chat]:
        doc = await self._store.get(CHATS, chat_id)
        return Chat.model_validate(doc.data) if doc is not None else None


class OfferSweeper:
    """Background task that runs sweep_expired on an interval."""

    def __init__(self, ledger: OfferLedger, interval: float = 60.0) -> None:
        self.ledger = ledger
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            logger.info("offer_sweeper_started", interval=self.interval)

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("offer_sweeper_stopped")

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval)
                await self.ledger.sweep_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("offer_sweep_error", error=str(e))
