"""Test suite for the offer lifecycle."""

import asyncio
import math
from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from resell_negotiation.domain.errors import InvalidStateError, NotFoundError, ValidationError
from resell_negotiation.domain.models import MessageType, OfferStatus
from resell_negotiation.domain.offers import is_expired, time_remaining, within_recommended_range
from resell_negotiation.metrics import CUSTOM_REGISTRY
from resell_negotiation.services.notifications import EventType
from resell_negotiation.services.offer_ledger import OfferSweeper

BUYER = "buyer-1"
SELLER = "seller-1"


def _expired_total() -> float:
    return CUSTOM_REGISTRY.get_sample_value("offers_expired_total") or 0.0


async def _offer(ledger, chat_id, amount=80.0, proposed_by=None):
    return await ledger.create_offer(chat_id, "item-1", BUYER, SELLER, amount, 100.0, proposed_by=proposed_by)


@pytest.mark.asyncio
async def test_create_offer(ledger, registry, channel, sink, clock, open_chat):
    chat_id = await open_chat()
    offer = await _offer(ledger, chat_id)

    assert offer.status == OfferStatus.PENDING
    assert offer.proposed_by == BUYER
    assert offer.expires_at == clock.now + timedelta(hours=24)
    assert offer.formatted_amount == "$80.00"
    assert offer.discount_percentage == 20
    assert (await ledger.get_offer(offer.id)).amount == 80.0

    chat = await registry.get_chat(chat_id)
    assert chat.current_offer_amount == 80.0
    assert chat.offer_status == OfferStatus.PENDING

    last = (await channel.messages(chat_id))[-1]
    assert last.type == MessageType.OFFER
    assert last.offer_amount == 80.0
    assert last.content == "Made an offer of $80.00"

    assert sink.of_type(EventType.NEW_OFFER)[-1].recipient_ids == [SELLER]


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, math.nan, math.inf, True, "80"])
async def test_create_offer_rejects_bad_amounts(ledger, open_chat, amount):
    chat_id = await open_chat()
    with pytest.raises(ValidationError):
        await _offer(ledger, chat_id, amount=amount)
    assert await ledger.offers_for_chat(chat_id) == []


@pytest.mark.asyncio
async def test_create_offer_checks_parties(ledger, open_chat):
    chat_id = await open_chat()
    with pytest.raises(ValidationError):
        await _offer(ledger, chat_id, proposed_by="stranger")
    with pytest.raises(ValidationError):
        await ledger.create_offer(chat_id, "item-1", "buyer-2", SELLER, 50.0, 100.0)
    with pytest.raises(NotFoundError):
        await ledger.create_offer("missing", "item-1", BUYER, SELLER, 50.0, 100.0)


@pytest.mark.asyncio
async def test_counter_closes_original_and_opens_linked_offer(ledger, registry, channel, sink, open_chat):
    chat_id = await open_chat()
    original = await _offer(ledger, chat_id, amount=80.0)

    countered = await ledger.respond(original.id, OfferStatus.COUNTERED, counter_amount=90.0)

    assert countered.status == OfferStatus.COUNTERED
    assert countered.amount == 90.0
    assert countered.responded_at is not None
    assert countered.superseded_by

    follow_up = await ledger.get_offer(countered.superseded_by)
    assert follow_up.status == OfferStatus.PENDING
    assert follow_up.amount == 90.0
    assert follow_up.proposed_by == SELLER
    assert follow_up.responder_id == BUYER
    assert follow_up.previous_offer_id == original.id
    assert (await ledger.pending_offer(chat_id)).id == follow_up.id

    chat = await registry.get_chat(chat_id)
    assert chat.current_offer_amount == 90.0
    assert chat.offer_status == OfferStatus.PENDING

    last = (await channel.messages(chat_id))[-1]
    assert last.sender_id == SELLER
    assert last.content == "Countered with $90.00"
    assert sink.of_type(EventType.OFFER_COUNTERED)[-1].recipient_ids == [BUYER]

    accepted = await ledger.respond(follow_up.id, "accepted")
    assert accepted.status == OfferStatus.ACCEPTED
    assert (await registry.get_chat(chat_id)).offer_status == OfferStatus.ACCEPTED


@pytest.mark.asyncio
async def test_accept_and_decline_post_system_messages(ledger, registry, channel, sink, open_chat):
    chat_id = await open_chat()
    offer = await _offer(ledger, chat_id)
    await ledger.respond(offer.id, OfferStatus.ACCEPTED)

    last = (await channel.messages(chat_id))[-1]
    assert last.type == MessageType.SYSTEM
    assert last.sender_id == SELLER
    assert last.content == "Offer of $80.00 accepted"
    assert sink.of_type(EventType.OFFER_ACCEPTED)[-1].recipient_ids == [BUYER]

    second = await _offer(ledger, chat_id, amount=70.0)
    await ledger.respond(second.id, "declined")
    assert (await channel.messages(chat_id))[-1].content == "Offer of $70.00 declined"
    assert (await registry.get_chat(chat_id)).offer_status == OfferStatus.DECLINED


@pytest.mark.asyncio
async def test_respond_to_terminal_offer_fails_without_mutation(ledger, open_chat):
    chat_id = await open_chat()
    offer = await _offer(ledger, chat_id)
    accepted = await ledger.respond(offer.id, OfferStatus.ACCEPTED)

    for response in (OfferStatus.DECLINED, OfferStatus.ACCEPTED):
        with pytest.raises(InvalidStateError):
            await ledger.respond(offer.id, response)
    with pytest.raises(InvalidStateError):
        await ledger.respond(offer.id, OfferStatus.COUNTERED, counter_amount=95.0)

    stored = await ledger.get_offer(offer.id)
    assert stored.status == OfferStatus.ACCEPTED
    assert stored.amount == 80.0
    assert stored.responded_at == accepted.responded_at


@pytest.mark.asyncio
async def test_respond_validation(ledger, open_chat):
    chat_id = await open_chat()
    offer = await _offer(ledger, chat_id)
    with pytest.raises(ValidationError):
        await ledger.respond(offer.id, OfferStatus.COUNTERED)
    with pytest.raises(ValidationError):
        await ledger.respond(offer.id, OfferStatus.COUNTERED, counter_amount=-1)
    with pytest.raises(ValidationError):
        await ledger.respond(offer.id, "pending")
    with pytest.raises(ValidationError):
        await ledger.respond(offer.id, "maybe")
    with pytest.raises(NotFoundError):
        await ledger.respond("missing", OfferStatus.ACCEPTED)
    assert (await ledger.get_offer(offer.id)).status == OfferStatus.PENDING


@pytest.mark.asyncio
async def test_new_offer_supersedes_pending_one(ledger, open_chat):
    chat_id = await open_chat()
    first = await _offer(ledger, chat_id, amount=60.0)
    second = await _offer(ledger, chat_id, amount=75.0)

    first = await ledger.get_offer(first.id)
    assert first.status == OfferStatus.COUNTERED
    assert first.superseded_by == second.id
    assert second.previous_offer_id == first.id
    assert [o.id for o in await ledger.pending_offers(chat_id)] == [second.id]


@pytest.mark.asyncio
async def test_concurrent_offers_leave_one_pending(ledger, open_chat):
    chat_id = await open_chat()
    await asyncio.gather(*[_offer(ledger, chat_id, amount=50.0 + i) for i in range(5)])

    pending = await ledger.pending_offers(chat_id)
    assert len(pending) == 1
    assert len(await ledger.offers_for_chat(chat_id)) == 5


@pytest.mark.asyncio
async def test_expired_offer_cannot_be_answered(ledger, registry, clock, open_chat):
    chat_id = await open_chat()
    offer = await _offer(ledger, chat_id)

    clock.advance(hours=24)
    assert is_expired(offer, clock.now)
    assert time_remaining(offer, clock.now) == timedelta(0)

    with pytest.raises(InvalidStateError):
        await ledger.respond(offer.id, OfferStatus.ACCEPTED)
    assert (await ledger.get_offer(offer.id)).status == OfferStatus.EXPIRED
    assert (await registry.get_chat(chat_id)).offer_status == OfferStatus.EXPIRED


@pytest.mark.asyncio
async def test_sweep_expires_exactly_once(ledger, sink, clock, open_chat):
    chat_id = await open_chat()
    stale = await _offer(ledger, chat_id)
    other_chat = await open_chat("item-2")
    clock.advance(hours=23)
    fresh = await ledger.create_offer(other_chat, "item-2", BUYER, SELLER, 40.0, 50.0)
    assert time_remaining(fresh, clock.now) == timedelta(hours=24)

    clock.advance(hours=2)
    before = _expired_total()
    swept = await ledger.sweep_expired()
    assert [o.id for o in swept] == [stale.id]
    assert await ledger.sweep_expired() == []
    assert _expired_total() == before + 1

    assert (await ledger.get_offer(stale.id)).status == OfferStatus.EXPIRED
    assert (await ledger.get_offer(fresh.id)).status == OfferStatus.PENDING
    assert sink.of_type(EventType.OFFER_EXPIRED)[-1].recipient_ids == [BUYER, SELLER]


@pytest.mark.asyncio
async def test_get_offer_expires_lazily(ledger, clock, open_chat):
    chat_id = await open_chat()
    offer = await _offer(ledger, chat_id)
    clock.advance(hours=25)

    assert (await ledger.get_offer(offer.id)).status == OfferStatus.EXPIRED
    assert await ledger.sweep_expired() == []


@pytest.mark.asyncio
async def test_sweeper_runs_in_background(ledger, clock, open_chat):
    chat_id = await open_chat()
    offer = await _offer(ledger, chat_id)
    clock.advance(hours=25)

    sweeper = OfferSweeper(ledger, interval=0.01)
    await sweeper.start()
    assert sweeper.running
    try:
        for _ in range(100):
            if (await ledger.offers_for_chat(chat_id))[0].status == OfferStatus.EXPIRED:
                break
            await asyncio.sleep(0.01)
    finally:
        await sweeper.stop()

    assert not sweeper.running
    assert (await ledger.offers_for_chat(chat_id))[0].id == offer.id
    assert (await ledger.offers_for_chat(chat_id))[0].status == OfferStatus.EXPIRED


@pytest.mark.asyncio
async def test_low_offers_are_logged_not_rejected(ledger, open_chat):
    chat_id = await open_chat()
    with capture_logs() as logs:
        offer = await _offer(ledger, chat_id, amount=5.0)

    assert offer.status == OfferStatus.PENDING
    assert not within_recommended_range(5.0, 100.0)
    assert any(e["event"] == "offer_outside_recommended_range" for e in logs)
