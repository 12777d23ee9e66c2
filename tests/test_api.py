"""Test suite for the API endpoints."""

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from resell_negotiation.api.app import create_app
from resell_negotiation.config import Settings
from resell_negotiation.services.container import build_container

BUYER = "buyer-1"
SELLER = "seller-1"

CHAT_BODY = {
    "item_id": "item-1",
    "item_title": "Desk Lamp",
    "item_price": 100.0,
    "buyer_id": BUYER,
    "buyer_name": "Alice",
    "seller_id": SELLER,
    "seller_name": "Bob",
}


def _client(services) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app(services)), base_url="http://test")


def _offer_body(chat_id: str, amount: float = 80.0) -> dict:
    return {
        "chat_id": chat_id,
        "item_id": "item-1",
        "buyer_id": BUYER,
        "seller_id": SELLER,
        "amount": amount,
        "original_price": 100.0,
    }


@pytest.mark.asyncio
async def test_create_chat_is_idempotent(services):
    """Test contacting a seller twice about the same item."""
    async with _client(services) as client:
        first = await client.post("/chats", json=CHAT_BODY)
        second = await client.post("/chats", json=CHAT_BODY)
        assert first.status_code == 200
        assert first.json()["id"] == second.json()["id"]
        assert first.json()["last_message_preview"] == "Hi! I'm interested in your Desk Lamp."

        response = await client.get("/chats", params={"viewer_id": SELLER})
        assert [c["id"] for c in response.json()] == [first.json()["id"]]

        response = await client.get(f"/users/{SELLER}/unread")
        assert response.json() == {"user_id": SELLER, "unread": 1}


@pytest.mark.asyncio
async def test_error_handling(services):
    """Test error translation in various scenarios."""
    async with _client(services) as client:
        response = await client.get("/chats/missing")
        assert response.status_code == 404
        assert response.json()["error"] == "NOT_FOUND"
        assert response.json()["details"] == {"kind": "chat", "id": "missing"}

        response = await client.post("/chats", json={**CHAT_BODY, "buyer_id": SELLER})
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

        # Test invalid message format
        chat_id = (await client.post("/chats", json=CHAT_BODY)).json()["id"]
        response = await client.post(f"/chats/{chat_id}/messages", json={"invalid_field": "test"})
        assert response.status_code == 422

        response = await client.post(
            f"/chats/{chat_id}/messages",
            json={"sender_id": BUYER, "sender_name": "Alice", "content": "x" * 501},
        )
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"

        response = await client.post("/offers", json=_offer_body(chat_id, amount=0))
        assert response.status_code == 422
        assert response.json()["error"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_message_history_pagination_and_read(services):
    """Test message history pagination and read receipts."""
    async with _client(services) as client:
        chat_id = (await client.post("/chats", json=CHAT_BODY)).json()["id"]
        for i in range(5):
            response = await client.post(
                f"/chats/{chat_id}/messages",
                json={"sender_id": BUYER, "sender_name": "Alice", "content": f"Message {i}"},
            )
            assert response.status_code == 200
            assert response.json()["content"] == f"Message {i}"

        response = await client.get(f"/chats/{chat_id}/messages", params={"limit": 2, "offset": 1})
        assert [m["content"] for m in response.json()] == ["Message 0", "Message 1"]

        response = await client.post(f"/chats/{chat_id}/read", json={"reader_id": SELLER})
        assert response.json()["updated"] == 6
        assert (await client.get(f"/users/{SELLER}/unread")).json()["unread"] == 0


@pytest.mark.asyncio
async def test_edit_message(services):
    async with _client(services) as client:
        chat_id = (await client.post("/chats", json=CHAT_BODY)).json()["id"]
        message = (
            await client.post(
                f"/chats/{chat_id}/messages",
                json={"sender_id": SELLER, "sender_name": "Bob", "content": "Price is firm"},
            )
        ).json()

        response = await client.patch(
            f"/chats/{chat_id}/messages/{message['id']}",
            json={"editor_id": SELLER, "content": "Price is negotiable"},
        )
        assert response.status_code == 200
        assert response.json()["is_edited"] is True

        response = await client.patch(
            f"/chats/{chat_id}/messages/{message['id']}",
            json={"editor_id": BUYER, "content": "nope"},
        )
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_offer_counter_flow(services):
    """Test an offer, a counter and acceptance of the counter."""
    async with _client(services) as client:
        chat_id = (await client.post("/chats", json=CHAT_BODY)).json()["id"]

        offer = (await client.post("/offers", json=_offer_body(chat_id))).json()
        assert offer["status"] == "pending"
        assert offer["is_expired"] is False
        assert offer["discount_percent"] == 20
        assert offer["within_recommended_range"] is True

        response = await client.post(
            f"/offers/{offer['id']}/respond", json={"response": "countered", "counter_amount": 90}
        )
        countered = response.json()
        assert countered["status"] == "countered"
        assert countered["amount"] == 90.0

        follow_up = (await client.get(f"/offers/{countered['superseded_by']}")).json()
        assert follow_up["proposed_by"] == SELLER
        assert follow_up["previous_offer_id"] == offer["id"]

        response = await client.post(f"/offers/{follow_up['id']}/respond", json={"response": "accepted"})
        assert response.json()["status"] == "accepted"

        response = await client.post(f"/offers/{follow_up['id']}/respond", json={"response": "declined"})
        assert response.status_code == 409
        assert response.json()["error"] == "INVALID_STATE"

        offers = (await client.get(f"/chats/{chat_id}/offers")).json()
        assert [o["status"] for o in offers] == ["countered", "accepted"]

        chat = (await client.get(f"/chats/{chat_id}")).json()
        assert chat["offer_status"] == "accepted"
        assert chat["current_offer_amount"] == 90.0

        assert (await client.post("/offers/sweep")).json() == {"expired": []}


@pytest.mark.asyncio
async def test_archive_and_delete_chat(services):
    async with _client(services) as client:
        chat_id = (await client.post("/chats", json=CHAT_BODY)).json()["id"]

        assert (await client.post(f"/chats/{chat_id}/archive")).status_code == 204
        assert (await client.get("/chats", params={"viewer_id": BUYER})).json() == []
        archived = await client.get("/chats", params={"viewer_id": BUYER, "include_archived": True})
        assert len(archived.json()) == 1

        response = await client.delete(f"/chats/{chat_id}")
        assert response.json() == {"chat_id": chat_id, "messages_deleted": 1}
        assert (await client.get(f"/chats/{chat_id}")).status_code == 404


@pytest.mark.asyncio
async def test_pricing_endpoints_fall_back(services):
    async with _client(services) as client:
        response = await client.post(
            "/pricing/suggest",
            json={"title": "Headphones", "condition": "Good", "category": "Electronics"},
        )
        assert response.status_code == 200
        analysis = response.json()
        assert analysis["suggested_price"] == pytest.approx(140.0)
        assert analysis["confidence"] == 0.6
        assert analysis["source"] == "fallback"

        response = await client.post(
            "/pricing/market-research", json={"category": "Tickets", "min_price": 10, "max_price": 60}
        )
        assert response.json()["category"] == "Tickets"

        response = await client.post("/assistant/chat", json={"query": "Is campus pickup safe?"})
        assert "student union" in response.json()["reply"]

        response = await client.post("/assistant/chat", json={"query": "hi", "context": "bogus"})
        assert response.status_code == 422


@pytest.mark.asyncio
async def test_metrics_endpoint(services):
    async with _client(services) as client:
        await client.get("/chats/missing")
        response = await client.get("/metrics")
        assert response.status_code == 200
        assert "requests_total" in response.text
        assert "pricing_fallbacks_total" in response.text


def test_live_messages_stream(services):
    """Test the WebSocket message stream and delivery receipts."""
    with TestClient(create_app(services)) as client:
        chat_id = client.post("/chats", json=CHAT_BODY).json()["id"]

        with client.websocket_connect(f"/chats/{chat_id}/messages/live?viewer_id={SELLER}") as websocket:
            snapshot = websocket.receive_json()
            assert [m["content"] for m in snapshot] == ["Hi! I'm interested in your Desk Lamp."]
            assert snapshot[0]["status"] == "delivered"

            client.post(
                f"/chats/{chat_id}/messages",
                json={"sender_id": SELLER, "sender_name": "Bob", "content": "Still available"},
            )
            while True:
                snapshot = websocket.receive_json()
                if len(snapshot) == 2:
                    break
            assert [m["content"] for m in snapshot] == [
                "Hi! I'm interested in your Desk Lamp.",
                "Still available",
            ]


@pytest.mark.asyncio
async def test_offer_views_use_the_service_clock(sink, clock):
    services = build_container(settings=Settings(), pricing_model=None, sink=sink, clock=clock)
    async with _client(services) as client:
        chat_id = (await client.post("/chats", json=CHAT_BODY)).json()["id"]
        offer = (await client.post("/offers", json=_offer_body(chat_id))).json()
        assert offer["is_expired"] is False
        assert offer["seconds_remaining"] == 24 * 3600

        clock.advance(hours=23)
        current = (await client.get(f"/offers/{offer['id']}")).json()
        assert current["status"] == "pending"
        assert current["seconds_remaining"] == 3600

        clock.advance(hours=2)
        current = (await client.get(f"/offers/{offer['id']}")).json()
        assert current["status"] == "expired"
        assert current["is_expired"] is True
        assert current["seconds_remaining"] == 0


@pytest.mark.asyncio
async def test_request_bounds_are_validated(services):
    async with _client(services) as client:
        response = await client.post("/chats", json={**CHAT_BODY, "item_title": "Lamp " * 96})
        assert response.status_code == 422
        assert (await client.get("/chats", params={"viewer_id": BUYER})).json() == []

        chat_id = (await client.post("/chats", json=CHAT_BODY)).json()["id"]
        for params in ({"limit": -1}, {"limit": 0}, {"offset": -1}):
            response = await client.get(f"/chats/{chat_id}/messages", params=params)
            assert response.status_code == 422
        response = await client.get("/chats", params={"viewer_id": BUYER, "limit": -1})
        assert response.status_code == 422

        response = await client.post(
            "/pricing/market-research",
            content='{"category": "Tickets", "min_price": 10, "max_price": 1e400}',
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 422
