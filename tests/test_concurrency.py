"""Test suite for concurrent operations."""

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from resell_negotiation.api.app import create_app
from resell_negotiation.config import Settings
from resell_negotiation.repositories.memory import InMemoryDocumentStore
from resell_negotiation.services.container import build_container

BUYER = "buyer-1"
SELLER = "seller-1"


def _chat_body(item_id: str = "item-1", buyer_id: str = BUYER) -> dict:
    return {
        "item_id": item_id,
        "item_title": "Desk Lamp",
        "item_price": 100.0,
        "buyer_id": buyer_id,
        "buyer_name": "Alice",
        "seller_id": SELLER,
        "seller_name": "Bob",
    }


@pytest.fixture
def slow_services():
    """Services over a store with a small round-trip delay, so requests interleave."""
    return build_container(
        settings=Settings(), store=InMemoryDocumentStore(latency=0.001), pricing_model=None
    )


def _client(services) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app(services)), base_url="http://test")


@pytest.mark.asyncio
async def test_concurrent_first_contact(slow_services):
    """Test many simultaneous first contacts for the same listing."""
    async with _client(slow_services) as client:
        responses = await asyncio.gather(*[client.post("/chats", json=_chat_body()) for _ in range(10)])

        assert all(r.status_code == 200 for r in responses)
        assert len({r.json()["id"] for r in responses}) == 1

        chat_id = responses[0].json()["id"]
        messages = (await client.get(f"/chats/{chat_id}/messages")).json()
        assert len(messages) == 1


@pytest.mark.asyncio
async def test_concurrent_conversations(slow_services):
    """Test handling multiple concurrent conversations."""
    async with _client(slow_services) as client:
        responses = await asyncio.gather(
            *[client.post("/chats", json=_chat_body(buyer_id=f"buyer-{i}")) for i in range(10)]
        )
        assert all(r.status_code == 200 for r in responses)
        assert len({r.json()["id"] for r in responses}) == 10

        chats = (await client.get("/chats", params={"viewer_id": SELLER})).json()
        assert len(chats) == 10
        assert (await client.get(f"/users/{SELLER}/unread")).json()["unread"] == 10


@pytest.mark.asyncio
async def test_concurrent_messages(slow_services):
    """Test sending messages concurrently to the same chat."""
    async with _client(slow_services) as client:
        chat_id = (await client.post("/chats", json=_chat_body())).json()["id"]

        responses = await asyncio.gather(
            *[
                client.post(
                    f"/chats/{chat_id}/messages",
                    json={"sender_id": BUYER, "sender_name": "Alice", "content": f"Message {i}"},
                )
                for i in range(20)
            ]
        )
        assert all(r.status_code == 200 for r in responses)

        messages = (await client.get(f"/chats/{chat_id}/messages")).json()
        assert len(messages) == 21
        assert {m["content"] for m in messages[1:]} == {f"Message {i}" for i in range(20)}

        chat = (await client.get(f"/chats/{chat_id}")).json()
        assert chat["seller_unread_count"] == 21
        assert chat["last_message_timestamp"] == messages[-1]["timestamp"]


@pytest.mark.asyncio
async def test_concurrent_responses_to_one_offer(slow_services):
    """Test that only one of several racing responses wins."""
    async with _client(slow_services) as client:
        chat_id = (await client.post("/chats", json=_chat_body())).json()["id"]
        offer = (
            await client.post(
                "/offers",
                json={
                    "chat_id": chat_id,
                    "item_id": "item-1",
                    "buyer_id": BUYER,
                    "seller_id": SELLER,
                    "amount": 80.0,
                    "original_price": 100.0,
                },
            )
        ).json()

        bodies = [
            {"response": "accepted"},
            {"response": "declined"},
            {"response": "countered", "counter_amount": 95.0},
        ]
        responses = await asyncio.gather(
            *[client.post(f"/offers/{offer['id']}/respond", json=body) for body in bodies]
        )

        codes = sorted(r.status_code for r in responses)
        assert codes == [200, 409, 409]
        winner = next(r.json() for r in responses if r.status_code == 200)
        stored = (await client.get(f"/offers/{offer['id']}")).json()
        assert stored["status"] == winner["status"]


@pytest.mark.asyncio
async def test_concurrent_error_handling(slow_services):
    """Test error handling under concurrent load."""
    async with _client(slow_services) as client:
        responses = await asyncio.gather(*[client.get(f"/chats/missing-{i}") for i in range(5)])
        assert all(r.status_code == 404 for r in responses)
