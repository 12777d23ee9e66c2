"""
FastAPI Application Module

HTTP and WebSocket surface for marketplace negotiation: one chat per buyer,
seller and listing, ordered messages, offers with expiry, and price
suggestions that fall back to rule-based estimates when the model is down.

Key Features:
- Async request handling with FastAPI
- Per-chat serialization of writes through a keyed work queue
- Structured logging and metrics
- CORS and OpenTelemetry support
"""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, Query, Request, Response, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_client import generate_latest
from starlette.requests import HTTPConnection
from structlog import get_logger

from ..config import Settings, load_settings
from ..domain.models import Chat, MarketInsights, Message, PriceAnalysis, PriceRange
from ..logging_setup import configure_logging
from ..metrics import CUSTOM_REGISTRY, ERRORS, REQUESTS
from ..services.container import ServiceContainer, build_container
from ..services.policies import best_effort
from .errors import register_exception_handlers
from .schemas import (
    AssistantQuery,
    AssistantReply,
    ChatCreate,
    MarketResearchRequest,
    MessageCreate,
    MessageEdit,
    OfferCreate,
    OfferResponse,
    OfferView,
    PriceSuggestionRequest,
    ReadReceipt,
    UnreadTotal,
)

logger = get_logger()

# Close codes for rejected live-message connections
WS_CHAT_NOT_FOUND = 4404
WS_NOT_A_PARTICIPANT = 4403


def get_services(connection: HTTPConnection) -> ServiceContainer:
    """Returns the component container bound to the app"""
    return connection.app.state.services


def create_app(
    services: Optional[ServiceContainer] = None, settings: Optional[Settings] = None
) -> FastAPI:
    """Build the application around a service container."""
    settings = settings or (services.settings if services else load_settings())
    services = services or build_container(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Handles app startup/shutdown and resource management"""
        configure_logging(settings.log_level, settings.log_json)
        if not services.advisor.enabled:
            logger.info("pricing_fallback_mode", reason="no_api_key")
        await services.start()
        logger.info("application_startup_complete")

        yield

        await services.stop()
        logger.info("application_shutdown_complete")

    app = FastAPI(
        title="Resell Negotiation API",
        description="Buyer-seller chats, offers and price suggestions for a student marketplace",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    # Enable cross-origin requests
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Set up request tracing
    FastAPIInstrumentor.instrument_app(app)
    register_exception_handlers(app)

    @app.middleware("http")
    async def logging_middleware(request: Request, call_next):
        """Tracks requests and failures"""
        REQUESTS.inc()
        logger.info("request_started", method=request.method, path=request.url.path)
        try:
            response = await call_next(request)
        except Exception as e:
            ERRORS.inc()
            logger.error("request_failed", path=request.url.path, error=str(e))
            raise
        if response.status_code >= 500:
            ERRORS.inc()
        return response

    # Chats

    @app.post("/chats", response_model=Chat)
    async def create_or_get_chat(
        body: ChatCreate, services: ServiceContainer = Depends(get_services)
    ) -> Chat:
        """Returns the chat for this listing, creating it on first contact"""
        chat_id = await services.registry.create_or_get_chat(
            item_id=body.item_id,
            item_title=body.item_title,
            item_price=body.item_price,
            buyer_id=body.buyer_id,
            buyer_name=body.buyer_name,
            seller_id=body.seller_id,
            seller_name=body.seller_name,
            item_image_ref=body.item_image_ref,
        )
        return await services.registry.get_chat(chat_id)

    @app.get("/chats", response_model=List[Chat])
    async def list_chats(
        viewer_id: str,
        include_archived: bool = False,
        limit: int = Query(30, ge=1),
        services: ServiceContainer = Depends(get_services),
    ) -> List[Chat]:
        return await services.registry.list_chats(viewer_id, include_archived, limit)

    @app.get("/chats/{chat_id}", response_model=Chat)
    async def get_chat(chat_id: str, services: ServiceContainer = Depends(get_services)) -> Chat:
        return await services.registry.get_chat(chat_id)

    @app.post("/chats/{chat_id}/archive", status_code=status.HTTP_204_NO_CONTENT)
    async def archive_chat(chat_id: str, services: ServiceContainer = Depends(get_services)) -> Response:
        await services.registry.get_chat(chat_id)
        await services.registry.archive(chat_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.delete("/chats/{chat_id}")
    async def delete_chat(chat_id: str, services: ServiceContainer = Depends(get_services)) -> dict:
        deleted = await services.registry.delete(chat_id)
        return {"chat_id": chat_id, "messages_deleted": deleted}

    @app.get("/users/{user_id}/unread", response_model=UnreadTotal)
    async def unread_total(user_id: str, services: ServiceContainer = Depends(get_services)) -> UnreadTotal:
        return UnreadTotal(user_id=user_id, unread=await services.registry.unread_total(user_id))

    # Messages

    @app.get("/chats/{chat_id}/messages", response_model=List[Message])
    async def get_messages(
        chat_id: str,
        limit: int = Query(50, ge=1),
        offset: int = Query(0, ge=0),
        services: ServiceContainer = Depends(get_services),
    ) -> List[Message]:
        """Gets paginated message history for a chat"""
        return await services.channel.messages(chat_id, limit=limit, offset=offset)

    @app.post("/chats/{chat_id}/messages", response_model=Message)
    async def send_message(
        chat_id: str, body: MessageCreate, services: ServiceContainer = Depends(get_services)
    ) -> Message:
        return await services.channel.send(
            chat_id,
            body.sender_id,
            body.sender_name,
            body.content,
            type=body.type,
            offer_amount=body.offer_amount,
            image_ref=body.image_ref,
        )

    @app.post("/chats/{chat_id}/read")
    async def mark_read(
        chat_id: str, body: ReadReceipt, services: ServiceContainer = Depends(get_services)
    ) -> dict:
        updated = await services.channel.mark_read(chat_id, body.reader_id)
        return {"chat_id": chat_id, "updated": updated}

    @app.patch("/chats/{chat_id}/messages/{message_id}", response_model=Message)
    async def edit_message(
        chat_id: str,
        message_id: str,
        body: MessageEdit,
        services: ServiceContainer = Depends(get_services),
    ) -> Message:
        return await services.channel.edit(chat_id, message_id, body.editor_id, body.content)

    @app.websocket("/chats/{chat_id}/messages/live")
    async def live_messages(
        websocket: WebSocket,
        chat_id: str,
        viewer_id: str,
        services: ServiceContainer = Depends(get_services),
    ) -> None:
        """Streams the full, timestamp-ordered message list on every change"""
        chat = await services.registry.find_chat(chat_id)
        if chat is None:
            await websocket.close(code=WS_CHAT_NOT_FOUND)
            return
        if chat.role_of(viewer_id) is None:
            await websocket.close(code=WS_NOT_A_PARTICIPANT)
            return
        await websocket.accept()
        await best_effort(
            "mark_delivered",
            services.channel.mark_delivered(chat_id, viewer_id),
            chat_id=chat_id,
            viewer_id=viewer_id,
        )
        logger.info("live_messages_opened", chat_id=chat_id, viewer_id=viewer_id)

        subscription = services.channel.observe(chat_id)

        async def forward() -> None:
            async for messages in subscription:
                await websocket.send_json([m.model_dump(mode="json") for m in messages])

        async def wait_for_disconnect() -> None:
            while True:
                event = await websocket.receive()
                if event["type"] == "websocket.disconnect":
                    return

        tasks = {asyncio.create_task(forward()), asyncio.create_task(wait_for_disconnect())}
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.exception() is not None:
                    logger.warning("live_messages_error", chat_id=chat_id, error=str(task.exception()))
        finally:
            subscription.unsubscribe()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("live_messages_closed", chat_id=chat_id, viewer_id=viewer_id)

    # Offers

    @app.post("/offers", response_model=OfferView)
    async def create_offer(body: OfferCreate, services: ServiceContainer = Depends(get_services)) -> OfferView:
        offer = await services.ledger.create_offer(
            chat_id=body.chat_id,
            item_id=body.item_id,
            buyer_id=body.buyer_id,
            seller_id=body.seller_id,
            amount=body.amount,
            original_price=body.original_price,
            message=body.message,
            proposed_by=body.proposed_by,
        )
        return OfferView.from_offer(offer, services.clock())

    @app.post("/offers/sweep")
    async def sweep_offers(services: ServiceContainer = Depends(get_services)) -> dict:
        expired = await services.ledger.sweep_expired()
        return {"expired": [offer.id for offer in expired]}

    @app.get("/offers/{offer_id}", response_model=OfferView)
    async def get_offer(offer_id: str, services: ServiceContainer = Depends(get_services)) -> OfferView:
        offer = await services.ledger.get_offer(offer_id)
        return OfferView.from_offer(offer, services.clock())

    @app.post("/offers/{offer_id}/respond", response_model=OfferView)
    async def respond_to_offer(
        offer_id: str, body: OfferResponse, services: ServiceContainer = Depends(get_services)
    ) -> OfferView:
        offer = await services.ledger.respond(offer_id, body.response, body.counter_amount)
        return OfferView.from_offer(offer, services.clock())

    @app.get("/chats/{chat_id}/offers", response_model=List[OfferView])
    async def chat_offers(chat_id: str, services: ServiceContainer = Depends(get_services)) -> List[OfferView]:
        now = services.clock()
        return [OfferView.from_offer(offer, now) for offer in await services.ledger.offers_for_chat(chat_id)]

    # Pricing

    @app.post("/pricing/suggest", response_model=PriceAnalysis)
    async def suggest_price(
        body: PriceSuggestionRequest, services: ServiceContainer = Depends(get_services)
    ) -> PriceAnalysis:
        return await services.advisor.suggest_price(
            body.title, body.description, body.condition, body.category
        )

    @app.post("/pricing/market-research", response_model=MarketInsights)
    async def market_research(
        body: MarketResearchRequest, services: ServiceContainer = Depends(get_services)
    ) -> MarketInsights:
        price_range = None
        if body.min_price is not None and body.max_price is not None:
            price_range = PriceRange(min=body.min_price, max=body.max_price)
        return await services.advisor.market_research(body.category, price_range)

    @app.post("/assistant/chat", response_model=AssistantReply)
    async def assistant_chat(
        body: AssistantQuery, services: ServiceContainer = Depends(get_services)
    ) -> AssistantReply:
        return AssistantReply(reply=await services.advisor.chat_reply(body.query, body.context))

    @app.get("/metrics")
    async def metrics():
        """Provides Prometheus metrics for system monitoring"""
        return Response(generate_latest(CUSTOM_REGISTRY), media_type="text/plain")

    return app


app = create_app()
