"""
Starlette HTTP server for the voice signaling relay.

Provides endpoints for:
- /ws - WebSocket signaling (join-room, signal, leave-room)
- /events, /events/message - SSE signaling for clients without WebSockets
- /api/channels - channel catalog REST API
- /health - health check for Docker and monitoring
"""

import logging
import random
from contextlib import asynccontextmanager
from typing import Optional

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.routing import Route, WebSocketRoute
from starlette.types import ASGIApp, Receive, Scope, Send

from .admission import AdmissionController
from .broadcaster import StateBroadcaster
from .channel_store import ChannelStore, JsonFileBackend
from .config import Settings, settings as default_settings
from .connection_hub import ConnectionHub
from .passwords import PasswordHasher
from .presence import PresenceTable
from .relay import SignalRelay
from .rest_api import (
    create_channel_handler,
    get_channel_handler,
    list_channels_handler,
    update_channel_handler,
)
from .signaling import SignalingService
from .sse_transport import SseMessageApp, SseStreamApp, SseTransport
from .websocket_transport import websocket_endpoint

# Configure logging
logging.basicConfig(
    level=getattr(logging, default_settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


class APILoggingMiddleware:
    """ASGI middleware to log REST API requests with their response status."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not scope.get("path", "").startswith("/api"):
            await self.app(scope, receive, send)
            return

        status_code = None

        async def send_wrapper(message):
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message["status"]
            await send(message)

        await self.app(scope, receive, send_wrapper)
        logger.info(f"API {scope['method']} {scope['path']} -> {status_code}")


async def index(request: Request) -> PlainTextResponse:
    return PlainTextResponse("Voice chat signaling server is running")


async def health_check(request: Request) -> JSONResponse:
    """
    Health check endpoint for Docker and monitoring.

    Channel ids and participants are not exposed unless
    HEALTH_INCLUDE_CHANNEL_DETAILS is enabled.
    """
    state = request.app.state
    presence: PresenceTable = state.presence

    occupancy = presence.stats()
    response_data = {
        "status": "healthy",
        "channels_count": len(state.store),
        "occupied_channels_count": len(occupancy),
        "connections_count": len(state.hub),
        "participants_count": presence.total_participants(),
    }

    if state.settings.health_include_channel_details:
        response_data["participants_by_channel"] = occupancy

    return JSONResponse(content=response_data)


def create_app(settings: Optional[Settings] = None, rng: Optional[random.Random] = None) -> Starlette:
    """
    Build the application and its services.

    The channel store is loaded (or seeded) here, so a broken store
    directory fails at startup rather than on the first request.
    """
    settings = settings or default_settings

    store = ChannelStore(
        JsonFileBackend(settings.channels_file),
        default_capacity=settings.max_room_users,
        hasher=PasswordHasher(rounds=settings.bcrypt_rounds),
        rng=rng,
    )
    store.load()

    presence = PresenceTable()
    hub = ConnectionHub(buffer_size=settings.outbound_buffer_size)
    admission = AdmissionController(store, presence, default_capacity=settings.max_room_users)
    broadcaster = StateBroadcaster(store, presence, hub)
    service = SignalingService(hub, presence, admission, SignalRelay(hub, presence), broadcaster)

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info(f"Voice signaling server starting on port {settings.port}")
        logger.info(f"Channel store: {settings.channels_file} ({len(store)} channels)")
        logger.info(f"Default room capacity: {settings.max_room_users}")
        logger.info(f"Allowed origins: {', '.join(settings.allowed_origins)}")
        yield
        logger.info("Voice signaling server shutting down")

    sse_transport = SseTransport("/events/message")

    routes = [
        Route("/", index, methods=["GET"]),
        Route("/health", health_check, methods=["GET"]),
        WebSocketRoute("/ws", websocket_endpoint),
        Route("/events", SseStreamApp(sse_transport), methods=["GET"]),
        Route("/events/message", SseMessageApp(sse_transport), methods=["POST"]),
        # REST API routes
        Route("/api/channels", list_channels_handler, methods=["GET"]),
        Route("/api/channels", create_channel_handler, methods=["POST"]),
        Route("/api/channels/{channel_id}", get_channel_handler, methods=["GET"]),
        Route("/api/channels/{channel_id}", update_channel_handler, methods=["PATCH"]),
    ]

    app = Starlette(
        debug=False,
        routes=routes,
        lifespan=lifespan,
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"] if settings.allows_any_origin else settings.allowed_origins,
                allow_methods=["GET", "POST", "PATCH"],
                allow_headers=["Content-Type"],
            ),
            Middleware(APILoggingMiddleware),
        ],
    )

    app.state.settings = settings
    app.state.store = store
    app.state.presence = presence
    app.state.hub = hub
    app.state.broadcaster = broadcaster
    app.state.service = service
    return app

