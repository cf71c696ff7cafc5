"""
Server-Sent Events transport for signaling clients that cannot use WebSockets.

GET /events opens an event stream. The first event, "endpoint", carries the
URI the client must POST its messages to. It embeds a secret post token, not
the public connection id:

    event: endpoint
    data: /events/message?session_id=<hex>

All further events (channels-state, room-users, signal, ...) carry JSON
data. The end of the stream is an implicit leave.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict
from urllib.parse import quote

from anyio.streams.memory import MemoryObjectReceiveStream
from pydantic import ValidationError
from sse_starlette import EventSourceResponse
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import Receive, Scope, Send

from .connection_hub import OutboundMessage

logger = logging.getLogger(__name__)


class SseTransport:
    """
    SSE transport bound to a message endpoint path.

    connect_sse() serves GET streams, handle_post_message() accepts the
    client's messages for a stream identified by its ?session_id= token.
    """

    def __init__(self, endpoint: str):
        """
        Args:
            endpoint: Relative path for POST messages (e.g., "/events/message")
        """
        if not endpoint.startswith("/"):
            endpoint = "/" + endpoint
        self._endpoint = endpoint

    async def connect_sse(self, scope: Scope, receive: Receive, send: Send) -> None:
        """Serve one event stream until the client goes away."""
        if scope["type"] != "http":
            raise ValueError("connect_sse can only handle HTTP requests")

        app_state = scope["app"].state
        service = app_state.service
        settings = app_state.settings

        client = scope.get("client")
        remote = f"{client[0]}:{client[1]}" if client else None
        connection, outbound = service.hub.open_connection(transport="sse", remote=remote)

        root_path = scope.get("root_path", "")
        full_message_path = root_path.rstrip("/") + self._endpoint
        post_token = service.hub.issue_post_token(connection)
        client_post_uri = f"{quote(full_message_path)}?session_id={post_token}"

        service.connect(connection)
        try:
            await EventSourceResponse(
                content=self._event_source(client_post_uri, outbound),
                ping=settings.sse_ping_interval,
            )(scope, receive, send)
        finally:
            logger.debug(f"SSE stream ended for {connection.id[:8]}...")
            service.disconnect(connection.id)

    @staticmethod
    async def _event_source(
        client_post_uri: str,
        outbound: MemoryObjectReceiveStream[OutboundMessage],
    ) -> AsyncIterator[Dict[str, Any]]:
        yield {"event": "endpoint", "data": client_post_uri}
        async with outbound:
            async for message in outbound:
                yield {
                    "event": message["event"],
                    "data": json.dumps(message["data"], ensure_ascii=False),
                }

    async def handle_post_message(self, scope: Scope, receive: Receive, send: Send) -> None:
        """
        Handle a client message POSTed for an open stream.

        Responds 202 once the message has been processed, 400 for a missing
        token or an invalid message, 404 for an unknown or closed stream.
        """
        request = Request(scope, receive)
        service = request.app.state.service

        post_token = request.query_params.get("session_id")
        if not post_token:
            response = Response("session_id is required", status_code=400)
            return await response(scope, receive, send)

        connection_id = service.hub.resolve_post_token(post_token)
        if connection_id is None:
            response = Response("Could not find connection", status_code=404)
            return await response(scope, receive, send)

        body = await request.body()
        try:
            await service.handle_raw(connection_id, body)
        except ValidationError as err:
            logger.warning(f"Failed to parse message from {connection_id[:8]}...: {err.error_count()} errors")
            response = Response("Could not parse message", status_code=400)
            return await response(scope, receive, send)

        response = Response("Accepted", status_code=202)
        await response(scope, receive, send)


class SseStreamApp:
    """ASGI app for GET /events."""

    def __init__(self, transport: SseTransport):
        self.transport = transport

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.transport.connect_sse(scope, receive, send)


class SseMessageApp:
    """ASGI app for POST /events/message."""

    def __init__(self, transport: SseTransport):
        self.transport = transport

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        await self.transport.handle_post_message(scope, receive, send)
