"""
WebSocket transport for signaling clients.

Each WebSocket is one connection. Outbound events are sent as JSON text
frames {"event": ..., "data": ...}; inbound frames are client messages
(join-room, signal, leave-room). Closing the socket is an implicit leave.
"""

import json
import logging

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream
from pydantic import ValidationError
from starlette.websockets import WebSocket, WebSocketDisconnect

from .connection_hub import OutboundMessage

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008
INVALID_MESSAGE = "INVALID_MESSAGE"


async def _pump_outbound(
    websocket: WebSocket,
    outbound: MemoryObjectReceiveStream[OutboundMessage],
) -> None:
    """Send queued events to the client until the stream is closed."""
    async with outbound:
        async for message in outbound:
            try:
                await websocket.send_text(json.dumps(message, ensure_ascii=False))
            except (WebSocketDisconnect, OSError) as e:
                logger.debug(f"Stopped sending to closed WebSocket: {e!r}")
                return


async def websocket_endpoint(websocket: WebSocket) -> None:
    """Serve one signaling client over a WebSocket."""
    app_state = websocket.app.state
    settings = app_state.settings
    service = app_state.service

    origin = websocket.headers.get("origin")
    if not settings.is_origin_allowed(origin):
        logger.warning(f"Rejected WebSocket from origin {origin}")
        await websocket.close(code=POLICY_VIOLATION)
        return

    await websocket.accept()

    remote = f"{websocket.client.host}:{websocket.client.port}" if websocket.client else None
    connection, outbound = service.hub.open_connection(transport="websocket", remote=remote)
    service.connect(connection)

    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(_pump_outbound, websocket, outbound)

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break

                raw = message.get("text")
                if raw is None and message.get("bytes") is not None:
                    raw = message["bytes"]
                if raw is None:
                    continue

                try:
                    await service.handle_raw(connection.id, raw)
                except ValidationError as e:
                    logger.debug(f"Invalid message from {connection.id[:8]}...: {e.error_count()} errors")
                    connection.deliver("error", {
                        "code": INVALID_MESSAGE,
                        "error": "Некорректное сообщение / Invalid message",
                    })

            tg.cancel_scope.cancel()
    finally:
        service.disconnect(connection.id)
