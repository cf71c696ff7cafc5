"""
Connection Hub: the set of live client connections.

Each connection owns a bounded anyio memory stream of outbound messages that
its transport (WebSocket or SSE) drains. Delivery never suspends, so the
signaling handlers that call it run to completion without yielding to the
event loop.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream

logger = logging.getLogger(__name__)

OutboundMessage = Dict[str, Any]


class Connection:
    """A live client connection and its outbound queue."""

    __slots__ = ("id", "transport", "remote", "connected_at", "post_token", "_send_stream")

    def __init__(
        self,
        connection_id: str,
        send_stream: MemoryObjectSendStream[OutboundMessage],
        transport: str = "websocket",
        remote: Optional[str] = None,
    ):
        self.id = connection_id
        self.transport = transport
        self.remote = remote
        self.connected_at = datetime.now(timezone.utc)
        # Private credential for transports whose inbound messages arrive out of band (SSE POST)
        self.post_token: Optional[str] = None
        self._send_stream = send_stream

    def deliver(self, event: str, data: Any) -> bool:
        """
        Queue an event for this connection.

        Returns:
            True if queued; False if the connection is closed or its buffer is full.
        """
        try:
            self._send_stream.send_nowait({"event": event, "data": data})
            return True
        except anyio.WouldBlock:
            logger.warning(f"Outbound buffer full for {self.id[:8]}..., dropping '{event}'")
            return False
        except (anyio.BrokenResourceError, anyio.ClosedResourceError):
            logger.debug(f"Connection {self.id[:8]}... is closed, dropping '{event}'")
            return False

    def close(self) -> None:
        self._send_stream.close()


class ConnectionHub:
    """Registry of live connections by connection id."""

    def __init__(self, buffer_size: int = 256):
        self.buffer_size = buffer_size
        self._connections: Dict[str, Connection] = {}
        self._post_tokens: Dict[str, str] = {}  # post token -> connection id

    def open_connection(
        self,
        transport: str = "websocket",
        remote: Optional[str] = None,
    ) -> Tuple[Connection, MemoryObjectReceiveStream[OutboundMessage]]:
        """
        Create a connection with a fresh id and its outbound stream.

        The connection is not registered; the caller hands it to
        SignalingService.connect() once the transport is ready.

        Returns:
            The connection and the receive side of its outbound stream.
        """
        send_stream, receive_stream = anyio.create_memory_object_stream[OutboundMessage](
            self.buffer_size
        )
        connection = Connection(uuid.uuid4().hex, send_stream, transport=transport, remote=remote)
        return connection, receive_stream

    def register(self, connection: Connection) -> None:
        self._connections[connection.id] = connection
        logger.info(
            f"Connection {connection.id[:8]}... opened via {connection.transport} "
            f"from {connection.remote or 'unknown'} (total: {len(self._connections)})"
        )

    def unregister(self, connection_id: str) -> Optional[Connection]:
        connection = self._connections.pop(connection_id, None)
        if connection is not None:
            if connection.post_token:
                self._post_tokens.pop(connection.post_token, None)
            connection.close()
            logger.info(
                f"Connection {connection_id[:8]}... closed (total: {len(self._connections)})"
            )
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def issue_post_token(self, connection: Connection) -> str:
        """
        Create the secret a connection uses to POST its messages.

        The connection id is public (it appears in channel state), so it
        must never authorise messages on its own.
        """
        token = uuid.uuid4().hex
        connection.post_token = token
        self._post_tokens[token] = connection.id
        return token

    def resolve_post_token(self, token: str) -> Optional[str]:
        """Connection id for a post token, or None if unknown or closed."""
        connection_id = self._post_tokens.get(token)
        if connection_id is None or connection_id not in self._connections:
            return None
        return connection_id

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def send_to(self, connection_id: str, event: str, data: Any) -> bool:
        """Deliver an event to one connection. False if it does not exist or delivery failed."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        return connection.deliver(event, data)

    def send_to_many(self, connection_ids: Iterable[str], event: str, data: Any) -> int:
        """Deliver an event to several connections. Returns the number of successful deliveries."""
        return sum(1 for connection_id in connection_ids if self.send_to(connection_id, event, data))

    def send_to_all(self, event: str, data: Any) -> int:
        """Deliver an event to every connection. Returns the number of successful deliveries."""
        connections: List[Connection] = list(self._connections.values())
        return sum(1 for connection in connections if connection.deliver(event, data))
