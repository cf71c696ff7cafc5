"""
Signaling Service: join/leave/signal orchestration for client connections.

Outbound delivery only queues messages, so no handler yields to the event loop
half way through a membership change. The one await is the passphrase check
of a protected join, which runs in a worker thread before admission commits.
Transports await each message before reading the next, so events from one
connection are applied in the order they arrive.

Server -> client events:
- channels-state: public channel list, on connect and after every change
- room-users: peers already in the channel, sent to a new joiner
- user-joined / user-left: membership changes, sent to the other members
- join-error: rejected join, sent to the requester only
- left-room: acknowledgement of an explicit leave
- signal: relayed negotiation message
"""

import logging
from typing import Any, Optional, Union

from .admission import AdmissionController, AdmissionDenied
from .broadcaster import StateBroadcaster
from .connection_hub import Connection, ConnectionHub
from .presence import Departure, PresenceTable
from .relay import SignalRelay
from .schemas import (
    JoinRoomMessage,
    LeaveRoomMessage,
    SignalMessage,
    client_message_adapter,
)

logger = logging.getLogger(__name__)

ROOM_USERS_EVENT = "room-users"
USER_JOINED_EVENT = "user-joined"
USER_LEFT_EVENT = "user-left"
JOIN_ERROR_EVENT = "join-error"
LEFT_ROOM_EVENT = "left-room"


class SignalingService:
    """Connects transports to presence, admission, relay and broadcasting."""

    def __init__(
        self,
        hub: ConnectionHub,
        presence: PresenceTable,
        admission: AdmissionController,
        relay: SignalRelay,
        broadcaster: StateBroadcaster,
    ):
        self.hub = hub
        self.presence = presence
        self.admission = admission
        self.relay = relay
        self.broadcaster = broadcaster

    def connect(self, connection: Connection) -> None:
        """Register a new connection and send it the current channel list."""
        self.hub.register(connection)
        self.broadcaster.send_snapshot(connection.id)

    def disconnect(self, connection_id: str) -> None:
        """Implicit leave: unregister the connection, drop its presence and notify the channel."""
        self.hub.unregister(connection_id)
        self._depart(connection_id)

    async def join(
        self,
        connection_id: str,
        channel_id: Optional[str],
        display_name: Optional[str] = None,
        password: Optional[str] = None,
    ) -> bool:
        """
        Handle a join request.

        Returns:
            True if the connection was admitted.
        """
        if not channel_id:
            logger.debug(f"Ignoring join without channel from {connection_id[:8]}...")
            return False

        try:
            verified_hash = await self.admission.verify(channel_id, connection_id, password)
            if connection_id not in self.hub:
                logger.debug(f"Connection {connection_id[:8]}... closed during join")
                return False
            admission = self.admission.admit(channel_id, connection_id, display_name, verified_hash)
        except AdmissionDenied as e:
            logger.info(f"Join of {connection_id[:8]}... to '{channel_id}' rejected: {e.code}")
            self.hub.send_to(connection_id, JOIN_ERROR_EVENT, {"code": e.code, "channelId": channel_id})
            return False

        participant = admission.participant
        self.hub.send_to(
            connection_id,
            ROOM_USERS_EVENT,
            {
                "channelId": channel_id,
                "users": [member.to_public() for member in admission.others],
                "maxUsers": admission.capacity,
            },
        )
        self.hub.send_to_many(
            (member.connection_id for member in admission.others),
            USER_JOINED_EVENT,
            {**participant.to_public(), "channelId": channel_id},
        )
        self.broadcaster.broadcast()
        return True

    def leave(self, connection_id: str) -> bool:
        """
        Explicit leave of the current channel.

        Returns:
            True if the connection was in a channel.
        """
        departure = self._depart(connection_id)
        if departure is None:
            return False
        self.hub.send_to(connection_id, LEFT_ROOM_EVENT, {"channelId": departure.channel_id})
        return True

    def signal(
        self,
        connection_id: str,
        target_connection_id: Optional[str],
        channel_id: Optional[str],
        payload: Any,
    ) -> bool:
        return self.relay.relay(connection_id, target_connection_id, channel_id, payload)

    def channels_changed(self) -> None:
        """Channel definitions were created or updated outside a membership change."""
        self.broadcaster.broadcast()

    async def handle_message(
        self,
        connection_id: str,
        message: Union[JoinRoomMessage, SignalMessage, LeaveRoomMessage],
    ) -> None:
        """Dispatch a validated client message."""
        if isinstance(message, JoinRoomMessage):
            await self.join(connection_id, message.channel_id, message.display_name, message.password)
        elif isinstance(message, SignalMessage):
            self.signal(connection_id, message.target_connection_id, message.channel_id, message.payload)
        elif isinstance(message, LeaveRoomMessage):
            self.leave(connection_id)

    async def handle_raw(self, connection_id: str, raw: Union[str, bytes]) -> None:
        """
        Validate and dispatch a raw JSON client message.

        Raises:
            pydantic.ValidationError: If raw is not a valid client message.
        """
        message = client_message_adapter.validate_json(raw)
        await self.handle_message(connection_id, message)

    def _depart(self, connection_id: str) -> Optional[Departure]:
        departure = self.presence.remove(connection_id)
        if departure is None:
            return None

        logger.info(f"Connection {connection_id[:8]}... left channel '{departure.channel_id}'")
        self.hub.send_to_many(
            (member.connection_id for member in departure.remaining),
            USER_LEFT_EVENT,
            {"connectionId": connection_id, "channelId": departure.channel_id},
        )
        self.broadcaster.broadcast()
        return departure
