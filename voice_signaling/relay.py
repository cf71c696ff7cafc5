"""
Signal Relay: forwards WebRTC negotiation messages between connections.

Payloads (SDP offers/answers, ICE candidates) are opaque and forwarded
unchanged. Signals only travel inside a channel: sender and target must both
be members of the channel the signal names. Delivery is best effort:
incomplete requests, non-members and unknown targets are dropped without
telling the sender.
"""

import logging
from typing import Any, Optional

from .connection_hub import ConnectionHub
from .presence import PresenceTable

logger = logging.getLogger(__name__)

SIGNAL_EVENT = "signal"


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, (str, dict, list)) and not value)


class SignalRelay:
    def __init__(self, hub: ConnectionHub, presence: PresenceTable):
        self.hub = hub
        self.presence = presence

    def relay(
        self,
        from_connection_id: str,
        to_connection_id: Optional[str],
        channel_id: Optional[str],
        payload: Any,
    ) -> bool:
        """Forward payload to to_connection_id, tagged with the sender and channel.

        Returns True if the message was queued for the target.
        """
        if not to_connection_id or not channel_id or _is_empty(payload):
            logger.debug(f"Dropping incomplete signal from {from_connection_id[:8]}...")
            return False

        if (self.presence.channel_of(from_connection_id) != channel_id
                or self.presence.channel_of(to_connection_id) != channel_id):
            logger.debug(
                f"Dropping signal from {from_connection_id[:8]}... outside channel '{channel_id}'"
            )
            return False

        delivered = self.hub.send_to(
            to_connection_id,
            SIGNAL_EVENT,
            {"from": from_connection_id, "channelId": channel_id, "payload": payload},
        )
        if not delivered:
            logger.debug(
                f"Signal from {from_connection_id[:8]}... to {to_connection_id[:8]}... not delivered"
            )
        return delivered
