"""
State Broadcaster: the public channel list with live occupancy.

The view combines the channel store with the presence table and never
includes passphrase material.
"""

import logging
from typing import Any, Dict, List

from .channel_store import Channel, ChannelStore
from .connection_hub import ConnectionHub
from .presence import PresenceTable

logger = logging.getLogger(__name__)

CHANNELS_STATE_EVENT = "channels-state"


class StateBroadcaster:
    def __init__(self, store: ChannelStore, presence: PresenceTable, hub: ConnectionHub):
        self.store = store
        self.presence = presence
        self.hub = hub

    def channel_view(self, channel: Channel) -> Dict[str, Any]:
        """Public view of one channel."""
        members = self.presence.members(channel.id)
        return {
            "id": channel.id,
            "name": channel.name,
            "capacity": channel.capacity,
            "hasPassword": channel.has_password,
            "onlineCount": len(members),
            "onlineUsers": [member.to_public() for member in members],
        }

    def snapshot(self) -> List[Dict[str, Any]]:
        """Public views of all channels in store order."""
        return [self.channel_view(channel) for channel in self.store.list()]

    def broadcast(self) -> int:
        """Push the current snapshot to every connection."""
        delivered = self.hub.send_to_all(CHANNELS_STATE_EVENT, self.snapshot())
        logger.debug(f"Broadcast channel state to {delivered} connections")
        return delivered

    def send_snapshot(self, connection_id: str) -> bool:
        """Push the current snapshot to one connection."""
        return self.hub.send_to(connection_id, CHANNELS_STATE_EVENT, self.snapshot())
