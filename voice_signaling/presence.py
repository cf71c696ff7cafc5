"""
Presence Table: who is currently connected to which channel.

Presence is volatile process memory. It maps channel ids to their current
participants and keeps the reverse connection -> channel mapping, so a
connection belongs to at most one channel at a time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, NamedTuple, Optional

logger = logging.getLogger(__name__)


@dataclass
class Participant:
    """A connection that has been admitted to a channel."""

    connection_id: str
    display_name: str
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_public(self) -> Dict[str, str]:
        return {"connectionId": self.connection_id, "displayName": self.display_name}


class Departure(NamedTuple):
    """Result of removing a connection from the presence table."""

    channel_id: str
    participant: Participant
    remaining: List[Participant]


class PresenceTable:
    """
    In-memory channel membership.

    Mutations happen only through add() and remove(); both run without
    suspending, so callers on one event loop see them as atomic.
    """

    def __init__(self):
        self._members: Dict[str, Dict[str, Participant]] = {}  # channel_id -> connection_id -> participant
        self._channel_of: Dict[str, str] = {}  # connection_id -> channel_id

    def channel_of(self, connection_id: str) -> Optional[str]:
        """Channel the connection is currently in, if any."""
        return self._channel_of.get(connection_id)

    def members(self, channel_id: str) -> List[Participant]:
        """Participants of a channel in join order."""
        return list(self._members.get(channel_id, {}).values())

    def count(self, channel_id: str) -> int:
        return len(self._members.get(channel_id, {}))

    def add(self, channel_id: str, participant: Participant) -> None:
        """
        Insert a participant into a channel.

        Raises:
            ValueError: If the connection is already in a channel.
        """
        current = self._channel_of.get(participant.connection_id)
        if current is not None:
            raise ValueError(
                f"Connection {participant.connection_id} is already in channel '{current}'"
            )
        self._members.setdefault(channel_id, {})[participant.connection_id] = participant
        self._channel_of[participant.connection_id] = channel_id

    def remove(self, connection_id: str) -> Optional[Departure]:
        """
        Remove a connection from its channel.

        The channel's entry is dropped once its last participant leaves.

        Returns:
            The departure details, or None if the connection was in no channel.
        """
        channel_id = self._channel_of.pop(connection_id, None)
        if channel_id is None:
            return None

        members = self._members.get(channel_id, {})
        participant = members.pop(connection_id)
        if not members:
            self._members.pop(channel_id, None)

        return Departure(channel_id, participant, list(members.values()))

    def stats(self) -> Dict[str, int]:
        """Number of participants per occupied channel."""
        return {channel_id: len(members) for channel_id, members in self._members.items()}

    def total_participants(self) -> int:
        return len(self._channel_of)
