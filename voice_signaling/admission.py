"""
Admission control for channel joins.

A join is checked in a fixed order: the channel exists, the connection is not
already in a channel, the channel has room, the passphrase matches. Capacity
comes before the passphrase so a full channel reports ROOM_FULL whatever
passphrase was supplied.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import anyio.to_thread

from .channel_store import Channel, ChannelStore
from .presence import Participant, PresenceTable

logger = logging.getLogger(__name__)

DEFAULT_DISPLAY_NAME = "Без имени"
MAX_DISPLAY_NAME_LENGTH = 64

CHANNEL_NOT_FOUND = "CHANNEL_NOT_FOUND"
ALREADY_IN_CHANNEL = "ALREADY_IN_CHANNEL"
ROOM_FULL = "ROOM_FULL"
WRONG_PASSWORD = "WRONG_PASSWORD"


class AdmissionDenied(Exception):
    """A join request was rejected. Reported to the requester only."""

    def __init__(self, code: str, channel_id: str):
        super().__init__(f"{code}: {channel_id}")
        self.code = code
        self.channel_id = channel_id


@dataclass
class Admission:
    """A successful join."""

    channel: Channel
    participant: Participant
    # Members present before the joiner was inserted
    others: List[Participant]
    capacity: int


def normalize_display_name(display_name: Optional[str]) -> str:
    name = (display_name or "").strip()[:MAX_DISPLAY_NAME_LENGTH]
    return name or DEFAULT_DISPLAY_NAME


class AdmissionController:
    """
    Validates join requests and records admitted participants in the presence table.

    Passphrase checks are slow (bcrypt), so a protected join is split in two:
    verify() runs the cheap checks and then the passphrase check in a worker
    thread; admit() repeats the cheap checks, confirms the passphrase has not
    changed meanwhile and inserts the participant without suspending.
    """

    def __init__(self, store: ChannelStore, presence: PresenceTable, default_capacity: int = 10):
        self.store = store
        self.presence = presence
        self.default_capacity = default_capacity

    def effective_capacity(self, channel: Channel) -> int:
        return channel.capacity if channel.capacity > 0 else self.default_capacity

    def check(self, channel_id: str, connection_id: str) -> Channel:
        """
        Checks that need no passphrase: channel exists, connection is free, channel has room.

        Raises:
            AdmissionDenied: With code CHANNEL_NOT_FOUND, ALREADY_IN_CHANNEL or ROOM_FULL.
        """
        channel = self.store.get(channel_id)
        if channel is None:
            raise AdmissionDenied(CHANNEL_NOT_FOUND, channel_id)

        if self.presence.channel_of(connection_id) is not None:
            raise AdmissionDenied(ALREADY_IN_CHANNEL, channel_id)

        if self.presence.count(channel_id) >= self.effective_capacity(channel):
            raise AdmissionDenied(ROOM_FULL, channel_id)

        return channel

    async def verify(
        self,
        channel_id: str,
        connection_id: str,
        password: Optional[str] = None,
    ) -> Optional[str]:
        """
        Run every join check, hashing the passphrase off the event loop.

        Open channels never suspend.

        Returns:
            The stored hash the passphrase was verified against, or None for
            an open channel. Pass it to admit().

        Raises:
            AdmissionDenied: With code CHANNEL_NOT_FOUND, ALREADY_IN_CHANNEL,
                ROOM_FULL or WRONG_PASSWORD.
        """
        channel = self.check(channel_id, connection_id)
        if not channel.has_password:
            return None

        verified_hash = channel.password_hash
        matches = await anyio.to_thread.run_sync(self.store.verify_password, channel, password)
        if not matches:
            raise AdmissionDenied(WRONG_PASSWORD, channel_id)
        return verified_hash

    def admit(
        self,
        channel_id: str,
        connection_id: str,
        display_name: Optional[str] = None,
        verified_hash: Optional[str] = None,
    ) -> Admission:
        """
        Insert a connection into a channel after verify().

        Must not suspend between the checks and the insertion.

        Returns:
            Admission with the new participant and the members already present.

        Raises:
            AdmissionDenied: If the channel was removed, filled or re-protected
                since verify().
        """
        channel = self.check(channel_id, connection_id)
        if channel.has_password and channel.password_hash != verified_hash:
            raise AdmissionDenied(WRONG_PASSWORD, channel_id)

        capacity = self.effective_capacity(channel)
        others = self.presence.members(channel_id)
        participant = Participant(
            connection_id=connection_id,
            display_name=normalize_display_name(display_name),
        )
        self.presence.add(channel_id, participant)

        logger.info(
            f"Connection {connection_id[:8]}... joined channel '{channel_id}' "
            f"({len(others) + 1}/{capacity})"
        )
        return Admission(channel=channel, participant=participant, others=others, capacity=capacity)
