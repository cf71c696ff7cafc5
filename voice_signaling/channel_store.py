"""
Channel Store: the durable catalog of voice channels.

This module provides the ChannelStore class, the single owner of channel
records. Every mutation is written to the backing store before the call
returns; a failed write rolls the in-memory change back and raises
ChannelStoreWriteError.

Channel ids are derived from display names by slugify(). Random parts of id
generation take an explicit random.Random so they can be made deterministic.
"""

import json
import logging
import math
import os
import random
import re
import string
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from .passwords import PasswordHasher

logger = logging.getLogger(__name__)

# Latin + Russian Cyrillic letters and digits survive slugification,
# everything else collapses to a single separator
SLUG_SEPARATOR_PATTERN = re.compile(r'[^a-z0-9а-яё]+')
SLUG_ALPHABET = string.digits + string.ascii_lowercase

FALLBACK_ID_PREFIX = "channel-"
FALLBACK_ID_LENGTH = 6
COLLISION_SUFFIX_LENGTH = 3

# (id, name) pairs for a fresh store
DEFAULT_CHANNELS = [
    ("general", "Общий"),
    ("coop", "Игры"),
    ("squad", "Отряд"),
]
# Used when the existing store could not be read
RECOVERY_CHANNELS = [
    ("general", "Общий"),
]


class NameRequiredError(ValueError):
    """Raised when a channel name is empty after trimming."""

    code = "NAME_REQUIRED"

    def __init__(self):
        super().__init__("Channel name is required")


class ChannelStoreWriteError(RuntimeError):
    """Raised when the channel store could not be written to disk."""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Channel:
    """A persisted voice channel definition."""

    id: str
    name: str
    capacity: int
    password_hash: Optional[str] = None
    created_at: str = field(default_factory=_now_iso)

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)

    def to_record(self) -> Dict[str, Any]:
        """Convert to the on-disk record shape."""
        record: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "maxUsers": self.capacity,
            "hasPassword": self.has_password,
        }
        if self.password_hash:
            record["passwordHash"] = self.password_hash
        record["createdAt"] = self.created_at
        return record

    @classmethod
    def from_record(cls, record: Any, default_capacity: int) -> Optional["Channel"]:
        """
        Build a channel from an on-disk record.

        Returns None for records without an id or a name.
        """
        if not isinstance(record, dict) or not record.get("id") or not record.get("name"):
            return None

        capacity = _coerce_capacity(record.get("maxUsers")) or default_capacity
        password_hash = None
        if record.get("hasPassword") and record.get("passwordHash"):
            password_hash = str(record["passwordHash"])
        elif record.get("hasPassword"):
            logger.warning(f"Channel '{record['id']}' is marked as protected but has no passphrase")

        return cls(
            id=str(record["id"]),
            name=str(record["name"]),
            capacity=capacity,
            password_hash=password_hash,
            created_at=str(record.get("createdAt") or _now_iso()),
        )


def _coerce_capacity(value: Any) -> Optional[int]:
    """Return value as a positive int capacity, or None if it is not a finite positive number."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number < 1:
        return None
    return int(number)


def random_token(rng: random.Random, length: int) -> str:
    """Random lowercase base36 string."""
    return "".join(rng.choice(SLUG_ALPHABET) for _ in range(length))


def slugify(name: str, rng: random.Random) -> str:
    """
    Derive a channel id from a display name.

    Lowercases the name, collapses every run of characters outside
    [a-z0-9а-яё] into a single '-', and trims separators from both ends.
    Names with no usable characters get a random 'channel-xxxxxx' id.
    """
    slug = SLUG_SEPARATOR_PATTERN.sub("-", name.lower()).strip("-")
    return slug or FALLBACK_ID_PREFIX + random_token(rng, FALLBACK_ID_LENGTH)


def unique_channel_id(name: str, taken: Mapping[str, Any], rng: random.Random) -> str:
    """Slugify name and append random suffixes until the id is not in taken."""
    channel_id = slugify(name, rng)
    while channel_id in taken:
        channel_id = f"{channel_id}-{random_token(rng, COLLISION_SUFFIX_LENGTH)}"
    return channel_id


class JsonFileBackend:
    """
    Key-value backing store holding the whole channel collection as one JSON array.

    Writes go to a temporary file in the same directory that is then renamed
    over the target, so a reader never sees a half-written file.
    """

    def __init__(self, path: str):
        self.path = path

    def load(self) -> Optional[List[Any]]:
        """
        Read all records.

        Returns:
            The stored records, or None if the file does not exist.

        Raises:
            ValueError: If the file is not a JSON array.
            OSError: If the file exists but cannot be read.
        """
        if not os.path.exists(self.path):
            return None
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, list):
            raise ValueError(f"Expected a JSON array, got {type(data).__name__}")
        return data

    def save(self, records: List[Dict[str, Any]]) -> None:
        """Replace the stored collection with records."""
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".channels-", suffix=".tmp", dir=directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(records, f, ensure_ascii=False, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise ChannelStoreWriteError(f"Failed to write channel store {self.path}: {e}") from e


class ChannelStore:
    """
    Registry of channel definitions backed by durable storage.

    Channels are kept in insertion order. The store is the only writer of
    channel records; presence and admission only read from it.
    """

    def __init__(
        self,
        backend: JsonFileBackend,
        default_capacity: int = 10,
        hasher: Optional[PasswordHasher] = None,
        rng: Optional[random.Random] = None,
    ):
        self.backend = backend
        self.default_capacity = default_capacity
        self.hasher = hasher or PasswordHasher()
        self.rng = rng or random.Random()
        self._channels: Dict[str, Channel] = {}

    def load(self) -> None:
        """
        Load channels from the backend.

        A missing store is seeded with the default channels. An unreadable
        store is logged, discarded and replaced by a single default channel.
        Both cases are persisted immediately.
        """
        self._channels.clear()
        try:
            records = self.backend.load()
        except (OSError, ValueError) as e:
            logger.error(f"Failed to read channel store, using defaults: {e}")
            self._seed(RECOVERY_CHANNELS)
            self._save()
            return

        if records is None:
            logger.info("Channel store not found, creating default channels")
            self._seed(DEFAULT_CHANNELS)
            self._save()
            return

        migrated = False
        for record in records:
            channel = Channel.from_record(record, self.default_capacity)
            if channel is None:
                logger.warning(f"Skipping invalid channel record: {record!r}")
                continue
            if channel.password_hash and not self.hasher.is_hash(channel.password_hash):
                # Stores written before hashing kept the passphrase verbatim
                channel.password_hash = self.hasher.hash(channel.password_hash)
                migrated = True
            self._channels[channel.id] = channel

        logger.info(f"Loaded {len(self._channels)} channels")
        if migrated:
            logger.info("Migrated plaintext channel passphrases to hashes")
            self._save()

    def list(self) -> List[Channel]:
        """All channels in insertion order."""
        return list(self._channels.values())

    def get(self, channel_id: str) -> Optional[Channel]:
        return self._channels.get(channel_id)

    def __contains__(self, channel_id: str) -> bool:
        return channel_id in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    def create(
        self,
        name: Any,
        capacity: Any = None,
        password: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> Channel:
        """
        Create and persist a channel.

        Args:
            name: Display name, required after trimming
            capacity: Maximum participants; non-positive or missing means the default
            password: Optional passphrase; empty means an open channel
            password_hash: Hash computed ahead of time, used instead of password

        Returns:
            The created channel.

        Raises:
            NameRequiredError: If the name is empty after trimming.
            ChannelStoreWriteError: If the store could not be written.
        """
        name = str(name or "").strip()
        if not name:
            raise NameRequiredError()

        channel = Channel(
            id=unique_channel_id(name, self._channels, self.rng),
            name=name,
            capacity=_coerce_capacity(capacity) or self.default_capacity,
            password_hash=password_hash or self._hash_password(password),
        )

        self._channels[channel.id] = channel
        try:
            self._save()
        except ChannelStoreWriteError:
            del self._channels[channel.id]
            raise

        logger.info(
            f"Created channel '{channel.id}' (capacity={channel.capacity}, "
            f"protected={channel.has_password})"
        )
        return channel

    def update(self, channel_id: str, patch: Mapping[str, Any]) -> Optional[Channel]:
        """
        Apply a partial update and persist it.

        Only keys present in patch are considered:
        - name: applied when non-empty after trimming
        - capacity: applied when a finite positive number
        - password: any value, including None or '', sets or clears the passphrase
        - password_hash: same as password with a hash computed ahead of time

        Returns:
            The updated channel, or None if channel_id is unknown.

        Raises:
            ChannelStoreWriteError: If the store could not be written.
        """
        existing = self._channels.get(channel_id)
        if existing is None:
            return None

        updated = Channel(
            id=existing.id,
            name=existing.name,
            capacity=existing.capacity,
            password_hash=existing.password_hash,
            created_at=existing.created_at,
        )

        if "name" in patch:
            name = str(patch["name"] or "").strip()
            if name:
                updated.name = name

        if "capacity" in patch:
            capacity = _coerce_capacity(patch["capacity"])
            if capacity:
                updated.capacity = capacity

        if "password" in patch:
            password = patch["password"]
            updated.password_hash = self._hash_password(password)

        if "password_hash" in patch:
            updated.password_hash = patch["password_hash"] or None

        self._channels[channel_id] = updated
        try:
            self._save()
        except ChannelStoreWriteError:
            self._channels[channel_id] = existing
            raise

        logger.info(f"Updated channel '{channel_id}'")
        return updated

    def verify_password(self, channel: Channel, candidate: Optional[str]) -> bool:
        """Check a supplied passphrase against the channel's stored hash."""
        if not channel.has_password:
            return True
        return self.hasher.verify(candidate or "", channel.password_hash or "")

    def _hash_password(self, password: Any) -> Optional[str]:
        return self.hasher.hash(str(password)) if password else None

    def _seed(self, defaults: List[tuple]) -> None:
        for channel_id, name in defaults:
            self._channels[channel_id] = Channel(
                id=channel_id, name=name, capacity=self.default_capacity
            )

    def _save(self) -> None:
        self.backend.save([channel.to_record() for channel in self._channels.values()])
