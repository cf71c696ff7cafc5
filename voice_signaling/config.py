"""
Configuration module for the voice signaling server.

Loads settings from environment variables with sensible defaults. Variables
from a .env file (ENV_FILE, default ".env") fill in whatever the process
environment does not set.
"""

import logging
import math
import os
from typing import List, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

TRUE_VALUES = ("true", "1", "yes")


def _get_env_number(name: str, default: float) -> float:
    """Read a numeric environment variable, falling back to default when unset or invalid."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Invalid {name} value: '{raw}'. Using default {default}.")
        return default
    if not math.isfinite(value):
        logger.warning(f"Invalid {name} value: '{raw}'. Using default {default}.")
        return default
    return value


def _get_env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in TRUE_VALUES


class Settings:
    """Configuration settings loaded from environment variables."""

    def __init__(self, channels_file: Optional[str] = None):
        # HTTP port
        self.port: int = int(_get_env_number("PORT", 3000))
        self.host: str = os.getenv("HOST", "0.0.0.0")
        # Default capacity for new channels and for records without a usable maxUsers
        self.max_room_users: int = self._parse_max_room_users()
        # Origins allowed for CORS and WebSocket handshakes
        self.allowed_origins: List[str] = self._parse_allowed_origins()
        # Channel store location
        self.data_dir: str = os.getenv("DATA_DIR", "data")
        self.channels_file: str = channels_file or os.getenv(
            "CHANNELS_FILE", os.path.join(self.data_dir, "channels.json")
        )
        # Logging level
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")
        # Debug mode for development (enables auto-reload)
        self.debug: bool = _get_env_bool("DEBUG", "false")
        # Cost factor for channel passphrase hashes
        self.bcrypt_rounds: int = self._parse_bcrypt_rounds()
        # Messages queued per connection before new ones are dropped
        self.outbound_buffer_size: int = max(1, int(_get_env_number("OUTBOUND_BUFFER_SIZE", 256)))
        # Keepalive interval for /events streams
        self.sse_ping_interval: int = max(1, int(_get_env_number("SSE_PING_INTERVAL", 15)))
        # Detect CP1251/CP866 JSON bodies sent by Windows clients (default: true)
        self.enable_encoding_auto_detection: bool = _get_env_bool(
            "ENABLE_ENCODING_AUTO_DETECTION", "true"
        )
        # Expose per-channel occupancy on /health (trusted environments only)
        self.health_include_channel_details: bool = _get_env_bool(
            "HEALTH_INCLUDE_CHANNEL_DETAILS", "false"
        )

    def _parse_max_room_users(self) -> int:
        value = int(_get_env_number("MAX_ROOM_USERS", 10))
        if value > 0:
            return value
        logger.warning(f"MAX_ROOM_USERS must be positive, got {value}. Using 10.")
        return 10

    def _parse_allowed_origins(self) -> List[str]:
        """Parse ALLOWED_ORIGINS as a comma-separated list, '*' allows any origin."""
        env_value = os.getenv("ALLOWED_ORIGINS") or "*"
        origins = [origin.strip() for origin in env_value.split(",") if origin.strip()]
        if origins:
            return origins

        logger.warning(
            "ALLOWED_ORIGINS was provided but no valid origins were parsed. "
            "Allowing any origin."
        )
        return ["*"]

    def _parse_bcrypt_rounds(self) -> int:
        # bcrypt accepts cost factors 4..31
        value = int(_get_env_number("BCRYPT_ROUNDS", 12))
        if 4 <= value <= 31:
            return value
        logger.warning(f"BCRYPT_ROUNDS must be between 4 and 31, got {value}. Using 12.")
        return 12

    @property
    def allows_any_origin(self) -> bool:
        return "*" in self.allowed_origins

    def is_origin_allowed(self, origin: Optional[str]) -> bool:
        """Check a request Origin header against the allowed list.

        Requests without an Origin header (non-browser clients) are accepted.
        """
        if self.allows_any_origin or not origin:
            return True
        return origin in self.allowed_origins


def load_env_file(path: Optional[str] = None) -> bool:
    """Load a .env file into os.environ. Variables already set are kept."""
    path = path or os.getenv("ENV_FILE", ".env")
    loaded = load_dotenv(path, override=False)
    if loaded:
        logger.info(f"Loaded environment from {path}")
    return loaded


load_env_file()

# Global settings instance
settings = Settings()
