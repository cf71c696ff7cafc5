"""
Channel passphrase hashing.

Passphrases are stored as salted bcrypt hashes. Admission hashes the supplied
passphrase with the stored salt and compares the result.
"""

import logging
import re

import bcrypt

logger = logging.getLogger(__name__)

# bcrypt only uses the first 72 bytes of a secret and newer releases reject longer input
MAX_PASSWORD_BYTES = 72

# $2a$, $2b$ and $2y$ prefixes, two-digit cost, 53 chars of salt + digest
BCRYPT_HASH_PATTERN = re.compile(r'^\$2[aby]\$\d{2}\$[./A-Za-z0-9]{53}$')


def _encode(password: str) -> bytes:
    return password.encode()[:MAX_PASSWORD_BYTES]


class PasswordHasher:
    """Hash and verify channel passphrases with bcrypt."""

    def __init__(self, rounds: int = 12):
        self.rounds = rounds

    def hash(self, password: str) -> str:
        """Hash a passphrase with a freshly generated salt."""
        return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=self.rounds)).decode()

    def verify(self, password: str, hashed: str) -> bool:
        """Verify a passphrase against a stored bcrypt hash."""
        if not password or not hashed:
            return False
        try:
            return bcrypt.checkpw(_encode(password), hashed.encode())
        except ValueError as e:
            logger.error(f"Stored passphrase hash is malformed: {e}")
            return False

    @staticmethod
    def is_hash(value: str) -> bool:
        """Check whether a stored value is already a bcrypt hash."""
        return bool(BCRYPT_HASH_PATTERN.match(value))
