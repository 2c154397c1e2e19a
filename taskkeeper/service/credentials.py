"""Password hashing and one-time secret generation.

Two hash encodings coexist so accounts created before the argon2 migration
can still log in:

- strong: ``$argon2id$<salt_hex>$<key_hex>`` with fixed cost parameters
- legacy: bare FNV-1a 64 digest of ``password || secret`` in lowercase hex

New credentials are always strong. Legacy digests are only ever verified.
"""

from __future__ import annotations

import hmac
import secrets
from typing import Optional

from argon2 import Type
from argon2.exceptions import HashingError
from argon2.low_level import hash_secret_raw

from taskkeeper.logging import get_logger
from taskkeeper.service.errors import HashingFailed

logger = get_logger(__name__)

STRONG_PREFIX = "$argon2id$"

# Changing any of these invalidates every stored strong hash.
ARGON2_TIME_COST = 3
ARGON2_MEMORY_COST_KIB = 65536
ARGON2_PARALLELISM = 4
SALT_BYTES = 16
KEY_BYTES = 32

TOKEN_BYTES = 32

_FNV64_OFFSET = 14695981039346656037
_FNV64_PRIME = 1099511628211
_U64_MASK = 0xFFFFFFFFFFFFFFFF


def is_legacy_hash(stored: str) -> bool:
    return not stored.startswith(STRONG_PREFIX)


def legacy_digest(password: str, secret: str) -> str:
    h = _FNV64_OFFSET
    for byte in password.encode("utf-8") + secret.encode("utf-8"):
        h ^= byte
        h = (h * _FNV64_PRIME) & _U64_MASK
    return f"{h:x}"


def generate_verification_code() -> str:
    """Six digit code, uniform over 100000-999999."""
    return str(100000 + secrets.randbelow(900000))


def generate_session_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def generate_reset_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def _derive(password: str, salt: bytes) -> bytes:
    return hash_secret_raw(
        password.encode("utf-8"),
        salt,
        time_cost=ARGON2_TIME_COST,
        memory_cost=ARGON2_MEMORY_COST_KIB,
        parallelism=ARGON2_PARALLELISM,
        hash_len=KEY_BYTES,
        type=Type.ID,
    )


def _parse_strong(stored: str) -> Optional[tuple[bytes, bytes]]:
    body = stored[len(STRONG_PREFIX):]
    salt_hex, sep, key_hex = body.partition("$")
    if not sep or len(salt_hex) != SALT_BYTES * 2 or len(key_hex) != KEY_BYTES * 2:
        return None
    try:
        return bytes.fromhex(salt_hex), bytes.fromhex(key_hex)
    except ValueError:
        return None


class CredentialService:
    """Hashes new passwords and verifies both strong and legacy encodings."""

    def __init__(self, legacy_secret: Optional[str] = None) -> None:
        self._legacy_secret = legacy_secret

    def hash_password(self, password: str) -> str:
        salt = secrets.token_bytes(SALT_BYTES)
        try:
            key = _derive(password, salt)
        except (HashingError, MemoryError) as exc:
            logger.error("password_hash_failed", error_type=type(exc).__name__)
            raise HashingFailed("unable to hash password") from exc
        return f"{STRONG_PREFIX}{salt.hex()}${key.hex()}"

    def verify_password(self, stored: str, candidate: str) -> bool:
        """Return True only when ``candidate`` matches ``stored``.

        Malformed encodings and KDF failures verify as False so a caller
        cannot tell them apart from a wrong password.
        """
        if not stored:
            return False
        if is_legacy_hash(stored):
            return self._verify_legacy(stored, candidate)
        parsed = _parse_strong(stored)
        if parsed is None:
            logger.warning("password_hash_malformed")
            return False
        salt, expected = parsed
        try:
            computed = _derive(candidate, salt)
        except (HashingError, MemoryError) as exc:
            logger.error("password_verify_failed", error_type=type(exc).__name__)
            return False
        return hmac.compare_digest(computed, expected)

    def _verify_legacy(self, stored: str, candidate: str) -> bool:
        if not self._legacy_secret:
            logger.warning("legacy_hash_rejected", reason="no_legacy_secret")
            return False
        return legacy_digest(candidate, self._legacy_secret) == stored

    @staticmethod
    def is_legacy_hash(stored: str) -> bool:
        return is_legacy_hash(stored)


__all__ = [
    "CredentialService",
    "STRONG_PREFIX",
    "generate_reset_token",
    "generate_session_token",
    "generate_verification_code",
    "is_legacy_hash",
    "legacy_digest",
]
