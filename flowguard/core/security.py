"""
Credential helpers: API key issuing and verification, constant-time comparison.

API keys look like `sk-<prefix>-<secret>`. Only `sk-<prefix>` is stored in
clear (the lookup column); the whole key is stored as a bcrypt hash.
"""

import hmac
import secrets
from typing import Optional

import bcrypt

KEY_SCHEME = "sk"


class APIKeyGenerator:
    PREFIX_LENGTH = 8
    SECRET_LENGTH = 32

    @classmethod
    def generate(cls) -> tuple[str, str, str]:
        """Return `(full_key, lookup_prefix, key_hash)`; the full key is never stored."""
        lookup_prefix = f"{KEY_SCHEME}-{secrets.token_hex(cls.PREFIX_LENGTH // 2)}"
        full_key = f"{lookup_prefix}-{secrets.token_hex(cls.SECRET_LENGTH // 2)}"
        return full_key, lookup_prefix, bcrypt.hashpw(full_key.encode(), bcrypt.gensalt()).decode()

    @classmethod
    def verify(cls, key: str, key_hash: str) -> bool:
        try:
            return bcrypt.checkpw(key.encode(), key_hash.encode())
        except ValueError:
            # Stored hash is not a bcrypt hash
            return False

    @classmethod
    def get_prefix(cls, key: str) -> str:
        """Lookup prefix of a key-shaped value, "" for anything else."""
        scheme, _, rest = key.partition("-")
        prefix, _, secret = rest.partition("-")
        if scheme != KEY_SCHEME or not prefix or not secret or "-" in secret:
            return ""
        return f"{KEY_SCHEME}-{prefix}"

    @classmethod
    def looks_like_key(cls, value: Optional[str]) -> bool:
        return bool(value) and bool(cls.get_prefix(value))


def constant_time_equals(left: str, right: str) -> bool:
    return hmac.compare_digest(left.encode("utf-8"), right.encode("utf-8"))
