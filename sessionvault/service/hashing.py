from __future__ import annotations

import hashlib
import secrets

from sessionvault.service.errors import ValidationError

# 64 random bytes, base64url without padding
REFRESH_TOKEN_BYTES = 64


def hash_secret(secret: str) -> str:
    """Return the hex SHA-256 digest used as the storage identity of a bearer secret.

    No salt: inputs are high-entropy random tokens, not passwords, and the
    digest must be reproducible to look the record up again.
    """
    if not isinstance(secret, str) or not secret:
        raise ValidationError("secret must be a non-empty string")
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


def generate_refresh_token() -> str:
    return secrets.token_urlsafe(REFRESH_TOKEN_BYTES)


__all__ = ["hash_secret", "generate_refresh_token", "REFRESH_TOKEN_BYTES"]
