from __future__ import annotations

# Namespaces never share a prefix, so a scan of one cannot match another
BLACKLIST_PREFIX = "bl:"
REFRESH_PREFIX = "rt:"
SESSION_PREFIX = "sess:"
LOCKOUT_PREFIX = "lock:"
LOCKOUT_TIME_PREFIX = "locktime:"
RATE_LIMIT_PREFIX = "rl:"


def blacklist_key(token_hash: str) -> str:
    return f"{BLACKLIST_PREFIX}{token_hash}"


def refresh_key(user_id: str, token_hash: str) -> str:
    return f"{REFRESH_PREFIX}{user_id}:{token_hash}"


def session_index_key(user_id: str) -> str:
    return f"{SESSION_PREFIX}{user_id}"


def lockout_counter_key(email: str) -> str:
    return f"{LOCKOUT_PREFIX}{email}"


def lockout_marker_key(email: str) -> str:
    return f"{LOCKOUT_TIME_PREFIX}{email}"


def rate_limit_key(scope: str, client: str) -> str:
    return f"{RATE_LIMIT_PREFIX}{scope}:{client}"


__all__ = [
    "BLACKLIST_PREFIX",
    "REFRESH_PREFIX",
    "SESSION_PREFIX",
    "LOCKOUT_PREFIX",
    "LOCKOUT_TIME_PREFIX",
    "RATE_LIMIT_PREFIX",
    "blacklist_key",
    "refresh_key",
    "session_index_key",
    "lockout_counter_key",
    "lockout_marker_key",
    "rate_limit_key",
]
