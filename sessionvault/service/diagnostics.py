from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Union

from sessionvault.logging import get_logger
from sessionvault.service.hashing import hash_secret
from sessionvault.service.keys import (
    BLACKLIST_PREFIX,
    LOCKOUT_PREFIX,
    LOCKOUT_TIME_PREFIX,
    REFRESH_PREFIX,
    SESSION_PREFIX,
    refresh_key,
    session_index_key,
)
from sessionvault.storage.errors import StoreError
from sessionvault.storage.kv import TTL_MISSING, TTL_PERSISTENT, KeyValueStore

logger = get_logger(__name__)

DIAGNOSTIC_PREFIXES = (
    REFRESH_PREFIX,
    SESSION_PREFIX,
    BLACKLIST_PREFIX,
    LOCKOUT_PREFIX,
    LOCKOUT_TIME_PREFIX,
)
SAMPLE_SIZE = 3


def describe_ttl(ttl: int) -> Union[int, str]:
    if ttl == TTL_PERSISTENT:
        return "no-expiry"
    if ttl == TTL_MISSING:
        return "expired"
    return ttl


async def token_storage_report(
    store: KeyValueStore, *, scan_limit: int = 10_000
) -> Dict[str, Any]:
    """Key counts, TTL samples and TTL anomalies per credential namespace."""
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "store_type": type(store).__name__,
        "store_available": store.is_available(),
        "key_counts": {},
        "samples": {},
        "ttl_issues": [],
    }
    try:
        connected = await store.ensure_connected()
    except StoreError as exc:
        connected = False
        report["error"] = exc.message
    report["store_available"] = connected
    if not connected:
        logger.warning("token_storage_diagnostics_unavailable")
        return report

    ttl_issues: List[str] = report["ttl_issues"]
    for prefix in DIAGNOSTIC_PREFIXES:
        try:
            keys = sorted(await store.scan_keys(f"{prefix}*", limit=scan_limit))
            report["key_counts"][prefix] = len(keys)
            samples = []
            for key in keys[:SAMPLE_SIZE]:
                ttl = await store.ttl(key)
                samples.append({"key": key, "ttl": describe_ttl(ttl)})
            report["samples"][prefix] = samples
            if prefix == REFRESH_PREFIX:
                # Every refresh record must expire on its own
                for key in keys:
                    ttl = await store.ttl(key)
                    if ttl == TTL_PERSISTENT:
                        ttl_issues.append(f"refresh token {key} has no TTL set")
        except StoreError as exc:
            logger.error(
                "token_storage_diagnostics_prefix_failed", prefix=prefix, error=exc.message
            )
            report.setdefault("errors", {})[prefix] = exc.message
    logger.info(
        "token_storage_diagnostics",
        key_counts=report["key_counts"],
        ttl_issues=len(ttl_issues),
    )
    return report


async def verify_refresh_token(
    store: KeyValueStore, user_id: str, refresh_token: str
) -> Dict[str, Any]:
    """Raw storage view of one refresh token, bypassing validation rules."""
    token_hash = hash_secret(refresh_token)
    key = refresh_key(user_id, token_hash)
    exists = await store.exists(key)
    ttl = await store.ttl(key)
    indexed = token_hash in await store.members_of(session_index_key(user_id))
    return {
        "exists": exists,
        "ttl": describe_ttl(ttl),
        "indexed": indexed,
        "token_hash_prefix": token_hash[:12],
    }


__all__ = ["token_storage_report", "verify_refresh_token", "describe_ttl"]
