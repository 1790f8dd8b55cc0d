#!/usr/bin/env python3
"""Report on credential storage: key counts, TTL samples and TTL anomalies.

Usage:
    REDIS_URL=redis://localhost:6379/0 python scripts/diagnose_token_storage.py

    # Check one refresh token as well:
    python scripts/diagnose_token_storage.py --user-id u-123 --refresh-token <token>

Exit status is 2 when the store is unreachable and 1 when refresh records
without a TTL are found.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def diagnose(args: argparse.Namespace) -> dict:
    # Import here to avoid loading config before env vars are set
    from sessionvault.config import get_settings
    from sessionvault.service.diagnostics import token_storage_report, verify_refresh_token
    from sessionvault.service.runtime import build_store

    store = build_store(get_settings())
    try:
        result = {"report": await token_storage_report(store, scan_limit=args.scan_limit)}
        if args.user_id and args.refresh_token:
            result["refresh_token"] = await verify_refresh_token(
                store, args.user_id, args.refresh_token
            )
        return result
    finally:
        await store.close()


def main():
    parser = argparse.ArgumentParser(
        description="Diagnose sessionvault token storage",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--redis-url",
        default=os.environ.get("REDIS_URL"),
        help="Redis URL (or set REDIS_URL env var)",
    )
    parser.add_argument("--scan-limit", type=int, default=10_000)
    parser.add_argument("--user-id", help="User id owning --refresh-token")
    parser.add_argument("--refresh-token", help="Refresh token to look up")
    args = parser.parse_args()

    if not args.redis_url:
        print("Error: --redis-url or REDIS_URL environment variable required")
        sys.exit(1)
    os.environ["REDIS_URL"] = args.redis_url

    # The codec is not used here, but settings require a secret
    if not os.environ.get("JWT_SECRET"):
        import secrets

        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    try:
        result = asyncio.run(diagnose(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(2)

    print(json.dumps(result, indent=2, default=str))
    report = result["report"]
    if not report.get("store_available"):
        sys.exit(2)
    if report.get("ttl_issues"):
        sys.exit(1)


if __name__ == "__main__":
    main()
