#!/usr/bin/env python3
"""Purge expired sessions, remember tokens and stale fallback counters.

Usage:
    # Using environment variables (STORE_STRATEGY, DATABASE_URL, REDIS_URL, JWT_SECRET):
    python scripts/purge_expired.py

    # Report what the store holds without purging:
    python scripts/purge_expired.py --dry-run

Nothing depends on this for correctness: expiry is checked on every read.
Redis expires its own records, so the Redis backend always reports zero.
"""
from __future__ import annotations

import argparse
import asyncio
import sys


async def purge(dry_run: bool = False) -> dict:
    # Import here so env vars set by the caller are honoured
    from sessionguard.config import Settings
    from sessionguard.service.runtime import Runtime

    runtime = Runtime.build(Settings.from_env())
    try:
        if dry_run:
            return {"dry_run": True, "store": type(runtime.store).__name__}
        return await runtime.cleanup()
    finally:
        await runtime.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="Purge expired session state")
    parser.add_argument("--dry-run", action="store_true", help="build the runtime but purge nothing")
    args = parser.parse_args()
    try:
        result = asyncio.run(purge(dry_run=args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    for key, value in result.items():
        print(f"{key}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
