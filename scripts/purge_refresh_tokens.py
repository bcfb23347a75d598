#!/usr/bin/env python3
"""Delete expired refresh tokens and revoked ones past the retention window.

Intended for cron when the in-process purge loop is disabled
(REFRESH_TOKEN_PURGE_INTERVAL_SECONDS=0).

Usage:
    python scripts/purge_refresh_tokens.py
    python scripts/purge_refresh_tokens.py --retention-days 7
"""
from __future__ import annotations

import argparse
import os
import sys
from datetime import timedelta
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def purge(retention_days: int | None = None) -> int:
    from tourpass.service.runtime import get_runtime

    runtime = get_runtime()
    if retention_days is not None:
        runtime.refresh_tokens.retention = timedelta(days=retention_days)
    return runtime.refresh_tokens.purge_stale()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Keep revoked tokens this many days (default: REFRESH_TOKEN_RETENTION_DAYS)",
    )
    args = parser.parse_args(argv)
    if args.retention_days is not None and args.retention_days < 0:
        print("Error: --retention-days must be non-negative")
        return 1

    # Purging never needs the rate limiter
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        purged = purge(args.retention_days)
    except Exception as exc:
        print(f"Error: {exc}")
        return 1
    print(f"Purged {purged} refresh token(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
