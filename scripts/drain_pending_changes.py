#!/usr/bin/env python3
"""CLI script to run one reconciliation pass over pending_sync_changes.

Usage:
    uv run python scripts/drain_pending_changes.py
    uv run python scripts/drain_pending_changes.py --limit 500 --cleanup-days 7

Connects using DATABASE_URL and the Google service account settings from
the environment or .env file. Each pending row is written to its sheet;
rows that keep failing move to 'failed' once retry_count reaches
SYNC_MAX_ATTEMPTS.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys

# Ensure project root is on sys.path so we can import src.brokerage
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from dotenv import load_dotenv  # noqa: E402

# Load .env from project root
load_dotenv(os.path.join(os.path.dirname(__file__), "..", ".env"))


async def drain(limit: int, cleanup_days: int | None) -> int:
    """Process pending rows once. Returns the number that still failed."""
    from src.brokerage.config import get_settings
    from src.brokerage.core.database import close_db
    from src.brokerage.core.logging import configure_structlog
    from src.brokerage.sync.container import build_sync_stack

    configure_structlog()
    settings = get_settings()

    try:
        stack = await build_sync_stack(settings)
        result = await stack.retry_handler.process_pending(
            stack.coordinator.apply_failed_change, limit=limit
        )
        print(
            f"Processed {result.processed}: "
            f"{result.succeeded} succeeded, {result.failed} failed"
        )

        if cleanup_days is not None:
            removed = await stack.retry_handler.cleanup(older_than_days=cleanup_days)
            print(f"Removed {removed} settled row(s) older than {cleanup_days} day(s)")
    finally:
        await close_db()

    return result.failed


def main() -> None:
    parser = argparse.ArgumentParser(description="Write pending sync changes to the spreadsheets")
    parser.add_argument("--limit", type=int, default=100, help="Maximum rows to process")
    parser.add_argument(
        "--cleanup-days",
        type=int,
        default=None,
        help="Also delete completed and failed rows older than this many days",
    )
    args = parser.parse_args()

    failed = asyncio.run(drain(args.limit, args.cleanup_days))
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
