#!/usr/bin/env python3
"""
Run the self-improvement worker.

Examples:
    python scripts/self_improve_worker.py --once
    python scripts/self_improve_worker.py --poll-seconds 10
"""

import argparse
import asyncio
import json
import sys

from catalog_autotune.core.database import close_db, init_db
from catalog_autotune.core.logging import configure_logging
from catalog_autotune.core.self_improvement.worker import run_worker


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Process queued self-improvement batches.")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single iteration and exit, even if the queue is empty.",
    )
    parser.add_argument(
        "--poll-seconds",
        type=float,
        default=None,
        help="Seconds to sleep when the queue is empty (default: SELF_IMPROVE_WORKER_POLL_SECONDS).",
    )
    args = parser.parse_args(argv)
    if args.poll_seconds is not None and args.poll_seconds <= 0:
        parser.error("--poll-seconds must be positive")
    return args


async def main(argv: list[str]) -> int:
    args = parse_args(argv)
    configure_logging()
    await init_db()
    try:
        result = await run_worker(once=args.once, poll_seconds=args.poll_seconds)
    finally:
        await close_db()

    if result.idle:
        print(json.dumps({"status": "idle", "message": "No queued self-improvement batches."}, indent=2))
    else:
        print(json.dumps(
            {
                "status": "processed",
                "batch_id": result.batch_id,
                "batch_status": result.batch_status.value,
            },
            indent=2,
        ))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main(sys.argv[1:])))
