#!/usr/bin/env python3
"""
Run one abandoned-interview sweep against the JSON store.

Intended for cron: finalizes every active interview older than
ABANDON_AFTER_MINUTES as abandoned, with usage capped at the reservation.
Exits non-zero if any interview failed to finalize.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from mockloop.cache import ReadThroughCache
from mockloop.config import load_service_config
from mockloop.lifecycle import InterviewLifecycleManager, SweepResult
from mockloop.store import JsonFileInterviewStore


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Finalize stale active interviews as abandoned.",
    )
    parser.add_argument("--data-dir", default=None, help="JSON store directory. Default: $DATA_DIR.")
    parser.add_argument(
        "--abandon-after-minutes",
        type=int,
        default=None,
        help="Override the staleness threshold.",
    )
    return parser.parse_args()


async def sweep() -> SweepResult:
    config = load_service_config()
    if config.data_dir is None:
        raise RuntimeError("DATA_DIR is required for a sweep (the in-memory store has nothing to sweep).")

    store = JsonFileInterviewStore(config.data_dir, ReadThroughCache())
    lifecycle = InterviewLifecycleManager(
        store,
        min_tokens_required=config.min_tokens_required,
        tokens_per_second=config.tokens_per_second,
        abandon_after=config.abandon_after,
    )
    return await lifecycle.sweep_abandoned()


def main() -> None:
    args = parse_args()
    if args.data_dir:
        os.environ["DATA_DIR"] = str(Path(args.data_dir).expanduser())
    if args.abandon_after_minutes is not None:
        os.environ["ABANDON_AFTER_MINUTES"] = str(args.abandon_after_minutes)

    result = asyncio.run(sweep())
    print(
        f"Sweep complete: processed={result.processed} skipped={result.skipped} failed={result.failed}"
    )
    for interview_id in result.failed_ids:
        print(f"  failed: {interview_id}")
    sys.exit(1 if result.failed else 0)


if __name__ == "__main__":
    main()
