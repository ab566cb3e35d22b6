#!/usr/bin/env python3
"""
Launch the interview service with command-line overrides.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path

import uvicorn


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Run the MockLoop interview service.",
    )
    parser.add_argument("--host", default="0.0.0.0", help="Service bind host.")
    parser.add_argument("--port", type=int, default=8000, help="Service bind port.")
    parser.add_argument(
        "--data-dir",
        default=None,
        help="Directory for the JSON store. Default: in-memory (data is lost on exit).",
    )
    parser.add_argument(
        "--question-pool",
        default=None,
        help="Override question pool JSON path.",
    )
    parser.add_argument("--admin-token", default=None, help="Token required by admin routes.")
    parser.add_argument("--log-level", default="info", help="Uvicorn log level.")
    return parser.parse_args()


def main() -> None:
    args = parse_args()

    os.environ["SERVICE_HOST"] = args.host
    os.environ["SERVICE_PORT"] = str(args.port)
    if args.data_dir:
        os.environ["DATA_DIR"] = str(Path(args.data_dir).expanduser())
    if args.question_pool:
        os.environ["QUESTION_POOL_PATH"] = str(Path(args.question_pool).expanduser())
    if args.admin_token:
        os.environ["ADMIN_TOKEN"] = args.admin_token

    from interview_service import app  # Import after env config

    print(
        f"Starting MockLoop interview service bind=http://{args.host}:{args.port} "
        f"data_dir={os.environ.get('DATA_DIR', 'in-memory')}"
    )
    uvicorn.run(app, host=args.host, port=args.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
