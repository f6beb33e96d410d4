#!/usr/bin/env python3
"""Embedding enrichment worker CLI.

Usage:
    # One scheduled run (cron / systemd timer):
    python scripts/run_worker.py --max-tasks 20 --iterations 1

    # Resident loop, sweeping claims older than 10 minutes first:
    python scripts/run_worker.py --max-tasks 50 --requeue-stale-seconds 600
"""

from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import argparse
import json
import logging
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.batch_worker import create_batch_worker_from_env
from app.embedding_provider import get_provider_info
from app.store import store


def main() -> int:
    parser = argparse.ArgumentParser(description="Process pending transaction embedding tasks.")
    parser.add_argument(
        "--max-tasks",
        type=int,
        default=int(os.environ.get("WORKER_BATCH_SIZE", "20") or 20),
        help="Maximum tasks claimed per iteration.",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=1,
        help="Stop after N iterations (0 means run forever).",
    )
    parser.add_argument(
        "--requeue-stale-seconds",
        type=float,
        default=None,
        help="Requeue processing tasks claimed longer ago than this before running.",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger(__name__).info("embedding provider: %s", get_provider_info())

    worker = create_batch_worker_from_env(store=store)
    requeued = 0
    if args.requeue_stale_seconds is not None:
        requeued = int(worker.requeue_stale(args.requeue_stale_seconds)["requeued"])

    if args.iterations == 1:
        stats = worker.run_once(args.max_tasks)
    else:
        stats = worker.run_forever(
            max_tasks=args.max_tasks,
            stop_after_iterations=args.iterations if args.iterations > 0 else None,
        )
    print(json.dumps({"success": True, "requeued_stale": requeued, "stats": stats}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
