#!/usr/bin/env python3
"""Re-run structured extraction over finished jobs.

Replaces each job's prediction rows with a fresh extraction pass over its
stored summary and fills in the author where one is found.

Usage:
  python tools/backfill_predictions.py             # every finished job
  python tools/backfill_predictions.py --job ID    # a single job
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path

# Ensure project root is on sys.path so `glaskugel` imports resolve when executed from tools/
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from glaskugel.database import Database  # noqa: E402
from glaskugel.pipeline import backfill_predictions  # noqa: E402


def setup_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s - backfill_predictions - %(levelname)s - %(message)s",
    )


def main() -> int:
    setup_logging()
    parser = argparse.ArgumentParser(description="Backfill predictions and authors from stored summaries")
    parser.add_argument("--job", default=None, help="Only process this job id")
    args = parser.parse_args()

    db = Database.from_env()
    try:
        stats = backfill_predictions(db, job_id=args.job)
    finally:
        db.close()
    print(f"Jobs: {stats['jobs']} | predictions: {stats['predictions']} | authors updated: {stats['authors']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
