#!/usr/bin/env python3
"""Summarize one or more YouTube videos and print live progress.

Usage:
  python tools/summarize_urls.py https://youtu.be/VIDEOID [URL ...]
  python tools/summarize_urls.py --lang en --skip-existing URL ...
  python tools/summarize_urls.py --sse URL    # print raw text/event-stream frames

Exits non-zero when any job ends in error.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List

# Ensure project root is on sys.path so `glaskugel` imports resolve when executed from tools/
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from glaskugel.database import Database  # noqa: E402
from glaskugel.event_stream import ProgressEventBus, format_event  # noqa: E402
from glaskugel.metrics import metrics  # noqa: E402
from glaskugel.models import JobStatus, ProgressEvent  # noqa: E402
from glaskugel.pipeline import SummaryPipeline  # noqa: E402
from glaskugel.youtube import extract_video_id  # noqa: E402


def setup_logging() -> None:
    level = os.getenv("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s - summarize_urls - %(levelname)s - %(message)s",
    )


def print_event(event: ProgressEvent) -> None:
    print(f"[{event.step:>11}] {event.video_title[:60]} - {event.message}", flush=True)


async def run(urls: List[str], lang: str, skip_existing: bool, sse: bool) -> int:
    db = Database.from_env()
    bus = ProgressEventBus()
    bus.subscribe((lambda e: print(format_event(e), end="", flush=True)) if sse else print_event)
    pipeline = SummaryPipeline(db, bus)

    existing = db.lookup_job_ids_by_video_id() if skip_existing else {}
    job_ids = []
    for url in urls:
        video_id = extract_video_id(url)
        if video_id in existing:
            logging.info("Skipping %s; already summarized as job %s", url, existing[video_id])
            continue
        job_ids.append(pipeline.submit(url, lang=lang or None))

    await pipeline.join()

    failed = 0
    for job_id in job_ids:
        job = db.get_job(job_id)
        if job is None:
            continue
        if job.status == JobStatus.ERROR:
            failed += 1
            logging.error("Job %s (%s) failed: %s", job.id, job.video_url, job.error_message)
        else:
            predictions = db.list_predictions(job_id=job.id)
            logging.info(
                "Job %s done: %s | author=%s | predictions=%d",
                job.id, job.video_title, job.author or "-", len(predictions),
            )
    logging.debug("Metrics: %s", metrics.snapshot())
    return 1 if failed else 0


def main() -> int:
    setup_logging()
    parser = argparse.ArgumentParser(description="Summarize YouTube videos")
    parser.add_argument("urls", nargs="+", help="Video URLs (watch, youtu.be or shorts links)")
    parser.add_argument("--lang", default="", help="Preferred subtitle language (default: settings default_lang)")
    parser.add_argument("--skip-existing", action="store_true",
                        help="Skip videos that already have a non-failed job")
    parser.add_argument("--sse", action="store_true", help="Print progress as text/event-stream frames")
    args = parser.parse_args()

    try:
        return asyncio.run(run(args.urls, args.lang, args.skip_existing, args.sse))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
