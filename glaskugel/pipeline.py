#!/usr/bin/env python3
"""
Per-video processing pipeline

Each submission becomes one asyncio task that walks
``queued → metadata → transcript → summarizing → done`` and reports through
the job store and the progress bus only. Failures in any step end the job in
``error`` with a single ``error`` event; nothing is raised to the submitter.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, Set

from .database import Database
from .event_stream import ProgressEventBus
from .extractor import ExtractionResult, extract
from .metrics import metrics
from .models import JobStatus, ProcessingStep as Step, ProgressEvent
from .summarizer import ChunkingSummarizer
from .youtube import UNKNOWN, YouTubeClient, default_thumbnail, extract_video_id

logger = logging.getLogger(__name__)

GENERIC_ERROR = "Unknown error"


class SummaryPipeline:
    """Owns the in-flight job tasks; collaborators are injected by the host."""

    def __init__(
        self,
        db: Database,
        bus: ProgressEventBus,
        youtube: Optional[YouTubeClient] = None,
        summarizer: Optional[ChunkingSummarizer] = None,
        extractor: Callable[[str], ExtractionResult] = extract,
    ) -> None:
        self.db = db
        self.bus = bus
        self.youtube = youtube or YouTubeClient(settings_loader=db.load_settings)
        self.summarizer = summarizer or ChunkingSummarizer(settings_loader=db.load_settings)
        self.extractor = extractor
        self._tasks: Set[asyncio.Task] = set()

    def _emit(self, job_id: str, title: str, step: str, message: str) -> None:
        self.bus.publish(ProgressEvent(job_id=job_id, video_title=title, step=step, message=message))

    def submit(
        self,
        video_url: str,
        lang: Optional[str] = None,
        title_hint: Optional[str] = None,
        channel_hint: Optional[str] = None,
        thumbnail_hint: Optional[str] = None,
    ) -> str:
        """Create a ``processing`` job, start its run and return the job id.

        Must be called from inside a running event loop.
        """
        lang = lang or self.db.load_settings().default_lang
        video_id = extract_video_id(video_url)
        thumbnail = thumbnail_hint or default_thumbnail(video_id)
        job_id = self.db.create_job(
            video_id, video_url, lang, title_hint or "", channel_hint or "", thumbnail,
        )
        metrics.record_job_submitted()
        self._emit(job_id, title_hint or video_url, Step.QUEUED, "Queued...")

        task = asyncio.get_running_loop().create_task(
            self._run(job_id, video_url, lang, title_hint or "", channel_hint or "")
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job_id

    async def join(self) -> None:
        """Wait until every submitted job has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def _run(self, job_id: str, video_url: str, lang: str, title_hint: str, channel_hint: str) -> None:
        label = title_hint or video_url
        video_id = extract_video_id(video_url)
        step = Step.METADATA
        try:
            self._emit(job_id, label, Step.METADATA, "Loading video metadata...")
            meta = await self.youtube.fetch_video_meta(video_url)
            title = meta.title if meta.title and meta.title != UNKNOWN else (title_hint or meta.title)
            channel = meta.channel if meta.channel and meta.channel != UNKNOWN else (channel_hint or meta.channel)
            thumbnail = meta.thumbnail or default_thumbnail(video_id)
            self.db.update_job_meta(job_id, title, channel, thumbnail)
            label = title or label

            step = Step.TRANSCRIPT
            tried = ", ".join([lang] if lang == "en" else [lang, "en"])
            self._emit(job_id, label, Step.TRANSCRIPT, f"Downloading subtitles ({tried})...")
            subs = await self.youtube.download_subtitles(video_url, lang)
            if subs.used_lang != lang:
                self.db.update_job_lang(job_id, subs.used_lang)
                self._emit(job_id, label, Step.TRANSCRIPT, f"No '{lang}' subtitles found, using '{subs.used_lang}'")

            step = Step.SUMMARIZING
            settings = self.db.load_settings()
            model = self.summarizer.ensure_configured(settings.llm_model)
            self._emit(job_id, label, Step.SUMMARIZING, f"Running AI summary ({model})...")
            summary = await self.summarizer.summarize(
                subs.text,
                {"title": title, "channel": channel},
                prompt=settings.summary_prompt,
                model=settings.llm_model,
                on_progress=lambda message: self._emit(job_id, label, Step.SUMMARIZING, message),
            )
            self.db.update_job_done(job_id, subs.text, summary, settings.summary_prompt)
        except Exception as exc:
            message = str(exc) or GENERIC_ERROR
            logger.error("Job %s failed during %s: %s", job_id, step, message)
            try:
                self.db.update_job_error(job_id, message)
            except Exception:
                logger.exception("Could not persist error state for job %s", job_id)
            metrics.record_job_result(False, failed_step=step)
            self._emit(job_id, label, Step.ERROR, message)
            return

        self._store_extraction(job_id, summary, title, video_url, channel)
        metrics.record_job_result(True)
        logger.info("Job %s done: %s", job_id, label)
        self._emit(job_id, label, Step.DONE, "Done!")

    def _store_extraction(self, job_id: str, summary: str, title: str, video_url: str, channel: str) -> None:
        try:
            result = self.extractor(summary)
            if result.author:
                self.db.update_job_author(job_id, result.author)
            stored = self.db.insert_predictions(
                job_id, result.predictions, title, video_url, channel, result.author,
            )
            metrics.record_predictions(stored)
        except Exception:
            logger.exception("Storing extraction results failed for job %s", job_id)


def backfill_predictions(db: Database, extractor: Callable[[str], ExtractionResult] = extract,
                         job_id: Optional[str] = None) -> Dict[str, Any]:
    """Re-run extraction over finished jobs, replacing their predictions.

    Authors are only written when one is found; an existing author is never
    cleared.
    """
    stats = {"jobs": 0, "predictions": 0, "authors": 0}
    jobs = [db.get_job(job_id)] if job_id else db.list_jobs(status=JobStatus.DONE)
    for job in jobs:
        if job is None or job.status != JobStatus.DONE:
            continue
        result = extractor(job.summary)
        db.delete_predictions_by_job(job.id)
        author = result.author or job.author
        if result.author and result.author != job.author:
            db.update_job_author(job.id, result.author)
            stats["authors"] += 1
        stats["predictions"] += db.insert_predictions(
            job.id, result.predictions, job.video_title, job.video_url, job.channel_name, author,
        )
        stats["jobs"] += 1
    logger.info("Backfill finished: %s", stats)
    return stats


__all__ = ["SummaryPipeline", "backfill_predictions"]
