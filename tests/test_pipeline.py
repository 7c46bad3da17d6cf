#!/usr/bin/env python3
"""End-to-end pipeline tests with faked YouTube and LLM collaborators."""

import asyncio
import sqlite3
import sys
import unittest
from unittest import mock
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from llm_config import LLMConfig
from glaskugel.database import Database
from glaskugel.errors import NoSubtitlesError
from glaskugel.event_stream import ProgressEventBus
from glaskugel.metrics import metrics
from glaskugel.models import JobStatus, ProcessingStep
from glaskugel.pipeline import SummaryPipeline, backfill_predictions
from glaskugel.summarizer import ChunkingSummarizer
from glaskugel.youtube import UNKNOWN, SubtitleResult, VideoMeta, subtitle_languages


URL_A = "https://www.youtube.com/watch?v=AAAAAAAAAAA"
URL_B = "https://youtu.be/BBBBBBBBBBB"

SUMMARY = """- **Hauptsprecher / Interviewpartner:** Erika Muster

```json
[{"name": "Bitcoin", "direction": "long", "if_cases": "Falls ETF", "price_target": "$150.000"},
 {"name": "bitcoin", "direction": "LONG", "price_target": "$150.000"}]
```
"""


class FakeYouTube:
    """Per-URL scripted metadata and subtitle tracks."""

    def __init__(self, meta=None, tracks=None):
        self.meta = meta or {}
        self.tracks = tracks or {}

    async def fetch_video_meta(self, video_url):
        await asyncio.sleep(0)
        return self.meta.get(video_url, VideoMeta(title="Fetched title", channel="Fetched channel", thumbnail="thumb"))

    async def download_subtitles(self, video_url, lang):
        await asyncio.sleep(0)
        available = self.tracks.get(video_url, {"de": "ein kurzes transkript", "en": "a short transcript"})
        languages = subtitle_languages(lang)
        for candidate in languages:
            if candidate in available:
                return SubtitleResult(text=available[candidate], used_lang=candidate)
        raise NoSubtitlesError(languages)


class FakeComplete:
    def __init__(self, reply=SUMMARY):
        self.reply = reply
        self.calls = 0

    async def __call__(self, model, system_prompt, user_content, max_tokens, *, config=None):
        self.calls += 1
        await asyncio.sleep(0)
        return self.reply


class PipelineTestCase(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.db = Database(":memory:")
        self.bus = ProgressEventBus()
        self.events = []
        self.bus.subscribe(self.events.append)
        self.complete = FakeComplete()

    def tearDown(self):
        self.db.close()

    def make_pipeline(self, youtube=None, env=None, extractor=None):
        config = LLMConfig(env={"OPENAI_API_KEY": "sk-test"} if env is None else env)
        summarizer = ChunkingSummarizer(settings_loader=self.db.load_settings, complete=self.complete, config=config)
        kwargs = {"extractor": extractor} if extractor else {}
        return SummaryPipeline(self.db, self.bus, youtube or FakeYouTube(), summarizer, **kwargs)

    def steps(self, job_id):
        return [e.step for e in self.events if e.job_id == job_id]


class TestHappyPath(PipelineTestCase):

    async def test_submit_returns_processing_job_immediately(self):
        pipeline = self.make_pipeline()
        job_id = pipeline.submit(URL_A, lang="de", title_hint="Hint")
        self.assertEqual(self.db.get_job(job_id).status, JobStatus.PROCESSING)
        self.assertEqual(self.events[0].step, ProcessingStep.QUEUED)
        self.assertEqual(self.events[0].video_title, "Hint")
        await pipeline.join()
        self.assertEqual(pipeline.in_flight, 0)

    async def test_completed_job_with_predictions(self):
        pipeline = self.make_pipeline()
        job_id = pipeline.submit(URL_A, lang="de")
        await pipeline.join()

        job = self.db.get_job(job_id)
        self.assertEqual(job.status, JobStatus.DONE)
        self.assertEqual(job.video_title, "Fetched title")
        self.assertEqual(job.transcript, "ein kurzes transkript")
        self.assertEqual(job.summary, SUMMARY)
        self.assertEqual(job.prompt_template, self.db.load_settings().summary_prompt)
        self.assertEqual(job.author, "Erika Muster")
        self.assertEqual(
            self.steps(job_id),
            ["queued", "metadata", "transcript", "summarizing", "summarizing", "done"],
        )

        predictions = self.db.list_predictions(job_id=job_id)
        self.assertEqual(len(predictions), 1)
        self.assertEqual(predictions[0].asset_name, "Bitcoin")
        self.assertEqual(predictions[0].channel_name, "Fetched channel")
        self.assertEqual(predictions[0].author, "Erika Muster")
        self.assertEqual(predictions[0].video_url, URL_A)

    async def test_unknown_metadata_keeps_hints(self):
        youtube = FakeYouTube(meta={URL_A: VideoMeta()})
        pipeline = self.make_pipeline(youtube)
        job_id = pipeline.submit(URL_A, lang="de", title_hint="From feed", channel_hint="Feed channel")
        await pipeline.join()
        job = self.db.get_job(job_id)
        self.assertEqual(job.video_title, "From feed")
        self.assertEqual(job.channel_name, "Feed channel")
        self.assertEqual(job.thumbnail_url, "https://img.youtube.com/vi/AAAAAAAAAAA/maxresdefault.jpg")

    async def test_unknown_metadata_without_hint(self):
        youtube = FakeYouTube(meta={URL_A: VideoMeta()})
        pipeline = self.make_pipeline(youtube)
        job_id = pipeline.submit(URL_A, lang="de")
        await pipeline.join()
        self.assertEqual(self.db.get_job(job_id).video_title, UNKNOWN)

    async def test_default_language_from_settings(self):
        self.db.update_settings(default_lang="en")
        pipeline = self.make_pipeline()
        job_id = pipeline.submit(URL_A)
        await pipeline.join()
        job = self.db.get_job(job_id)
        self.assertEqual(job.lang, "en")
        self.assertEqual(job.transcript, "a short transcript")

    async def test_extraction_failure_does_not_fail_job(self):
        def broken(_):
            raise RuntimeError("parser bug")

        pipeline = self.make_pipeline(extractor=broken)
        job_id = pipeline.submit(URL_A, lang="de")
        await pipeline.join()
        self.assertEqual(self.db.get_job(job_id).status, JobStatus.DONE)
        self.assertEqual(self.steps(job_id)[-1], ProcessingStep.DONE)

    async def test_summarizing_event_names_model_override(self):
        pipeline = self.make_pipeline(env={"OPENAI_API_KEY": "sk-test", "LLM_MODEL": "gpt-4o-mini"})
        job_id = pipeline.submit(URL_A, lang="de")
        await pipeline.join()
        summarizing = [e.message for e in self.events if e.job_id == job_id and e.step == ProcessingStep.SUMMARIZING]
        self.assertEqual(summarizing[0], "Running AI summary (gpt-4o-mini)...")


class TestFailureScenarios(PipelineTestCase):

    async def test_language_fallback_to_english(self):
        youtube = FakeYouTube(tracks={URL_A: {"en": "english words"}})
        pipeline = self.make_pipeline(youtube)
        job_id = pipeline.submit(URL_A, lang="fr")
        await pipeline.join()

        job = self.db.get_job(job_id)
        self.assertEqual(job.lang, "en")
        self.assertEqual(job.status, JobStatus.DONE)
        fallback = [e for e in self.events if e.job_id == job_id and "using 'en'" in e.message]
        self.assertEqual(len(fallback), 1)
        self.assertEqual(fallback[0].step, ProcessingStep.TRANSCRIPT)

    async def test_missing_credential(self):
        pipeline = self.make_pipeline(env={})
        job_id = pipeline.submit(URL_A, lang="de")
        await pipeline.join()

        job = self.db.get_job(job_id)
        self.assertEqual(job.status, JobStatus.ERROR)
        self.assertIn("API_KEY not configured", job.error_message)
        steps = self.steps(job_id)
        self.assertEqual(steps.count(ProcessingStep.ERROR), 1)
        self.assertNotIn(ProcessingStep.SUMMARIZING, steps)
        self.assertEqual(self.complete.calls, 0)
        # metadata from the earlier step survives
        self.assertEqual(job.video_title, "Fetched title")

    async def test_no_subtitles(self):
        youtube = FakeYouTube(tracks={URL_A: {}})
        pipeline = self.make_pipeline(youtube)
        job_id = pipeline.submit(URL_A, lang="fr")
        await pipeline.join()
        job = self.db.get_job(job_id)
        self.assertEqual(job.status, JobStatus.ERROR)
        self.assertEqual(job.error_message, "No subtitles found (tried: fr, en)")
        error_events = [e for e in self.events if e.job_id == job_id and e.step == ProcessingStep.ERROR]
        self.assertEqual([e.message for e in error_events], [job.error_message])

    async def test_error_event_sent_when_error_state_cannot_be_stored(self):
        youtube = FakeYouTube(tracks={URL_A: {}})
        pipeline = self.make_pipeline(youtube)
        with mock.patch.object(self.db, "update_job_error", side_effect=sqlite3.OperationalError("database is locked")):
            job_id = pipeline.submit(URL_A, lang="de")
            await pipeline.join()
        error_events = [e for e in self.events if e.job_id == job_id and e.step == ProcessingStep.ERROR]
        self.assertEqual([e.message for e in error_events], ["No subtitles found (tried: de, en)"])
        self.assertEqual(pipeline.in_flight, 0)

    async def test_failures_counted_by_step(self):
        before = metrics.snapshot()["failures_by_step"].get(ProcessingStep.TRANSCRIPT, 0)
        pipeline = self.make_pipeline(FakeYouTube(tracks={URL_A: {}}))
        pipeline.submit(URL_A, lang="de")
        await pipeline.join()
        after = metrics.snapshot()["failures_by_step"].get(ProcessingStep.TRANSCRIPT, 0)
        self.assertEqual(after - before, 1)

    async def test_concurrent_jobs_are_independent(self):
        youtube = FakeYouTube(tracks={URL_A: {}, URL_B: {"de": "b transcript"}})
        pipeline = self.make_pipeline(youtube)
        job_a = pipeline.submit(URL_A, lang="de")
        job_b = pipeline.submit(URL_B, lang="de")
        self.assertEqual(pipeline.in_flight, 2)
        await pipeline.join()

        self.assertEqual(self.db.get_job(job_a).status, JobStatus.ERROR)
        self.assertEqual(self.db.get_job(job_b).status, JobStatus.DONE)
        self.assertEqual(self.steps(job_b)[-1], ProcessingStep.DONE)
        self.assertEqual(self.db.lookup_job_ids_by_video_id(), {"BBBBBBBBBBB": job_b})

    async def test_same_video_twice_creates_two_jobs(self):
        pipeline = self.make_pipeline()
        first = pipeline.submit(URL_A, lang="de")
        second = pipeline.submit(URL_A, lang="de")
        await pipeline.join()
        self.assertNotEqual(first, second)
        self.assertEqual(len(self.db.list_jobs(status=JobStatus.DONE)), 2)


class TestBackfill(PipelineTestCase):

    async def test_backfill_replaces_predictions(self):
        pipeline = self.make_pipeline()
        job_id = pipeline.submit(URL_A, lang="de")
        await pipeline.join()
        self.db.delete_predictions_by_job(job_id)
        self.db.update_job_author(job_id, "")

        stats = backfill_predictions(self.db)
        self.assertEqual(stats, {"jobs": 1, "predictions": 1, "authors": 1})
        self.assertEqual(self.db.get_job(job_id).author, "Erika Muster")

        # running again does not duplicate rows
        backfill_predictions(self.db, job_id=job_id)
        self.assertEqual(len(self.db.list_predictions(job_id=job_id)), 1)


if __name__ == "__main__":
    unittest.main()
