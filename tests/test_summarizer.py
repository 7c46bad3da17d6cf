#!/usr/bin/env python3
"""Tests for the chunking summarizer: windowing, prompt assembly and call counts."""

import math
import sys
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from llm_config import LLMConfig
from glaskugel.errors import ConfigurationError
from glaskugel.models import Settings
from glaskugel.summarizer import (
    CHUNK_SYSTEM_PROMPT,
    MAX_CHUNK_WORDS,
    OVERLAP_WORDS,
    ChunkingSummarizer,
    chunk_bounds,
    metadata_header,
    prepare_prompt,
    split_into_chunks,
)


class FakeComplete:
    def __init__(self, reply="summary text"):
        self.reply = reply
        self.calls = []

    async def __call__(self, model, system_prompt, user_content, max_tokens, *, config=None):
        self.calls.append((model, system_prompt, user_content, max_tokens))
        return self.reply


def words(n):
    return " ".join(f"w{i}" for i in range(n))


def configured():
    return LLMConfig(env={"OPENAI_API_KEY": "sk-test"})


class TestChunkBounds(unittest.TestCase):

    def test_short_transcript_single_window(self):
        self.assertEqual(chunk_bounds(500), [(0, 500)])
        self.assertEqual(chunk_bounds(MAX_CHUNK_WORDS), [(0, MAX_CHUNK_WORDS)])

    def test_window_count_and_coverage(self):
        for count in (MAX_CHUNK_WORDS + 1, 23_800, 23_801, 30_000, 61_234):
            bounds = chunk_bounds(count)
            expected = math.ceil((count - OVERLAP_WORDS) / (MAX_CHUNK_WORDS - OVERLAP_WORDS))
            self.assertEqual(len(bounds), expected, count)
            self.assertEqual(bounds[0][0], 0)
            self.assertEqual(bounds[-1][1], count)
            for (s1, e1), (s2, e2) in zip(bounds, bounds[1:]):
                self.assertEqual(e1 - s2, OVERLAP_WORDS)
                self.assertLessEqual(e2 - s2, MAX_CHUNK_WORDS)

    def test_split_keeps_last_word(self):
        text = words(30_000)
        chunks = split_into_chunks(text)
        self.assertEqual(len(chunks), 3)
        self.assertEqual(chunks[-1].split()[-1], "w29999")
        self.assertEqual(chunks[1].split()[0], f"w{MAX_CHUNK_WORDS - OVERLAP_WORDS}")


class TestPromptHelpers(unittest.TestCase):

    def test_trailing_marker_removed(self):
        self.assertEqual(prepare_prompt("Fasse zusammen.\n\nTranskript:\n"), "Fasse zusammen.")
        self.assertEqual(prepare_prompt("Summarize.\nTranscript:"), "Summarize.")
        self.assertEqual(prepare_prompt("No marker here"), "No marker here")

    def test_metadata_header(self):
        self.assertEqual(metadata_header({"title": "T", "channel": "C"}), "Videotitel: T\nKanal: C")
        self.assertEqual(metadata_header({"title": "T"}), "Videotitel: T")
        self.assertEqual(metadata_header(None), "")


class TestChunkingSummarizer(unittest.IsolatedAsyncioTestCase):

    async def test_short_transcript_one_call(self):
        fake = FakeComplete("ok")
        summarizer = ChunkingSummarizer(complete=fake, config=configured())
        result = await summarizer.summarize(
            "hello world", {"title": "Video", "channel": "Kanal A"},
            prompt="Bitte zusammenfassen.\n\nTranskript:\n", model="gpt-4o",
        )
        self.assertEqual(result, "ok")
        self.assertEqual(len(fake.calls), 1)
        model, system_prompt, user_content, max_tokens = fake.calls[0]
        self.assertEqual(model, "gpt-4o")
        self.assertEqual(system_prompt, "Bitte zusammenfassen.")
        self.assertEqual(user_content, "Videotitel: Video\nKanal: Kanal A\n\nTranskript:\nhello world")
        self.assertEqual(max_tokens, 4000)

    async def test_long_transcript_chunks_then_merge(self):
        fake = FakeComplete("partial")
        summarizer = ChunkingSummarizer(complete=fake, config=configured())
        progress = []
        await summarizer.summarize(words(30_000), prompt="P\nTranskript:", model="gpt-4o",
                                   on_progress=progress.append)
        self.assertEqual(len(fake.calls), 4)
        for i, call in enumerate(fake.calls[:3], start=1):
            self.assertTrue(call[1].startswith(CHUNK_SYSTEM_PROMPT))
            self.assertIn(f"Teil {i} von 3", call[1])
        merge_system, merge_user = fake.calls[3][1], fake.calls[3][2]
        self.assertEqual(merge_system, "P")
        self.assertIn("--- Teil 1 ---\npartial", merge_user)
        self.assertIn("--- Teil 3 ---\npartial", merge_user)
        # split notice, three parts, merge
        self.assertEqual(len(progress), 5)

    async def test_settings_snapshot_used_when_not_given(self):
        fake = FakeComplete()
        settings = Settings(summary_prompt="Custom", llm_model="gpt-4o-mini")
        summarizer = ChunkingSummarizer(settings_loader=lambda: settings, complete=fake, config=configured())
        await summarizer.summarize("a b c")
        self.assertEqual(fake.calls[0][0], "gpt-4o-mini")
        self.assertEqual(fake.calls[0][1], "Custom")

    async def test_missing_credential_fails_before_any_call(self):
        fake = FakeComplete()
        summarizer = ChunkingSummarizer(complete=fake, config=LLMConfig(env={}))
        with self.assertRaises(ConfigurationError):
            await summarizer.summarize("a b c", prompt="P", model="gpt-4o")
        self.assertEqual(fake.calls, [])

    def test_ensure_configured_returns_override_model(self):
        config = LLMConfig(env={"OPENAI_API_KEY": "sk-test", "LLM_MODEL": "gpt-4o-mini"})
        summarizer = ChunkingSummarizer(complete=FakeComplete(), config=config)
        self.assertEqual(summarizer.ensure_configured("gpt-4o"), "gpt-4o-mini")

    async def test_empty_reply_becomes_empty_string(self):
        fake = FakeComplete(None)
        summarizer = ChunkingSummarizer(complete=fake, config=configured())
        self.assertEqual(await summarizer.summarize("a b c", prompt="P", model="gpt-4o"), "")

    async def test_broken_progress_callback_is_ignored(self):
        fake = FakeComplete("ok")
        summarizer = ChunkingSummarizer(complete=fake, config=configured())

        def explode(message):
            raise RuntimeError("listener gone")

        result = await summarizer.summarize("a b c", prompt="P", model="gpt-4o", on_progress=explode)
        self.assertEqual(result, "ok")


if __name__ == "__main__":
    unittest.main()
