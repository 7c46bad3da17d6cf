"""Transcript summarization with overlapping word windows for long videos.

Short transcripts go to the LLM in one call. Longer ones are cut into
12,000-word windows that overlap by 200 words; each window is condensed with
an extraction prompt and the partial results are merged by a final call that
uses the configured summary prompt.
"""

from __future__ import annotations

import logging
import re
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from llm_config import LLMConfig, llm_config

from . import llm_client
from .models import Settings

logger = logging.getLogger(__name__)

MAX_CHUNK_WORDS = 12_000
OVERLAP_WORDS = 200

TRANSCRIPT_MARKER = "Transkript:"
_TRAILING_MARKER_RE = re.compile(r"(?:Transkript|Transcript)\s*:\s*$", re.IGNORECASE)

CHUNK_SYSTEM_PROMPT = """Du erhältst einen Abschnitt eines YouTube-Transkripts.
Extrahiere ALLE Kernaussagen als Bullet Points.
Falls konkrete Assets, Kursziele oder Prognosen genannt werden, liste diese als JSON auf:
```json
[{"name": "...", "direction": "long/short/neutral", "if_cases": "...", "price_target": "..."}]
```
Keine Einleitung, kein Fazit, keine Formatierung. Nur die extrahierten Informationen."""

MERGE_USER_PREFIX = (
    "Hier sind die extrahierten Informationen aus allen Teilen des Videos. "
    "Erstelle daraus eine einzige, vollständige Zusammenfassung:\n\n"
)

ProgressCallback = Callable[[str], None]
CompleteFn = Callable[..., Awaitable[str]]


def count_words(text: str) -> int:
    return len(text.split())


def chunk_bounds(word_count: int, max_words: int = MAX_CHUNK_WORDS,
                 overlap: int = OVERLAP_WORDS) -> List[Tuple[int, int]]:
    """Return ``[start, end)`` word ranges; the last range ends at ``word_count``."""
    if word_count <= max_words:
        return [(0, word_count)]
    step = max_words - overlap
    bounds = []
    start = 0
    while start < word_count:
        end = min(start + max_words, word_count)
        bounds.append((start, end))
        if end == word_count:
            break
        start += step
    return bounds


def split_into_chunks(text: str, max_words: int = MAX_CHUNK_WORDS,
                      overlap: int = OVERLAP_WORDS) -> List[str]:
    words = text.split()
    if len(words) <= max_words:
        return [text]
    return [" ".join(words[start:end]) for start, end in chunk_bounds(len(words), max_words, overlap)]


def prepare_prompt(template: str) -> str:
    """Drop the template's trailing transcript marker; it is re-added to the user content."""
    return _TRAILING_MARKER_RE.sub("", template.rstrip()).strip()


def metadata_header(context: Optional[Dict[str, str]]) -> str:
    if not context:
        return ""
    lines = []
    if context.get("title"):
        lines.append(f"Videotitel: {context['title']}")
    if context.get("channel"):
        lines.append(f"Kanal: {context['channel']}")
    return "\n".join(lines)


def _fmt_words(n: int) -> str:
    return f"{n:,}".replace(",", ".")


class ChunkingSummarizer:
    """Drives one or more LLM calls per transcript and returns a single summary."""

    def __init__(
        self,
        settings_loader: Optional[Callable[[], Settings]] = None,
        complete: Optional[CompleteFn] = None,
        config: Optional[LLMConfig] = None,
    ) -> None:
        self._settings_loader = settings_loader or Settings
        self._complete = complete or llm_client.complete
        self.config = config or llm_config

    def ensure_configured(self, model: str) -> str:
        """Return the model that will actually be called.

        Raises ``ConfigurationError`` when no credential resolves for ``model``.
        """
        _provider, resolved_model, _key = self.config.get_model_config(model)
        return resolved_model

    async def _call(self, model: str, system_prompt: str, user_content: str) -> str:
        text = await self._complete(
            model,
            system_prompt,
            user_content,
            llm_client.DEFAULT_MAX_TOKENS,
            config=self.config,
        )
        return text or ""

    @staticmethod
    def _notify(on_progress: Optional[ProgressCallback], message: str) -> None:
        if on_progress is None:
            return
        try:
            on_progress(message)
        except Exception:
            logger.debug("Progress callback failed", exc_info=True)

    async def summarize(
        self,
        transcript: str,
        context: Optional[Dict[str, str]] = None,
        *,
        prompt: Optional[str] = None,
        model: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        if prompt is None or model is None:
            settings = self._settings_loader()
            prompt = settings.summary_prompt if prompt is None else prompt
            model = settings.llm_model if model is None else model

        self.ensure_configured(model)

        word_count = count_words(transcript)
        prompt_text = prepare_prompt(prompt)
        header = metadata_header(context)
        meta_prefix = f"{header}\n\n" if header else ""

        if word_count <= MAX_CHUNK_WORDS:
            self._notify(on_progress, f"Summarizing ({_fmt_words(word_count)} words)...")
            user_content = f"{meta_prefix}{TRANSCRIPT_MARKER}\n{transcript}"
            return await self._call(model, prompt_text, user_content)

        chunks = split_into_chunks(transcript)
        logger.info("Transcript has %d words; processing %d chunks", word_count, len(chunks))
        self._notify(
            on_progress,
            f"Transcript too long ({_fmt_words(word_count)} words), splitting into {len(chunks)} parts...",
        )

        partials: List[str] = []
        for i, chunk in enumerate(chunks, start=1):
            self._notify(
                on_progress,
                f"Analyzing part {i}/{len(chunks)} ({_fmt_words(count_words(chunk))} words)...",
            )
            system_prompt = f"{CHUNK_SYSTEM_PROMPT}\n\nDies ist Teil {i} von {len(chunks)}."
            partials.append(await self._call(model, system_prompt, meta_prefix + chunk))

        self._notify(on_progress, "Merging partial results into the final summary...")
        merged_input = "\n\n".join(f"--- Teil {i} ---\n{text}" for i, text in enumerate(partials, start=1))
        return await self._call(model, prompt_text, f"{meta_prefix}{MERGE_USER_PREFIX}{merged_input}")


__all__ = [
    "ChunkingSummarizer",
    "MAX_CHUNK_WORDS",
    "OVERLAP_WORDS",
    "count_words",
    "chunk_bounds",
    "split_into_chunks",
    "prepare_prompt",
    "metadata_header",
]
