"""Error types raised by the processing pipeline and its collaborators."""

from __future__ import annotations

from typing import Iterable, List


class GlaskugelError(RuntimeError):
    """Base class for errors that end a job."""
    pass


class ConfigurationError(GlaskugelError):
    """Raised before any network call when no LLM credential is configured."""
    pass


class UpstreamError(GlaskugelError):
    """Non-success response from the LLM API."""

    def __init__(self, status: int, body_snippet: str = "") -> None:
        self.status = status
        self.body_snippet = body_snippet
        super().__init__(f"LLM API {status}: {body_snippet}")


class NoSubtitlesError(GlaskugelError):
    """No caption track in any attempted language or variant."""

    def __init__(self, languages: Iterable[str]) -> None:
        self.languages: List[str] = list(languages)
        super().__init__(f"No subtitles found (tried: {', '.join(self.languages)})")


__all__ = [
    "GlaskugelError",
    "ConfigurationError",
    "UpstreamError",
    "NoSubtitlesError",
]
