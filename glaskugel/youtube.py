"""YouTube metadata and subtitle access over yt-dlp."""

from __future__ import annotations

import asyncio
import glob
import logging
import os
import re
import tempfile
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests
import yt_dlp

from .errors import NoSubtitlesError
from .models import Settings

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"
OEMBED_URL = "https://www.youtube.com/oembed"
SUBTITLE_EXTENSIONS = (".srt", ".vtt")

_VIDEO_ID_RE = re.compile(r"(?:v=|youtu\.be/|shorts/)([a-zA-Z0-9_-]{11})")
_CUE_INDEX_RE = re.compile(r"^\d+$")
_TAG_RE = re.compile(r"<[^>]+>")
_VTT_HEADER_PREFIXES = ("WEBVTT", "Kind:", "Language:", "NOTE", "STYLE", "REGION")


def extract_video_id(url: str) -> str:
    """Return the 11-character id, or the input unchanged when none is found."""
    match = _VIDEO_ID_RE.search(url or "")
    return match.group(1) if match else url


def default_thumbnail(video_id: str) -> str:
    return f"https://img.youtube.com/vi/{video_id}/maxresdefault.jpg"


def subtitle_languages(lang: str) -> List[str]:
    return [lang] if lang == "en" else [lang, "en"]


def captions_to_text(raw: str) -> str:
    """Flatten SRT/WebVTT captions to plain lines, dropping repeats.

    Rolling auto-captions repeat each line several times; every distinct line
    is kept once, in first-seen order.
    """
    seen = set()
    lines: List[str] = []
    for line in raw.replace("\r\n", "\n").split("\n"):
        text = line.strip()
        if not text or _CUE_INDEX_RE.match(text) or "-->" in text:
            continue
        if text.startswith(_VTT_HEADER_PREFIXES):
            continue
        clean = _TAG_RE.sub("", text).replace("&nbsp;", " ").strip()
        if clean and clean not in seen:
            seen.add(clean)
            lines.append(clean)
    return "\n".join(lines)


@dataclass
class VideoMeta:
    title: str = UNKNOWN
    channel: str = UNKNOWN
    thumbnail: str = ""


@dataclass
class SubtitleResult:
    text: str
    used_lang: str


def fetch_channel_name(video_id: str, timeout: float = 10.0) -> str:
    """Channel name from the public oEmbed endpoint ("" on any failure)."""
    try:
        resp = requests.get(
            OEMBED_URL,
            params={"url": f"https://www.youtube.com/watch?v={video_id}", "format": "json"},
            timeout=timeout,
        )
        if resp.status_code != 200:
            return ""
        return (resp.json() or {}).get("author_name") or ""
    except (requests.RequestException, ValueError) as exc:
        logger.debug("oEmbed lookup failed for %s: %s", video_id, exc)
        return ""


class YouTubeClient:
    """Blocking yt-dlp calls run in the loop's default executor."""

    def __init__(
        self,
        settings_loader: Optional[Callable[[], Settings]] = None,
        channel_lookup: Optional[Callable[[str], str]] = None,
    ) -> None:
        self._settings_loader = settings_loader or Settings
        self._channel_lookup = channel_lookup or fetch_channel_name

    def _base_opts(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {
            'quiet': True,
            'no_warnings': True,
            'ignoreconfig': True,
            'noplaylist': True,
            'skip_download': True,
            'socket_timeout': 20,
        }
        browser = (self._settings_loader().cookie_browser or "").strip()
        if browser:
            opts['cookiesfrombrowser'] = (browser,)
        self._apply_ytdlp_env(opts)
        return opts

    @staticmethod
    def _apply_ytdlp_env(ydl_opts: dict) -> None:
        """Apply environment-driven tweaks to yt-dlp options.

        Supported env vars:
          - YTDLP_FORCE_CLIENT=android|web|tv|web_safari
          - YTDLP_RETRIES=int             → retries (also applied to fragment_retries)
          - YTDLP_COOKIES_FILE=/path.txt  → Netscape cookie file, replaces browser cookies
          - YTDLP_FORCE_STACK=ipv4|ipv6   → select IP stack (maps to source_address)
        """
        force_client = (os.getenv('YTDLP_FORCE_CLIENT') or '').strip().lower()
        if force_client in {'android', 'web', 'tv', 'web_safari'}:
            extractor_args = dict(ydl_opts.get('extractor_args') or {})
            yt_args = dict(extractor_args.get('youtube') or {})
            yt_args['player-client'] = [force_client]
            extractor_args['youtube'] = yt_args
            ydl_opts['extractor_args'] = extractor_args

        retries = os.getenv('YTDLP_RETRIES')
        if retries and retries.isdigit():
            ydl_opts['retries'] = int(retries)
            ydl_opts['fragment_retries'] = int(retries)

        cookiefile = os.getenv('YTDLP_COOKIES_FILE')
        if cookiefile and os.path.isfile(cookiefile):
            ydl_opts['cookiefile'] = cookiefile
            ydl_opts.pop('cookiesfrombrowser', None)

        force_stack = (os.getenv('YTDLP_FORCE_STACK') or '').strip().lower()
        if force_stack in {'4', 'ipv4', 'v4'}:
            ydl_opts['source_address'] = '0.0.0.0'
        elif force_stack in {'6', 'ipv6', 'v6'}:
            ydl_opts['source_address'] = '::'

    # --- metadata -----------------------------------------------------------

    def _extract_info(self, video_url: str) -> Optional[dict]:
        opts = self._base_opts()
        opts['simulate'] = True
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                return ydl.extract_info(video_url, download=False)
        except yt_dlp.utils.DownloadError as exc:
            logger.warning("yt-dlp metadata extraction failed for %s: %s", video_url, exc)
            return None

    def _meta_sync(self, video_url: str) -> VideoMeta:
        info = self._extract_info(video_url)
        if not info:
            return VideoMeta()
        thumbnails = info.get('thumbnails') or []
        thumbnail = info.get('thumbnail') or (thumbnails[-1].get('url') if thumbnails else '') or ''
        channel = info.get('channel') or info.get('uploader') or ''
        if not channel:
            channel = self._channel_lookup(info.get('id') or extract_video_id(video_url)) or UNKNOWN
        return VideoMeta(title=info.get('title') or UNKNOWN, channel=channel, thumbnail=thumbnail)

    async def fetch_video_meta(self, video_url: str) -> VideoMeta:
        """Title, channel and thumbnail; ``Unknown`` values when lookup fails."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, self._meta_sync, video_url)
        except Exception:
            logger.exception("Metadata lookup failed for %s", video_url)
            return VideoMeta()

    # --- subtitles ----------------------------------------------------------

    def _download_variant(self, video_url: str, lang: str, automatic: bool, dest: str) -> Optional[str]:
        """Fetch one caption track into ``dest``; return its raw text or ``None``."""
        opts = self._base_opts()
        opts.update({
            'writesubtitles': not automatic,
            'writeautomaticsub': automatic,
            'subtitleslangs': [lang],
            'subtitlesformat': 'srt/vtt/best',
            'outtmpl': os.path.join(dest, '%(id)s.%(ext)s'),
        })
        try:
            with yt_dlp.YoutubeDL(opts) as ydl:
                ydl.download([video_url])
        except yt_dlp.utils.DownloadError as exc:
            logger.debug("Subtitle download (%s, auto=%s) failed: %s", lang, automatic, exc)
            return None
        files = sorted(
            path for path in glob.glob(os.path.join(dest, '*'))
            if path.endswith(SUBTITLE_EXTENSIONS)
        )
        if not files:
            return None
        with open(files[0], 'r', encoding='utf-8', errors='replace') as fh:
            return fh.read()

    def _subtitles_sync(self, video_url: str, lang: str) -> SubtitleResult:
        languages = subtitle_languages(lang)
        for try_lang in languages:
            with tempfile.TemporaryDirectory(prefix=f"glaskugel_subs_{try_lang}_") as dest:
                # Creator-authored track first, then auto-generated
                for automatic in (False, True):
                    raw = self._download_variant(video_url, try_lang, automatic, dest)
                    text = captions_to_text(raw) if raw else ""
                    if text:
                        logger.info("Subtitles for %s found in %s (auto=%s)", video_url, try_lang, automatic)
                        return SubtitleResult(text=text, used_lang=try_lang)
        raise NoSubtitlesError(languages)

    async def download_subtitles(self, video_url: str, lang: str) -> SubtitleResult:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._subtitles_sync, video_url, lang)


__all__ = [
    "VideoMeta",
    "SubtitleResult",
    "YouTubeClient",
    "captions_to_text",
    "default_thumbnail",
    "extract_video_id",
    "fetch_channel_name",
    "subtitle_languages",
]
