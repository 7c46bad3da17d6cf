"""Records shared between the pipeline, the stores and the event stream."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping


class JobStatus:
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class ProcessingStep:
    QUEUED = "queued"
    METADATA = "metadata"
    TRANSCRIPT = "transcript"
    SUMMARIZING = "summarizing"
    DONE = "done"
    ERROR = "error"

    ALL = (QUEUED, METADATA, TRANSCRIPT, SUMMARIZING, DONE, ERROR)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def _from_mapping(cls, row: Mapping[str, Any]):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in dict(row).items() if k in names})


@dataclass
class Job:
    id: str
    video_id: str
    video_url: str
    video_title: str = ""
    channel_name: str = ""
    thumbnail_url: str = ""
    lang: str = "de"
    author: str = ""
    transcript: str = ""
    summary: str = ""
    prompt_template: str = ""
    status: str = JobStatus.PROCESSING
    error_message: str = ""
    created_at: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Job":
        return _from_mapping(cls, row)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PredictionRow:
    """One forecast as parsed out of a summary, before persistence."""

    asset: str
    direction: str = ""
    if_cases: str = ""
    price_target: str = ""

    def dedupe_key(self) -> str:
        return f"{self.asset}|{self.direction}|{self.price_target}".lower()


@dataclass
class Prediction:
    id: str
    job_id: str
    asset_name: str
    direction: str = ""
    if_cases: str = ""
    price_target: str = ""
    video_title: str = ""
    video_url: str = ""
    channel_name: str = ""
    author: str = ""
    created_at: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Prediction":
        return _from_mapping(cls, row)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProgressEvent:
    job_id: str
    video_title: str
    step: str
    message: str
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_SUMMARY_PROMPT = """Du bist ein Experte für Zusammenfassungen von YouTube-Videos.

## Metadaten (immer zuerst ausgeben)
- **Hauptsprecher / Interviewpartner:** [Name der Person, die die inhaltlichen Aussagen trifft – NICHT der Kanalinhaber, falls es ein Interview ist. Falls unklar, weglassen.]

---

## TLDR
[2–4 prägnante Sätze. Die wichtigste Aussage zuerst.]

---

## Kernaussagen
- [Bullet Points, nur inhaltlich relevante Punkte]
- Werbung, Sponsoring und Off-Topic werden ignoriert

---

## Assets & Prognosen
Falls im Video konkrete Assets, Prognosen oder Kursziele genannt werden, gib diese als JSON zurück:

```json
[
  {
    "name": "Bitcoin",
    "direction": "long",
    "if_cases": "Falls Fed Zinsen senkt",
    "price_target": "$120.000"
  }
]
```

Relevante Assets: S&P 500, MSCI World, Bitcoin, Ethereum, Solana, Tesla, Amazon, Gold, Silber – sowie alle anderen explizit genannten.
Wenn keine Prognosen genannt werden: Abschnitt weglassen.

---

## Sprache & Regeln
- Antworte immer auf Deutsch
- So kurz wie möglich, so ausführlich wie nötig
- Keine Einleitung außer den Metadaten

Transkript:
"""


@dataclass
class Settings:
    summary_prompt: str = DEFAULT_SUMMARY_PROMPT
    default_lang: str = "de"
    cookie_browser: str = "brave"
    llm_model: str = "gpt-4o"
    blocked_channels: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_SETTINGS = Settings()

__all__ = [
    "JobStatus",
    "ProcessingStep",
    "Job",
    "PredictionRow",
    "Prediction",
    "ProgressEvent",
    "Settings",
    "DEFAULT_SETTINGS",
    "DEFAULT_SUMMARY_PROMPT",
    "utc_now_iso",
]
