#!/usr/bin/env python3
"""
Structured data extraction from LLM summaries

Pulls the main speaker ("author") and forecast rows out of free-form
markdown. JSON code blocks are the primary source; inline JSON arrays are
only scanned when no fenced block parses, and legacy markdown and HTML
tables are consulted when no JSON yields a row.

Integration: call `extract(summary_text)`; it never raises and returns empty
results for unusable input.
"""

from __future__ import annotations

import html
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from bs4 import BeautifulSoup, Tag

from .models import PredictionRow

logger = logging.getLogger(__name__)


# --- Author -----------------------------------------------------------------

_LABEL_TAIL = r"\s*(?:\*\*|__)?\s*:\s*(?:\*\*|__)?[ \t]*(.+)"

# Order matters: the first pattern with a usable capture wins
AUTHOR_PATTERNS: Tuple[re.Pattern, ...] = tuple(
    re.compile(p, re.IGNORECASE | re.MULTILINE)
    for p in (
        r"Hauptsprecher\s*/\s*Interviewpartner" + _LABEL_TAIL,
        r"Main speaker\s*/\s*interviewee" + _LABEL_TAIL,
        r"Hauptsprecher(?!\s*/)" + _LABEL_TAIL,
        r"Main speaker(?!\s*/)" + _LABEL_TAIL,
        r"Interviewpartner" + _LABEL_TAIL,
        r"Interviewee" + _LABEL_TAIL,
        r"^[ \t]*[-*•][ \t]*(?:\*\*|__)?(?:Sprecher|Speaker|Autor|Author)" + _LABEL_TAIL,
    )
)

_BRACKETED_RE = re.compile(r"\[[^\]]*\]|\([^)]*\)")
_EMPHASIS_RE = re.compile(r"\*\*|__|[*_`]")


def _clean_author(raw: str) -> str:
    text = _EMPHASIS_RE.sub("", raw)
    text = _BRACKETED_RE.sub("", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip(" \t-–—:,;.")


def extract_author(text: str) -> str:
    if not text:
        return ""
    for pattern in AUTHOR_PATTERNS:
        for match in pattern.finditer(text):
            author = _clean_author(match.group(1))
            if author:
                return author
    return ""


# --- JSON strategies --------------------------------------------------------

NAME_KEYS = ("name", "Name", "asset", "Asset", "ticker", "Ticker", "instrument", "Instrument", "Wert", "Anlage")
DIRECTION_KEYS = ("direction", "Direction", "richtung", "Richtung", "position", "Position")
IF_CASES_KEYS = ("if_cases", "ifCases", "If_cases", "if_case", "condition", "Condition", "bedingung", "Bedingung")
TARGET_KEYS = (
    "price_target", "priceTarget", "Price_target", "target", "Target",
    "kursziel", "Kursziel", "ziel", "Ziel", "prognose", "Prognose",
)

INLINE_NAME_KEYS = ("name",)
INLINE_DIRECTION_KEYS = ("direction",)
INLINE_IF_CASES_KEYS = ("if_cases",)
INLINE_TARGET_KEYS = ("price_target",)

_FENCED_JSON_RE = re.compile(r"```[ \t]*json[^\n]*\n(.*?)```", re.DOTALL | re.IGNORECASE)
_INLINE_ARRAY_RE = re.compile(r"\[\s*\{.*?\}\s*\]", re.DOTALL)


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        return ", ".join(_as_text(v) for v in value if v is not None)
    return re.sub(r"\s+", " ", str(value)).strip()


def _resolve(obj: Dict[str, Any], keys: Sequence[str]) -> str:
    for key in keys:
        if key in obj:
            value = _as_text(obj.get(key))
            if value:
                return value
    return ""


def _objects(value: Any) -> List[Dict[str, Any]]:
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    return []


def _rows_from_objects(objects: Iterable[Dict[str, Any]], name_keys, direction_keys,
                       if_cases_keys, target_keys) -> List[PredictionRow]:
    rows = []
    for obj in objects:
        asset = _resolve(obj, name_keys)
        if not asset:
            continue
        rows.append(PredictionRow(
            asset=asset,
            direction=_resolve(obj, direction_keys),
            if_cases=_resolve(obj, if_cases_keys),
            price_target=_resolve(obj, target_keys),
        ))
    return rows


def parse_fenced_json(text: str) -> Optional[List[PredictionRow]]:
    """Rows from fenced ```json blocks; ``None`` when no block parses."""
    rows: Optional[List[PredictionRow]] = None
    for match in _FENCED_JSON_RE.finditer(text):
        try:
            payload = json.loads(match.group(1).strip())
        except ValueError:
            logger.debug("Skipping unparseable json block (%d chars)", len(match.group(1)))
            continue
        rows = rows or []
        rows.extend(_rows_from_objects(_objects(payload), NAME_KEYS, DIRECTION_KEYS, IF_CASES_KEYS, TARGET_KEYS))
    return rows


def parse_inline_json(text: str) -> Optional[List[PredictionRow]]:
    rows: Optional[List[PredictionRow]] = None
    for match in _INLINE_ARRAY_RE.finditer(text):
        candidate = match.group(0)
        if '"name"' not in candidate:
            continue
        try:
            payload = json.loads(candidate)
        except ValueError:
            continue
        rows = rows or []
        rows.extend(_rows_from_objects(
            _objects(payload), INLINE_NAME_KEYS, INLINE_DIRECTION_KEYS, INLINE_IF_CASES_KEYS, INLINE_TARGET_KEYS,
        ))
    return rows


# --- Table strategies -------------------------------------------------------

_ASSET_HEADER_RE = re.compile(r"\b(name|asset|instrument|ticker)", re.IGNORECASE)
_DIRECTION_HEADER_RE = re.compile(r"\b(long|short|direction|richtung)", re.IGNORECASE)
_TARGET_HEADER_RE = re.compile(r"(target|price|preis|if.?case|kurs|prognos|forecast|ziel|goal)", re.IGNORECASE)



@dataclass
class ColumnMap:
    asset: int
    direction: int
    target: int


def map_columns(headers: Sequence[str]) -> Optional[ColumnMap]:
    """Locate asset/direction/target columns by header keyword; ``None`` without an asset column."""
    asset = direction = target = -1
    for i, header in enumerate(headers):
        if asset == -1 and _ASSET_HEADER_RE.search(header):
            asset = i
        elif direction == -1 and _DIRECTION_HEADER_RE.search(header):
            direction = i
        elif target == -1 and _TARGET_HEADER_RE.search(header):
            target = i
    if asset == -1:
        return None
    if direction == -1:
        direction = asset + 1 if asset + 1 < len(headers) else asset
    if target == -1:
        target = direction + 1 if direction + 1 < len(headers) else direction
    return ColumnMap(asset, direction, target)


def _clean_cell(value: str) -> str:
    value = html.unescape(value).replace("**", "").replace("`", "")
    return re.sub(r"\s+", " ", value).strip()


def _cell(cells: Sequence[str], index: int) -> str:
    return cells[index] if 0 <= index < len(cells) else ""


def _row_from_cells(cells: Sequence[str], columns: ColumnMap) -> Optional[PredictionRow]:
    asset = _clean_cell(_cell(cells, columns.asset))
    if not asset:
        return None
    return PredictionRow(
        asset=asset,
        direction=_clean_cell(_cell(cells, columns.direction)),
        price_target=_clean_cell(_cell(cells, columns.target)),
    )


def is_separator(line: str) -> bool:
    stripped = re.sub(r"[|:\- ]", "", line)
    return "|" in line and "-" in line and not stripped


def split_row(line: str) -> List[str]:
    line = line.strip()
    if line.startswith("|"):
        line = line[1:]
    if line.endswith("|"):
        line = line[:-1]
    return [cell.strip() for cell in line.split("|")]


def parse_markdown_tables(text: str) -> List[PredictionRow]:
    rows: List[PredictionRow] = []
    lines = text.replace("\r\n", "\n").split("\n")
    i = 0
    while i < len(lines):
        line = lines[i].strip()
        next_line = lines[i + 1].strip() if i + 1 < len(lines) else ""
        if "|" in line and not is_separator(line) and is_separator(next_line):
            columns = map_columns([h.lower() for h in split_row(line)])
            if columns is not None:
                i += 2
                while i < len(lines):
                    body = lines[i].strip()
                    if "|" not in body or is_separator(body):
                        break
                    row = _row_from_cells(split_row(body), columns)
                    if row:
                        rows.append(row)
                    i += 1
                continue
        i += 1
    return rows


def _row_cells(tr: Tag) -> List[str]:
    # Row headers (<th scope="row">) count as cells so columns stay aligned
    return [cell.get_text(" ", strip=True) for cell in tr.find_all(["th", "td"], recursive=False)]


def parse_html_tables(text: str) -> List[PredictionRow]:
    rows: List[PredictionRow] = []
    if "<table" not in text.lower():
        return rows
    soup = BeautifulSoup(text, "html.parser")
    for table in soup.find_all("table"):
        trs = table.find_all("tr")
        if not trs:
            continue
        columns = map_columns([h.lower() for h in _row_cells(trs[0])])
        if columns is None:
            continue
        for tr in trs[1:]:
            row = _row_from_cells(_row_cells(tr), columns)
            if row:
                rows.append(row)
    return rows


# --- Orchestration ----------------------------------------------------------

@dataclass(frozen=True)
class ParserStrategy:
    name: str
    tier: int
    parse: Callable[[str], Optional[List[PredictionRow]]]


STRATEGIES: Tuple[ParserStrategy, ...] = (
    ParserStrategy("fenced-json", 1, parse_fenced_json),
    ParserStrategy("inline-json", 1, parse_inline_json),
    ParserStrategy("markdown-table", 2, parse_markdown_tables),
    ParserStrategy("html-table", 2, parse_html_tables),
)


def _run(strategy: ParserStrategy, text: str) -> Optional[List[PredictionRow]]:
    try:
        return strategy.parse(text)
    except Exception:
        logger.exception("Extraction strategy %s failed", strategy.name)
        return None


def dedupe_rows(rows: Iterable[PredictionRow]) -> List[PredictionRow]:
    seen = set()
    out: List[PredictionRow] = []
    for row in rows:
        if not row.asset:
            continue
        key = row.dedupe_key()
        if key in seen:
            continue
        seen.add(key)
        out.append(row)
    return out


def extract_predictions(text: str) -> List[PredictionRow]:
    if not text:
        return []
    for strategy in (s for s in STRATEGIES if s.tier == 1):
        parsed = _run(strategy, text)
        if parsed is None:
            continue
        rows = dedupe_rows(parsed)
        if rows:
            logger.debug("Extracted %d prediction(s) via %s", len(rows), strategy.name)
            return rows
        # Parsed JSON without named rows still ends tier 1
        break
    legacy: List[PredictionRow] = []
    for strategy in (s for s in STRATEGIES if s.tier == 2):
        legacy.extend(_run(strategy, text) or [])
    return dedupe_rows(legacy)


@dataclass
class ExtractionResult:
    author: str = ""
    predictions: List[PredictionRow] = field(default_factory=list)


def extract(summary_text: str) -> ExtractionResult:
    text = summary_text if isinstance(summary_text, str) else ""
    try:
        author = extract_author(text)
    except Exception:
        logger.exception("Author extraction failed")
        author = ""
    return ExtractionResult(author=author, predictions=extract_predictions(text))


__all__ = [
    "ExtractionResult",
    "ParserStrategy",
    "STRATEGIES",
    "extract",
    "extract_author",
    "extract_predictions",
    "map_columns",
    "parse_fenced_json",
    "parse_inline_json",
    "parse_markdown_tables",
    "parse_html_tables",
    "dedupe_rows",
]
