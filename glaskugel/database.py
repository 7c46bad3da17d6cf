#!/usr/bin/env python3
"""
Job, prediction and settings store

SQLite is the default backend (``GLASKUGEL_DB_PATH``, default
``data/glaskugel.db``). When ``DATABASE_URL`` points at Postgres the same
queries run through psycopg with autocommit connections.

Every method is a single short statement (or a small batch) and is called
directly from the event loop.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import uuid
from contextlib import contextmanager
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from .models import (
    DEFAULT_SETTINGS,
    Job,
    JobStatus,
    Prediction,
    PredictionRow,
    Settings,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "data/glaskugel.db"
JSON_SETTING_KEYS = {"blocked_channels"}
SETTING_KEYS = tuple(f.name for f in fields(Settings))

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS jobs (
        id TEXT PRIMARY KEY,
        video_id TEXT NOT NULL,
        video_url TEXT NOT NULL,
        video_title TEXT NOT NULL DEFAULT '',
        channel_name TEXT NOT NULL DEFAULT '',
        thumbnail_url TEXT NOT NULL DEFAULT '',
        lang TEXT NOT NULL DEFAULT 'de',
        author TEXT NOT NULL DEFAULT '',
        transcript TEXT NOT NULL DEFAULT '',
        summary TEXT NOT NULL DEFAULT '',
        prompt_template TEXT NOT NULL DEFAULT '',
        status TEXT NOT NULL DEFAULT 'processing',
        error_message TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_jobs_video_id ON jobs (video_id)",
    """
    CREATE TABLE IF NOT EXISTS predictions (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL REFERENCES jobs (id) ON DELETE CASCADE,
        asset_name TEXT NOT NULL,
        direction TEXT NOT NULL DEFAULT '',
        if_cases TEXT NOT NULL DEFAULT '',
        price_target TEXT NOT NULL DEFAULT '',
        video_title TEXT NOT NULL DEFAULT '',
        video_url TEXT NOT NULL DEFAULT '',
        channel_name TEXT NOT NULL DEFAULT '',
        author TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_predictions_job_id ON predictions (job_id)",
    """
    CREATE TABLE IF NOT EXISTS settings (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)


def _serialize_setting(key: str, value: Any) -> str:
    if key in JSON_SETTING_KEYS:
        return json.dumps(list(value or []), ensure_ascii=False)
    return "" if value is None else str(value)


def _deserialize_setting(key: str, raw: str) -> Any:
    if key in JSON_SETTING_KEYS:
        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed JSON for setting %s", key)
            return []
        return [str(v) for v in value] if isinstance(value, list) else []
    return raw


class Database:
    """Synchronous store shared by the pipeline and the CLI tools."""

    def __init__(self, path: Optional[str] = None, dsn: Optional[str] = None) -> None:
        self.dsn = dsn
        self.path = path or DEFAULT_DB_PATH
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = None
        if not dsn:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        self.init_schema()
        self.seed_settings()

    @classmethod
    def from_env(cls) -> "Database":
        dsn = os.getenv("DATABASE_URL") or ""
        if dsn.startswith(("postgres://", "postgresql://")):
            return cls(dsn=dsn)
        return cls(path=os.getenv("GLASKUGEL_DB_PATH") or DEFAULT_DB_PATH)

    @property
    def is_postgres(self) -> bool:
        return bool(self.dsn)

    # --- Connection helpers ---
    @contextmanager
    def _cursor(self) -> Iterator[Any]:
        if self.is_postgres:
            import psycopg
            from psycopg.rows import dict_row

            with psycopg.connect(self.dsn, autocommit=True) as conn, conn.cursor(row_factory=dict_row) as cur:
                yield cur
            return
        with self._lock:
            cur = self._conn.cursor()
            try:
                yield cur
                self._conn.commit()
            except Exception:
                self._conn.rollback()
                raise
            finally:
                cur.close()

    def _sql(self, sql: str) -> str:
        return sql.replace("?", "%s") if self.is_postgres else sql

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        with self._cursor() as cur:
            cur.execute(self._sql(sql), tuple(params))
            return cur.rowcount

    def _executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> None:
        with self._cursor() as cur:
            cur.executemany(self._sql(sql), [tuple(r) for r in rows])

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute(self._sql(sql), tuple(params))
            return [dict(row) for row in cur.fetchall()]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # --- Schema ---
    def init_schema(self) -> None:
        for statement in SCHEMA:
            self._execute(statement)

    def seed_settings(self) -> None:
        """Insert defaults for missing keys only; existing values are kept."""
        self._executemany(
            "INSERT INTO settings (key, value) VALUES (?, ?) ON CONFLICT (key) DO NOTHING",
            [(key, _serialize_setting(key, getattr(DEFAULT_SETTINGS, key))) for key in SETTING_KEYS],
        )

    # --- Jobs ---
    def create_job(self, video_id: str, video_url: str, lang: str, title: str = "",
                   channel: str = "", thumbnail: str = "") -> str:
        job_id = uuid.uuid4().hex
        self._execute(
            "INSERT INTO jobs (id, video_id, video_url, lang, video_title, channel_name, thumbnail_url,"
            " status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (job_id, video_id, video_url, lang, title, channel, thumbnail, JobStatus.PROCESSING, utc_now_iso()),
        )
        return job_id

    def update_job_meta(self, job_id: str, title: str, channel: str, thumbnail: str) -> None:
        self._execute(
            "UPDATE jobs SET video_title = ?, channel_name = ?, thumbnail_url = ? WHERE id = ?",
            (title, channel, thumbnail, job_id),
        )

    def update_job_lang(self, job_id: str, lang: str) -> None:
        self._execute("UPDATE jobs SET lang = ? WHERE id = ?", (lang, job_id))

    def update_job_done(self, job_id: str, transcript: str, summary: str, prompt_template: str) -> None:
        self._execute(
            "UPDATE jobs SET transcript = ?, summary = ?, prompt_template = ?, status = ?,"
            " error_message = '' WHERE id = ?",
            (transcript, summary, prompt_template, JobStatus.DONE, job_id),
        )

    def update_job_error(self, job_id: str, error_message: str) -> None:
        self._execute(
            "UPDATE jobs SET error_message = ?, status = ? WHERE id = ?",
            (error_message or "Unknown error", JobStatus.ERROR, job_id),
        )

    def update_job_author(self, job_id: str, author: str) -> None:
        self._execute("UPDATE jobs SET author = ? WHERE id = ?", (author, job_id))

    def get_job(self, job_id: str) -> Optional[Job]:
        rows = self._query("SELECT * FROM jobs WHERE id = ?", (job_id,))
        return Job.from_row(rows[0]) if rows else None

    def list_jobs(self, status: Optional[str] = None) -> List[Job]:
        if status:
            rows = self._query("SELECT * FROM jobs WHERE status = ? ORDER BY created_at DESC", (status,))
        else:
            rows = self._query("SELECT * FROM jobs ORDER BY created_at DESC")
        return [Job.from_row(r) for r in rows]

    def delete_job(self, job_id: str) -> bool:
        return self._execute("DELETE FROM jobs WHERE id = ?", (job_id,)) > 0

    def delete_all_jobs(self) -> int:
        return self._execute("DELETE FROM jobs")

    def lookup_job_ids_by_video_id(self) -> Dict[str, str]:
        """Map video id -> job id for every job that has not failed."""
        rows = self._query(
            "SELECT video_id, id FROM jobs WHERE status != ? ORDER BY created_at",
            (JobStatus.ERROR,),
        )
        return {r["video_id"]: r["id"] for r in rows}

    # --- Predictions ---
    def insert_predictions(self, job_id: str, rows: Sequence[PredictionRow], video_title: str = "",
                           video_url: str = "", channel_name: str = "", author: str = "") -> int:
        if not rows:
            return 0
        created_at = utc_now_iso()
        self._executemany(
            "INSERT INTO predictions (id, job_id, asset_name, direction, if_cases, price_target,"
            " video_title, video_url, channel_name, author, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            [
                (uuid.uuid4().hex, job_id, row.asset, row.direction, row.if_cases, row.price_target,
                 video_title, video_url, channel_name, author, created_at)
                for row in rows
            ],
        )
        return len(rows)

    def list_predictions(self, job_id: Optional[str] = None) -> List[Prediction]:
        if job_id:
            rows = self._query(
                "SELECT * FROM predictions WHERE job_id = ? ORDER BY created_at DESC", (job_id,)
            )
        else:
            rows = self._query("SELECT * FROM predictions ORDER BY created_at DESC")
        return [Prediction.from_row(r) for r in rows]

    def delete_prediction(self, prediction_id: str) -> bool:
        return self._execute("DELETE FROM predictions WHERE id = ?", (prediction_id,)) > 0

    def delete_predictions_by_job(self, job_id: str) -> int:
        return self._execute("DELETE FROM predictions WHERE job_id = ?", (job_id,))

    def delete_all_predictions(self) -> int:
        return self._execute("DELETE FROM predictions")

    # --- Settings ---
    def load_settings(self) -> Settings:
        values: Dict[str, Any] = DEFAULT_SETTINGS.to_dict()
        for row in self._query("SELECT key, value FROM settings"):
            key = row["key"]
            if key in values:
                values[key] = _deserialize_setting(key, row["value"])
        return Settings(**values)

    def update_settings(self, **changes: Any) -> Settings:
        unknown = set(changes) - set(SETTING_KEYS)
        if unknown:
            raise KeyError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        self._executemany(
            "INSERT INTO settings (key, value) VALUES (?, ?)"
            " ON CONFLICT (key) DO UPDATE SET value = excluded.value",
            [(key, _serialize_setting(key, value)) for key, value in changes.items() if value is not None],
        )
        return self.load_settings()

    def reset_settings(self) -> Settings:
        self._execute("DELETE FROM settings")
        self.seed_settings()
        return self.load_settings()


__all__ = ["Database", "DEFAULT_DB_PATH", "SCHEMA"]
