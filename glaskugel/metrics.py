#!/usr/bin/env python3
"""In-process counters for jobs, LLM calls and progress stream clients."""

from __future__ import annotations

import threading
from collections import Counter
from typing import Any, Dict, Optional

from .models import utc_now_iso


class ProcessingMetrics:
    """Thread-safe tallies; ``snapshot()`` is what the CLI logs at exit."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: Counter = Counter()
        self._failures_by_step: Counter = Counter()
        self._stream_clients = 0

    def _bump(self, key: str, amount: int = 1) -> None:
        if amount > 0:
            with self._lock:
                self._counters[key] += amount

    def record_job_submitted(self) -> None:
        self._bump('jobs_submitted')

    def record_job_result(self, success: bool, failed_step: Optional[str] = None) -> None:
        with self._lock:
            if success:
                self._counters['jobs_done'] += 1
            else:
                self._counters['jobs_failed'] += 1
                self._failures_by_step[failed_step or 'unknown'] += 1

    def record_llm_call(self, success: bool) -> None:
        self._bump('llm_calls')
        if not success:
            self._bump('llm_failures')

    def record_predictions(self, count: int) -> None:
        self._bump('predictions_stored', count)

    def record_stream_register(self) -> None:
        with self._lock:
            self._stream_clients += 1

    def record_stream_unregister(self) -> None:
        with self._lock:
            self._stream_clients = max(self._stream_clients - 1, 0)

    def record_event_broadcast(self, delivered: int, failed: int = 0) -> None:
        self._bump('events_delivered', delivered)
        self._bump('listener_errors', failed)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'counters': dict(self._counters),
                'failures_by_step': dict(self._failures_by_step),
                'stream_clients': self._stream_clients,
                'generated_at': utc_now_iso(),
            }


metrics = ProcessingMetrics()
