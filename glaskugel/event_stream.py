#!/usr/bin/env python3
"""Progress event bus and server-sent events stream for pipeline observers."""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
import threading
from typing import AsyncIterator, Callable, Dict, Optional, Union

from .metrics import metrics
from .models import ProgressEvent

logger = logging.getLogger(__name__)

Listener = Callable[[ProgressEvent], None]

DEFAULT_KEEPALIVE_SECONDS = 15.0
MAX_PENDING_EVENTS = 64


class _KeepAlive:
    """Marker yielded by an idle stream so intermediaries keep the connection."""

    def __repr__(self) -> str:
        return "KEEPALIVE"


KEEPALIVE = _KeepAlive()


def keepalive_interval() -> float:
    try:
        value = float(os.getenv("SSE_KEEPALIVE_SECONDS", DEFAULT_KEEPALIVE_SECONDS))
    except ValueError:
        return DEFAULT_KEEPALIVE_SECONDS
    return value if value > 0 else DEFAULT_KEEPALIVE_SECONDS


class ProgressEventBus:
    """Fan-out broadcaster; delivers each event to the listeners registered right now."""

    def __init__(self) -> None:
        self._listeners: Dict[int, Listener] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> int:
        with self._lock:
            handle = next(self._ids)
            self._listeners[handle] = listener
            total = len(self._listeners)
        metrics.record_stream_register()
        logger.debug("Progress listener registered; total=%s", total)
        return handle

    def unsubscribe(self, handle: int) -> None:
        with self._lock:
            removed = self._listeners.pop(handle, None)
            total = len(self._listeners)
        if removed is not None:
            metrics.record_stream_unregister()
            logger.debug("Progress listener unregistered; total=%s", total)

    def publish(self, event: ProgressEvent) -> int:
        with self._lock:
            listeners = list(self._listeners.values())
        delivered = 0
        failed = 0
        for listener in listeners:
            try:
                listener(event)
                delivered += 1
            except Exception:
                failed += 1
                logger.exception("Progress listener failed for %s/%s", event.job_id, event.step)
        metrics.record_event_broadcast(delivered, failed=failed)
        return delivered

    def listener_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def stream(self, keepalive: Optional[float] = None) -> "EventStream":
        """Open a live subscription; iterate it for events and keep-alive markers."""
        return EventStream(self, keepalive if keepalive is not None else keepalive_interval())


class EventStream:
    """Per-connection queue fed by the bus; oldest events are dropped on overflow."""

    def __init__(self, bus: ProgressEventBus, keepalive: float) -> None:
        self._bus = bus
        self._keepalive = keepalive
        self.queue: "asyncio.Queue[ProgressEvent]" = asyncio.Queue(maxsize=MAX_PENDING_EVENTS)
        self.alive = True
        self.handle = bus.subscribe(self.enqueue)

    def enqueue(self, event: ProgressEvent) -> None:
        if not self.alive:
            return
        try:
            self.queue.put_nowait(event)
        except asyncio.QueueFull:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            try:
                self.queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.debug("Event stream overflow; dropping %s", event.step)

    def close(self) -> None:
        if self.alive:
            self.alive = False
            self._bus.unsubscribe(self.handle)

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> Union[ProgressEvent, _KeepAlive]:
        if not self.alive:
            raise StopAsyncIteration
        try:
            return await asyncio.wait_for(self.queue.get(), timeout=self._keepalive)
        except asyncio.TimeoutError:
            return KEEPALIVE

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()


def format_event(event: ProgressEvent) -> str:
    try:
        data = json.dumps(event.to_dict(), ensure_ascii=False)
    except TypeError:
        logger.exception("Failed to serialise progress event for %s", event.job_id)
        data = json.dumps({'error': 'serialization-error'}, ensure_ascii=False)
    return f"data: {data}\n\n"


async def sse_messages(bus: ProgressEventBus, keepalive: Optional[float] = None) -> AsyncIterator[str]:
    """Yield text/event-stream frames until the consumer stops iterating."""
    stream = bus.stream(keepalive)
    try:
        yield ": connected\n\n"
        async for item in stream:
            if item is KEEPALIVE:
                yield ": keepalive\n\n"
            else:
                yield format_event(item)
    finally:
        stream.close()


__all__ = [
    "KEEPALIVE",
    "ProgressEventBus",
    "EventStream",
    "format_event",
    "sse_messages",
    "keepalive_interval",
]
