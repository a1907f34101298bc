"""
Aegis Gateway — Feature Stream.

Bounded multi-producer queue between the request path and the
anomaly consumer loop. Producers never wait: when the buffer is full
the oldest event is shed.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import deque
from pathlib import Path
from typing import AsyncIterator, Deque, Iterable, Optional

import yaml

from aegis.features.event import FeatureEvent

logger = logging.getLogger("aegis.features.stream")


class FeatureStream:
    """
    FIFO of FeatureEvents with drop-oldest overflow.

    ``enqueue`` may be called from any thread or from the event loop.
    ``dequeue_all`` is an async iterator for a single consumer task; it
    suspends while empty and ends when the task is cancelled or the
    stream is closed.
    """

    def __init__(self, capacity: int = 1000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._buffer: Deque[FeatureEvent] = deque(maxlen=capacity)
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._closed = False
        self.dropped = 0
        self.enqueued = 0

    def __len__(self) -> int:
        return len(self._buffer)

    @property
    def closed(self) -> bool:
        return self._closed

    # ── Producers ────────────────────────────────────────

    def enqueue(self, event: FeatureEvent) -> None:
        """Append an event, shedding the oldest one on overflow."""
        with self._lock:
            if len(self._buffer) == self.capacity:
                self.dropped += 1
                logger.debug("Feature stream full (%d) — dropped oldest event", self.capacity)
            self._buffer.append(event)
            self.enqueued += 1
        self._notify()

    def seed(self, events: Iterable[FeatureEvent]) -> int:
        """Bulk pre-load events (tests / replay). Returns count enqueued."""
        count = 0
        for event in events:
            self.enqueue(event)
            count += 1
        return count

    # ── Consumer ─────────────────────────────────────────

    async def dequeue_all(self) -> AsyncIterator[FeatureEvent]:
        """Yield events in arrival order until cancelled or closed."""
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        while not self._closed:
            event = self._pop()
            if event is None:
                self._wakeup.clear()
                # A producer may have slipped in between the pop and the clear
                event = self._pop()
                if event is None:
                    await self._wakeup.wait()
                    continue
            yield event

    def close(self) -> None:
        """End the consumer iterator. Events still buffered stay unread."""
        self._closed = True
        self._notify()

    # ── Internal ─────────────────────────────────────────

    def _pop(self) -> Optional[FeatureEvent]:
        with self._lock:
            if self._buffer:
                return self._buffer.popleft()
        return None

    def _notify(self) -> None:
        loop, wakeup = self._loop, self._wakeup
        if loop is None or wakeup is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            wakeup.set()
            return
        try:
            loop.call_soon_threadsafe(wakeup.set)
        except RuntimeError:
            # Consumer loop already closed; nothing left to wake.
            pass


def load_seed_file(path: str | Path) -> list[FeatureEvent]:
    """
    Load a YAML replay file of feature events.

    Accepts either a top-level list or a mapping with an ``events`` key::

        events:
          - client_id: c1
            route_key: /api/users
            status: 200
            rps_window: 10
    """
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise ValueError(f"Invalid replay file {path}: {exc}") from exc

    if not data:
        return []
    raw_events = data.get("events", []) if isinstance(data, dict) else data

    events: list[FeatureEvent] = []
    for raw in raw_events:
        try:
            events.append(FeatureEvent.from_dict(raw))
        except (TypeError, ValueError, AttributeError):
            logger.warning("Skipping malformed replay event in %s: %r", path, raw)
    logger.info("Loaded %d replay event(s) from %s", len(events), path)
    return events
