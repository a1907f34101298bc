"""
Aegis Gateway — Detection Engine.

Drains the feature stream, runs the configured detector off the event
loop, and hands flagged anomalies to downstream sinks. Also owns the
periodic ML retrain task.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Optional

from aegis.config import DetectionMode, Settings
from aegis.detection.base import Anomaly, AnomalyDetector
from aegis.detection.hybrid import HybridDetector
from aegis.detection.ml import MLAnomalyDetector
from aegis.detection.retrain import RetrainScheduler, Ticker
from aegis.detection.rules import RollingThresholdDetector
from aegis.features.event import FeatureEvent
from aegis.features.stream import FeatureStream

logger = logging.getLogger("aegis.detection")

AnomalySink = Callable[[Anomaly], Awaitable[None]]


def build_detector(config: Settings) -> AnomalyDetector:
    """Construct the detector variant selected by ``detection_mode``."""
    mode = config.detection_mode
    if mode is DetectionMode.RULES:
        return RollingThresholdDetector(config)
    if mode is DetectionMode.ML:
        return MLAnomalyDetector(config)
    if mode is DetectionMode.HYBRID:
        return HybridDetector(RollingThresholdDetector(config), MLAnomalyDetector(config))
    raise ValueError(f"Unknown detection mode: {mode!r}")


def find_ml_detector(detector: AnomalyDetector) -> Optional[MLAnomalyDetector]:
    if isinstance(detector, MLAnomalyDetector):
        return detector
    if isinstance(detector, HybridDetector):
        return detector.ml
    return None


@dataclass
class DetectionCounters:
    """In-memory counters for the stats endpoint."""
    observed: int = 0
    flagged: int = 0
    errors: int = 0
    by_reason: dict[str, int] = field(default_factory=dict)
    by_detector: dict[str, int] = field(default_factory=dict)

    def record(self, anomaly: Anomaly) -> None:
        self.flagged += 1
        self.by_reason[anomaly.reason] = self.by_reason.get(anomaly.reason, 0) + 1
        self.by_detector[anomaly.detector] = self.by_detector.get(anomaly.detector, 0) + 1


class DetectionEngine:
    """Consumer loop: stream → detector → anomaly history + sinks."""

    def __init__(
        self,
        config: Settings,
        detector: AnomalyDetector,
        stream: Optional[FeatureStream] = None,
        sinks: Optional[list[AnomalySink]] = None,
        retrain_ticker: Optional[Ticker] = None,
    ) -> None:
        self.config = config
        self.detector = detector
        self.stream = stream or FeatureStream(config.feature_queue_capacity)
        self.sinks: list[AnomalySink] = list(sinks or [])
        self.counters = DetectionCounters()
        self._anomalies: Deque[Anomaly] = deque(maxlen=config.anomaly_history_size)
        self._task: Optional[asyncio.Task] = None

        self.ml = find_ml_detector(detector)
        self.retrainer: Optional[RetrainScheduler] = None
        if self.ml is not None:
            self.retrainer = RetrainScheduler(
                self.ml,
                interval_sec=config.retrain_interval_minutes * 60,
                ticker=retrain_ticker,
                grace_sec=config.retrain_grace_seconds,
            )

    @classmethod
    def from_settings(cls, config: Settings, **kwargs) -> "DetectionEngine":
        return cls(config, build_detector(config), **kwargs)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ── Lifecycle ────────────────────────────────────────

    async def start(self) -> None:
        """Start the consumer loop and the retrain task."""
        if self.running:
            return
        self._task = asyncio.create_task(self._consume(), name="aegis-consumer")
        if self.retrainer is not None:
            self.retrainer.start()
        logger.info(
            "Detection engine started (mode=%s, ML ready: %s)",
            self.config.detection_mode.value,
            self.ml.is_ready if self.ml else "n/a",
        )

    async def stop(self) -> None:
        """Stop background tasks."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self.retrainer is not None:
            await self.retrainer.stop()
        logger.info("Detection engine stopped")

    # ── Consumer loop ────────────────────────────────────

    async def _consume(self) -> None:
        async for event in self.stream.dequeue_all():
            try:
                await self.process(event)
            except Exception:
                self.counters.errors += 1
                logger.exception("Error while processing feature event")

    async def process(self, event: FeatureEvent) -> Optional[Anomaly]:
        """Run one event through the detector; returns the anomaly if flagged."""
        is_anomaly, reason = await asyncio.to_thread(self.detector.observe, event)
        self.counters.observed += 1
        if not is_anomaly:
            return None

        anomaly = Anomaly(event=event, reason=reason)
        self._anomalies.append(anomaly)
        self.counters.record(anomaly)
        logger.info(
            "Anomaly %s for %s (client=%s, status=%d)",
            reason, event.route_key, event.client_key, event.status,
        )
        await self._dispatch(anomaly)
        return anomaly

    async def _dispatch(self, anomaly: Anomaly) -> None:
        for sink in self.sinks:
            try:
                await sink(anomaly)
            except Exception:
                logger.exception("Anomaly sink %r failed", sink)

    # ── Downstream access ────────────────────────────────

    def drain(self) -> list[Anomaly]:
        """Remove and return all accumulated anomalies, oldest first."""
        drained: list[Anomaly] = []
        while True:
            try:
                drained.append(self._anomalies.popleft())
            except IndexError:
                return drained

    def recent(self, limit: Optional[int] = None) -> list[Anomaly]:
        """Accumulated anomalies without draining, newest first."""
        items = list(self._anomalies)
        items.reverse()
        return items[:limit] if limit is not None else items

    @property
    def pending(self) -> int:
        return len(self._anomalies)
