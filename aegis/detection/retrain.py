"""
Aegis Gateway — Periodic ML retraining.

A background task waits on a ticker and runs one retrain cycle per
tick in a worker thread. A tick that arrives while a cycle is still
running is skipped, not queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Callable, Optional

from aegis.detection.ml import MLAnomalyDetector, RetrainOutcome

logger = logging.getLogger("aegis.detection.retrain")

Ticker = Callable[[], AsyncIterator[float]]


def interval_ticker(interval_sec: float) -> Ticker:
    """Ticker factory that fires every ``interval_sec`` seconds."""

    async def ticks() -> AsyncIterator[float]:
        while True:
            await asyncio.sleep(interval_sec)
            yield time.monotonic()

    return ticks


class RetrainScheduler:
    """Drives ``MLAnomalyDetector.retrain`` from a periodic ticker."""

    def __init__(
        self,
        detector: MLAnomalyDetector,
        interval_sec: float = 300.0,
        ticker: Optional[Ticker] = None,
        grace_sec: float = 5.0,
    ) -> None:
        self.detector = detector
        self.grace_sec = grace_sec
        self._ticker = ticker or interval_ticker(interval_sec)
        self._task: Optional[asyncio.Task] = None
        self._current: Optional[asyncio.Task] = None
        self.ticks = 0
        self.skipped = 0
        self.last_outcome: Optional[RetrainOutcome] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_progress(self) -> bool:
        return self._current is not None and not self._current.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="aegis-retrain")

    async def stop(self) -> None:
        """Stop ticking; give an in-flight cycle ``grace_sec`` before abandoning it."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        current = self._current
        if current is not None and not current.done():
            try:
                await asyncio.wait_for(asyncio.shield(current), timeout=self.grace_sec)
            except asyncio.TimeoutError:
                logger.warning("Retrain still running after %.1fs — abandoning", self.grace_sec)
                current.cancel()
        self._current = None

    async def _run(self) -> None:
        async for _ in self._ticker():
            self.ticks += 1
            if self.in_progress:
                self.skipped += 1
                logger.debug("Retrain tick skipped — previous cycle still running")
                continue
            self._current = asyncio.create_task(self._retrain_once())

    async def _retrain_once(self) -> Optional[RetrainOutcome]:
        try:
            outcome = await asyncio.to_thread(self.detector.retrain)
        except Exception:
            logger.exception("Error in retrain cycle")
            return None
        self.last_outcome = outcome
        if outcome is RetrainOutcome.RETRAINED or outcome is RetrainOutcome.RECALIBRATED_FALLBACK:
            logger.info("ML retrain cycle: %s (threshold=%s)", outcome.value, self.detector.threshold)
        else:
            logger.debug("ML retrain cycle: %s", outcome.value)
        return outcome
