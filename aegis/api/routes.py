"""
Aegis Gateway — REST API Routes.

Status of the detection pipeline plus access to flagged anomalies
for the incident-bundling side.
"""

from __future__ import annotations

import asyncio
import time
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel

from aegis.detection.engine import DetectionEngine

router = APIRouter(tags=["Detection API"])


# ── Schemas ──────────────────────────────────────────────


class StatsResponse(BaseModel):
    uptime: float
    detection_mode: str
    consumer_running: bool
    queue_depth: int
    queue_dropped: int
    events_enqueued: int
    events_observed: int
    anomalies_total: int
    anomalies_pending: int
    anomalies_by_reason: dict[str, int]
    anomalies_by_detector: dict[str, int]
    processing_errors: int
    ml_ready: Optional[bool] = None


class RetrainResponse(BaseModel):
    status: str
    info: dict


# ── State ────────────────────────────────────────────────

_start_time = time.time()


def _engine(request: Request) -> DetectionEngine:
    return request.app.state.engine


# ── Endpoints ────────────────────────────────────────────


@router.get("/health")
async def health_check():
    """Simple health check."""
    return {"status": "healthy", "version": "0.1.0"}


@router.get("/stats", response_model=StatsResponse)
async def get_stats(request: Request):
    """Return current pipeline counters."""
    engine = _engine(request)
    return StatsResponse(
        uptime=time.time() - _start_time,
        detection_mode=engine.config.detection_mode.value,
        consumer_running=engine.running,
        queue_depth=len(engine.stream),
        queue_dropped=engine.stream.dropped,
        events_enqueued=engine.stream.enqueued,
        events_observed=engine.counters.observed,
        anomalies_total=engine.counters.flagged,
        anomalies_pending=engine.pending,
        anomalies_by_reason=dict(engine.counters.by_reason),
        anomalies_by_detector=dict(engine.counters.by_detector),
        processing_errors=engine.counters.errors,
        ml_ready=engine.ml.is_ready if engine.ml else None,
    )


@router.get("/anomalies")
async def get_anomalies(request: Request, limit: int = Query(default=100, ge=1, le=1000)):
    """Recent anomalies, newest first, without draining."""
    items = [a.to_dict() for a in _engine(request).recent(limit)]
    return {"anomalies": items, "count": len(items)}


@router.post("/anomalies/drain")
async def drain_anomalies(request: Request):
    """Hand over all accumulated anomalies, oldest first."""
    items = [a.to_dict() for a in _engine(request).drain()]
    return {"anomalies": items, "count": len(items)}


@router.get("/ml/status")
async def ml_status(request: Request):
    """Return ML detector status and training info."""
    engine = _engine(request)
    if engine.ml is None:
        raise HTTPException(status_code=404, detail="ML detector not enabled in rules mode")
    return engine.ml.info()


@router.post("/ml/retrain", response_model=RetrainResponse)
async def ml_trigger_retrain(request: Request):
    """Manually run one retrain cycle."""
    engine = _engine(request)
    if engine.ml is None:
        raise HTTPException(status_code=404, detail="ML detector not enabled in rules mode")
    outcome = await asyncio.to_thread(engine.ml.retrain)
    return RetrainResponse(status=outcome.value, info=engine.ml.info())
