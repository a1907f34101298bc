"""
Aegis Gateway — Online ML Anomaly Detector.

Learns a baseline of clean traffic, fits an unsupervised outlier model
(PCA reconstruction error by default, IsolationForest as alternative),
calibrates a quantile threshold on the training scores and then scores
every request. Retrained periodically on fresh clean traffic.
"""

from __future__ import annotations

import logging
import math
import os
import pickle
import threading
import time
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Deque, Iterator, Optional

import numpy as np
from sklearn.decomposition import PCA
from sklearn.ensemble import IsolationForest
from sklearn.preprocessing import StandardScaler

from aegis.config import Settings
from aegis.detection.base import NOT_ANOMALOUS, AnomalyDetector, Verdict
from aegis.features.event import FeatureEvent

logger = logging.getLogger("aegis.detection.ml")

# Feature names in order, MUST match extract_vector()
FEATURE_NAMES = [
    "rps_window",
    "is_4xx",
    "is_5xx",
    "is_waf",
    "ua_entropy",
    "is_post",
]
N_FEATURES = len(FEATURE_NAMES)

SUPPORTED_ALGORITHMS = ("pca", "isolation_forest")

ML_OUTLIER = "ml_outlier"

IFOREST_ESTIMATORS = 100

# Lowest PCA threshold, in squared scaled units
MIN_PCA_THRESHOLD = 1e-6


class UnsupportedAlgorithmError(ValueError):
    """Configured outlier algorithm is not implemented."""


class RetrainOutcome(str, Enum):
    RETRAINED = "retrained"
    RECALIBRATED_FALLBACK = "recalibrated_fallback"
    SKIPPED_WARMUP = "skipped_warmup"
    SKIPPED_BUSY = "skipped_busy"
    SKIPPED_INSUFFICIENT = "skipped_insufficient_samples"
    SKIPPED_DEGENERATE = "skipped_degenerate"


# ── Feature extraction / numerics ────────────────────────


def extract_vector(event: FeatureEvent) -> np.ndarray:
    """Fixed-length numeric vector for one event. Shape (6,)."""
    return np.array([
        event.rps_window,
        1.0 if event.is_4xx else 0.0,
        1.0 if event.is_5xx else 0.0,
        1.0 if event.waf_hit else 0.0,
        event.ua_entropy,
        1.0 if event.is_post else 0.0,
    ], dtype=np.float64)


def total_variance(X: np.ndarray) -> float:
    """Sum of per-dimension population variances (0 for an empty set)."""
    if X.size == 0:
        return 0.0
    return float(np.var(X, axis=0).sum())


def pca_rank_for(X: np.ndarray, pca_rank: int) -> int:
    """
    PCA rank for a baseline: at most one less than the number of columns
    that actually vary. 0 means reconstruction error would be pure noise.
    """
    if len(X) == 0:
        return 0
    varying = int(np.count_nonzero(np.ptp(X, axis=0) > 0))
    return max(0, min(pca_rank, varying - 1, len(X) - 1))


def quantile_threshold(scores: np.ndarray, quantile: float) -> float:
    """
    Floor-indexed quantile of ``scores``: sorted[floor(q * (n - 1))],
    index clamped into [0, n - 1]. Never interpolates or extrapolates.
    """
    values = np.sort(np.asarray(scores, dtype=np.float64).ravel())
    n = len(values)
    if n == 0:
        raise ValueError("cannot compute a threshold from zero scores")
    idx = int(math.floor(quantile * (n - 1)))
    idx = min(max(idx, 0), n - 1)
    return float(values[idx])


# ── Fitted model / scoring handles ───────────────────────


@dataclass(frozen=True)
class FittedModel:
    """Immutable scaler + estimator pair. Higher score = more anomalous."""
    algorithm: str
    scaler: StandardScaler
    estimator: object

    def score_batch(self, X: np.ndarray) -> np.ndarray:
        X_scaled = self.scaler.transform(X)
        if self.algorithm == "pca":
            reconstructed = self.estimator.inverse_transform(  # type: ignore[attr-defined]
                self.estimator.transform(X_scaled),  # type: ignore[attr-defined]
            )
            return np.sum((X_scaled - reconstructed) ** 2, axis=1)
        # IsolationForest: score_samples is lower for anomalies
        return -self.estimator.score_samples(X_scaled)  # type: ignore[attr-defined]


def fit_model(X: np.ndarray, algorithm: str, pca_rank: int = 3) -> FittedModel:
    """Fit scaler + outlier estimator on the baseline matrix."""
    scaler = StandardScaler()
    X_scaled = scaler.fit_transform(X)

    if algorithm == "pca":
        rank = pca_rank_for(X, pca_rank)
        if rank < 1:
            raise ValueError("baseline has too few varying features for PCA")
        estimator: object = PCA(n_components=rank, svd_solver="full")
        estimator.fit(X_scaled)  # type: ignore[attr-defined]
    elif algorithm == "isolation_forest":
        estimator = IsolationForest(
            n_estimators=IFOREST_ESTIMATORS,
            max_samples=min(len(X_scaled), 256),
            random_state=42,
        )
        estimator.fit(X_scaled)  # type: ignore[attr-defined]
    else:
        raise UnsupportedAlgorithmError(f"Unsupported outlier algorithm: {algorithm!r}")

    return FittedModel(algorithm=algorithm, scaler=scaler, estimator=estimator)


class Scorer:
    """Scoring handle with its own input row; not shared between threads."""

    def __init__(self, model: FittedModel) -> None:
        self.model = model
        self._row = np.empty((1, N_FEATURES), dtype=np.float64)

    def score(self, vector: np.ndarray) -> float:
        self._row[0, :] = vector
        return float(self.model.score_batch(self._row)[0])


class ScorerPool:
    """
    Small pool of Scorers bound to a single fitted model.

    The pool never changes model: a retrain builds a new pool and the
    whole pool is swapped together with its threshold.
    """

    def __init__(self, model: FittedModel, max_size: int = 8) -> None:
        self.model = model
        self.max_size = max_size
        self._idle: Deque[Scorer] = deque()

    @contextmanager
    def acquire(self) -> Iterator[Scorer]:
        try:
            scorer = self._idle.pop()
        except IndexError:
            scorer = Scorer(self.model)
        try:
            yield scorer
        finally:
            if len(self._idle) < self.max_size:
                self._idle.append(scorer)

    @property
    def idle_count(self) -> int:
        return len(self._idle)


# ── Model holder ─────────────────────────────────────────


@dataclass(frozen=True)
class ModelSnapshot:
    """Active scorer and the threshold it was calibrated with."""
    threshold: float
    fallback: bool
    pool: Optional[ScorerPool] = None
    sample_count: int = 0
    trained_at: float = 0.0

    def score(self, vector: np.ndarray) -> float:
        if self.fallback or self.pool is None:
            return float(vector[0])  # raw RPS
        with self.pool.acquire() as scorer:
            return scorer.score(vector)


class ModelHolder:
    """Single cell for the active snapshot, replaced wholesale on swap."""

    def __init__(self) -> None:
        self._snapshot: Optional[ModelSnapshot] = None

    @property
    def snapshot(self) -> Optional[ModelSnapshot]:
        return self._snapshot

    def swap(self, snapshot: Optional[ModelSnapshot]) -> None:
        self._snapshot = snapshot


# ── Baseline buffer ──────────────────────────────────────


class BaselineBuffer:
    """
    Bounded queue of (timestamp, vector) pairs of clean traffic.

    Backed by a deque: append / popleft are atomic, so request threads
    and the retrain thread share it without a lock. The hard cap drops
    the oldest entries regardless of age.
    """

    def __init__(self, cap: int) -> None:
        self._items: Deque[tuple[float, np.ndarray]] = deque(maxlen=cap)

    def __len__(self) -> int:
        return len(self._items)

    @property
    def cap(self) -> Optional[int]:
        return self._items.maxlen

    def append(self, ts: float, vector: np.ndarray) -> None:
        self._items.append((ts, vector))

    def prune(self, cutoff: float) -> int:
        """Drop entries older than ``cutoff``. Returns count removed."""
        removed = 0
        while True:
            try:
                ts, _ = self._items[0]
            except IndexError:
                break
            if ts >= cutoff:
                break
            try:
                ts, vector = self._items.popleft()
            except IndexError:
                break
            if ts >= cutoff:
                # Head was evicted by a concurrent append; keep the newer entry
                self._items.appendleft((ts, vector))
                break
            removed += 1
        return removed

    def vectors(self) -> np.ndarray:
        items = list(self._items)
        if not items:
            return np.empty((0, N_FEATURES), dtype=np.float64)
        return np.vstack([vec for _, vec in items])

    def clear(self) -> None:
        self._items.clear()


# ── Detector ─────────────────────────────────────────────


class MLAnomalyDetector(AnomalyDetector):
    """
    Online outlier detector.

    Lifecycle:
      1. Warm-up: collect clean vectors (never flags)
      2. Train once ``baseline_sample_size`` is reached → active
      3. Score every request against the held threshold
      4. Retrain periodically on recent clean traffic
    A persisted model (or fallback marker) skips the warm-up.
    """

    kind = "ml"

    def __init__(self, config: Settings, clock: Callable[[], float] = time.time) -> None:
        algorithm = config.ml_algorithm.lower()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise UnsupportedAlgorithmError(
                f"Unsupported outlier algorithm {config.ml_algorithm!r}; "
                f"expected one of {SUPPORTED_ALGORITHMS}"
            )
        self.config = config
        self.algorithm = algorithm
        self._clock = clock
        self.holder = ModelHolder()
        self.buffer = BaselineBuffer(config.baseline_buffer_cap)
        # Held for any train / retrain; acquired without blocking
        self._train_lock = threading.Lock()
        self._train_count = 0
        self._last_train_time: float = 0.0

        self.loaded_from_disk = self._load_model()

    # ── State ────────────────────────────────────────────

    @property
    def is_ready(self) -> bool:
        return self.holder.snapshot is not None

    @property
    def is_fallback(self) -> bool:
        snap = self.holder.snapshot
        return snap is not None and snap.fallback

    @property
    def threshold(self) -> Optional[float]:
        snap = self.holder.snapshot
        return snap.threshold if snap is not None else None

    @property
    def train_count(self) -> int:
        return self._train_count

    @property
    def retrain_in_progress(self) -> bool:
        return self._train_lock.locked()

    # ── Observe ──────────────────────────────────────────

    def observe(self, event: FeatureEvent) -> Verdict:
        vector = extract_vector(event)
        snap = self.holder.snapshot

        if snap is None:
            if event.is_clean:
                self.buffer.append(self._clock(), vector)
                if len(self.buffer) >= self.config.baseline_sample_size:
                    self._train_baseline()
            return NOT_ANOMALOUS

        score = snap.score(vector)
        if event.is_clean:
            self.buffer.append(self._clock(), vector)
        if score > snap.threshold:
            return True, ML_OUTLIER
        return NOT_ANOMALOUS

    def score(self, event: FeatureEvent) -> Optional[float]:
        """Raw score against the active snapshot (None during warm-up)."""
        snap = self.holder.snapshot
        if snap is None:
            return None
        return snap.score(extract_vector(event))

    # ── Training ─────────────────────────────────────────

    def _train_baseline(self) -> None:
        if not self._train_lock.acquire(blocking=False):
            return
        try:
            if self.holder.snapshot is not None:
                return  # another thread finished first
            self.train(self.buffer.vectors())
        finally:
            self._train_lock.release()

    def train(self, X: np.ndarray) -> ModelSnapshot:
        """
        Fit on ``X`` and hot-swap the result. Near-constant data yields a
        fallback snapshot (threshold = quantile of raw RPS) instead of a model.
        """
        if self._degenerate(X):
            snapshot, fitted = self._fallback_snapshot(X), None
        else:
            snapshot, fitted = self._model_snapshot(X)
        self._activate(snapshot, fitted)
        return snapshot

    def retrain(self, now: Optional[float] = None) -> RetrainOutcome:
        """One retrain cycle; skipped cycles keep the current snapshot."""
        if not self._train_lock.acquire(blocking=False):
            return RetrainOutcome.SKIPPED_BUSY
        try:
            snap = self.holder.snapshot
            if snap is None:
                return RetrainOutcome.SKIPPED_WARMUP

            now = self._clock() if now is None else now
            pruned = self.buffer.prune(now - self.config.training_window_minutes * 60)
            X = self.buffer.vectors()
            if len(X) < self.config.min_samples_guard:
                logger.debug(
                    "Retrain skipped — %d fresh samples (< %d), pruned %d",
                    len(X), self.config.min_samples_guard, pruned,
                )
                return RetrainOutcome.SKIPPED_INSUFFICIENT

            degenerate = self._degenerate(X)
            if snap.fallback:
                if degenerate:
                    self._activate(self._fallback_snapshot(X), None)
                    return RetrainOutcome.RECALIBRATED_FALLBACK
                self._activate(*self._model_snapshot(X))
                return RetrainOutcome.RETRAINED

            if degenerate:
                logger.debug("Retrain skipped — degenerate baseline, keeping last model")
                return RetrainOutcome.SKIPPED_DEGENERATE
            self._activate(*self._model_snapshot(X))
            return RetrainOutcome.RETRAINED
        finally:
            self._train_lock.release()

    def _degenerate(self, X: np.ndarray) -> bool:
        if total_variance(X) < self.config.min_variance_guard:
            return True
        return self.algorithm == "pca" and pca_rank_for(X, self.config.pca_rank) < 1

    def _fallback_snapshot(self, X: np.ndarray) -> ModelSnapshot:
        threshold = quantile_threshold(X[:, 0], self.config.score_quantile)
        return ModelSnapshot(
            threshold=threshold,
            fallback=True,
            sample_count=len(X),
            trained_at=self._clock(),
        )

    def _model_snapshot(self, X: np.ndarray) -> tuple[ModelSnapshot, FittedModel]:
        fitted = fit_model(X, self.algorithm, self.config.pca_rank)
        threshold = quantile_threshold(fitted.score_batch(X), self.config.score_quantile)
        if self.algorithm == "pca":
            threshold = max(threshold, MIN_PCA_THRESHOLD)
        snapshot = ModelSnapshot(
            threshold=threshold,
            fallback=False,
            pool=ScorerPool(fitted, self.config.scorer_pool_size),
            sample_count=len(X),
            trained_at=self._clock(),
        )
        return snapshot, fitted

    def _activate(self, snapshot: ModelSnapshot, fitted: Optional[FittedModel]) -> None:
        self.holder.swap(snapshot)
        self._train_count += 1
        self._last_train_time = snapshot.trained_at
        logger.info(
            "ML detector trained (#%d) — %s, %d samples, threshold=%.6f",
            self._train_count,
            "fallback RPS scoring" if snapshot.fallback else self.algorithm,
            snapshot.sample_count,
            snapshot.threshold,
        )
        self._save_model(snapshot, fitted)

    # ── Persistence ──────────────────────────────────────

    def _save_model(self, snapshot: ModelSnapshot, fitted: Optional[FittedModel]) -> None:
        """
        Persist threshold, then model (or fallback marker). Best effort.

        The model payload and the marker both record the threshold they
        were calibrated with, so a partial save never loads as a valid pair.
        """
        model_path = Path(self.config.model_path)
        threshold_path = Path(self.config.threshold_path)
        marker_path = Path(self.config.fallback_marker_path)
        threshold_text = repr(snapshot.threshold)
        try:
            model_path.parent.mkdir(parents=True, exist_ok=True)
            threshold_path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(threshold_path, threshold_text.encode("utf-8"))
            if snapshot.fallback or fitted is None:
                _atomic_write(marker_path, f"fallback {threshold_text}\n".encode("utf-8"))
                model_path.unlink(missing_ok=True)
            else:
                payload = pickle.dumps({
                    "model": fitted,
                    "algorithm": fitted.algorithm,
                    "threshold": snapshot.threshold,
                    "train_count": self._train_count,
                    "timestamp": snapshot.trained_at,
                })
                _atomic_write(model_path, payload)
                marker_path.unlink(missing_ok=True)
            logger.debug("ML state saved to %s", threshold_path.parent)
        except Exception:
            logger.exception("Failed to save ML model — continuing from memory")

    def _load_model(self) -> bool:
        """Restore persisted state; any failure means a fresh warm-up."""
        model_path = Path(self.config.model_path)
        threshold_path = Path(self.config.threshold_path)
        marker_path = Path(self.config.fallback_marker_path)
        if not threshold_path.exists():
            return False
        try:
            threshold = float(threshold_path.read_text(encoding="utf-8").strip())
            if not math.isfinite(threshold):
                raise ValueError(f"non-finite threshold {threshold!r}")

            if marker_path.exists():
                tag, _, recorded = marker_path.read_text(encoding="utf-8").strip().partition(" ")
                if tag != "fallback" or float(recorded) != threshold:
                    raise ValueError(f"fallback marker does not match threshold {threshold!r}")
                self.holder.swap(ModelSnapshot(threshold=threshold, fallback=True))
                logger.info("ML fallback state loaded (threshold=%.6f)", threshold)
                return True

            if not model_path.exists():
                return False
            with open(model_path, "rb") as f:
                data = pickle.load(f)
            fitted = data["model"]
            if not isinstance(fitted, FittedModel):
                raise ValueError(f"unexpected model artifact {type(fitted).__name__}")
            if fitted.algorithm != self.algorithm:
                raise ValueError(
                    f"persisted model uses {fitted.algorithm!r}, configured {self.algorithm!r}"
                )
            if float(data["threshold"]) != threshold:
                raise ValueError(
                    f"model was calibrated with threshold {data['threshold']!r}, file has {threshold!r}"
                )
            self.holder.swap(ModelSnapshot(
                threshold=threshold,
                fallback=False,
                pool=ScorerPool(fitted, self.config.scorer_pool_size),
                trained_at=float(data.get("timestamp", 0.0)),
            ))
            self._train_count = int(data.get("train_count", 0))
            logger.info(
                "ML model loaded from %s (train #%d, threshold=%.6f)",
                model_path, self._train_count, threshold,
            )
            return True
        except Exception:
            logger.warning("Failed to load ML model — starting warm-up", exc_info=True)
            self.holder.swap(None)
            return False

    # ── Info ─────────────────────────────────────────────

    def info(self) -> dict:
        """Return detector status for API."""
        snap = self.holder.snapshot
        return {
            "is_ready": snap is not None,
            "phase": "active" if snap is not None else "warm_up",
            "mode": None if snap is None else ("fallback" if snap.fallback else self.algorithm),
            "threshold": None if snap is None else snap.threshold,
            "train_count": self._train_count,
            "buffer_size": len(self.buffer),
            "baseline_sample_size": self.config.baseline_sample_size,
            "last_trained": self._last_train_time or None,
            "loaded_from_disk": self.loaded_from_disk,
            "retrain_in_progress": self.retrain_in_progress,
        }


def _atomic_write(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, path)
