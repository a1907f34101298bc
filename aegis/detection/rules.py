"""
Aegis Gateway — Rolling Threshold Detector.

Keeps one sliding window per (client, route) and compares request
rate, error counts and WAF hits against static thresholds.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from typing import Callable, Deque, Optional

from aegis.config import Settings
from aegis.detection.base import NOT_ANOMALOUS, AnomalyDetector, Verdict
from aegis.features.event import FeatureEvent

logger = logging.getLogger("aegis.detection.rules")

WindowKey = tuple[str, str]

# Reasons, in evaluation order
RPS_SPIKE = "rps_spike"
FOUR_XX_SPIKE = "4xx_spike"
FIVE_XX_SPIKE = "5xx_spike"
WAF_SPIKE = "waf_spike"
UA_LOW_ENTROPY = "ua_low_entropy"


class SlidingWindow:
    """
    Recent events for a single (client, route).

    Request timestamps are kept for the RPS window; error and WAF hits
    for the (usually longer) error window. Counters are adjusted on
    every insert and eviction so they always match the retained entries.
    Callers must hold ``lock`` around ``add`` and the reads that follow.
    """

    __slots__ = (
        "lock", "last_seen", "_rps_window", "_err_window",
        "_requests", "_errors", "_four", "_five", "_waf", "_last_now",
    )

    def __init__(self, rps_window_sec: float, err_window_sec: float) -> None:
        self.lock = threading.Lock()
        self.last_seen: float = 0.0
        self._rps_window = max(1.0, float(rps_window_sec))
        self._err_window = max(1.0, float(err_window_sec))
        self._requests: Deque[float] = deque()
        # (timestamp, is_4xx, is_5xx, waf_hit), only events with a flag set
        self._errors: Deque[tuple[float, bool, bool, bool]] = deque()
        self._four = 0
        self._five = 0
        self._waf = 0
        self._last_now = 0.0

    def add(self, event: FeatureEvent, now: float) -> None:
        self._last_now = now
        self._requests.append(now)
        is4, is5, waf = event.is_4xx, event.is_5xx, event.waf_hit
        if is4 or is5 or waf:
            self._errors.append((now, is4, is5, waf))
            self._four += is4
            self._five += is5
            self._waf += waf
        self._evict(now)

    def _evict(self, now: float) -> None:
        while self._requests and now - self._requests[0] > self._rps_window:
            self._requests.popleft()
        while self._errors and now - self._errors[0][0] > self._err_window:
            _, is4, is5, waf = self._errors.popleft()
            self._four -= is4
            self._five -= is5
            self._waf -= waf

    @property
    def rps(self) -> float:
        """
        Requests per second over the actual elapsed time since the oldest
        retained request, clamped to [1s, rps window] so a fresh window
        does not report an inflated rate.
        """
        if not self._requests:
            return 0.0
        elapsed = self._last_now - self._requests[0]
        denom = max(1.0, min(self._rps_window, elapsed))
        return len(self._requests) / denom

    @property
    def request_count(self) -> int:
        return len(self._requests)

    @property
    def four_xx(self) -> int:
        return self._four

    @property
    def five_xx(self) -> int:
        return self._five

    @property
    def waf_hits(self) -> int:
        return self._waf


class WindowStore:
    """
    Key-value store of sliding windows owned by one rule detector.

    Eviction policy:
      • windows idle for longer than ``ttl_sec`` are dropped by a sweep
        that runs at most once per ``prune_interval_sec``
      • at ``max_entries`` the least recently used window is dropped

    The store lock only covers the dictionary; window contents are
    guarded by each window's own lock so keys never contend.
    """

    def __init__(
        self,
        rps_window_sec: float,
        err_window_sec: float,
        ttl_sec: float = 600.0,
        prune_interval_sec: float = 60.0,
        max_entries: int = 50_000,
    ) -> None:
        self.rps_window_sec = rps_window_sec
        self.err_window_sec = err_window_sec
        self.ttl_sec = ttl_sec
        self.prune_interval_sec = prune_interval_sec
        self.max_entries = max_entries
        self._windows: "OrderedDict[WindowKey, SlidingWindow]" = OrderedDict()
        self._lock = threading.Lock()
        self._last_prune: Optional[float] = None

    @classmethod
    def from_settings(cls, config: Settings) -> "WindowStore":
        return cls(
            rps_window_sec=config.rps_window_seconds,
            err_window_sec=config.error_window_seconds,
            ttl_sec=config.window_ttl_minutes * 60,
            prune_interval_sec=config.window_prune_interval_seconds,
            max_entries=config.max_tracked_windows,
        )

    def __len__(self) -> int:
        return len(self._windows)

    def __contains__(self, key: WindowKey) -> bool:
        return key in self._windows

    def get(self, key: WindowKey) -> Optional[SlidingWindow]:
        return self._windows.get(key)

    def get_or_create(self, key: WindowKey, now: float) -> SlidingWindow:
        """Return the window for ``key``, creating it lazily, and mark it used."""
        with self._lock:
            self._maybe_prune(now)
            window = self._windows.get(key)
            if window is None:
                if len(self._windows) >= self.max_entries:
                    evicted, _ = self._windows.popitem(last=False)
                    logger.debug("Window store full — evicted %s", evicted)
                window = SlidingWindow(self.rps_window_sec, self.err_window_sec)
                self._windows[key] = window
            else:
                self._windows.move_to_end(key)
            window.last_seen = now
            return window

    def _maybe_prune(self, now: float) -> None:
        if self._last_prune is None:
            self._last_prune = now
            return
        if now - self._last_prune < self.prune_interval_sec:
            return
        self._last_prune = now
        cutoff = now - self.ttl_sec
        expired = 0
        # Ordered by last access, so idle windows sit at the front
        while self._windows:
            key, window = next(iter(self._windows.items()))
            if window.last_seen >= cutoff:
                break
            del self._windows[key]
            expired += 1
        if expired:
            logger.debug("Evicted %d idle window(s)", expired)


class RollingThresholdDetector(AnomalyDetector):
    """Static-threshold detector over per-(client, route) sliding windows."""

    kind = "rules"

    def __init__(
        self,
        config: Settings,
        store: Optional[WindowStore] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.store = store if store is not None else WindowStore.from_settings(config)
        self._clock = clock

    def observe(self, event: FeatureEvent) -> Verdict:
        key = (event.client_key, event.route_key)
        now = self._clock()
        window = self.store.get_or_create(key, now)

        with window.lock:
            window.add(event, now)
            rps = window.rps
            four = window.four_xx
            five = window.five_xx
            waf = window.waf_hits

        cfg = self.config
        if rps > cfg.rps_threshold:
            return True, RPS_SPIKE
        if four > cfg.four_xx_threshold:
            return True, FOUR_XX_SPIKE
        if five > cfg.five_xx_threshold:
            return True, FIVE_XX_SPIKE
        if waf > cfg.waf_threshold:
            return True, WAF_SPIKE
        if event.ua_entropy < cfg.ua_entropy_threshold:
            return True, UA_LOW_ENTROPY
        return NOT_ANOMALOUS
