"""
Aegis Gateway — Detector interface.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from aegis.features.event import FeatureEvent

# (is_anomaly, reason); reason is "" when not anomalous
Verdict = tuple[bool, str]

NOT_ANOMALOUS: Verdict = (False, "")


@dataclass(frozen=True)
class Anomaly:
    """A flagged event and the reason it was flagged."""
    event: FeatureEvent
    reason: str
    detected_at: float = field(default_factory=time.time)

    @property
    def detector(self) -> str:
        return "ml" if self.reason.startswith("ml_") else "rules"

    def to_dict(self) -> dict[str, Any]:
        return {
            "reason": self.reason,
            "detector": self.detector,
            "detected_at": self.detected_at,
            "event": self.event.to_dict(),
        }


class AnomalyDetector(ABC):
    """Base class for the rules, ML and hybrid detectors."""

    #: short tag used for metrics / logs
    kind: str = "base"

    @abstractmethod
    def observe(self, event: FeatureEvent) -> Verdict:
        ...
