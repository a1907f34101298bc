"""
Aegis Gateway — Hybrid Detector.

Rules take precedence; the ML detector answers only when no rule fires.
"""

from __future__ import annotations

from aegis.detection.base import AnomalyDetector, Verdict
from aegis.detection.ml import MLAnomalyDetector
from aegis.detection.rules import RollingThresholdDetector
from aegis.features.event import FeatureEvent


class HybridDetector(AnomalyDetector):
    kind = "hybrid"

    def __init__(self, rules: RollingThresholdDetector, ml: MLAnomalyDetector) -> None:
        self.rules = rules
        self.ml = ml

    def observe(self, event: FeatureEvent) -> Verdict:
        # Both detectors see every event so windows and baseline stay in sync
        rule_verdict = self.rules.observe(event)
        ml_verdict = self.ml.observe(event)
        if rule_verdict[0]:
            return rule_verdict
        return ml_verdict
