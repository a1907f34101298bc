"""
Shared fixtures: isolated settings, a controllable clock, event factory.
"""

import pytest

from aegis.config import Settings
from aegis.features.event import FeatureEvent


class FakeClock:
    """Manually advanced clock usable wherever a ``time.time``-like callable is expected."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_settings(tmp_path):
    """Settings whose model / threshold files live under tmp_path."""

    def _make(**overrides) -> Settings:
        values = {
            "model_path": str(tmp_path / "models" / "anomaly_model.pkl"),
            "threshold_path": str(tmp_path / "models" / "anomaly_threshold.txt"),
            "webhook_url": None,
            "seed_file": None,
        }
        values.update(overrides)
        return Settings(**values)

    return _make


@pytest.fixture
def make_event():
    def _make(
        client_id="client-1",
        route_key="/api/orders",
        status=200,
        rps=10.0,
        waf_hit=False,
        schema_error=False,
        method="GET",
        ua_entropy=4.0,
        timestamp=1_000.0,
    ) -> FeatureEvent:
        return FeatureEvent(
            client_id=client_id,
            rps_window=rps,
            status=status,
            schema_error=schema_error,
            waf_hit=waf_hit,
            method=method,
            route_key=route_key,
            ua_entropy=ua_entropy,
            path=route_key,
            timestamp=timestamp,
        )

    return _make
