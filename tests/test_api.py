"""
Tests for the API endpoints.
"""

import pytest
from httpx import ASGITransport, AsyncClient

from aegis.main import create_app


@pytest.fixture
def app_factory(make_settings):
    def _make(**overrides):
        values = {"waf_threshold": 0, "rps_threshold": 1000.0}
        values.update(overrides)
        return create_app(make_settings(**values))
    return _make


async def _client(app):
    transport = ASGITransport(app=app)
    return AsyncClient(transport=transport, base_url="http://test")


@pytest.mark.asyncio
async def test_health_check(app_factory):
    async with await _client(app_factory()) as client:
        resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "healthy"


@pytest.mark.asyncio
async def test_stats_reflect_processed_events(app_factory, make_event):
    app = app_factory(detection_mode="rules")
    engine = app.state.engine
    await engine.process(make_event())
    await engine.process(make_event(client_id="bad", waf_hit=True))

    async with await _client(app) as client:
        resp = await client.get("/api/stats")
    assert resp.status_code == 200
    data = resp.json()
    assert data["detection_mode"] == "rules"
    assert data["events_observed"] == 2
    assert data["anomalies_total"] == 1
    assert data["anomalies_pending"] == 1
    assert data["anomalies_by_reason"] == {"waf_spike": 1}
    assert data["anomalies_by_detector"] == {"rules": 1}
    assert data["ml_ready"] is None
    assert data["consumer_running"] is False


@pytest.mark.asyncio
async def test_anomalies_listing_and_drain(app_factory, make_event):
    app = app_factory(detection_mode="rules")
    engine = app.state.engine
    await engine.process(make_event(client_id="first", waf_hit=True))
    await engine.process(make_event(client_id="second", waf_hit=True))

    async with await _client(app) as client:
        listed = (await client.get("/api/anomalies", params={"limit": 1})).json()
        assert listed["count"] == 1
        assert listed["anomalies"][0]["event"]["client_id"] == "second"

        drained = (await client.post("/api/anomalies/drain")).json()
        assert drained["count"] == 2
        assert [a["event"]["client_id"] for a in drained["anomalies"]] == ["first", "second"]
        assert drained["anomalies"][0]["reason"] == "waf_spike"

        again = (await client.post("/api/anomalies/drain")).json()
        assert again["count"] == 0


@pytest.mark.asyncio
async def test_ml_endpoints_absent_in_rules_mode(app_factory):
    async with await _client(app_factory(detection_mode="rules")) as client:
        assert (await client.get("/api/ml/status")).status_code == 404
        assert (await client.post("/api/ml/retrain")).status_code == 404


@pytest.mark.asyncio
async def test_ml_status_and_manual_retrain(app_factory):
    async with await _client(app_factory(detection_mode="hybrid")) as client:
        resp = await client.get("/api/ml/status")
        assert resp.status_code == 200
        status = resp.json()
        assert status["phase"] == "warm_up"
        assert status["is_ready"] is False

        resp = await client.post("/api/ml/retrain")
        assert resp.status_code == 200
        assert resp.json()["status"] == "skipped_warmup"


@pytest.mark.asyncio
async def test_ml_status_after_training(app_factory, make_event):
    app = app_factory(detection_mode="ml", baseline_sample_size=10)
    for i in range(10):
        await app.state.engine.process(make_event(rps=float(i % 3)))

    async with await _client(app) as client:
        status = (await client.get("/api/ml/status")).json()
    assert status["phase"] == "active"
    assert status["train_count"] == 1
    assert status["threshold"] is not None
