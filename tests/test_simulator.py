"""
Tests for the synthetic replay generator.
"""

import pytest

from aegis.features.stream import load_seed_file
from simulator.replay_generator import (
    ReplayConfig,
    ReplayGenerator,
    ReplayScenario,
    write_seed_file,
)


def _generate(scenario, **kwargs):
    return ReplayGenerator(ReplayConfig(scenario=scenario, start_time=1_000.0, **kwargs)).generate()


def test_config_defaults():
    c = ReplayConfig()
    assert c.scenario == ReplayScenario.MIXED
    assert c.events == 1000
    assert c.seed == 42


def test_same_seed_same_events():
    first = _generate(ReplayScenario.MIXED, events=200, seed=7)
    second = _generate(ReplayScenario.MIXED, events=200, seed=7)
    assert first == second


def test_timestamps_increase():
    events = _generate(ReplayScenario.NORMAL, events=50)
    stamps = [e.timestamp for e in events]
    assert stamps == sorted(stamps)
    assert stamps[0] == 1_000.0


def test_normal_traffic_is_clean():
    events = _generate(ReplayScenario.NORMAL, events=300)
    assert all(e.is_clean for e in events)
    assert all(e.rps_window <= 20.0 for e in events)


def test_flood_has_high_rps():
    events = _generate(ReplayScenario.RPS_FLOOD, events=100)
    assert all(e.rps_window >= 200.0 for e in events)
    assert {e.client_id for e in events} == {"flooder-1"}


def test_waf_probe_hits_waf():
    events = _generate(ReplayScenario.WAF_PROBE, events=100)
    assert all(e.waf_hit and e.status == 403 for e in events)


def test_error_burst_statuses():
    events = _generate(ReplayScenario.ERROR_BURST, events=100)
    assert all(e.is_4xx or e.is_5xx for e in events)


@pytest.mark.parametrize("ratio,expect_attacks", [(0.0, False), (1.0, True)])
def test_mixed_attack_ratio(ratio, expect_attacks):
    events = _generate(ReplayScenario.MIXED, events=200, attack_ratio=ratio)
    normal = all(e.client_id.startswith("client-") for e in events)
    assert normal is not expect_attacks


def test_seed_file_loads_back(tmp_path):
    events = _generate(ReplayScenario.MIXED, events=40)
    path = write_seed_file(events, tmp_path / "replays" / "mixed.yml")
    loaded = load_seed_file(path)
    assert len(loaded) == 40
    assert loaded[0].client_id == events[0].client_id
    assert loaded[0].route_key == events[0].route_key
