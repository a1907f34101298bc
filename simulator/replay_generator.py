"""
Aegis Gateway — Synthetic Replay Generator.

Produces feature-event streams for exercising the detection engine
without live traffic, and writes them as YAML seed files that the
gateway replays at startup (AEGIS_SEED_FILE).
Supports: normal traffic, RPS flood, error burst, WAF probing, mixed.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml

from aegis.features.event import FeatureEvent, normalize_route, shannon_entropy

logger = logging.getLogger("aegis.simulator")

# Realistic browser user-agents for legitimate traffic
_REAL_UAS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/121.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_3) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.2 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:122.0) Gecko/20100101 Firefox/122.0",
]

# Bot-like user-agents for attack traffic
_BOT_UAS = [
    "",
    "aaaaaaaa",
    "curl/7.88.1",
    "python-requests/2.31.0",
]

_LEGIT_PATHS = [
    "/api/products", "/api/products/42", "/api/orders", "/api/orders/7/items",
    "/api/users/me", "/health",
]

_ATTACK_PATHS = [
    "/api/login", "/api/search", "/admin", "/wp-login.php",
]


class ReplayScenario(str, Enum):
    NORMAL = "normal"
    RPS_FLOOD = "rps_flood"
    ERROR_BURST = "error_burst"
    WAF_PROBE = "waf_probe"
    MIXED = "mixed"


@dataclass
class ReplayConfig:
    """Configuration for a generated replay."""
    scenario: ReplayScenario = ReplayScenario.MIXED
    events: int = 1000
    clients: int = 20
    attack_ratio: float = 0.1   # share of attack events in MIXED
    seed: Optional[int] = 42
    start_time: Optional[float] = None


class ReplayGenerator:
    """Generates FeatureEvents for one scenario."""

    def __init__(self, config: ReplayConfig) -> None:
        self.config = config
        self._rng = random.Random(config.seed)
        self._now = config.start_time if config.start_time is not None else time.time()

    def generate(self) -> list[FeatureEvent]:
        scenario = self.config.scenario
        makers = {
            ReplayScenario.NORMAL: self._normal,
            ReplayScenario.RPS_FLOOD: self._flood,
            ReplayScenario.ERROR_BURST: self._error_burst,
            ReplayScenario.WAF_PROBE: self._waf_probe,
        }
        events: list[FeatureEvent] = []
        for _ in range(self.config.events):
            if scenario is ReplayScenario.MIXED:
                attack = self._rng.random() < self.config.attack_ratio
                maker = self._rng.choice([self._flood, self._error_burst, self._waf_probe]) if attack else self._normal
            else:
                maker = makers[scenario]
            events.append(maker())
            self._now += self._rng.uniform(0.001, 0.05)
        logger.info("Generated %d %s event(s)", len(events), scenario.value)
        return events

    # ── Event makers ─────────────────────────────────────

    def _client(self, prefix: str = "client") -> str:
        return f"{prefix}-{self._rng.randint(1, max(1, self.config.clients))}"

    def _event(self, client_id: str, path: str, status: int, ua: str, rps: float,
               method: str = "GET", waf_hit: bool = False, schema_error: bool = False) -> FeatureEvent:
        return FeatureEvent(
            client_id=client_id,
            rps_window=rps,
            status=status,
            schema_error=schema_error,
            waf_hit=waf_hit,
            method=method,
            route_key=normalize_route(path),
            ua_entropy=shannon_entropy(ua),
            path=path,
            timestamp=self._now,
        )

    def _normal(self) -> FeatureEvent:
        status = self._rng.choices([200, 201, 204, 404], weights=[80, 8, 8, 4])[0]
        method = "POST" if status == 201 else self._rng.choice(["GET", "GET", "GET", "PUT"])
        return self._event(
            self._client(),
            self._rng.choice(_LEGIT_PATHS),
            status,
            self._rng.choice(_REAL_UAS),
            rps=self._rng.uniform(1.0, 20.0),
            method=method,
        )

    def _flood(self) -> FeatureEvent:
        return self._event(
            "flooder-1",
            self._rng.choice(_ATTACK_PATHS[:2]),
            self._rng.choice([200, 429]),
            self._rng.choice(_BOT_UAS),
            rps=self._rng.uniform(200.0, 1000.0),
            method="POST",
        )

    def _error_burst(self) -> FeatureEvent:
        return self._event(
            self._client("scanner"),
            self._rng.choice(_ATTACK_PATHS),
            self._rng.choice([401, 403, 404, 500, 502]),
            self._rng.choice(_BOT_UAS),
            rps=self._rng.uniform(20.0, 80.0),
        )

    def _waf_probe(self) -> FeatureEvent:
        return self._event(
            self._client("prober"),
            self._rng.choice(_ATTACK_PATHS),
            403,
            self._rng.choice(_BOT_UAS),
            rps=self._rng.uniform(5.0, 50.0),
            method=self._rng.choice(["GET", "POST"]),
            waf_hit=True,
            schema_error=self._rng.random() < 0.3,
        )


def write_seed_file(events: list[FeatureEvent], path: str | Path) -> Path:
    """Write events as a YAML replay file readable by ``load_seed_file``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump({"events": [e.to_dict() for e in events]}, f, sort_keys=False)
    return path


if __name__ == "__main__":
    import argparse
    parser = argparse.ArgumentParser(description="Aegis Gateway replay generator")
    parser.add_argument("scenario", nargs="?", default="mixed",
                        choices=[s.value for s in ReplayScenario])
    parser.add_argument("--events", type=int, default=1000)
    parser.add_argument("--clients", type=int, default=20)
    parser.add_argument("--attack-ratio", type=float, default=0.1)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--out", default="replay.yml")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO)
    generated = ReplayGenerator(ReplayConfig(
        scenario=ReplayScenario(args.scenario),
        events=args.events,
        clients=args.clients,
        attack_ratio=args.attack_ratio,
        seed=args.seed,
    )).generate()
    print(f"Wrote {len(generated)} events to {write_seed_file(generated, args.out)}")
