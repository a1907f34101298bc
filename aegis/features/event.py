"""
Aegis Gateway — Feature Events.

One immutable record per completed request, produced by the
collector middleware and consumed by the detection pipeline.
"""

from __future__ import annotations

import math
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

UNKNOWN_CLIENT = "unknown"


@dataclass(frozen=True)
class FeatureEvent:
    """Summarised signal of one completed request."""
    client_id: Optional[str]
    rps_window: float           # plan RPS estimate at observation time
    status: int
    schema_error: bool = False
    waf_hit: bool = False
    method: str = "GET"
    route_key: str = "/"        # first two path segments
    ua_entropy: float = 0.0     # Shannon entropy of the User-Agent, bits
    path: str = "/"
    timestamp: float = field(default_factory=time.time)

    @property
    def client_key(self) -> str:
        return self.client_id or UNKNOWN_CLIENT

    @property
    def is_4xx(self) -> bool:
        return 400 <= self.status < 500

    @property
    def is_5xx(self) -> bool:
        return self.status >= 500

    @property
    def is_post(self) -> bool:
        return self.method.upper() == "POST"

    @property
    def is_clean(self) -> bool:
        """Clean traffic is eligible for the ML baseline."""
        return not self.waf_hit and not self.schema_error

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "FeatureEvent":
        """Build an event from a loosely-typed mapping (replay files, JSON)."""
        path = str(raw.get("path", raw.get("route_key", "/")))
        ts = raw.get("timestamp")
        return cls(
            client_id=raw.get("client_id"),
            rps_window=float(raw.get("rps_window", 0.0)),
            status=int(raw.get("status", 200)),
            schema_error=bool(raw.get("schema_error", False)),
            waf_hit=bool(raw.get("waf_hit", False)),
            method=str(raw.get("method", "GET")).upper(),
            route_key=str(raw.get("route_key") or normalize_route(path)),
            ua_entropy=float(raw.get("ua_entropy", shannon_entropy(raw.get("user_agent", "")))),
            path=path,
            timestamp=float(ts) if ts is not None else time.time(),
        )


def shannon_entropy(text: Optional[str]) -> float:
    """Shannon entropy of a string in bits per character (0 for empty)."""
    if not text:
        return 0.0
    n = len(text)
    entropy = 0.0
    for count in Counter(text).values():
        p = count / n
        entropy -= p * math.log2(p)
    return entropy


def normalize_route(path: str) -> str:
    """Collapse a request path to its first two segments: /api/users/42 → /api/users."""
    segments = [s for s in path.split("?", 1)[0].split("/") if s]
    if not segments:
        return "/"
    return "/" + "/".join(segments[:2])
