"""
Aegis Gateway — Incident bundles.

Groups recent anomalous events into a compact bundle that downstream
responders (summarizer, on-call webhook) can act on.
"""

from __future__ import annotations

from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Optional

from aegis.features.event import FeatureEvent


@dataclass(frozen=True)
class IncidentEvent:
    """Trimmed-down event as shipped inside a bundle."""
    timestamp: str
    client_id: str
    route_key: str
    status_code: int
    schema_error: bool
    waf_hit_count: int
    ua_entropy: float

    @classmethod
    def from_feature(cls, event: FeatureEvent) -> "IncidentEvent":
        return cls(
            timestamp=datetime.fromtimestamp(event.timestamp, tz=timezone.utc).isoformat(),
            client_id=event.client_id or "",
            route_key=event.route_key,
            status_code=event.status,
            schema_error=event.schema_error,
            waf_hit_count=1 if event.waf_hit else 0,
            ua_entropy=event.ua_entropy,
        )


@dataclass
class IncidentBundle:
    environment: str
    detector_mode: str
    detector_reason: str
    recent_events: list[IncidentEvent]
    counters: dict[str, float]
    top_paths: dict[str, int]
    notes: Optional[str] = None
    created_at: float = field(default_factory=lambda: datetime.now(timezone.utc).timestamp())

    def to_dict(self) -> dict[str, Any]:
        return {
            "environment": self.environment,
            "detector_mode": self.detector_mode,
            "detector_reason": self.detector_reason,
            "recent_events": [e.__dict__ for e in self.recent_events],
            "counters": self.counters,
            "top_paths": self.top_paths,
            "notes": self.notes,
            "created_at": self.created_at,
        }


class IncidentBundleFactory:
    """Keeps the last ``max_events`` anomalous events and bundles them on demand."""

    def __init__(self, max_events: int = 50) -> None:
        self._events: Deque[IncidentEvent] = deque(maxlen=max_events)

    def __len__(self) -> int:
        return len(self._events)

    def add(self, event: FeatureEvent) -> None:
        self._events.append(IncidentEvent.from_feature(event))

    def create(self, environment: str, detector_mode: str, reason: str) -> IncidentBundle:
        events = list(self._events)
        total = len(events)
        errors = sum(1 for e in events if e.status_code >= 400)
        counters = {
            "rps": float(total),
            "errRate": errors / total if total else 0.0,
        }
        top_paths = dict(Counter(e.route_key for e in events).most_common())
        return IncidentBundle(
            environment=environment,
            detector_mode=detector_mode,
            detector_reason=reason,
            recent_events=events,
            counters=counters,
            top_paths=top_paths,
        )
