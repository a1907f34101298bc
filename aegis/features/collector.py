"""
Aegis Gateway — Feature Collector Middleware.

Runs after the response is produced and turns the request into a
FeatureEvent. Upstream middleware (rate limiter, WAF, schema validator)
leave their verdicts on ``request.state``:

  • ``client_id``    — authenticated client / API key id
  • ``rps_window``   — RPS estimate for the client's plan
  • ``waf_hit``      — request matched a WAF rule
  • ``schema_error`` — request body failed schema validation
"""

from __future__ import annotations

import time
from typing import Iterable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response
from starlette.types import ASGIApp

from aegis.features.event import FeatureEvent, normalize_route, shannon_entropy
from aegis.features.stream import FeatureStream

# Paths served by the detection API itself
DEFAULT_EXCLUDED_PREFIXES = (
    "/api/health",
    "/api/stats",
    "/api/anomalies",
    "/api/ml/",
    "/api/docs",
    "/api/redoc",
    "/openapi.json",
)


class FeatureCollectorMiddleware(BaseHTTPMiddleware):
    """Enqueue one FeatureEvent per completed request."""

    def __init__(
        self,
        app: ASGIApp,
        stream: FeatureStream,
        exclude_prefixes: Iterable[str] = DEFAULT_EXCLUDED_PREFIXES,
    ) -> None:
        super().__init__(app)
        self.stream = stream
        self.exclude_prefixes = tuple(exclude_prefixes)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        # Create the shared state dict up front so downstream verdicts land in it
        _ = request.state
        response = await call_next(request)

        path = request.url.path
        if self.exclude_prefixes and path.startswith(self.exclude_prefixes):
            return response

        self.stream.enqueue(build_event(request, response.status_code))
        return response


def build_event(request: Request, status_code: int) -> FeatureEvent:
    """Summarise a finished request from its headers and ``request.state``."""
    state = request.state
    try:
        rps = float(getattr(state, "rps_window", 0.0) or 0.0)
    except (TypeError, ValueError):
        rps = 0.0
    path = request.url.path
    return FeatureEvent(
        client_id=getattr(state, "client_id", None),
        rps_window=rps,
        status=status_code,
        schema_error=bool(getattr(state, "schema_error", False)),
        waf_hit=bool(getattr(state, "waf_hit", False)),
        method=request.method.upper(),
        route_key=normalize_route(path),
        ua_entropy=shannon_entropy(request.headers.get("user-agent", "")),
        path=path,
        timestamp=time.time(),
    )
