"""
Aegis Gateway — Alert Dispatchers.

Turns flagged anomalies into incident bundles and forwards them
to the configured responders.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

import httpx

from aegis.alerts.incidents import IncidentBundle, IncidentBundleFactory
from aegis.config import Settings
from aegis.detection.base import Anomaly

logger = logging.getLogger("aegis.alerts")


@dataclass
class AlertEvent:
    """Represents a single alert event."""
    level: str          # info | warning | critical
    title: str
    message: str
    client_id: Optional[str] = None
    reason: Optional[str] = None
    bundle: Optional[IncidentBundle] = None


class AlertDispatcher(ABC):
    """Base class for alert dispatchers."""

    @abstractmethod
    async def send(self, event: AlertEvent) -> bool:
        ...


class WebhookAlert(AlertDispatcher):
    """Send alerts via configurable webhook URL."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.transport = transport

    async def send(self, event: AlertEvent) -> bool:
        if not self.url:
            logger.debug("Webhook not configured, skipping alert")
            return False

        payload = {
            "level": event.level,
            "title": event.title,
            "message": event.message,
            "client_id": event.client_id,
            "reason": event.reason,
            "incident": event.bundle.to_dict() if event.bundle else None,
        }
        try:
            async with httpx.AsyncClient(transport=self.transport) as client:
                resp = await client.post(self.url, json=payload, timeout=self.timeout)
                resp.raise_for_status()
                logger.info("Webhook alert sent: %s", event.title)
                return True
        except Exception:
            logger.exception("Failed to send webhook alert")
            return False


class AlertManager:
    """
    Anomaly sink for the detection engine.

    Each anomaly is added to the incident bundle factory and an alert
    carrying the current bundle is sent to every dispatcher.
    """

    def __init__(
        self,
        config: Settings,
        dispatchers: Optional[list[AlertDispatcher]] = None,
        bundles: Optional[IncidentBundleFactory] = None,
    ) -> None:
        self.config = config
        self.dispatchers: list[AlertDispatcher] = (
            dispatchers if dispatchers is not None else [WebhookAlert(config.webhook_url)]
        )
        self.bundles = bundles or IncidentBundleFactory(config.incident_max_events)

    async def __call__(self, anomaly: Anomaly) -> None:
        self.bundles.add(anomaly.event)
        bundle = self.bundles.create(
            self.config.environment,
            self.config.detection_mode.value,
            anomaly.reason,
        )
        event = AlertEvent(
            level="critical" if anomaly.reason == "waf_spike" else "warning",
            title=f"Anomaly detected: {anomaly.reason}",
            message=f"{anomaly.event.method} {anomaly.event.route_key} "
                    f"status={anomaly.event.status} client={anomaly.event.client_key}",
            client_id=anomaly.event.client_id,
            reason=anomaly.reason,
            bundle=bundle,
        )
        await self.alert(event)

    async def alert(self, event: AlertEvent) -> None:
        for dispatcher in self.dispatchers:
            try:
                await dispatcher.send(event)
            except Exception:
                logger.exception("Dispatcher %s failed", type(dispatcher).__name__)
