"""
Aegis Gateway — Application Entry Point.

Starts the FastAPI application with the feature collector, the
anomaly detection engine and the status API.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI

from aegis.alerts.dispatcher import AlertManager
from aegis.api.routes import router as api_router
from aegis.config import Settings, settings
from aegis.detection.engine import DetectionEngine
from aegis.features.collector import FeatureCollectorMiddleware
from aegis.features.stream import load_seed_file

logger = logging.getLogger("aegis")


def create_app(config: Optional[Settings] = None) -> FastAPI:
    """Factory for the FastAPI application."""
    config = config or settings
    engine = DetectionEngine.from_settings(config)
    engine.sinks.append(AlertManager(config))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup / shutdown lifecycle."""
        # ── Startup ──────────────────────────────────────────
        logging.basicConfig(
            level=getattr(logging, config.log_level.upper()),
            format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
            force=True,
        )
        logger.info("🛡️  %s v%s starting…", config.app_name, "0.1.0")
        logger.info("Detection mode: %s", config.detection_mode.value)
        if engine.ml is not None:
            logger.info(
                "ML detector: %s",
                "restored from disk" if engine.ml.loaded_from_disk else "warm-up",
            )

        if config.seed_file:
            try:
                seeded = engine.stream.seed(load_seed_file(config.seed_file))
                logger.info("Replayed %d feature event(s) from %s", seeded, config.seed_file)
            except (OSError, ValueError):
                logger.exception("Failed to load seed file %s", config.seed_file)

        await engine.start()

        yield

        # ── Shutdown ─────────────────────────────────────────
        await engine.stop()
        logger.info("🛡️  %s stopped.", config.app_name)

    app = FastAPI(
        title=config.app_name,
        version="0.1.0",
        description="Real-time anomaly detection for the API gateway",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.settings = config

    app.add_middleware(FeatureCollectorMiddleware, stream=engine.stream)
    app.include_router(api_router, prefix="/api")

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "aegis.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level,
    )
