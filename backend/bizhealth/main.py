"""FastAPI application entrypoint.

Configures CORS and Sentry, includes routers, and exposes a healthcheck endpoint.
"""

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from . import schemas  # noqa: E402
from .deps import get_settings  # noqa: E402
from .routers import cron as cron_router  # noqa: E402
from .routers import integrations as integrations_router  # noqa: E402
from .telemetry import init_sentry  # noqa: E402


def create_app() -> FastAPI:
    settings = get_settings()
    init_sentry(settings.SENTRY_DSN, settings.ENVIRONMENT)

    app = FastAPI(
        title="Business Health Sync API",
        description="""
        Connects external business platforms and keeps the five-pillar
        business health score current.

        This API provides endpoints for:
        - Provider catalog and OAuth connect/callback
        - Manual sync and disconnect of connections
        - Score history
        - Scheduled fleet sync (cron)
        """,
        version="0.1.0",
    )

    # BACKEND_CORS_ORIGINS can be a comma-separated list: "https://app.example.com,http://localhost:3000"
    cors_origins_str = os.getenv("BACKEND_CORS_ORIGINS", settings.FRONTEND_URL)
    allowed_origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    logger.info("[CORS] Allowed origins: %s", allowed_origins)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(integrations_router.router)
    app.include_router(cron_router.router)

    @app.get("/health", response_model=schemas.HealthResponse, tags=["Health"], summary="Health check")
    def health():
        return schemas.HealthResponse(status="ok")

    return app


app = create_app()
