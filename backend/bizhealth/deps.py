"""Dependency providers and settings management."""

from functools import lru_cache
from typing import Optional

from fastapi import Header, HTTPException, status
from pydantic_settings import BaseSettings, SettingsConfigDict

from .security import decode_token


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # DATABASE_URL is read directly by bizhealth.database at import time
    REDIS_URL: str = "redis://localhost:6379/0"

    # Secrets
    JWT_SECRET: str = ""
    TOKEN_ENCRYPTION_KEY: str = ""
    # Falls back to JWT_SECRET when unset
    OAUTH_STATE_SECRET: Optional[str] = None
    OAUTH_STATE_TTL_SECONDS: int = 600

    # Public URLs
    APP_BASE_URL: str = "http://localhost:8000"
    FRONTEND_URL: str = "http://localhost:3000"

    # Provider credentials
    SHOPIFY_CLIENT_ID: Optional[str] = None
    SHOPIFY_CLIENT_SECRET: Optional[str] = None
    SHOPIFY_API_VERSION: str = "2024-07"
    STRIPE_CONNECT_CLIENT_ID: Optional[str] = None
    STRIPE_SECRET_KEY: Optional[str] = None
    QUICKBOOKS_CLIENT_ID: Optional[str] = None
    QUICKBOOKS_CLIENT_SECRET: Optional[str] = None
    QUICKBOOKS_ENVIRONMENT: str = "production"  # production | sandbox
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None

    # Upstream call budget
    HTTP_TIMEOUT_SECONDS: float = 20.0
    PULL_TIMEOUT_SECONDS: float = 90.0

    # Sync pipeline
    FLEET_SYNC_CONCURRENCY: int = 5
    SYNC_LOCK_STALE_MINUTES: int = 30
    SCORE_FUNCTION: Optional[str] = None  # "package.module:compute_score"
    # Hand on-demand syncs to the arq worker instead of running them in the API process
    SYNC_VIA_WORKER: bool = False
    NOTIFY_WEBHOOK_URL: Optional[str] = None

    # Operations
    CRON_SECRET: Optional[str] = None
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def state_secret(self) -> str:
        return self.OAUTH_STATE_SECRET or self.JWT_SECRET


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_current_user_id(authorization: Optional[str] = Header(default=None)) -> str:
    """Resolve the calling user's id from an `Authorization: Bearer <jwt>` header.

    Session management lives outside this service; we only trust the `sub`
    claim of a token signed with JWT_SECRET.
    """
    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    if authorization.startswith("Bearer "):
        token = authorization[len("Bearer ") :]
    else:
        token = authorization

    try:
        payload = decode_token(token)
    except Exception:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    subject = payload.get("sub")
    if not subject:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return str(subject)


def get_registry():
    """Provider registry with every bundled adapter registered."""
    from .integrations import providers  # noqa: F401
    from .integrations.registry import registry

    return registry


@lru_cache()
def get_dispatcher():
    """Process-wide owner of fire-and-forget tasks (revocations)."""
    from .services.notification_service import BackgroundDispatcher

    return BackgroundDispatcher()


@lru_cache()
def get_orchestrator():
    """Sync orchestrator wired from settings; built on first use."""
    from .services.sync_service import build_orchestrator

    return build_orchestrator(get_settings())
