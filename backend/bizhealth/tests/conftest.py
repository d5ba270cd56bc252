"""Pytest configuration for bizhealth tests

WHAT: Shared fixtures for the sync pipeline, credential store and HTTP routes
WHY: Every test gets its own SQLite file so the orchestrator can open
     several sessions against the same data, like it does in production
REFERENCES:
    - bizhealth/services/sync_service.py: SyncOrchestrator
    - bizhealth/database.py: Database configuration
    - bizhealth/deps.py: Dependency injection
"""

import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment (before any bizhealth import reads settings)
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
# Must be URL-safe base64-encoded 32-byte string
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.setdefault("APP_BASE_URL", "https://api.example.test")
os.environ.setdefault("FRONTEND_URL", "https://app.example.test")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("SHOPIFY_CLIENT_ID", "shopify-client")
os.environ.setdefault("SHOPIFY_CLIENT_SECRET", "shopify-secret")
os.environ.setdefault("STRIPE_CONNECT_CLIENT_ID", "ca_test")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test")
os.environ.setdefault("QUICKBOOKS_CLIENT_ID", "qb-client")
os.environ.setdefault("QUICKBOOKS_CLIENT_SECRET", "qb-secret")
os.environ.setdefault("GOOGLE_CLIENT_ID", "google-client")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "google-secret")

from bizhealth.deps import get_settings  # noqa: E402
from bizhealth.integrations.base import ProviderAdapter  # noqa: E402
from bizhealth.integrations.registry import ProviderRegistry  # noqa: E402
from bizhealth.integrations.types import (  # noqa: E402
    ConnectionCredentials,
    OAuthResult,
    Pillar,
    PillarMetricResult,
    PillarMetrics,
    ProfileMetrics,
    PulledData,
    PulledMetrics,
    RefreshedToken,
)
from bizhealth.models import Base  # noqa: E402
from bizhealth.services.credential_store import save_oauth_result  # noqa: E402
from bizhealth.services.notification_service import BackgroundDispatcher  # noqa: E402
from bizhealth.services.sync_service import SyncOrchestrator  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine(tmp_path):
    """SQLite file database shared by every session of one test."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'bizhealth-test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(bind=test_db_engine, autoflush=False, autocommit=False)


@pytest.fixture
def test_db_session(session_factory):
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Settings & Clock
# ============================================================================

@pytest.fixture
def settings():
    return get_settings().model_copy(update={"PULL_TIMEOUT_SECONDS": 5.0, "FLEET_SYNC_CONCURRENCY": 3})


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # A Wednesday
    return FrozenClock(datetime(2026, 3, 11, 9, 0, tzinfo=timezone.utc))


# ============================================================================
# Fakes
# ============================================================================

class FakeAdapter(ProviderAdapter):
    """In-memory adapter with scripted pull results and failures.

    Reports revenue when `total_revenue` is set and retention when
    `churn_rate` is set, over a 30-day window so period values equal
    monthly values.
    """

    description = "Scripted test provider"
    category = "test"
    window_days = 30

    def __init__(
        self,
        provider_id: str = "fake",
        metrics: Optional[PulledMetrics] = None,
        *,
        supports_refresh: bool = False,
        refreshed: Optional[RefreshedToken] = None,
        pull_error: Optional[Exception] = None,
        pull_delay: float = 0.0,
        settings=None,
    ):
        super().__init__(settings=settings)
        self.id = provider_id
        self.name = provider_id.replace("-", " ").title()
        self.pillars_affected = (Pillar.revenue, Pillar.retention)
        self.metrics = metrics if metrics is not None else PulledMetrics(total_revenue=20000.0)
        self.supports_refresh = supports_refresh
        self.refreshed = refreshed
        self.pull_error = pull_error
        self.pull_delay = pull_delay
        self.pull_calls: List[ConnectionCredentials] = []
        self.refresh_calls: List[ConnectionCredentials] = []
        self.disconnect_calls: List[ConnectionCredentials] = []

    def authorization_url(self, user_id: str, extra: Optional[Mapping[str, Any]] = None) -> str:
        return f"https://{self.id}.example.test/authorize?state={self.build_state(user_id, dict(extra or {}))}"

    async def exchange_code(self, code: str, user_id: str, extra: Optional[Mapping[str, Any]] = None) -> OAuthResult:
        return OAuthResult(
            access_token=f"access-{code}",
            refresh_token=f"refresh-{code}",
            external_account_id=(extra or {}).get("account"),
            scopes="read",
        )

    async def refresh(self, credentials: ConnectionCredentials) -> RefreshedToken:
        self.refresh_calls.append(credentials)
        self.require_refresh_token(credentials)
        return self.refreshed or RefreshedToken(access_token="refreshed-access")

    async def pull(self, credentials: ConnectionCredentials) -> PulledData:
        import asyncio

        self.pull_calls.append(credentials)
        if self.pull_delay:
            await asyncio.sleep(self.pull_delay)
        if self.pull_error is not None:
            raise self.pull_error
        end = datetime(2026, 3, 11, tzinfo=timezone.utc)
        return PulledData(
            provider_id=self.id,
            pulled_at=end,
            period_start=end - timedelta(days=30),
            period_end=end,
            metrics=self.metrics,
        )

    def map_to_pillars(self, pulled: PulledData, current_profile: ProfileMetrics) -> PillarMetrics:
        m = pulled.metrics
        result: PillarMetrics = {}
        if m.total_revenue is not None:
            result[Pillar.revenue] = PillarMetricResult(
                score=75 if m.total_revenue >= 15000 else 40,
                metrics={"monthly_revenue": m.total_revenue},
                changes=[f"Revenue ${m.total_revenue:,.0f}/mo from {self.name}"],
            )
        if m.churn_rate is not None:
            result[Pillar.retention] = PillarMetricResult(
                score=70 if m.churn_rate <= 5 else 45,
                metrics={"churn_rate": m.churn_rate},
                changes=[f"Churn {m.churn_rate:.1f}% from {self.name}"],
            )
        return result

    async def disconnect(self, credentials: ConnectionCredentials) -> None:
        self.disconnect_calls.append(credentials)


def fake_compute_score(profile: ProfileMetrics, business_type: Optional[str]) -> Dict[str, Any]:
    """Deterministic stand-in for the scoring engine."""
    revenue = profile.revenue_monthly
    if revenue is None:
        revenue_score = 30
    elif revenue >= 15000:
        revenue_score = 80
    else:
        revenue_score = 50
    churn = profile.churn_monthly_pct
    retention_score = 40 if churn is None else (75 if churn <= 5 else 45)

    pillars = {
        "revenue": {"score": revenue_score, "reasons": ["Monthly revenue band"], "levers": ["Raise prices"]},
        "profitability": {"score": 50, "reasons": [], "levers": []},
        "retention": {"score": retention_score, "reasons": ["Churn band"], "levers": []},
        "acquisition": {"score": 50, "reasons": [], "levers": []},
        "ops": {"score": 50, "reasons": [], "levers": []},
    }
    score = round(sum(p["score"] for p in pillars.values()) / len(pillars))
    missing = [name for name, value in profile.as_dict().items() if value is None]
    return {
        "score": score,
        "pillars": pillars,
        "primaryRisk": "revenue",
        "fastestLever": "Raise prices",
        "recommendedNextSteps": ["Connect more data"],
        "missingData": missing,
    }


class RecordingNotifier:
    def __init__(self, error: Optional[Exception] = None):
        self.calls: List[Dict[str, Any]] = []
        self.error = error

    async def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        self.calls.append({"user_id": user_id, "kind": kind, "payload": payload})
        if self.error is not None:
            raise self.error


@pytest.fixture
def fake_adapter_cls():
    return FakeAdapter


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_orchestrator(session_factory, settings, clock, notifier):
    """Build an orchestrator over the given adapters."""

    def _make(*adapters, score_function=fake_compute_score, notifier_override=None, settings_override=None):
        registry = ProviderRegistry()
        for adapter in adapters:
            registry.register(adapter)
        return SyncOrchestrator(
            session_factory=session_factory,
            score_function=score_function,
            registry=registry,
            notifier=notifier_override or notifier,
            dispatcher=BackgroundDispatcher(),
            settings=settings_override or settings,
            clock=clock,
        )

    return _make


@pytest.fixture
def make_connection(test_db_session):
    """Create a connected connection with encrypted tokens."""

    def _make(
        user_id: str = "user-1",
        provider: str = "fake",
        *,
        access_token: str = "stored-access",
        refresh_token: Optional[str] = "stored-refresh",
        expires_at: Optional[datetime] = None,
        external_account_id: Optional[str] = None,
    ):
        connection = save_oauth_result(
            test_db_session,
            user_id,
            provider,
            OAuthResult(
                access_token=access_token,
                refresh_token=refresh_token,
                expires_at=expires_at,
                external_account_id=external_account_id or f"{provider}-acct-{user_id}",
                scopes="read",
            ),
        )
        test_db_session.commit()
        return connection.id

    return _make
