"""SQLAlchemy ORM models and enums.

Connections hold encrypted provider credentials and the advisory sync lock.
BusinessProfile is a fixed set of nullable metric columns plus a provenance
map. ScoreSnapshot rows are append-only; MetricHistory keeps one row per
user, pillar and week.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import declarative_base, relationship


# Single Base used by the entire application
Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums ---------------------------------------------------------

class ConnectionStatusEnum(str, enum.Enum):
    pending = "pending"
    connected = "connected"
    syncing = "syncing"
    error = "error"
    disconnected = "disconnected"


class SyncStatusEnum(str, enum.Enum):
    success = "success"
    failed = "failed"


class BusinessTypeEnum(str, enum.Enum):
    ecommerce = "ecommerce"
    saas = "saas"
    service_agency = "service_agency"
    creator = "creator"
    local_business = "local_business"


def _enum_values(enum_cls):
    return [e.value for e in enum_cls]


# Models --------------------------------------------------------

class Connection(Base):
    """Authorization relationship between one user and one external provider.

    Tokens are Fernet-encrypted (see bizhealth.security). `status=syncing`
    doubles as the advisory lock for sync attempts; `sync_started_at` lets a
    crashed worker's lock be reclaimed once stale.
    """
    __tablename__ = "connections"
    __table_args__ = (UniqueConstraint("user_id", "provider", name="uq_connection_user_provider"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(64), nullable=False)
    status = Column(
        Enum(ConnectionStatusEnum, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
        default=ConnectionStatusEnum.pending,
    )

    access_token_enc = Column(Text, nullable=True)
    refresh_token_enc = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    external_account_id = Column(String, nullable=True)  # shop domain, Stripe account, realm id, GA4 property
    scopes = Column(Text, nullable=False, default="")
    extra = Column(JSON, nullable=False, default=dict)

    last_sync_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_status = Column(
        Enum(SyncStatusEnum, values_callable=_enum_values, native_enum=False, length=20),
        nullable=True,
    )
    last_sync_error = Column(Text, nullable=True)
    sync_started_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    sync_logs = relationship("SyncLog", back_populates="connection", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.provider} ({self.user_id})"


class SyncLog(Base):
    """One row per sync attempt, written on both success and failure."""
    __tablename__ = "sync_logs"

    id = Column(String(36), primary_key=True, default=_uuid)
    connection_id = Column(String(36), ForeignKey("connections.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(
        Enum(SyncStatusEnum, values_callable=_enum_values, native_enum=False, length=20),
        nullable=False,
    )
    stage = Column(String(32), nullable=True)  # last stage reached
    metrics_updated = Column(JSON, nullable=False, default=dict)  # profile field -> True
    pillar_impact = Column(JSON, nullable=False, default=dict)  # pillar -> mapped score
    data_snapshot = Column(JSON, nullable=True)  # populated pulled metrics
    error = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    connection = relationship("Connection", back_populates="sync_logs")


class BusinessProfile(Base):
    """Sparse business metrics for one user.

    Every metric column is nullable; `metric_sources` maps column name to the
    provider id that last wrote it (or "manual" for user-entered values).
    """
    __tablename__ = "business_profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, unique=True)
    business_type = Column(Enum(BusinessTypeEnum, values_callable=_enum_values, native_enum=False, length=32), nullable=True)

    revenue_monthly = Column(Float, nullable=True)
    gross_margin_pct = Column(Float, nullable=True)
    net_profit_monthly = Column(Float, nullable=True)
    runway_months = Column(Float, nullable=True)
    churn_monthly_pct = Column(Float, nullable=True)
    conversion_rate_pct = Column(Float, nullable=True)
    traffic_monthly = Column(Float, nullable=True)
    avg_order_value = Column(Float, nullable=True)
    cac = Column(Float, nullable=True)
    ltv = Column(Float, nullable=True)
    ops_hours_per_week = Column(Float, nullable=True)
    fulfillment_days = Column(Float, nullable=True)
    support_tickets_per_week = Column(Float, nullable=True)

    metric_sources = Column(JSON, nullable=False, default=dict)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class ScoreSnapshot(Base):
    """Immutable record of one score computation.

    Integer primary key gives a stable insertion order so "previous score"
    is well defined even when two rows share a created_at.
    """
    __tablename__ = "score_snapshots"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    score = Column(Integer, nullable=False)

    revenue_score = Column(Integer, nullable=False)
    profitability_score = Column(Integer, nullable=False)
    retention_score = Column(Integer, nullable=False)
    acquisition_score = Column(Integer, nullable=False)
    operations_score = Column(Integer, nullable=False)

    pillars_json = Column(JSON, nullable=False, default=dict)  # full pillar breakdown from the scorer
    primary_risk = Column(Text, nullable=True)
    fastest_lever = Column(Text, nullable=True)
    recommended_next_steps = Column(JSON, nullable=False, default=list)
    missing_data = Column(JSON, nullable=False, default=list)
    change_reason = Column(String(100), nullable=True)
    source = Column(String(64), nullable=True)  # provider id that triggered the recompute


@event.listens_for(ScoreSnapshot, "before_update")
def _reject_snapshot_update(mapper, connection, target):
    raise ValueError("ScoreSnapshot rows are append-only")


class MetricHistory(Base):
    """Weekly roll-up per pillar; week_of is the Monday the week starts on."""
    __tablename__ = "metric_history"
    __table_args__ = (UniqueConstraint("user_id", "pillar", "week_of", name="uq_metric_history_user_pillar_week"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, index=True)
    pillar = Column(String(32), nullable=False)
    week_of = Column(Date, nullable=False)
    score = Column(Integer, nullable=False)
    source = Column(String(64), nullable=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)


class NotificationPreference(Base):
    """Per-user notification switches. A missing row means defaults."""
    __tablename__ = "notification_preferences"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, unique=True)
    score_updates = Column(Boolean, nullable=False, default=True)
    weekly_digest = Column(Boolean, nullable=False, default=True)
