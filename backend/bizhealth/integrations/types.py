"""Value types shared by provider adapters, the merge layer and the orchestrator.

WHAT:
    Pillars, the provider-agnostic `PulledMetrics` shape, the per-pillar
    mapping result, OAuth results and the read-only credentials view an
    adapter gets of a connection.

WHY:
    Adapters must never see ORM rows. They receive `ConnectionCredentials`
    and return plain dataclasses; only the credential store writes to the
    `connections` table.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


class Pillar(str, enum.Enum):
    revenue = "revenue"
    profitability = "profitability"
    retention = "retention"
    acquisition = "acquisition"
    operations = "operations"


PILLAR_LABELS: Dict[Pillar, str] = {
    Pillar.revenue: "Revenue",
    Pillar.profitability: "Profitability",
    Pillar.retention: "Retention",
    Pillar.acquisition: "Acquisition",
    Pillar.operations: "Operations",
}


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite round-trips) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class ChannelStat:
    channel: str
    sessions: float


@dataclass(frozen=True)
class PulledMetrics:
    """Sparse provider-agnostic metrics. `None` means "not reported".

    Rates and margins are percentages on a 0-100 scale. Money and counts
    cover the pull window only; extrapolation happens in the merge layer.
    """

    total_revenue: Optional[float] = None
    order_count: Optional[float] = None
    average_order_value: Optional[float] = None
    recurring_revenue: Optional[float] = None  # MRR
    gross_revenue: Optional[float] = None
    fees: Optional[float] = None
    refunds: Optional[float] = None
    net_revenue: Optional[float] = None
    net_income: Optional[float] = None
    gross_margin: Optional[float] = None
    repeat_customer_rate: Optional[float] = None
    churn_rate: Optional[float] = None
    customer_lifetime_value: Optional[float] = None
    active_customers: Optional[float] = None
    cancelled_subscriptions: Optional[float] = None
    new_customers: Optional[float] = None
    conversion_rate: Optional[float] = None
    sessions: Optional[float] = None
    fulfillment_hours: Optional[float] = None
    refund_rate: Optional[float] = None
    pending_orders: Optional[float] = None
    overdue_invoices: Optional[float] = None
    top_channels: Optional[Tuple[ChannelStat, ...]] = None

    def populated(self) -> Dict[str, Any]:
        """Reported metrics only, JSON friendly (for sync logs)."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is None:
                continue
            if f.name == "top_channels":
                value = [{"channel": c.channel, "sessions": c.sessions} for c in value]
            out[f.name] = value
        return out


@dataclass(frozen=True)
class PulledData:
    """Result of one pull. `raw` is retained for audit/debug only."""

    provider_id: str
    pulled_at: datetime
    period_start: datetime
    period_end: datetime
    metrics: PulledMetrics
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def period_days(self) -> float:
        seconds = (self.period_end - self.period_start).total_seconds()
        return max(seconds / 86400.0, 1.0)


@dataclass
class PillarMetricResult:
    score: int
    metrics: Dict[str, Any] = field(default_factory=dict)
    changes: List[str] = field(default_factory=list)


PillarMetrics = Dict[Pillar, PillarMetricResult]


@dataclass
class OAuthResult:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    external_account_id: Optional[str] = None
    scopes: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefreshedToken:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None


@dataclass(frozen=True)
class ConnectionCredentials:
    """Decrypted, read-only view of a connection handed to adapters."""

    connection_id: str
    user_id: str
    provider_id: str
    access_token: str
    refresh_token: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    external_account_id: Optional[str] = None
    scopes: str = ""
    extra: Dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expires_at = as_utc(self.token_expires_at)
        if expires_at is None:
            return False
        return expires_at < (now or datetime.now(timezone.utc))


PROFILE_FIELDS: Tuple[str, ...] = (
    "revenue_monthly",
    "gross_margin_pct",
    "net_profit_monthly",
    "runway_months",
    "churn_monthly_pct",
    "conversion_rate_pct",
    "traffic_monthly",
    "avg_order_value",
    "cac",
    "ltv",
    "ops_hours_per_week",
    "fulfillment_days",
    "support_tickets_per_week",
)


@dataclass(frozen=True)
class ProfileMetrics:
    """Typed snapshot of a BusinessProfile's metric columns (scoring input)."""

    revenue_monthly: Optional[float] = None
    gross_margin_pct: Optional[float] = None
    net_profit_monthly: Optional[float] = None
    runway_months: Optional[float] = None
    churn_monthly_pct: Optional[float] = None
    conversion_rate_pct: Optional[float] = None
    traffic_monthly: Optional[float] = None
    avg_order_value: Optional[float] = None
    cac: Optional[float] = None
    ltv: Optional[float] = None
    ops_hours_per_week: Optional[float] = None
    fulfillment_days: Optional[float] = None
    support_tickets_per_week: Optional[float] = None

    def as_dict(self) -> Dict[str, Optional[float]]:
        return {name: getattr(self, name) for name in PROFILE_FIELDS}
