"""Metric merge layer: pulled metrics -> BusinessProfile fields.

WHAT:
    Translates a provider's `PulledMetrics` into profile field updates and
    applies them with per-field last-writer-wins, stamping provenance.

WHY:
    - Fields a provider did not report are never touched, so a provider with
      no opinion on revenue cannot clear another provider's revenue.
    - Two providers reporting the same field do not conflict structurally:
      whoever synced last owns the value and the provenance tag.

REFERENCES:
    - bizhealth/models.py::BusinessProfile
    - bizhealth/services/sync_service.py (merge stage)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bizhealth.integrations.types import PROFILE_FIELDS, ProfileMetrics, PulledData
from bizhealth.models import BusinessProfile

logger = logging.getLogger(__name__)

MANUAL_SOURCE = "manual"


@dataclass(frozen=True)
class MetricMapping:
    metric: str
    field: str
    transform: Callable[[float, PulledData], float]


def _direct(value: float, pulled: PulledData) -> float:
    return value


def _per_month(value: float, pulled: PulledData) -> float:
    return value * 30.0 / pulled.period_days


def _hours_to_days(value: float, pulled: PulledData) -> float:
    return value / 24.0


METRIC_MAPPINGS: Tuple[MetricMapping, ...] = (
    MetricMapping("total_revenue", "revenue_monthly", _per_month),
    MetricMapping("average_order_value", "avg_order_value", _direct),
    MetricMapping("gross_margin", "gross_margin_pct", _direct),
    MetricMapping("net_income", "net_profit_monthly", _per_month),
    MetricMapping("conversion_rate", "conversion_rate_pct", _direct),
    MetricMapping("churn_rate", "churn_monthly_pct", _direct),
    MetricMapping("sessions", "traffic_monthly", _per_month),
    MetricMapping("customer_lifetime_value", "ltv", _direct),
    MetricMapping("fulfillment_hours", "fulfillment_days", _hours_to_days),
)


def profile_updates_from_pull(pulled: PulledData) -> Dict[str, float]:
    """Profile field -> new value, for every metric the pull reported."""
    updates: Dict[str, float] = {}
    for mapping in METRIC_MAPPINGS:
        value = getattr(pulled.metrics, mapping.metric)
        if value is None:
            continue
        updates[mapping.field] = round(float(mapping.transform(float(value), pulled)), 4)
    return updates


def get_profile(db: Session, user_id: str) -> Optional[BusinessProfile]:
    return db.query(BusinessProfile).filter(BusinessProfile.user_id == user_id).first()


def get_or_create_profile(db: Session, user_id: str) -> BusinessProfile:
    """Fetch the user's profile, creating (and committing) an empty one if needed."""
    profile = get_profile(db, user_id)
    if profile is not None:
        return profile

    profile = BusinessProfile(user_id=user_id, metric_sources={})
    db.add(profile)
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently by another sync for the same user
        db.rollback()
        profile = get_profile(db, user_id)
        if profile is None:
            raise
    return profile


def profile_metrics(profile: Optional[BusinessProfile]) -> ProfileMetrics:
    if profile is None:
        return ProfileMetrics()
    return ProfileMetrics(**{name: getattr(profile, name) for name in PROFILE_FIELDS})


def provenance_for(profile: BusinessProfile) -> Dict[str, str]:
    """Source of every populated field; untouched fields read as "manual"."""
    sources = dict(profile.metric_sources or {})
    return {
        name: sources.get(name, MANUAL_SOURCE)
        for name in PROFILE_FIELDS
        if getattr(profile, name) is not None
    }


def apply_profile_updates(
    db: Session,
    profile: BusinessProfile,
    updates: Dict[str, float],
    source: str,
) -> Dict[str, bool]:
    """Sparse overwrite: set each given field and its provenance. The caller commits."""
    unknown = set(updates) - set(PROFILE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown profile fields: {', '.join(sorted(unknown))}")

    if not updates:
        return {}

    sources = dict(profile.metric_sources or {})
    for name, value in updates.items():
        setattr(profile, name, value)
        sources[name] = source
    # Reassign so the JSON column is flagged dirty
    profile.metric_sources = sources
    db.flush()

    logger.info("[MERGE] %s updated %d profile fields for user %s", source, len(updates), profile.user_id)
    return {name: True for name in updates}


def set_manual_inputs(db: Session, user_id: str, values: Dict[str, Optional[float]]) -> BusinessProfile:
    """User-entered values; provenance becomes "manual" (cleared values drop it)."""
    profile = get_or_create_profile(db, user_id)
    sources = dict(profile.metric_sources or {})
    for name, value in values.items():
        if name not in PROFILE_FIELDS:
            raise ValueError(f"Unknown profile field: {name}")
        setattr(profile, name, value)
        if value is None:
            sources.pop(name, None)
        else:
            sources[name] = MANUAL_SOURCE
    profile.metric_sources = sources
    db.flush()
    return profile
