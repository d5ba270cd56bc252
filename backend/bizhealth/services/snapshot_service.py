"""Score snapshot store and weekly pillar history.

WHAT:
    - Append-only `ScoreSnapshot` rows, one per recompute.
    - `MetricHistory` upserts, one row per (user, pillar, week).
    - The one-line "why did my score change" narrative.

WHY:
    Trend views read history directly instead of reconstructing it, and the
    previous score is always "the row before the newest one". The weekly
    table is the one place rows are overwritten, so repeated syncs in a week
    still chart as one point.

REFERENCES:
    - bizhealth/models.py::ScoreSnapshot, MetricHistory
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from bizhealth.integrations.types import PILLAR_LABELS, Pillar, PillarMetrics
from bizhealth.models import MetricHistory, ScoreSnapshot
from bizhealth.services.scoring import ScoreResult

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 100


def week_start(value: datetime | date) -> date:
    """Monday of the ISO week containing `value` (Sunday belongs to the prior Monday)."""
    day = value.date() if isinstance(value, datetime) else value
    return day - timedelta(days=day.weekday())


def latest_snapshot(db: Session, user_id: str) -> Optional[ScoreSnapshot]:
    """Current score: newest created_at, insertion order breaking ties."""
    return (
        db.query(ScoreSnapshot)
        .filter(ScoreSnapshot.user_id == user_id)
        .order_by(ScoreSnapshot.created_at.desc(), ScoreSnapshot.id.desc())
        .first()
    )


def snapshot_history(db: Session, user_id: str, limit: int = 52) -> List[ScoreSnapshot]:
    return (
        db.query(ScoreSnapshot)
        .filter(ScoreSnapshot.user_id == user_id)
        .order_by(ScoreSnapshot.created_at.desc(), ScoreSnapshot.id.desc())
        .limit(limit)
        .all()
    )


def pillar_scores(snapshot: ScoreSnapshot) -> Dict[Pillar, int]:
    return {pillar: getattr(snapshot, f"{pillar.value}_score") for pillar in Pillar}


def truncate_reason(text: str, limit: int = MAX_REASON_LENGTH) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def build_change_reason(
    previous: Optional[ScoreSnapshot],
    result: ScoreResult,
    pulled_pillars: Optional[PillarMetrics] = None,
) -> Optional[str]:
    """Describe the pillar with the largest absolute move since `previous`.

    The reason text prefers what this pull changed for that pillar and falls
    back to the scorer's own first reason. None when nothing moved.
    """
    if previous is None:
        return None

    before = pillar_scores(previous)
    biggest: Optional[Pillar] = None
    biggest_delta = 0
    for pillar in Pillar:
        delta = result.pillars[pillar].score - before[pillar]
        if abs(delta) > abs(biggest_delta):
            biggest, biggest_delta = pillar, delta

    if biggest is None:
        return None

    reason = None
    mapped = (pulled_pillars or {}).get(biggest)
    if mapped and mapped.changes:
        reason = mapped.changes[0]
    elif result.pillars[biggest].reasons:
        reason = result.pillars[biggest].reasons[0]

    direction = "improved" if biggest_delta > 0 else "dropped"
    text = f"{PILLAR_LABELS[biggest]} {direction}"
    if reason:
        text = f"{text} - {reason}"
    return truncate_reason(text)


def record_snapshot(
    db: Session,
    user_id: str,
    result: ScoreResult,
    *,
    source: Optional[str] = None,
    change_reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ScoreSnapshot:
    """Append a snapshot. The caller commits."""
    scores = result.pillar_scores()
    snapshot = ScoreSnapshot(
        user_id=user_id,
        created_at=now or datetime.now(timezone.utc),
        score=result.score,
        revenue_score=scores[Pillar.revenue],
        profitability_score=scores[Pillar.profitability],
        retention_score=scores[Pillar.retention],
        acquisition_score=scores[Pillar.acquisition],
        operations_score=scores[Pillar.operations],
        pillars_json={
            pillar.value: {"score": p.score, "reasons": list(p.reasons), "levers": list(p.levers)}
            for pillar, p in result.pillars.items()
        },
        primary_risk=result.primary_risk,
        fastest_lever=result.fastest_lever,
        recommended_next_steps=list(result.recommended_next_steps),
        missing_data=list(result.missing_data),
        change_reason=change_reason,
        source=source,
    )
    db.add(snapshot)
    db.flush()
    logger.info("[SNAPSHOT] Recorded score %d for user %s (source=%s)", result.score, user_id, source)
    return snapshot


def upsert_weekly_history(
    db: Session,
    user_id: str,
    result: ScoreResult,
    *,
    source: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[MetricHistory]:
    """One row per pillar for the current week, overwriting earlier syncs that week.

    The caller commits; a concurrent insert for the same week surfaces as an
    IntegrityError on commit and the caller retries.
    """
    now = now or datetime.now(timezone.utc)
    week_of = week_start(now)
    existing = {
        row.pillar: row
        for row in db.query(MetricHistory)
        .filter(MetricHistory.user_id == user_id, MetricHistory.week_of == week_of)
        .all()
    }

    rows: List[MetricHistory] = []
    for pillar, score in result.pillar_scores().items():
        row = existing.get(pillar.value)
        if row is None:
            row = MetricHistory(user_id=user_id, pillar=pillar.value, week_of=week_of)
            db.add(row)
        row.score = score
        row.source = source
        row.updated_at = now
        rows.append(row)

    db.flush()
    return rows
