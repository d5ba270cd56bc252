"""Sync orchestrator: stage ordering, failure recording, merge and history semantics."""

import asyncio
import time
from datetime import date, timedelta

import pytest

from bizhealth.exceptions import NotifyError, PullError
from bizhealth.integrations.types import PulledMetrics, RefreshedToken, as_utc
from bizhealth.models import (
    BusinessProfile,
    Connection,
    ConnectionStatusEnum,
    MetricHistory,
    NotificationPreference,
    ScoreSnapshot,
    SyncLog,
    SyncStatusEnum,
)
from bizhealth.security import decrypt_secret
from bizhealth.services import sync_service
from bizhealth.services.credential_store import claim_for_sync
from bizhealth.services.snapshot_service import latest_snapshot


def _sync(orchestrator, connection_id):
    return asyncio.run(sync_service.sync_one(connection_id, orchestrator=orchestrator))


def _profile(db, user_id="user-1"):
    db.expire_all()
    return db.query(BusinessProfile).filter(BusinessProfile.user_id == user_id).one()


def _connection(db, connection_id):
    db.expire_all()
    return db.get(Connection, connection_id)


def _snapshot_count(db, user_id="user-1"):
    return db.query(ScoreSnapshot).filter(ScoreSnapshot.user_id == user_id).count()


# =============================================================================
# HAPPY PATH
# =============================================================================

def test_successful_sync_merges_scores_and_records_everything(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, notifier
):
    adapter = fake_adapter_cls("fake", PulledMetrics(total_revenue=20000.0, churn_rate=4.0))
    orchestrator = make_orchestrator(adapter)
    connection_id = make_connection()

    result = _sync(orchestrator, connection_id)

    assert result.status == "success"
    assert result.stage == "success"
    assert result.provider == "fake"
    assert result.metrics_updated == {"revenue_monthly": True, "churn_monthly_pct": True}
    assert result.pillar_impact == {"revenue": 75, "retention": 70}
    # revenue 80, profitability 50, retention 75, acquisition 50, ops 50
    assert result.score == 61
    assert result.previous_score is None
    assert result.change_reason is None

    profile = _profile(test_db_session)
    assert profile.revenue_monthly == 20000.0
    assert profile.churn_monthly_pct == 4.0
    assert profile.metric_sources == {"revenue_monthly": "fake", "churn_monthly_pct": "fake"}

    snapshot = latest_snapshot(test_db_session, "user-1")
    assert snapshot.score == 61
    assert snapshot.revenue_score == 80
    assert snapshot.operations_score == 50
    assert snapshot.source == "fake"
    assert snapshot.fastest_lever == "Raise prices"

    history = test_db_session.query(MetricHistory).filter(MetricHistory.user_id == "user-1").all()
    assert len(history) == 5
    assert {row.week_of for row in history} == {date(2026, 3, 9)}

    connection = _connection(test_db_session, connection_id)
    assert connection.status == ConnectionStatusEnum.connected
    assert connection.last_sync_status == SyncStatusEnum.success
    assert connection.last_sync_error is None
    assert connection.sync_started_at is None

    logs = test_db_session.query(SyncLog).filter(SyncLog.connection_id == connection_id).all()
    assert len(logs) == 1
    assert logs[0].status == SyncStatusEnum.success
    assert logs[0].pillar_impact == {"revenue": 75, "retention": 70}
    assert logs[0].data_snapshot == {"total_revenue": 20000.0, "churn_rate": 4.0}

    assert len(notifier.calls) == 1
    assert notifier.calls[0]["kind"] == "score_update"
    assert notifier.calls[0]["payload"]["score"] == 61
    assert notifier.calls[0]["payload"]["previous_score"] is None


def test_empty_mapping_is_a_noop_success(fake_adapter_cls, make_orchestrator, make_connection, test_db_session, notifier):
    adapter = fake_adapter_cls("fake", PulledMetrics())
    connection_id = make_connection()

    result = _sync(make_orchestrator(adapter), connection_id)

    assert result.status == "success"
    assert result.metrics_updated == {}
    assert result.pillar_impact == {}
    assert _snapshot_count(test_db_session) == 0
    assert notifier.calls == []
    assert _connection(test_db_session, connection_id).last_sync_status == SyncStatusEnum.success


# =============================================================================
# FAILURES
# =============================================================================

def test_pull_failure_leaves_profile_and_score_unchanged(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, clock
):
    adapter = fake_adapter_cls("fake", PulledMetrics(total_revenue=20000.0))
    orchestrator = make_orchestrator(adapter)
    connection_id = make_connection()
    first = _sync(orchestrator, connection_id)
    assert first.status == "success"

    adapter.metrics = PulledMetrics(total_revenue=5000.0)
    adapter.pull_error = PullError("Upstream down", provider_id="fake", stage="pulling")
    clock.advance(hours=1)

    result = _sync(orchestrator, connection_id)

    assert result.status == "failed"
    assert result.stage == "pulling"
    assert result.error == "Upstream down"

    profile = _profile(test_db_session)
    assert profile.revenue_monthly == 20000.0
    assert profile.metric_sources == {"revenue_monthly": "fake"}
    assert _snapshot_count(test_db_session) == 1
    assert latest_snapshot(test_db_session, "user-1").score == first.score

    connection = _connection(test_db_session, connection_id)
    assert connection.status == ConnectionStatusEnum.error
    assert connection.last_sync_status == SyncStatusEnum.failed
    assert connection.last_sync_error == "Upstream down"
    assert connection.sync_started_at is None

    failed_log = (
        test_db_session.query(SyncLog)
        .filter(SyncLog.connection_id == connection_id, SyncLog.status == SyncStatusEnum.failed)
        .one()
    )
    assert failed_log.stage == "pulling"
    assert failed_log.error == "Upstream down"
    assert failed_log.duration_ms >= 0


def test_expired_token_is_refreshed_and_persisted_even_when_pull_fails(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, clock
):
    new_expiry = clock.now + timedelta(hours=1)
    adapter = fake_adapter_cls(
        "fake",
        supports_refresh=True,
        refreshed=RefreshedToken(access_token="fresh-access", refresh_token="fresh-refresh", expires_at=new_expiry),
        pull_error=PullError("Report unavailable", provider_id="fake", stage="pulling"),
    )
    connection_id = make_connection(expires_at=clock.now - timedelta(minutes=5))

    result = _sync(make_orchestrator(adapter), connection_id)

    assert result.status == "failed"
    assert result.stage == "pulling"
    assert len(adapter.refresh_calls) == 1
    assert adapter.refresh_calls[0].refresh_token == "stored-refresh"
    assert adapter.pull_calls[0].access_token == "fresh-access"

    connection = _connection(test_db_session, connection_id)
    assert decrypt_secret(connection.access_token_enc, context="test") == "fresh-access"
    assert decrypt_secret(connection.refresh_token_enc, context="test") == "fresh-refresh"
    assert as_utc(connection.token_expires_at) == new_expiry
    assert connection.status == ConnectionStatusEnum.error


def test_unexpired_token_is_not_refreshed(fake_adapter_cls, make_orchestrator, make_connection, clock):
    adapter = fake_adapter_cls("fake", supports_refresh=True)
    connection_id = make_connection(expires_at=clock.now + timedelta(minutes=30))

    result = _sync(make_orchestrator(adapter), connection_id)

    assert result.status == "success"
    assert adapter.refresh_calls == []
    assert adapter.pull_calls[0].access_token == "stored-access"


def test_missing_refresh_token_fails_at_refresh_stage(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, clock
):
    adapter = fake_adapter_cls("fake", supports_refresh=True)
    connection_id = make_connection(refresh_token=None, expires_at=clock.now - timedelta(hours=1))

    result = _sync(make_orchestrator(adapter), connection_id)

    assert result.status == "failed"
    assert result.stage == "refreshing"
    assert "no refresh token" in result.error
    assert adapter.pull_calls == []
    assert _connection(test_db_session, connection_id).status == ConnectionStatusEnum.error


def test_unregistered_provider_fails_only_that_connection(make_orchestrator, make_connection, test_db_session):
    connection_id = make_connection(provider="ghost")

    result = _sync(make_orchestrator(), connection_id)

    assert result.status == "failed"
    assert result.error == "Provider 'ghost' is not registered"
    connection = _connection(test_db_session, connection_id)
    assert connection.status == ConnectionStatusEnum.error
    assert connection.last_sync_error == "Provider 'ghost' is not registered"


def test_pull_timeout_is_treated_as_pull_failure(
    fake_adapter_cls, make_orchestrator, make_connection, settings, test_db_session
):
    adapter = fake_adapter_cls("fake", pull_delay=1.0)
    fast = settings.model_copy(update={"PULL_TIMEOUT_SECONDS": 0.05})
    connection_id = make_connection()

    result = _sync(make_orchestrator(adapter, settings_override=fast), connection_id)

    assert result.status == "failed"
    assert result.stage == "pulling"
    assert "timed out" in result.error
    assert _connection(test_db_session, connection_id).status == ConnectionStatusEnum.error


def test_unexpected_scoring_error_is_captured_and_merge_is_kept(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, monkeypatch
):
    captured = []
    monkeypatch.setattr(sync_service, "capture_exception", lambda exc, extra=None: captured.append((exc, extra)))

    def broken_score(profile, business_type):
        raise RuntimeError("boom")

    adapter = fake_adapter_cls("fake", PulledMetrics(total_revenue=20000.0))
    connection_id = make_connection()

    result = _sync(make_orchestrator(adapter, score_function=broken_score), connection_id)

    assert result.status == "failed"
    assert result.stage == "scoring"
    assert result.error == "boom"
    assert len(captured) == 1
    assert captured[0][1]["stage"] == "scoring"
    # Merge committed before scoring; the score simply lags
    assert _profile(test_db_session).revenue_monthly == 20000.0
    assert _snapshot_count(test_db_session) == 0


def test_expected_integration_errors_are_not_sent_to_sentry(
    fake_adapter_cls, make_orchestrator, make_connection, monkeypatch
):
    captured = []
    monkeypatch.setattr(sync_service, "capture_exception", lambda exc, extra=None: captured.append(exc))
    adapter = fake_adapter_cls("fake", pull_error=PullError("429 rate limited", provider_id="fake", stage="pulling"))

    result = _sync(make_orchestrator(adapter), make_connection())

    assert result.status == "failed"
    assert captured == []


# =============================================================================
# ADVISORY LOCK
# =============================================================================

def test_connection_already_syncing_is_skipped(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, clock
):
    adapter = fake_adapter_cls("fake")
    connection_id = make_connection()
    assert claim_for_sync(test_db_session, connection_id, now=clock.now)

    result = _sync(make_orchestrator(adapter), connection_id)

    assert result.status == "skipped"
    assert adapter.pull_calls == []
    assert test_db_session.query(SyncLog).count() == 0
    assert _connection(test_db_session, connection_id).status == ConnectionStatusEnum.syncing


def test_stale_syncing_lock_is_reclaimed(fake_adapter_cls, make_orchestrator, make_connection, test_db_session, clock):
    adapter = fake_adapter_cls("fake")
    connection_id = make_connection()
    assert claim_for_sync(test_db_session, connection_id, now=clock.now - timedelta(minutes=45))

    result = _sync(make_orchestrator(adapter), connection_id)

    assert result.status == "success"
    assert _connection(test_db_session, connection_id).status == ConnectionStatusEnum.connected


# =============================================================================
# MERGE ACROSS PROVIDERS
# =============================================================================

def test_provider_without_opinion_does_not_clear_other_providers_field(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, clock
):
    alpha = fake_adapter_cls("alpha", PulledMetrics(total_revenue=20000.0))
    beta = fake_adapter_cls("beta", PulledMetrics(churn_rate=3.0))
    orchestrator = make_orchestrator(alpha, beta)
    alpha_id = make_connection(provider="alpha")
    beta_id = make_connection(provider="beta")

    assert _sync(orchestrator, alpha_id).status == "success"
    clock.advance(minutes=10)
    assert _sync(orchestrator, beta_id).status == "success"

    profile = _profile(test_db_session)
    assert profile.revenue_monthly == 20000.0
    assert profile.churn_monthly_pct == 3.0
    assert profile.metric_sources == {"revenue_monthly": "alpha", "churn_monthly_pct": "beta"}


def test_most_recent_provider_owns_overlapping_field(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, clock
):
    alpha = fake_adapter_cls("alpha", PulledMetrics(total_revenue=20000.0))
    beta = fake_adapter_cls("beta", PulledMetrics(total_revenue=9000.0))
    orchestrator = make_orchestrator(alpha, beta)
    alpha_id = make_connection(provider="alpha")
    beta_id = make_connection(provider="beta")

    _sync(orchestrator, alpha_id)
    clock.advance(minutes=10)
    _sync(orchestrator, beta_id)

    profile = _profile(test_db_session)
    assert profile.revenue_monthly == 9000.0
    assert profile.metric_sources["revenue_monthly"] == "beta"

    clock.advance(minutes=10)
    _sync(orchestrator, alpha_id)

    profile = _profile(test_db_session)
    assert profile.revenue_monthly == 20000.0
    assert profile.metric_sources["revenue_monthly"] == "alpha"


# =============================================================================
# SNAPSHOTS & WEEKLY HISTORY
# =============================================================================

def test_two_syncs_in_same_week_keep_one_history_row_per_pillar(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, clock
):
    adapter = fake_adapter_cls("fake", PulledMetrics(total_revenue=20000.0))
    orchestrator = make_orchestrator(adapter)
    connection_id = make_connection()

    first = _sync(orchestrator, connection_id)
    adapter.metrics = PulledMetrics(total_revenue=5000.0)
    clock.advance(hours=8)
    second = _sync(orchestrator, connection_id)

    # revenue 80 -> 50, everything else unchanged
    assert first.score == 54
    assert second.score == 48
    assert second.previous_score == 54
    assert second.change_reason == "Revenue dropped - Revenue $5,000/mo from Fake"

    test_db_session.expire_all()
    rows = test_db_session.query(MetricHistory).filter(MetricHistory.user_id == "user-1").all()
    assert len(rows) == 5
    revenue_row = next(row for row in rows if row.pillar == "revenue")
    assert revenue_row.score == 50
    assert revenue_row.week_of == date(2026, 3, 9)

    assert _snapshot_count(test_db_session) == 2
    assert latest_snapshot(test_db_session, "user-1").score == 48


def test_sync_in_following_week_adds_new_history_rows(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, clock
):
    adapter = fake_adapter_cls("fake")
    orchestrator = make_orchestrator(adapter)
    connection_id = make_connection()

    _sync(orchestrator, connection_id)
    clock.advance(days=5)  # Monday 2026-03-16
    _sync(orchestrator, connection_id)

    weeks = {row.week_of for row in test_db_session.query(MetricHistory).all()}
    assert weeks == {date(2026, 3, 9), date(2026, 3, 16)}
    assert test_db_session.query(MetricHistory).count() == 10


# =============================================================================
# NOTIFICATIONS
# =============================================================================

def test_notification_carries_previous_score_and_pillar_deltas(
    fake_adapter_cls, make_orchestrator, make_connection, notifier, clock
):
    adapter = fake_adapter_cls("fake", PulledMetrics(total_revenue=20000.0))
    orchestrator = make_orchestrator(adapter)
    connection_id = make_connection()

    _sync(orchestrator, connection_id)
    adapter.metrics = PulledMetrics(total_revenue=5000.0)
    clock.advance(hours=1)
    _sync(orchestrator, connection_id)

    payload = notifier.calls[-1]["payload"]
    assert payload["score"] == 48
    assert payload["previous_score"] == 54
    assert payload["change_reason"].startswith("Revenue dropped")
    changes = {c["pillar"]: c for c in payload["pillar_changes"]}
    assert changes["revenue"] == {"pillar": "revenue", "label": "Revenue", "score": 50, "delta": -30}
    assert changes["operations"]["delta"] == 0


def test_notification_respects_user_preference(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, notifier
):
    test_db_session.add(NotificationPreference(user_id="user-1", score_updates=False, weekly_digest=True))
    test_db_session.commit()
    connection_id = make_connection()

    result = _sync(make_orchestrator(fake_adapter_cls("fake")), connection_id)

    assert result.status == "success"
    assert notifier.calls == []


def test_notification_failure_does_not_fail_sync(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session, notifier
):
    notifier.error = NotifyError("webhook down")
    connection_id = make_connection()

    result = _sync(make_orchestrator(fake_adapter_cls("fake")), connection_id)

    assert result.status == "success"
    assert len(notifier.calls) == 1
    assert _connection(test_db_session, connection_id).last_sync_status == SyncStatusEnum.success


# =============================================================================
# FLEET & PER-USER
# =============================================================================

def test_fleet_sync_reports_failures_without_aborting_the_batch(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session
):
    alpha = fake_adapter_cls("alpha", PulledMetrics(total_revenue=20000.0))
    beta = fake_adapter_cls("beta", pull_error=PullError("beta is down", provider_id="beta", stage="pulling"))
    orchestrator = make_orchestrator(alpha, beta)

    good = [
        make_connection("user-1", "alpha"),
        make_connection("user-2", "alpha"),
        make_connection("user-3", "alpha"),
    ]
    bad = [
        make_connection("user-1", "beta"),
        make_connection("user-3", "beta"),
    ]
    # Not eligible for the scheduled run
    parked_id = make_connection("user-4", "alpha")
    test_db_session.get(Connection, parked_id).status = ConnectionStatusEnum.disconnected
    test_db_session.commit()

    summary = asyncio.run(sync_service.run_fleet_sync(orchestrator=orchestrator))

    assert summary.total_integrations == 5
    assert summary.synced == 3
    assert summary.failed == 2
    assert summary.skipped == 0

    for connection_id in good:
        assert _connection(test_db_session, connection_id).last_sync_status == SyncStatusEnum.success
    for connection_id in bad:
        assert _connection(test_db_session, connection_id).status == ConnectionStatusEnum.error
    for user_id in ("user-1", "user-2", "user-3"):
        assert _profile(test_db_session, user_id).revenue_monthly == 20000.0
        assert _snapshot_count(test_db_session, user_id) == 1
    assert _connection(test_db_session, parked_id).last_sync_status is None


def test_fleet_sync_keeps_event_loop_responsive_while_scoring(fake_adapter_cls, make_orchestrator, make_connection):
    orchestrator = make_orchestrator(fake_adapter_cls("alpha"))
    score = orchestrator.score_function

    def slow_score(profile, business_type):
        time.sleep(0.3)
        return score(profile, business_type)

    orchestrator.score_function = slow_score
    for user_id in ("user-1", "user-2", "user-3"):
        make_connection(user_id, "alpha")

    async def run():
        gaps = []
        done = asyncio.Event()

        async def heartbeat():
            last = time.monotonic()
            while not done.is_set():
                await asyncio.sleep(0.02)
                now = time.monotonic()
                gaps.append(now - last)
                last = now

        ticker = asyncio.create_task(heartbeat())
        started = time.monotonic()
        summary = await orchestrator.run_fleet_sync()
        elapsed = time.monotonic() - started
        done.set()
        await ticker
        return summary, elapsed, gaps

    summary, elapsed, gaps = asyncio.run(run())

    assert summary.synced == 3
    # Three 0.3s scorer calls overlap instead of running back to back
    assert elapsed < 0.8
    assert len(gaps) > 5
    assert max(gaps) < 0.25


def test_fleet_sync_retries_errored_connections(fake_adapter_cls, make_orchestrator, make_connection, clock):
    beta = fake_adapter_cls("beta", pull_error=PullError("down", provider_id="beta", stage="pulling"))
    orchestrator = make_orchestrator(beta)
    make_connection("user-1", "beta")

    first = asyncio.run(sync_service.run_fleet_sync(orchestrator=orchestrator))
    assert first.failed == 1

    beta.pull_error = None
    clock.advance(days=7)
    second = asyncio.run(sync_service.run_fleet_sync(orchestrator=orchestrator))

    assert second.total_integrations == 1
    assert second.synced == 1


def test_sync_all_for_user_only_touches_that_user(
    fake_adapter_cls, make_orchestrator, make_connection, test_db_session
):
    alpha = fake_adapter_cls("alpha")
    orchestrator = make_orchestrator(alpha)
    mine = make_connection("user-1", "alpha")
    theirs = make_connection("user-2", "alpha")

    results = asyncio.run(sync_service.sync_all_for_user("user-1", orchestrator=orchestrator))

    assert [r.connection_id for r in results] == [mine]
    assert _connection(test_db_session, theirs).last_sync_status is None


def test_build_orchestrator_requires_score_function(settings):
    with pytest.raises(RuntimeError, match="SCORE_FUNCTION"):
        sync_service.build_orchestrator(settings.model_copy(update={"SCORE_FUNCTION": None}))
