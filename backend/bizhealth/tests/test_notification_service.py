"""Notification preferences, webhook delivery and background dispatch."""

import asyncio
import json

import httpx
import pytest

from bizhealth.exceptions import NotifyError
from bizhealth.models import NotificationPreference
from bizhealth.services import notification_service
from bizhealth.services.notification_service import (
    PREF_SCORE_UPDATES,
    BackgroundDispatcher,
    LoggingNotifier,
    WebhookNotifier,
    build_notifier,
    should_notify,
)


def test_preferences_default_to_enabled(test_db_session):
    assert should_notify(test_db_session, "user-1", PREF_SCORE_UPDATES) is True


def test_preferences_can_disable_score_updates(test_db_session):
    test_db_session.add(NotificationPreference(user_id="user-1", score_updates=False, weekly_digest=True))
    test_db_session.commit()

    assert should_notify(test_db_session, "user-1", PREF_SCORE_UPDATES) is False
    assert should_notify(test_db_session, "user-1", "weekly_digest") is True


def test_webhook_posts_payload():
    received = []

    def handler(request):
        received.append(json.loads(request.content))
        return httpx.Response(202)

    notifier = WebhookNotifier("https://messages.example.test/hook", transport=httpx.MockTransport(handler))
    asyncio.run(notifier.notify("user-1", "score_update", {"score": 61}))

    assert received == [{"user_id": "user-1", "kind": "score_update", "payload": {"score": 61}}]


def test_webhook_error_status_raises_notify_error():
    notifier = WebhookNotifier(
        "https://messages.example.test/hook", transport=httpx.MockTransport(lambda request: httpx.Response(500))
    )

    with pytest.raises(NotifyError, match="500"):
        asyncio.run(notifier.notify("user-1", "score_update", {}))


def test_build_notifier_falls_back_to_logging(settings):
    assert isinstance(build_notifier(settings.model_copy(update={"NOTIFY_WEBHOOK_URL": None})), LoggingNotifier)
    webhook = build_notifier(settings.model_copy(update={"NOTIFY_WEBHOOK_URL": "https://hook.example.test"}))
    assert isinstance(webhook, WebhookNotifier)


def test_dispatcher_contains_failures(monkeypatch):
    captured = []
    monkeypatch.setattr(notification_service, "capture_exception", lambda exc, extra=None: captured.append(exc))

    async def expected_failure():
        raise NotifyError("webhook down")

    async def unexpected_failure():
        raise RuntimeError("bug")

    async def run():
        dispatcher = BackgroundDispatcher()
        dispatcher.spawn(expected_failure(), label="notify")
        dispatcher.spawn(unexpected_failure(), label="revoke")
        await dispatcher.drain(timeout=1)
        return dispatcher.pending

    assert asyncio.run(run()) == 0
    # Only unexpected errors are reported
    assert [str(e) for e in captured] == ["bug"]


def test_drain_cancels_stragglers():
    async def run():
        dispatcher = BackgroundDispatcher()
        task = dispatcher.spawn(asyncio.sleep(10), label="slow")
        await dispatcher.drain(timeout=0.01)
        await asyncio.gather(task, return_exceptions=True)
        return task

    assert asyncio.run(run()).cancelled()
