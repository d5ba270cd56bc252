"""Score-update notifications.

WHAT:
    - `should_notify(db, user_id, pref_key)`: per-user preference lookup.
    - Notifiers that deliver `notify(user_id, kind, payload)`: an HTTP
      webhook to the messaging service, or a log-only fallback.
    - `BackgroundDispatcher`: runs fire-and-forget coroutines (notifications,
      upstream token revocation) as tasks whose failures are logged and
      never reach the caller.

WHY:
    Delivery is owned by another service. A failed notification or revoke
    must not fail or roll back the sync/disconnect that triggered it.

REFERENCES:
    - Settings.NOTIFY_WEBHOOK_URL
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Dict, Optional, Protocol, Set

import httpx
from sqlalchemy.orm import Session

from bizhealth.exceptions import NotifyError
from bizhealth.models import NotificationPreference
from bizhealth.telemetry.sentry import capture_exception

logger = logging.getLogger(__name__)

SCORE_UPDATE = "score_update"
PREF_SCORE_UPDATES = "score_updates"


def should_notify(db: Session, user_id: str, pref_key: str) -> bool:
    """Preferences default to enabled when the user never saved any."""
    pref = db.query(NotificationPreference).filter(NotificationPreference.user_id == user_id).first()
    if pref is None:
        return True
    return bool(getattr(pref, pref_key, True))


class Notifier(Protocol):
    async def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        ...


class WebhookNotifier:
    """POSTs `{user_id, kind, payload}` as JSON to the messaging service."""

    def __init__(self, url: str, timeout: float = 10.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport

    async def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        body = {"user_id": user_id, "kind": kind, "payload": payload}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=body)
        except httpx.HTTPError as exc:
            raise NotifyError(f"Notification webhook unreachable: {exc}") from exc

        if not response.is_success:
            raise NotifyError(f"Notification webhook returned {response.status_code}: {response.text[:200]}")
        logger.info("[NOTIFY] Sent %s to user %s", kind, user_id)


class LoggingNotifier:
    """Used when no messaging service is configured."""

    async def notify(self, user_id: str, kind: str, payload: Dict[str, Any]) -> None:
        logger.info("[NOTIFY] %s for user %s (no webhook configured): score=%s", kind, user_id, payload.get("score"))


def build_notifier(settings) -> Notifier:
    if settings.NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(settings.NOTIFY_WEBHOOK_URL, timeout=settings.HTTP_TIMEOUT_SECONDS)
    return LoggingNotifier()


class BackgroundDispatcher:
    """Owns fire-and-forget tasks so they are not garbage collected mid-flight."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any], *, label: str) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, label))
        return task

    def _finished(self, task: asyncio.Task, label: str) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("[DISPATCH] %s cancelled", label)
            return
        exc = task.exception()
        if exc is None:
            return
        if isinstance(exc, NotifyError):
            logger.warning("[DISPATCH] %s failed: %s", label, exc)
        else:
            logger.error("[DISPATCH] %s failed: %s", label, exc, exc_info=exc)
            capture_exception(exc, extra={"operation": label})

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for outstanding tasks; errors were already handled in the callback."""
        if not self._tasks:
            return
        _, still_running = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in still_running:
            task.cancel()
