"""Provider adapter contract.

WHAT:
    `ProviderAdapter` is the one interface the orchestrator talks to. Each
    external platform implements OAuth URL construction, code exchange,
    optional refresh, a read-only `pull`, a pure `map_to_pillars`, and a
    best-effort `disconnect`.

WHY:
    Splitting I/O (`pull`) from scoring heuristics (`map_to_pillars`) keeps
    the heuristics testable without a network, and keeps provider names out
    of the orchestrator.

REFERENCES:
    - bizhealth/integrations/registry.py
    - bizhealth/services/sync_service.py
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

import httpx

from bizhealth.exceptions import AuthExchangeError, MissingRefreshTokenError, PullError, RefreshError
from bizhealth.integrations.types import (
    ConnectionCredentials,
    OAuthResult,
    Pillar,
    PillarMetrics,
    ProfileMetrics,
    PulledData,
    RefreshedToken,
)
from bizhealth.security import create_oauth_state

logger = logging.getLogger(__name__)


Bands = Sequence[Tuple[float, int]]


def step_score(value: float, bands: Bands, default: int) -> int:
    """Higher-is-better step function: first band whose threshold `value` reaches."""
    for threshold, score in bands:
        if value >= threshold:
            return score
    return default


def step_score_at_most(value: float, bands: Bands, default: int) -> int:
    """Lower-is-better step function (churn, fulfilment time)."""
    for threshold, score in bands:
        if value <= threshold:
            return score
    return default


def monthly(value: float, period_days: float) -> float:
    return value * 30.0 / period_days


def pct(numerator: float, denominator: float) -> Optional[float]:
    if not denominator:
        return None
    return numerator / denominator * 100.0


class ProviderAdapter(abc.ABC):
    """Base class for provider adapters.

    Subclasses set the catalog attributes and implement the abstract
    methods. HTTP goes through `http_client()` so tests can inject an
    `httpx.MockTransport`.
    """

    id: str = ""
    name: str = ""
    description: str = ""
    category: str = ""
    required_scopes: Tuple[str, ...] = ()
    pillars_affected: Tuple[Pillar, ...] = ()
    window_days: int = 7
    supports_refresh: bool = False

    def __init__(self, settings=None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._settings = settings
        self._transport = transport

    @property
    def settings(self):
        if self._settings is None:
            from bizhealth.deps import get_settings

            return get_settings()
        return self._settings

    def http_client(self, **kwargs: Any) -> httpx.AsyncClient:
        kwargs.setdefault("timeout", self.settings.HTTP_TIMEOUT_SECONDS)
        if self._transport is not None:
            kwargs["transport"] = self._transport
        return httpx.AsyncClient(**kwargs)

    @property
    def redirect_uri(self) -> str:
        return f"{self.settings.APP_BASE_URL.rstrip('/')}/integrations/{self.id}/callback"

    def is_configured(self) -> bool:
        return True

    def catalog_entry(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "category": self.category,
            "pillars_affected": [p.value for p in self.pillars_affected],
            "required_scopes": list(self.required_scopes),
            "available": True,
        }

    def build_state(self, user_id: str, data: Optional[Dict[str, Any]] = None) -> str:
        return create_oauth_state(user_id, self.id, data)

    def window(self, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
        end = now or datetime.now(timezone.utc)
        return end - timedelta(days=self.window_days), end

    # -- contract --------------------------------------------------------

    @abc.abstractmethod
    def authorization_url(self, user_id: str, extra: Optional[Mapping[str, Any]] = None) -> str:
        """Redirect target for the provider's consent screen, with signed state."""

    @abc.abstractmethod
    async def exchange_code(
        self, code: str, user_id: str, extra: Optional[Mapping[str, Any]] = None
    ) -> OAuthResult:
        """Trade an authorization code for tokens. Raises AuthExchangeError."""

    async def refresh(self, credentials: ConnectionCredentials) -> RefreshedToken:
        raise RefreshError(f"{self.name} does not support token refresh", provider_id=self.id, stage="refreshing")

    @abc.abstractmethod
    async def pull(self, credentials: ConnectionCredentials) -> PulledData:
        """Read-only fetch of the trailing window. Raises PullError when primary data is unavailable."""

    @abc.abstractmethod
    def map_to_pillars(self, pulled: PulledData, current_profile: ProfileMetrics) -> PillarMetrics:
        """Pure mapping from pulled data to per-pillar results."""

    async def disconnect(self, credentials: ConnectionCredentials) -> None:
        """Best-effort upstream revocation. Default: nothing to revoke."""
        return None

    # -- helpers for subclasses -----------------------------------------

    def require_refresh_token(self, credentials: ConnectionCredentials) -> str:
        if not credentials.refresh_token:
            raise MissingRefreshTokenError(self.id)
        return credentials.refresh_token

    def raise_for_exchange(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        logger.error("[OAUTH] %s code exchange failed (%s): %s", self.id, response.status_code, response.text[:500])
        raise AuthExchangeError(
            f"{self.name} token exchange failed ({response.status_code}): {response.text}",
            provider_id=self.id,
            stage="exchange",
            status_code=response.status_code,
            body=response.text,
        )

    def raise_for_refresh(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        raise RefreshError(
            f"{self.name} token refresh failed ({response.status_code}): {response.text}",
            provider_id=self.id,
            stage="refreshing",
            status_code=response.status_code,
            body=response.text,
        )

    async def fetch_json(
        self,
        client: httpx.AsyncClient,
        method: str,
        url: str,
        *,
        label: str,
        primary: bool = False,
        **kwargs: Any,
    ) -> Optional[Any]:
        """Issue one read call.

        Primary calls raise PullError on any failure. Secondary calls return
        None so the pull degrades to omitting that metric.
        """
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            if primary:
                raise PullError(
                    f"{self.name} {label} request failed: {exc}", provider_id=self.id, stage="pulling"
                ) from exc
            logger.warning("[%s] %s unavailable: %s", self.id.upper(), label, exc)
            return None

        if not response.is_success:
            if primary:
                raise PullError(
                    f"{self.name} {label} failed ({response.status_code}): {response.text}",
                    provider_id=self.id,
                    stage="pulling",
                    status_code=response.status_code,
                    body=response.text,
                )
            logger.warning("[%s] %s unavailable (%s)", self.id.upper(), label, response.status_code)
            return None

        try:
            return response.json()
        except ValueError as exc:
            if primary:
                raise PullError(
                    f"{self.name} {label} returned invalid JSON", provider_id=self.id, stage="pulling"
                ) from exc
            logger.warning("[%s] %s returned invalid JSON", self.id.upper(), label)
            return None

    def warn_if_truncated(self, items: Sequence[Any], limit: int, label: str, has_more: bool = False) -> bool:
        """Log when a single-page list call came back full.

        Pulls read one page per list, so a full page means the metrics built
        from it undercount the window.
        """
        if len(items) < limit and not has_more:
            return False
        logger.warning(
            "[%s] %s returned a full page (%d of limit %d); later pages are not counted",
            self.id.upper(), label, len(items), limit,
        )
        return True


def expires_at_from(expires_in: Optional[Any], now: Optional[datetime] = None) -> Optional[datetime]:
    if expires_in in (None, ""):
        return None
    return (now or datetime.now(timezone.utc)) + timedelta(seconds=int(expires_in))

