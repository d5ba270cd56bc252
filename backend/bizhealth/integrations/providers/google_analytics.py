"""Google Analytics 4 adapter.

WHAT:
    Google OAuth (offline access) and four GA4 Data API reports: a 30-day
    traffic overview, conversions, the channel breakdown and a 12-week
    weekly sessions trend.
    On connect the Admin API lists the GA4 properties the account can read;
    a single property is selected automatically, otherwise the user picks one.

WHY:
    Analytics is the acquisition source for most businesses and the only
    provider that sees traffic growth, which stands in as a revenue leading
    indicator.

REFERENCES:
    - https://developers.google.com/analytics/devguides/reporting/data/v1/rest/v1beta/properties/runReport
    - https://developers.google.com/analytics/devguides/config/admin/v1/rest/v1beta/accountSummaries/list
    - https://developers.google.com/identity/protocols/oauth2/web-server
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple
from urllib.parse import urlencode

import httpx

from bizhealth.exceptions import PullError
from bizhealth.integrations.base import ProviderAdapter, expires_at_from, monthly, step_score
from bizhealth.integrations.registry import register
from bizhealth.integrations.types import (
    ChannelStat,
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

logger = logging.getLogger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
DATA_API = "https://analyticsdata.googleapis.com/v1beta"
ADMIN_API = "https://analyticsadmin.googleapis.com/v1beta"
ANALYTICS_SCOPE = "https://www.googleapis.com/auth/analytics.readonly"

TREND_WEEKS = 12
ADMIN_PAGE_SIZE = 200
MANUAL_PROPERTY_HINT = "You can enter your GA4 Property ID manually."

TRAFFIC_BANDS = ((50000, 90), (10000, 70), (2000, 50))
CONVERSION_BOOST = ((5, 15), (3, 10), (1, 5))
GROWTH_BANDS = ((20, 85), (5, 70), (0, 55), (-10, 40))


def _metric(row: Optional[Dict[str, Any]], index: int) -> float:
    try:
        return float(((row or {}).get("metricValues") or [])[index].get("value") or 0)
    except (IndexError, TypeError, ValueError, AttributeError):
        return 0.0


def _dimension(row: Dict[str, Any], index: int = 0) -> str:
    try:
        return str(row["dimensionValues"][index]["value"])
    except (KeyError, IndexError, TypeError):
        return ""


def traffic_growth(weekly_sessions: List[float]) -> Optional[float]:
    """Last four weeks' average vs the weeks before, in percent.

    Needs at least four weeks; with no earlier weeks the growth is 0.
    """
    if len(weekly_sessions) < 4:
        return None
    recent = weekly_sessions[-4:]
    earlier = weekly_sessions[:-4]
    recent_avg = sum(recent) / len(recent)
    earlier_avg = sum(earlier) / len(earlier) if earlier else recent_avg
    if earlier_avg <= 0:
        return 0.0
    return (recent_avg - earlier_avg) / earlier_avg * 100


def _admin_error_message(response: httpx.Response) -> str:
    if response.status_code == 403 and "has not been used in project" in response.text:
        return (
            "Google Analytics Admin API is not enabled in your Google Cloud project. "
            f"Enable it, then reconnect. {MANUAL_PROPERTY_HINT}"
        )
    if response.status_code == 403:
        return f"Admin API access denied (403). {MANUAL_PROPERTY_HINT}"
    return f"Failed to list GA4 properties (HTTP {response.status_code}). {MANUAL_PROPERTY_HINT}"


class GoogleAnalyticsProvider(ProviderAdapter):
    id = "google-analytics"
    name = "Google Analytics"
    description = "Sync traffic, conversion rates, and acquisition channels."
    category = "analytics"
    required_scopes = (ANALYTICS_SCOPE,)
    pillars_affected = (Pillar.acquisition, Pillar.revenue)
    window_days = 30
    supports_refresh = True

    def is_configured(self) -> bool:
        return bool(self.settings.GOOGLE_CLIENT_ID and self.settings.GOOGLE_CLIENT_SECRET)

    def authorization_url(self, user_id: str, extra: Optional[Mapping[str, Any]] = None) -> str:
        params = {
            "client_id": self.settings.GOOGLE_CLIENT_ID or "",
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": ANALYTICS_SCOPE,
            "access_type": "offline",
            "prompt": "consent",
            "state": self.build_state(user_id),
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, user_id: str, extra: Optional[Mapping[str, Any]] = None
    ) -> OAuthResult:
        async with self.http_client() as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_id": self.settings.GOOGLE_CLIENT_ID or "",
                    "client_secret": self.settings.GOOGLE_CLIENT_SECRET or "",
                    "redirect_uri": self.redirect_uri,
                },
            )
        self.raise_for_exchange(response)
        data = response.json()
        access_token = data.get("access_token", "")

        properties: List[Dict[str, str]] = []
        admin_error: Optional[str] = None
        if access_token:
            properties, admin_error = await self.list_properties(access_token)

        property_id = (extra or {}).get("property_id")
        if not property_id and len(properties) == 1:
            property_id = properties[0]["id"]
            logger.info("[GA4] Auto-selected the only property %s for user %s", property_id, user_id)

        return OAuthResult(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at_from(data.get("expires_in")),
            external_account_id=str(property_id) if property_id else None,
            scopes=data.get("scope", ANALYTICS_SCOPE),
            extra={"properties": properties, "admin_api_error": admin_error},
        )

    async def list_properties(self, access_token: str) -> Tuple[List[Dict[str, str]], Optional[str]]:
        """GA4 properties the token can read, from Admin API account summaries.

        Returns the properties found and an error message when listing
        failed. Listing never fails the connect: the Admin API is a separate
        Google Cloud API that is often not enabled, and the property id can
        still be entered by hand.
        """
        properties: List[Dict[str, str]] = []
        page_token: Optional[str] = None
        headers = {"Authorization": f"Bearer {access_token}"}

        async with self.http_client(headers=headers) as client:
            while True:
                params: Dict[str, Any] = {"pageSize": ADMIN_PAGE_SIZE}
                if page_token:
                    params["pageToken"] = page_token
                try:
                    response = await client.get(f"{ADMIN_API}/accountSummaries", params=params)
                    data = response.json() if response.is_success else None
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning("[GA4] Admin API call failed: %s", exc)
                    return properties, f"Failed to fetch properties: {exc}. {MANUAL_PROPERTY_HINT}"

                if data is None:
                    logger.error("[GA4] Admin API failed (%s): %s", response.status_code, response.text[:500])
                    return properties, _admin_error_message(response)

                for account in data.get("accountSummaries") or []:
                    for summary in account.get("propertySummaries") or []:
                        property_id = str(summary.get("property") or "").replace("properties/", "")
                        if property_id:
                            properties.append({
                                "id": property_id,
                                "name": summary.get("displayName") or f"Property {property_id}",
                            })

                page_token = data.get("nextPageToken")
                if not page_token:
                    break

        logger.info("[GA4] Found %d GA4 properties", len(properties))
        return properties, None

    async def refresh(self, credentials: ConnectionCredentials) -> RefreshedToken:
        refresh_token = self.require_refresh_token(credentials)
        async with self.http_client() as client:
            response = await client.post(
                GOOGLE_TOKEN_URL,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self.settings.GOOGLE_CLIENT_ID or "",
                    "client_secret": self.settings.GOOGLE_CLIENT_SECRET or "",
                },
            )
        self.raise_for_refresh(response)
        data = response.json()
        # Google only rotates the refresh token occasionally
        return RefreshedToken(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at_from(data.get("expires_in")),
        )

    async def pull(self, credentials: ConnectionCredentials) -> PulledData:
        property_id = credentials.external_account_id
        if not property_id:
            raise PullError("No GA4 property selected", provider_id=self.id, stage="pulling")

        start, end = self.window()
        trend_start = end - timedelta(weeks=TREND_WEEKS)
        date_range = [{"startDate": start.date().isoformat(), "endDate": end.date().isoformat()}]
        url = f"{DATA_API}/properties/{property_id}:runReport"
        headers = {"Authorization": f"Bearer {credentials.access_token}"}

        async with self.http_client(headers=headers) as client:
            traffic, conversions, channels, trend = await asyncio.gather(
                self.fetch_json(client, "POST", url, label="traffic overview", primary=True, json={
                    "dateRanges": date_range,
                    "metrics": [{"name": "sessions"}, {"name": "totalUsers"}, {"name": "newUsers"},
                                {"name": "bounceRate"}, {"name": "averageSessionDuration"}],
                }),
                self.fetch_json(client, "POST", url, label="conversions", json={
                    "dateRanges": date_range,
                    "metrics": [{"name": "conversions"}, {"name": "userConversionRate"}],
                }),
                self.fetch_json(client, "POST", url, label="channels", json={
                    "dateRanges": date_range,
                    "dimensions": [{"name": "sessionDefaultChannelGroup"}],
                    "metrics": [{"name": "sessions"}, {"name": "totalUsers"}, {"name": "conversions"}],
                    "orderBys": [{"metric": {"metricName": "sessions"}, "desc": True}],
                    "limit": 10,
                }),
                self.fetch_json(client, "POST", url, label="weekly trend", json={
                    "dateRanges": [{"startDate": trend_start.date().isoformat(), "endDate": end.date().isoformat()}],
                    "dimensions": [{"name": "yearWeek"}],
                    "metrics": [{"name": "sessions"}, {"name": "totalUsers"}],
                }),
            )

        traffic_row = ((traffic or {}).get("rows") or [None])[0]
        sessions = _metric(traffic_row, 0)
        raw: Dict[str, Any] = {
            "sessions": sessions,
            "total_users": _metric(traffic_row, 1),
            "new_users": _metric(traffic_row, 2),
            "bounce_rate": _metric(traffic_row, 3),
            "avg_session_duration": _metric(traffic_row, 4),
        }
        metrics: Dict[str, Any] = {"sessions": sessions, "new_customers": raw["new_users"]}

        if conversions is not None:
            conv_row = (conversions.get("rows") or [None])[0]
            raw["conversions"] = _metric(conv_row, 0)
            # API reports a 0-1 fraction
            metrics["conversion_rate"] = _metric(conv_row, 1) * 100

        if channels is not None:
            stats = sorted(
                (ChannelStat(channel=_dimension(r) or "Unknown", sessions=_metric(r, 0)) for r in channels.get("rows") or []),
                key=lambda c: c.sessions,
                reverse=True,
            )
            metrics["top_channels"] = tuple(stats)

        if trend is not None:
            weeks = sorted(trend.get("rows") or [], key=_dimension)
            raw["weekly_trend"] = [{"week": _dimension(r), "sessions": _metric(r, 0)} for r in weeks]

        logger.info("[GA4] Pulled property %s (sessions=%.0f)", property_id, sessions)
        return PulledData(
            provider_id=self.id,
            pulled_at=end,
            period_start=start,
            period_end=end,
            raw=raw,
            metrics=PulledMetrics(**metrics),
        )

    def map_to_pillars(self, pulled: PulledData, current_profile: ProfileMetrics) -> PillarMetrics:
        m = pulled.metrics
        result: PillarMetrics = {}

        if m.sessions is not None:
            sessions_monthly = monthly(m.sessions, pulled.period_days)
            changes = [f"Traffic: {sessions_monthly:,.0f} sessions/month from GA"]
            score = step_score(sessions_monthly, TRAFFIC_BANDS, 30)

            if m.conversion_rate is not None:
                score += step_score(m.conversion_rate, CONVERSION_BOOST, 0)
                changes.append(f"Conversion rate: {m.conversion_rate:.1f}%")

            channels = list(m.top_channels or ())
            if len(channels) >= 3:
                total = sum(c.sessions for c in channels)
                top_share = channels[0].sessions / total if total > 0 else 1.0
                if top_share < 0.5:
                    score += 10
                elif top_share < 0.7:
                    score += 5
                changes.append(f"{len(channels)} acquisition channels (top: {channels[0].channel})")

            result[Pillar.acquisition] = PillarMetricResult(
                score=min(100, score),
                metrics={
                    "monthly_sessions": sessions_monthly,
                    "conversion_rate": m.conversion_rate,
                    "new_users": m.new_customers,
                    "top_channels": [{"channel": c.channel, "sessions": c.sessions} for c in channels[:5]],
                    "bounce_rate": pulled.raw.get("bounce_rate"),
                },
                changes=changes,
            )

        weekly = [float(w.get("sessions") or 0) for w in pulled.raw.get("weekly_trend") or []]
        growth = traffic_growth(weekly)
        if growth is not None:
            label = f"+{growth:.1f}%" if growth >= 0 else f"{growth:.1f}%"
            result[Pillar.revenue] = PillarMetricResult(
                score=step_score(growth, GROWTH_BANDS, 25),
                metrics={"traffic_growth_pct": growth, "weeks": len(weekly)},
                changes=[f"Traffic trend: {label} ({TREND_WEEKS}-week comparison)"],
            )

        return result

    async def disconnect(self, credentials: ConnectionCredentials) -> None:
        token = credentials.refresh_token or credentials.access_token
        async with self.http_client() as client:
            response = await client.post(GOOGLE_REVOKE_URL, data={"token": token})
        if not response.is_success:
            logger.warning("[GA4] Token revoke failed (%s)", response.status_code)


register(GoogleAnalyticsProvider())
