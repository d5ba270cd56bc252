"""Stripe adapter (the merchant's own Stripe account via Stripe Connect).

WHAT:
    Standard Connect OAuth with `read_only` scope, then a 7-day pull of
    balance transactions, charges, new customers and subscriptions.

WHY:
    Stripe is the revenue source of record for SaaS and service users and
    the only provider that can see subscription churn.

REFERENCES:
    - https://docs.stripe.com/connect/oauth-reference
    - https://docs.stripe.com/api/balance_transactions/list
    - https://docs.stripe.com/api/subscriptions/list
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from bizhealth.integrations.base import ProviderAdapter, monthly, step_score, step_score_at_most
from bizhealth.integrations.registry import register
from bizhealth.integrations.types import (
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

CONNECT_BASE = "https://connect.stripe.com"
API_BASE = "https://api.stripe.com/v1"
PAGE_LIMIT = 100  # Stripe list maximum; one page per list

REVENUE_BANDS = ((50000, 90), (15000, 75), (5000, 60), (1000, 40))
MARGIN_BANDS = ((70, 90), (50, 70), (30, 50))
CHURN_BANDS = ((2, 90), (5, 70), (10, 45))

# Monthly multipliers for recurring price intervals
INTERVAL_TO_MONTH = {"day": 30.0, "week": 4.33, "month": 1.0, "year": 1.0 / 12}


def _subscription_mrr(subscriptions: List[Dict[str, Any]]) -> float:
    mrr = 0.0
    for sub in subscriptions:
        for item in (sub.get("items") or {}).get("data") or []:
            price = item.get("price") or {}
            amount = price.get("unit_amount")
            interval = (price.get("recurring") or {}).get("interval")
            if not amount or interval not in INTERVAL_TO_MONTH:
                continue
            interval_count = (price.get("recurring") or {}).get("interval_count") or 1
            per_month = amount / 100 * INTERVAL_TO_MONTH[interval] / interval_count
            mrr += per_month * (item.get("quantity") or 1)
    return mrr


class StripeDataProvider(ProviderAdapter):
    id = "stripe-data"
    name = "Stripe"
    description = "Sync payment data, MRR, fees, and customer growth from your Stripe account."
    category = "payments"
    required_scopes = ("read_only",)
    pillars_affected = (Pillar.revenue, Pillar.profitability, Pillar.retention)
    window_days = 7
    supports_refresh = True

    def is_configured(self) -> bool:
        return bool(self.settings.STRIPE_CONNECT_CLIENT_ID and self.settings.STRIPE_SECRET_KEY)

    def authorization_url(self, user_id: str, extra: Optional[Mapping[str, Any]] = None) -> str:
        params = {
            "response_type": "code",
            "client_id": self.settings.STRIPE_CONNECT_CLIENT_ID or "",
            "scope": "read_only",
            "state": self.build_state(user_id),
            "redirect_uri": self.redirect_uri,
        }
        return f"{CONNECT_BASE}/oauth/authorize?{urlencode(params)}"

    async def exchange_code(
        self, code: str, user_id: str, extra: Optional[Mapping[str, Any]] = None
    ) -> OAuthResult:
        async with self.http_client() as client:
            response = await client.post(
                f"{CONNECT_BASE}/oauth/token",
                data={
                    "grant_type": "authorization_code",
                    "code": code,
                    "client_secret": self.settings.STRIPE_SECRET_KEY or "",
                },
            )
        self.raise_for_exchange(response)
        data = response.json()
        return OAuthResult(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token"),
            external_account_id=data.get("stripe_user_id"),
            scopes=data.get("scope", ""),
        )

    async def refresh(self, credentials: ConnectionCredentials) -> RefreshedToken:
        refresh_token = self.require_refresh_token(credentials)
        async with self.http_client() as client:
            response = await client.post(
                f"{CONNECT_BASE}/oauth/token",
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_secret": self.settings.STRIPE_SECRET_KEY or "",
                },
            )
        self.raise_for_refresh(response)
        data = response.json()
        return RefreshedToken(access_token=data["access_token"], refresh_token=data.get("refresh_token"))

    async def pull(self, credentials: ConnectionCredentials) -> PulledData:
        start, end = self.window()
        gte = int(start.timestamp())
        headers = {"Authorization": f"Bearer {credentials.access_token}"}
        window = {"created[gte]": gte, "limit": PAGE_LIMIT}

        async with self.http_client(headers=headers) as client:
            txns, charges, customers, active_subs, cancelled_subs = await asyncio.gather(
                self.fetch_json(client, "GET", f"{API_BASE}/balance_transactions", label="balance transactions",
                                primary=True, params=window),
                self.fetch_json(client, "GET", f"{API_BASE}/charges", label="charges", params=window),
                self.fetch_json(client, "GET", f"{API_BASE}/customers", label="customers", params=window),
                self.fetch_json(client, "GET", f"{API_BASE}/subscriptions", label="active subscriptions",
                                params={"status": "active", "limit": PAGE_LIMIT}),
                self.fetch_json(client, "GET", f"{API_BASE}/subscriptions", label="cancelled subscriptions",
                                params={"status": "canceled", "limit": PAGE_LIMIT}),
            )

        for label, page in (
            ("balance transactions", txns),
            ("charges", charges),
            ("customers", customers),
            ("active subscriptions", active_subs),
            ("cancelled subscriptions", cancelled_subs),
        ):
            if page is not None:
                self.warn_if_truncated(page.get("data") or [], PAGE_LIMIT, label, has_more=bool(page.get("has_more")))

        gross = fees = net = refund_amount = 0.0
        refund_count = 0
        for txn in (txns or {}).get("data") or []:
            kind = txn.get("type")
            if kind == "charge":
                gross += (txn.get("amount") or 0) / 100
                fees += (txn.get("fee") or 0) / 100
                net += (txn.get("net") or 0) / 100
            elif kind == "refund":
                refund_amount += abs(txn.get("amount") or 0) / 100
                refund_count += 1

        metrics: Dict[str, Optional[float]] = {
            "total_revenue": gross,
            "gross_revenue": gross,
            "fees": fees,
            "refunds": refund_amount,
            "net_revenue": net,
            "gross_margin": (gross - fees - refund_amount) / gross * 100 if gross > 0 else None,
        }

        charge_count = 0
        if charges is not None:
            succeeded = [c for c in charges.get("data") or [] if c.get("status") == "succeeded"]
            charge_count = len(succeeded)
            customer_ids = {str(c["customer"]) for c in succeeded if c.get("customer")}
            metrics["order_count"] = float(charge_count)
            metrics["active_customers"] = float(len(customer_ids))
            if charge_count:
                metrics["average_order_value"] = gross / charge_count
                metrics["refund_rate"] = refund_count / charge_count * 100

        if customers is not None:
            metrics["new_customers"] = float(len(customers.get("data") or []))

        if active_subs is not None and cancelled_subs is not None:
            active = active_subs.get("data") or []
            cancelled = [
                s for s in cancelled_subs.get("data") or []
                if s.get("canceled_at") and s["canceled_at"] >= gte
            ]
            metrics["recurring_revenue"] = _subscription_mrr(active)
            metrics["cancelled_subscriptions"] = float(len(cancelled))
            relevant = len(active) + len(cancelled)
            if relevant:
                metrics["churn_rate"] = len(cancelled) / relevant * 100

        logger.info("[STRIPE] Pulled %d transactions for %s", len((txns or {}).get("data") or []),
                    credentials.external_account_id)
        return PulledData(
            provider_id=self.id,
            pulled_at=end,
            period_start=start,
            period_end=end,
            raw={
                "transactions": len((txns or {}).get("data") or []),
                "charges": charge_count,
                "active_subscriptions": len((active_subs or {}).get("data") or []),
            },
            metrics=PulledMetrics(**metrics),
        )

    def map_to_pillars(self, pulled: PulledData, current_profile: ProfileMetrics) -> PillarMetrics:
        m = pulled.metrics
        result: PillarMetrics = {}

        if m.gross_revenue is not None:
            revenue_monthly = monthly(m.gross_revenue, pulled.period_days)
            changes = [f"Revenue: ~${revenue_monthly:,.0f}/mo from Stripe charges"]
            if m.recurring_revenue:
                changes.append(f"MRR: ${m.recurring_revenue:,.0f}")
            result[Pillar.revenue] = PillarMetricResult(
                score=step_score(revenue_monthly, REVENUE_BANDS, 30),
                metrics={
                    "monthly_revenue": revenue_monthly,
                    "period_revenue": m.gross_revenue,
                    "mrr": m.recurring_revenue,
                    "avg_transaction": m.average_order_value,
                },
                changes=changes,
            )

        if m.gross_margin is not None:
            result[Pillar.profitability] = PillarMetricResult(
                score=step_score(m.gross_margin, MARGIN_BANDS, 25),
                metrics={"gross_margin": m.gross_margin, "fees": m.fees, "refunds": m.refunds, "net_revenue": m.net_revenue},
                changes=[f"Stripe margin: {m.gross_margin:.1f}% (after fees & refunds)"],
            )

        if m.churn_rate is not None:
            cancelled = int(m.cancelled_subscriptions or 0)
            result[Pillar.retention] = PillarMetricResult(
                score=step_score_at_most(m.churn_rate, CHURN_BANDS, 15),
                metrics={
                    "churn_rate": m.churn_rate,
                    "active_customers": m.active_customers,
                    "cancelled_subscriptions": m.cancelled_subscriptions,
                },
                changes=[f"Churn rate: {m.churn_rate:.1f}% ({cancelled} cancelled this period)"],
            )

        return result

    async def disconnect(self, credentials: ConnectionCredentials) -> None:
        if not credentials.external_account_id or not self.settings.STRIPE_SECRET_KEY:
            return
        async with self.http_client() as client:
            response = await client.post(
                f"{CONNECT_BASE}/oauth/deauthorize",
                data={
                    "client_id": self.settings.STRIPE_CONNECT_CLIENT_ID or "",
                    "stripe_user_id": credentials.external_account_id,
                },
                auth=(self.settings.STRIPE_SECRET_KEY, ""),
            )
        if not response.is_success:
            logger.warning("[STRIPE] Deauthorize failed for %s (%s)", credentials.external_account_id, response.status_code)


register(StripeDataProvider())
