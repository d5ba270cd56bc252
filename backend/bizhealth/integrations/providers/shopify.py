"""Shopify adapter.

WHAT:
    OAuth against the merchant's own `*.myshopify.com` domain, then a 7-day
    pull of orders, new customers, repeat-customer counts and (when the plan
    allows ShopifyQL) sessions and conversion.

WHY:
    Shopify is the primary revenue source for e-commerce users and feeds
    four or five pillars from one connection.

REFERENCES:
    - https://shopify.dev/docs/apps/build/authentication-authorization/access-tokens/authorization-code-grant
    - https://shopify.dev/docs/api/admin-rest (orders, customers)
    - Shopify access tokens do not expire; there is no refresh grant.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode, urlparse

from bizhealth.exceptions import AuthExchangeError, PullError
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
)

logger = logging.getLogger(__name__)

SHOPIFY_SCOPES = ("read_orders", "read_customers", "read_analytics", "read_products")
PAGE_LIMIT = 250  # Admin REST maximum; one page per list
SHOP_DOMAIN_PATTERN = re.compile(r"^[a-z0-9][a-z0-9\-]{1,98}[a-z0-9]\.myshopify\.com$")

SESSIONS_QUERY = """
{
  shopifyqlQuery(query: "FROM sessions SINCE -7d UNTIL today SHOW sum(sessions) AS total_sessions, sum(convertedSessions) AS converted_sessions") {
    tableData { rowData }
  }
}
"""

REVENUE_BANDS = ((50000, 90), (15000, 75), (5000, 60), (1000, 40))
MARGIN_BANDS = ((70, 90), (50, 70), (30, 50))
REPEAT_BANDS = ((40, 85), (25, 70), (15, 50))
CONVERSION_BANDS = ((5, 90), (3, 75), (1, 50))
NEW_CUSTOMER_BANDS = ((100, 80), (30, 60), (10, 40))
FULFILLMENT_HOUR_BANDS = ((24, 90), (72, 75), (168, 55))


def normalize_shop_domain(shop_input: str) -> str:
    """Normalize shop domain to myshopify.com format.

    Examples:
        'myshop' -> 'myshop.myshopify.com'
        'myshop.myshopify.com' -> 'myshop.myshopify.com'
        'https://myshop.myshopify.com/admin' -> 'myshop.myshopify.com'
    """
    shop = shop_input.strip().lower()

    if shop.startswith("http://") or shop.startswith("https://"):
        parsed = urlparse(shop)
        shop = parsed.netloc or parsed.path.split("/")[0]

    shop = shop.split("/")[0]

    if not shop.endswith(".myshopify.com"):
        shop = f"{shop}.myshopify.com"

    return shop


def validate_shop_domain(shop_domain: str) -> bool:
    """Store name: alphanumeric and hyphens, 3-100 chars, on myshopify.com."""
    return bool(SHOP_DOMAIN_PATTERN.match(shop_domain.lower()))


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _money(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


class ShopifyProvider(ProviderAdapter):
    id = "shopify"
    name = "Shopify"
    description = "Sync revenue, orders, customers, and conversion data from your Shopify store."
    category = "ecommerce"
    required_scopes = SHOPIFY_SCOPES
    pillars_affected = (Pillar.revenue, Pillar.profitability, Pillar.retention, Pillar.acquisition, Pillar.operations)
    window_days = 7

    def is_configured(self) -> bool:
        return bool(self.settings.SHOPIFY_CLIENT_ID and self.settings.SHOPIFY_CLIENT_SECRET)

    def _shop_from(self, extra: Optional[Mapping[str, Any]]) -> str:
        raw = (extra or {}).get("store_domain") or (extra or {}).get("shop")
        if not raw:
            raise ValueError("store_domain is required for Shopify OAuth")
        shop = normalize_shop_domain(str(raw))
        if not validate_shop_domain(shop):
            raise ValueError(f"Invalid Shopify store domain: {shop}")
        return shop

    def authorization_url(self, user_id: str, extra: Optional[Mapping[str, Any]] = None) -> str:
        shop = self._shop_from(extra)
        state = self.build_state(user_id, {"store_domain": shop})
        params = {
            "client_id": self.settings.SHOPIFY_CLIENT_ID or "",
            "scope": ",".join(SHOPIFY_SCOPES),
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        return f"https://{shop}/admin/oauth/authorize?{urlencode(params)}"

    async def exchange_code(
        self, code: str, user_id: str, extra: Optional[Mapping[str, Any]] = None
    ) -> OAuthResult:
        extra = extra or {}
        expected = extra.get("store_domain")
        shop = normalize_shop_domain(str(extra.get("shop") or expected or ""))
        if not validate_shop_domain(shop):
            raise AuthExchangeError("Invalid Shopify store domain in callback", provider_id=self.id, stage="exchange")
        if expected and normalize_shop_domain(str(expected)) != shop:
            logger.warning("[SHOPIFY] Shop mismatch on callback: state=%s callback=%s", expected, shop)
            raise AuthExchangeError("Shop mismatch between authorization and callback", provider_id=self.id, stage="exchange")

        async with self.http_client() as client:
            response = await client.post(
                f"https://{shop}/admin/oauth/access_token",
                json={
                    "client_id": self.settings.SHOPIFY_CLIENT_ID,
                    "client_secret": self.settings.SHOPIFY_CLIENT_SECRET,
                    "code": code,
                },
            )
        self.raise_for_exchange(response)
        data = response.json()

        logger.info("[SHOPIFY] Token exchange succeeded for %s", shop)
        return OAuthResult(
            access_token=data.get("access_token", ""),
            scopes=data.get("scope", ""),
            external_account_id=shop,
            extra={"store_domain": shop},
        )

    async def pull(self, credentials: ConnectionCredentials) -> PulledData:
        shop = credentials.external_account_id or credentials.extra.get("store_domain")
        if not shop:
            raise PullError("No store domain configured", provider_id=self.id, stage="pulling")

        start, end = self.window()
        base_url = f"https://{shop}/admin/api/{self.settings.SHOPIFY_API_VERSION}"
        headers = {
            "X-Shopify-Access-Token": credentials.access_token,
            "Content-Type": "application/json",
        }
        since = start.isoformat()

        async with self.http_client(headers=headers) as client:
            orders_data, customers_data, repeat_data, total_data, sessions_data = await asyncio.gather(
                self.fetch_json(
                    client, "GET", f"{base_url}/orders.json", label="orders", primary=True,
                    params={"status": "any", "created_at_min": since, "created_at_max": end.isoformat(), "limit": PAGE_LIMIT},
                ),
                self.fetch_json(
                    client, "GET", f"{base_url}/customers.json", label="new customers",
                    params={"created_at_min": since, "limit": PAGE_LIMIT},
                ),
                self.fetch_json(
                    client, "GET", f"{base_url}/customers/count.json", label="repeat customers",
                    params={"orders_count_min": 2},
                ),
                self.fetch_json(client, "GET", f"{base_url}/customers/count.json", label="customer count"),
                self.fetch_json(
                    client, "POST", f"{base_url}/graphql.json", label="sessions", json={"query": SESSIONS_QUERY},
                ),
            )

        orders: List[Dict[str, Any]] = (orders_data or {}).get("orders") or []
        self.warn_if_truncated(orders, PAGE_LIMIT, "orders")
        metrics = self._order_metrics(orders)

        new_customers: Optional[int] = None
        if customers_data is not None:
            new_customer_rows = customers_data.get("customers") or []
            self.warn_if_truncated(new_customer_rows, PAGE_LIMIT, "new customers")
            new_customers = len(new_customer_rows)

        repeat_rate: Optional[float] = None
        if repeat_data is not None and total_data is not None:
            total = total_data.get("count") or 0
            if total > 0:
                repeat_rate = (repeat_data.get("count") or 0) / total * 100

        sessions, conversion = self._sessions(sessions_data)

        logger.info("[SHOPIFY] Pulled %d orders for %s", len(orders), shop)
        return PulledData(
            provider_id=self.id,
            pulled_at=end,
            period_start=start,
            period_end=end,
            raw={"orders": len(orders), "new_customers": new_customers, "sessions": sessions},
            metrics=PulledMetrics(
                new_customers=float(new_customers) if new_customers is not None else None,
                repeat_customer_rate=repeat_rate,
                sessions=sessions,
                conversion_rate=conversion,
                **metrics,
            ),
        )

    def _order_metrics(self, orders: List[Dict[str, Any]]) -> Dict[str, Optional[float]]:
        if not orders:
            # A quiet week is no opinion on revenue, not zero revenue
            return {}

        total_revenue = 0.0
        total_refunds = 0.0
        refunded_orders = 0
        fulfilled = 0
        fulfillment_hours = 0.0
        pending = 0

        for order in orders:
            total_revenue += _money(order.get("total_price"))

            refunds = order.get("refunds") or []
            if refunds:
                refunded_orders += 1
                for refund in refunds:
                    for item in refund.get("refund_line_items") or []:
                        total_refunds += _money(item.get("subtotal"))

            status = order.get("fulfillment_status")
            fulfillments = order.get("fulfillments") or []
            if status == "fulfilled" and fulfillments:
                created = _parse_ts(order.get("created_at"))
                shipped = _parse_ts(fulfillments[0].get("created_at"))
                if created and shipped:
                    fulfillment_hours += (shipped - created).total_seconds() / 3600
                    fulfilled += 1
            if status is None or status == "partial":
                pending += 1

        count = len(orders)
        return {
            "total_revenue": total_revenue,
            "order_count": float(count),
            "average_order_value": total_revenue / count,
            "gross_revenue": total_revenue,
            "refunds": total_refunds,
            "net_revenue": total_revenue - total_refunds,
            "gross_margin": (total_revenue - total_refunds) / total_revenue * 100 if total_revenue > 0 else None,
            "fulfillment_hours": fulfillment_hours / fulfilled if fulfilled else None,
            "refund_rate": refunded_orders / count * 100,
            "pending_orders": float(pending),
        }

    def _sessions(self, data: Optional[Dict[str, Any]]):
        if not data:
            return None, None
        rows = (((data.get("data") or {}).get("shopifyqlQuery") or {}).get("tableData") or {}).get("rowData")
        if not rows:
            return None, None
        try:
            sessions = float(rows[0][0])
            converted = float(rows[0][1] or 0)
        except (TypeError, ValueError, IndexError):
            return None, None
        if sessions <= 0:
            return None, None
        return sessions, converted / sessions * 100

    def map_to_pillars(self, pulled: PulledData, current_profile: ProfileMetrics) -> PillarMetrics:
        m = pulled.metrics
        days = pulled.period_days
        result: PillarMetrics = {}

        if m.total_revenue is not None:
            revenue_monthly = monthly(m.total_revenue, days)
            result[Pillar.revenue] = PillarMetricResult(
                score=step_score(revenue_monthly, REVENUE_BANDS, 20),
                metrics={
                    "monthly_revenue": revenue_monthly,
                    "period_revenue": m.total_revenue,
                    "order_count": m.order_count,
                    "aov": m.average_order_value,
                },
                changes=[f"Revenue updated to ~${revenue_monthly:,.0f}/mo from Shopify orders"],
            )

        if m.gross_margin is not None:
            result[Pillar.profitability] = PillarMetricResult(
                score=step_score(m.gross_margin, MARGIN_BANDS, 25),
                metrics={"gross_margin": m.gross_margin, "refunds": m.refunds, "net_revenue": m.net_revenue},
                changes=[f"Gross margin at {m.gross_margin:.1f}% after refunds"],
            )

        if m.repeat_customer_rate is not None:
            result[Pillar.retention] = PillarMetricResult(
                score=step_score(m.repeat_customer_rate, REPEAT_BANDS, 30),
                metrics={"repeat_customer_rate": m.repeat_customer_rate},
                changes=[f"Repeat customer rate: {m.repeat_customer_rate:.1f}%"],
            )

        if m.new_customers is not None:
            monthly_new = monthly(m.new_customers, days)
            if m.conversion_rate is not None:
                score = step_score(m.conversion_rate, CONVERSION_BANDS, 25)
            else:
                score = step_score(monthly_new, NEW_CUSTOMER_BANDS, 25)
            result[Pillar.acquisition] = PillarMetricResult(
                score=score,
                metrics={"new_customers": monthly_new, "conversion_rate": m.conversion_rate, "sessions": m.sessions},
                changes=[f"{monthly_new:.0f} new customers/mo from Shopify"],
            )

        if m.fulfillment_hours is not None or m.refund_rate is not None:
            ops_score = 70
            ops_changes: List[str] = []
            if m.fulfillment_hours is not None:
                ops_score = step_score_at_most(m.fulfillment_hours, FULFILLMENT_HOUR_BANDS, 30)
                ops_changes.append(f"Avg fulfillment: {m.fulfillment_hours:.0f}h")
            if m.refund_rate is not None and m.refund_rate > 3:
                ops_score = min(ops_score, 50)
                ops_changes.append(f"Refund rate: {m.refund_rate:.1f}%")
            result[Pillar.operations] = PillarMetricResult(
                score=ops_score,
                metrics={
                    "fulfillment_hours": m.fulfillment_hours,
                    "refund_rate": m.refund_rate,
                    "pending_orders": m.pending_orders,
                },
                changes=ops_changes,
            )

        return result


register(ShopifyProvider())
