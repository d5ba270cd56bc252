"""QuickBooks Online adapter.

WHAT:
    Intuit OAuth 2.0 (client credentials sent as HTTP basic auth), then a
    30-day pull of the Profit & Loss report, invoices and active customers.

WHY:
    Accounting data is the only reliable source for expenses, so this is
    what feeds the profitability pillar for most service businesses.

REFERENCES:
    - https://developer.intuit.com/app/developer/qbo/docs/develop/authentication-and-authorization/oauth-2.0
    - https://developer.intuit.com/app/developer/qbo/docs/api/accounting/report-entities/profitandloss
    - Access tokens last one hour; refresh tokens rotate on every refresh.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from bizhealth.exceptions import PullError
from bizhealth.integrations.base import ProviderAdapter, expires_at_from, pct, step_score
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

INTUIT_AUTH_URL = "https://appcenter.intuit.com/connect/oauth2"
INTUIT_TOKEN_URL = "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer"
INTUIT_REVOKE_URL = "https://developer.api.intuit.com/v2/oauth2/tokens/revoke"
API_BASES = {
    "production": "https://quickbooks.api.intuit.com/v3/company",
    "sandbox": "https://sandbox-quickbooks.api.intuit.com/v3/company",
}
ACCOUNTING_SCOPE = "com.intuit.quickbooks.accounting"
MINOR_VERSION = "75"

PROFIT_MARGIN_BANDS = ((70, 90), (50, 70), (30, 50), (10, 30))


def _float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def parse_profit_and_loss(report: Dict[str, Any]) -> Dict[str, float]:
    """Pull group totals out of a ProfitAndLoss report's summary rows."""
    income = expenses = net_income = 0.0
    for row in ((report.get("Rows") or {}).get("Row")) or []:
        summary = (row.get("Summary") or {}).get("ColData")
        if not summary or len(summary) < 2:
            continue
        value = _float(summary[1].get("value"))
        group = row.get("group")
        if group == "Income":
            income = value
        elif group in ("Expenses", "CostOfGoodsSold"):
            expenses += value
        elif group == "NetIncome":
            net_income = value
    return {"total_income": income, "total_expenses": expenses, "net_income": net_income}


class QuickBooksProvider(ProviderAdapter):
    id = "quickbooks"
    name = "QuickBooks"
    description = "Sync accounting data, profit & loss, margins, expenses, and invoices."
    category = "accounting"
    required_scopes = (ACCOUNTING_SCOPE,)
    pillars_affected = (Pillar.profitability, Pillar.operations)
    window_days = 30
    supports_refresh = True

    def is_configured(self) -> bool:
        return bool(self.settings.QUICKBOOKS_CLIENT_ID and self.settings.QUICKBOOKS_CLIENT_SECRET)

    @property
    def _client_auth(self):
        return (self.settings.QUICKBOOKS_CLIENT_ID or "", self.settings.QUICKBOOKS_CLIENT_SECRET or "")

    @property
    def _api_base(self) -> str:
        return API_BASES.get(self.settings.QUICKBOOKS_ENVIRONMENT, API_BASES["production"])

    def authorization_url(self, user_id: str, extra: Optional[Mapping[str, Any]] = None) -> str:
        params = {
            "client_id": self.settings.QUICKBOOKS_CLIENT_ID or "",
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": ACCOUNTING_SCOPE,
            "state": self.build_state(user_id),
        }
        return f"{INTUIT_AUTH_URL}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, user_id: str, extra: Optional[Mapping[str, Any]] = None
    ) -> OAuthResult:
        async with self.http_client() as client:
            response = await client.post(
                INTUIT_TOKEN_URL,
                data={"grant_type": "authorization_code", "code": code, "redirect_uri": self.redirect_uri},
                headers={"Accept": "application/json"},
                auth=self._client_auth,
            )
        self.raise_for_exchange(response)
        data = response.json()
        realm_id = (extra or {}).get("realmId")
        return OAuthResult(
            access_token=data.get("access_token", ""),
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at_from(data.get("expires_in")),
            external_account_id=str(realm_id) if realm_id else None,
            scopes=ACCOUNTING_SCOPE,
        )

    async def refresh(self, credentials: ConnectionCredentials) -> RefreshedToken:
        refresh_token = self.require_refresh_token(credentials)
        async with self.http_client() as client:
            response = await client.post(
                INTUIT_TOKEN_URL,
                data={"grant_type": "refresh_token", "refresh_token": refresh_token},
                headers={"Accept": "application/json"},
                auth=self._client_auth,
            )
        self.raise_for_refresh(response)
        data = response.json()
        return RefreshedToken(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_at_from(data.get("expires_in")),
        )

    async def pull(self, credentials: ConnectionCredentials) -> PulledData:
        realm_id = credentials.external_account_id
        if not realm_id:
            raise PullError("No QuickBooks company (realmId) on this connection", provider_id=self.id, stage="pulling")

        start, end = self.window()
        start_date = start.date().isoformat()
        end_date = end.date().isoformat()
        base_url = f"{self._api_base}/{realm_id}"
        headers = {"Authorization": f"Bearer {credentials.access_token}", "Accept": "application/json"}

        async with self.http_client(headers=headers) as client:
            report, invoices_data, customers_data = await asyncio.gather(
                self.fetch_json(
                    client, "GET", f"{base_url}/reports/ProfitAndLoss", label="profit and loss", primary=True,
                    params={"start_date": start_date, "end_date": end_date, "minorversion": MINOR_VERSION},
                ),
                self.fetch_json(
                    client, "GET", f"{base_url}/query", label="invoices",
                    params={
                        "query": f"SELECT * FROM Invoice WHERE TxnDate >= '{start_date}' MAXRESULTS 1000",
                        "minorversion": MINOR_VERSION,
                    },
                ),
                self.fetch_json(
                    client, "GET", f"{base_url}/query", label="customers",
                    params={"query": "SELECT COUNT(*) FROM Customer WHERE Active = true", "minorversion": MINOR_VERSION},
                ),
            )

        totals = parse_profit_and_loss(report or {})
        income = totals["total_income"]
        raw: Dict[str, Any] = dict(totals)

        metrics: Dict[str, Optional[float]] = {
            "total_revenue": income,
            "gross_revenue": income,
            "net_income": totals["net_income"],
            "gross_margin": pct(income - totals["total_expenses"], income),
        }

        if invoices_data is not None:
            invoices: List[Dict[str, Any]] = (invoices_data.get("QueryResponse") or {}).get("Invoice") or []
            overdue = 0
            for invoice in invoices:
                due = invoice.get("DueDate")
                if _float(invoice.get("Balance")) > 0 and due and due < end_date:
                    overdue += 1
            metrics["order_count"] = float(len(invoices))
            metrics["overdue_invoices"] = float(overdue)
            raw["invoice_count"] = len(invoices)
            raw["invoice_total"] = sum(_float(i.get("TotalAmt")) for i in invoices)

        if customers_data is not None:
            total_customers = (customers_data.get("QueryResponse") or {}).get("totalCount")
            if total_customers is not None:
                metrics["active_customers"] = float(total_customers)

        logger.info("[QUICKBOOKS] Pulled P&L for realm %s (income=%.2f)", realm_id, income)
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
        income = m.gross_revenue or 0.0
        expenses = float(pulled.raw.get("total_expenses") or 0.0)
        net_income = m.net_income or 0.0
        result: PillarMetrics = {}

        margin = m.gross_margin if m.gross_margin is not None else 0.0
        profit_score = step_score(margin, PROFIT_MARGIN_BANDS, 15)
        if net_income > 0 and profit_score < 95:
            profit_score += 5
        profit_changes = [f"Gross margin: {margin:.1f}% (${income:,.0f} income, ${expenses:,.0f} expenses)"]
        if net_income:
            profit_changes.append(f"Net income: ${net_income:,.0f} (last {pulled.period_days:.0f} days)")
        result[Pillar.profitability] = PillarMetricResult(
            score=profit_score,
            metrics={
                "gross_margin_pct": margin,
                "total_income": income,
                "total_expenses": expenses,
                "net_income": net_income,
            },
            changes=profit_changes,
        )

        if m.overdue_invoices is not None:
            invoice_count = int(m.order_count or 0)
            overdue = int(m.overdue_invoices)
            ratio = pct(overdue, invoice_count) or 0.0
            if overdue == 0:
                ops_score = 90
            elif ratio < 10:
                ops_score = 70
            elif ratio < 25:
                ops_score = 50
            else:
                ops_score = 30
            ops_changes = [f"Invoices: {invoice_count} total, {overdue} overdue ({ratio:.1f}%)"]
            if m.active_customers:
                ops_changes.append(f"Active customers: {m.active_customers:.0f}")
            result[Pillar.operations] = PillarMetricResult(
                score=ops_score,
                metrics={
                    "invoice_count": invoice_count,
                    "overdue_count": overdue,
                    "overdue_ratio": ratio,
                    "total_customers": m.active_customers,
                },
                changes=ops_changes,
            )

        return result

    async def disconnect(self, credentials: ConnectionCredentials) -> None:
        token = credentials.refresh_token or credentials.access_token
        if not token:
            return
        async with self.http_client() as client:
            response = await client.post(
                INTUIT_REVOKE_URL,
                json={"token": token},
                headers={"Accept": "application/json"},
                auth=self._client_auth,
            )
        if not response.is_success:
            logger.warning("[QUICKBOOKS] Token revoke failed for realm %s (%s)",
                           credentials.external_account_id, response.status_code)


register(QuickBooksProvider())
