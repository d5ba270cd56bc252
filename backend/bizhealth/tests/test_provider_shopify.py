"""Shopify adapter: OAuth, pull degradation and pillar mapping."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from bizhealth.exceptions import AuthExchangeError, PullError
from bizhealth.integrations.providers.shopify import ShopifyProvider
from bizhealth.integrations.types import (
    ConnectionCredentials,
    Pillar,
    ProfileMetrics,
    PulledData,
    PulledMetrics,
)
from bizhealth.security import verify_oauth_state

ORDERS = [
    {
        "total_price": "100.00",
        "created_at": "2026-03-01T10:00:00Z",
        "fulfillment_status": "fulfilled",
        "fulfillments": [{"created_at": "2026-03-02T10:00:00Z"}],
        "refunds": [],
    },
    {
        "total_price": "300.00",
        "created_at": "2026-03-03T10:00:00Z",
        "fulfillment_status": None,
        "refunds": [{"refund_line_items": [{"subtotal": "40.00"}]}],
    },
]

SESSIONS = {"data": {"shopifyqlQuery": {"tableData": {"rowData": [["1000", "25"]]}}}}


def _credentials():
    return ConnectionCredentials(
        connection_id="conn-1",
        user_id="user-1",
        provider_id="shopify",
        access_token="shpat_test",
        external_account_id="acme.myshopify.com",
    )


def _provider(settings, handler):
    return ShopifyProvider(settings=settings, transport=httpx.MockTransport(handler))


def _store_handler(overrides=None):
    overrides = overrides or {}
    seen = []

    def handler(request):
        seen.append(request)
        path = request.url.path
        if path.endswith("/orders.json"):
            key = "orders"
            body = {"orders": ORDERS}
        elif path.endswith("/customers.json"):
            key = "customers"
            body = {"customers": [{"id": 1}, {"id": 2}, {"id": 3}]}
        elif path.endswith("/customers/count.json"):
            key = "repeat" if request.url.params.get("orders_count_min") else "count"
            body = {"count": 10 if key == "repeat" else 40}
        elif path.endswith("/graphql.json"):
            key = "sessions"
            body = SESSIONS
        else:
            return httpx.Response(404)
        if key in overrides:
            return httpx.Response(overrides[key], json={"errors": "nope"})
        return httpx.Response(200, json=body)

    handler.seen = seen
    return handler


def test_pull_aggregates_orders_customers_and_sessions(settings):
    handler = _store_handler()
    pulled = asyncio.run(_provider(settings, handler).pull(_credentials()))

    m = pulled.metrics
    assert m.total_revenue == 400.0
    assert m.order_count == 2
    assert m.average_order_value == 200.0
    assert m.refunds == 40.0
    assert m.net_revenue == 360.0
    assert m.gross_margin == pytest.approx(90.0)
    assert m.fulfillment_hours == pytest.approx(24.0)
    assert m.refund_rate == 50.0
    assert m.pending_orders == 1
    assert m.new_customers == 3
    assert m.repeat_customer_rate == pytest.approx(25.0)
    assert m.sessions == 1000.0
    assert m.conversion_rate == pytest.approx(2.5)
    assert all(r.headers["X-Shopify-Access-Token"] == "shpat_test" for r in handler.seen)
    assert all(r.method in ("GET", "POST") and r.url.host == "acme.myshopify.com" for r in handler.seen)


def test_secondary_failures_degrade_to_missing_metrics(settings):
    handler = _store_handler({"customers": 500, "sessions": 403, "repeat": 429})
    pulled = asyncio.run(_provider(settings, handler).pull(_credentials()))

    assert pulled.metrics.total_revenue == 400.0
    assert pulled.metrics.new_customers is None
    assert pulled.metrics.repeat_customer_rate is None
    assert pulled.metrics.sessions is None
    assert pulled.metrics.conversion_rate is None


def test_orders_failure_fails_the_pull(settings):
    handler = _store_handler({"orders": 401})

    with pytest.raises(PullError) as excinfo:
        asyncio.run(_provider(settings, handler).pull(_credentials()))

    assert excinfo.value.status_code == 401
    assert excinfo.value.stage == "pulling"


def test_full_orders_page_is_logged(settings, caplog):
    store = _store_handler()

    def handler(request):
        if request.url.path.endswith("/orders.json"):
            assert request.url.params["limit"] == "250"
            return httpx.Response(200, json={"orders": [ORDERS[0]] * 250})
        return store(request)

    with caplog.at_level(logging.WARNING, logger="bizhealth.integrations.base"):
        pulled = asyncio.run(_provider(settings, handler).pull(_credentials()))

    assert pulled.metrics.order_count == 250
    assert "[SHOPIFY] orders returned a full page (250 of limit 250)" in caplog.text
    assert "new customers returned a full page" not in caplog.text

def test_quiet_week_reports_no_revenue(settings):
    def handler(request):
        if request.url.path.endswith("/orders.json"):
            return httpx.Response(200, json={"orders": []})
        return httpx.Response(500)

    pulled = asyncio.run(_provider(settings, handler).pull(_credentials()))

    assert pulled.metrics.total_revenue is None
    assert Pillar.revenue not in ShopifyProvider(settings=settings).map_to_pillars(pulled, ProfileMetrics())


def _weekly(**metrics):
    end = datetime(2026, 3, 11, tzinfo=timezone.utc)
    return PulledData(
        provider_id="shopify",
        pulled_at=end,
        period_start=end - timedelta(days=7),
        period_end=end,
        metrics=PulledMetrics(**metrics),
    )


def test_map_to_pillars_scores_each_pillar(settings):
    pulled = _weekly(
        total_revenue=3500.0,
        order_count=70.0,
        average_order_value=50.0,
        gross_margin=90.0,
        repeat_customer_rate=25.0,
        new_customers=7.0,
        conversion_rate=2.5,
        fulfillment_hours=24.0,
        refund_rate=50.0,
    )

    result = ShopifyProvider(settings=settings).map_to_pillars(pulled, ProfileMetrics())

    # 3500/week extrapolates to 15000/month
    assert result[Pillar.revenue].score == 75
    assert result[Pillar.revenue].metrics["monthly_revenue"] == pytest.approx(15000.0)
    assert result[Pillar.profitability].score == 90
    assert result[Pillar.retention].score == 70
    assert result[Pillar.acquisition].score == 50
    # Fast fulfillment capped by the refund rate
    assert result[Pillar.operations].score == 50


def test_map_to_pillars_is_pure(settings):
    provider = ShopifyProvider(settings=settings)
    pulled = _weekly(total_revenue=800.0, new_customers=1.0)

    first = provider.map_to_pillars(pulled, ProfileMetrics(revenue_monthly=1.0))
    second = provider.map_to_pillars(pulled, ProfileMetrics(revenue_monthly=1.0))

    assert first == second
    assert first[Pillar.revenue].score == 40
    assert first[Pillar.acquisition].score == 25


def test_authorization_url_targets_normalized_shop(settings):
    url = ShopifyProvider(settings=settings).authorization_url("user-1", {"store_domain": "Acme-Store"})

    assert url.startswith("https://acme-store.myshopify.com/admin/oauth/authorize?")
    state = httpx.URL(url).params["state"]
    assert verify_oauth_state(state, "shopify").data == {"store_domain": "acme-store.myshopify.com"}


def test_authorization_url_rejects_bad_domain(settings):
    with pytest.raises(ValueError):
        ShopifyProvider(settings=settings).authorization_url("user-1", {"store_domain": "bad_domain!"})


def test_exchange_code_rejects_shop_mismatch(settings):
    provider = _provider(settings, lambda request: httpx.Response(500))

    with pytest.raises(AuthExchangeError, match="mismatch"):
        asyncio.run(
            provider.exchange_code("code", "user-1", {"shop": "evil.myshopify.com", "store_domain": "acme.myshopify.com"})
        )


def test_exchange_code_returns_shop_as_account(settings):
    def handler(request):
        assert request.url.path == "/admin/oauth/access_token"
        return httpx.Response(200, json={"access_token": "shpat_new", "scope": "read_orders"})

    result = asyncio.run(
        _provider(settings, handler).exchange_code(
            "code", "user-1", {"shop": "acme.myshopify.com", "store_domain": "acme.myshopify.com"}
        )
    )

    assert result.access_token == "shpat_new"
    assert result.external_account_id == "acme.myshopify.com"
    assert result.refresh_token is None
