"""
Tests for platform adapters against mocked platform APIs (httpx.MockTransport).
"""

import asyncio
import json
from datetime import date
from urllib.parse import parse_qs, urlparse

import httpx
import pytest

from insighthub.errors import AuthFailure, TransientNetworkFailure
from insighthub.platforms import get_adapter
from insighthub.platforms.base import DateRange, PlatformCredential
from insighthub.platforms.google_ads import GoogleAdsAdapter
from insighthub.platforms.google_analytics import GoogleAnalyticsAdapter
from insighthub.platforms.linkedin_ads import LinkedInAdsAdapter
from insighthub.platforms.meta_ads import MetaAdsAdapter
from insighthub.errors import ValidationFailure

RANGE = DateRange(start=date(2026, 2, 1), end=date(2026, 2, 7))


def _http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _credential(platform: str, **metadata) -> PlatformCredential:
    return PlatformCredential(platform=platform, access_token="tok-123", connection_id="c-1", metadata=metadata)


# ── Google Analytics ──────────────────────────────────────────────────

def _ga_handler(request: httpx.Request) -> httpx.Response:
    assert request.headers["Authorization"] == "Bearer tok-123"
    url = str(request.url)
    if "accountSummaries" in url:
        return httpx.Response(200, json={
            "accountSummaries": [{
                "displayName": "Acme",
                "propertySummaries": [
                    {"property": "properties/111", "displayName": "Main site"},
                    {"property": "properties/222", "displayName": "Shop"},
                ],
            }],
        })
    if "111:runReport" in url:
        body = json.loads(request.content)
        assert body["dateRanges"] == [{"startDate": "2026-02-01", "endDate": "2026-02-07"}]
        return httpx.Response(200, json={
            "rows": [
                {"dimensionValues": [{"value": "organic"}], "metricValues": [{"value": "80"}, {"value": "200"}, {"value": "60"}]},
                {"dimensionValues": [{"value": "cpc"}], "metricValues": [{"value": "20"}, {"value": "40"}, {"value": "15"}]},
            ],
            "totals": [{"metricValues": [{"value": "100"}, {"value": "240"}, {"value": "75"}]}],
        })
    if "222:runReport" in url:
        return httpx.Response(200, json={
            "rows": [{"dimensionValues": [{"value": "referral"}], "metricValues": [{"value": "10"}, {"value": "30"}, {"value": "9"}]}],
        })
    return httpx.Response(404)


@pytest.mark.anyio
async def test_ga_selector_narrows_metrics_but_keeps_cumulative():
    adapter = GoogleAnalyticsAdapter("cid", "secret", http_client=_http(_ga_handler))
    result = await adapter.fetch_metrics(_credential("google-analytics"), RANGE, selector="properties/111")

    assert result.selected_id == "111"
    assert [e.id for e in result.entities] == ["111"]
    assert result.metrics.sessions == 100
    assert result.metrics.page_views == 240
    assert result.metrics.users == 75
    assert result.cumulative.sessions == 110
    assert result.top_source == "organic"


@pytest.mark.anyio
async def test_ga_without_selector_sums_every_property():
    adapter = GoogleAnalyticsAdapter("cid", "secret", http_client=_http(_ga_handler))
    result = await adapter.fetch_metrics(_credential("google-analytics"), RANGE)

    assert result.selected_id is None
    assert result.metrics == result.cumulative
    # Totals missing for property 222: summed from rows instead
    assert result.metrics.sessions == 110
    assert result.metrics.page_views == 270


@pytest.mark.anyio
async def test_ga_property_reports_run_concurrently():
    in_flight = 0
    peak = 0

    async def handler(request: httpx.Request) -> httpx.Response:
        nonlocal in_flight, peak
        if "runReport" not in str(request.url):
            return _ga_handler(request)
        in_flight += 1
        peak = max(peak, in_flight)
        await asyncio.sleep(0.05)
        in_flight -= 1
        return _ga_handler(request)

    adapter = GoogleAnalyticsAdapter("cid", "secret", http_client=_http(handler))
    result = await adapter.fetch_metrics(_credential("google-analytics"), RANGE)

    assert peak == 2
    assert [e.id for e in result.entities] == ["111", "222"]
    assert result.metrics.sessions == 110


@pytest.mark.anyio
async def test_no_properties_is_an_empty_result_not_an_error():
    adapter = GoogleAnalyticsAdapter(
        "cid", "secret",
        http_client=_http(lambda request: httpx.Response(200, json={})),
    )
    result = await adapter.fetch_metrics(_credential("google-analytics"), RANGE)

    assert result.is_empty
    assert result.metrics.sessions == 0
    assert result.cumulative.spend == 0.0


@pytest.mark.anyio
@pytest.mark.parametrize("status", [401, 403])
async def test_rejected_credential_raises_auth_failure(status):
    adapter = GoogleAnalyticsAdapter(
        "cid", "secret",
        http_client=_http(lambda request: httpx.Response(status, json={"error": "invalid_token"})),
    )
    with pytest.raises(AuthFailure) as exc:
        await adapter.fetch_metrics(_credential("google-analytics"), RANGE)
    assert "reconnect" in exc.value.message.lower()
    assert exc.value.platform == "google-analytics"


@pytest.mark.anyio
async def test_server_error_and_throttling_are_transient():
    adapter = GoogleAnalyticsAdapter("cid", "secret", http_client=_http(lambda r: httpx.Response(503)))
    with pytest.raises(TransientNetworkFailure) as exc:
        await adapter.discover(_credential("google-analytics"))
    assert exc.value.rate_limited is False

    adapter = GoogleAnalyticsAdapter("cid", "secret", http_client=_http(lambda r: httpx.Response(429)))
    with pytest.raises(TransientNetworkFailure) as exc:
        await adapter.discover(_credential("google-analytics"))
    assert exc.value.rate_limited is True


@pytest.mark.anyio
async def test_network_error_is_transient():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    adapter = GoogleAnalyticsAdapter("cid", "secret", http_client=_http(handler))
    with pytest.raises(TransientNetworkFailure):
        await adapter.fetch_metrics(_credential("google-analytics"), RANGE)


@pytest.mark.anyio
async def test_test_connection_reports_rejected_credentials():
    adapter = GoogleAnalyticsAdapter("cid", "secret", http_client=_http(lambda r: httpx.Response(401)))
    assert await adapter.test_connection(_credential("google-analytics")) is False

    adapter = GoogleAnalyticsAdapter("cid", "secret", http_client=_http(_ga_handler))
    assert await adapter.test_connection(_credential("google-analytics")) is True


# ── OAuth ─────────────────────────────────────────────────────────────

def test_authorization_url_carries_offline_consent_and_state():
    adapter = GoogleAnalyticsAdapter("cid", "secret")
    url = adapter.authorization_url("state-abc", "http://localhost:8000/api/platforms/google-analytics/callback")
    query = parse_qs(urlparse(url).query)

    assert url.startswith("https://accounts.google.com/o/oauth2/v2/auth?")
    assert query["state"] == ["state-abc"]
    assert query["access_type"] == ["offline"]
    assert query["prompt"] == ["consent"]
    assert "https://www.googleapis.com/auth/analytics.readonly" in query["scope"][0].split(" ")


@pytest.mark.anyio
async def test_refresh_keeps_existing_refresh_token_when_omitted():
    def handler(request):
        form = parse_qs(request.content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-1"]
        return httpx.Response(200, json={"access_token": "new-access", "expires_in": 3599})

    adapter = GoogleAnalyticsAdapter("cid", "secret", http_client=_http(handler))
    tokens = await adapter.refresh_access_token("refresh-1")

    assert tokens.access_token == "new-access"
    assert tokens.refresh_token == "refresh-1"
    assert tokens.expires_in == 3599


@pytest.mark.anyio
async def test_token_endpoint_rejection_is_auth_failure():
    adapter = GoogleAnalyticsAdapter(
        "cid", "secret",
        http_client=_http(lambda r: httpx.Response(400, json={"error": "invalid_grant"})),
    )
    with pytest.raises(AuthFailure):
        await adapter.exchange_code("bad-code", "http://localhost/cb")


@pytest.mark.anyio
async def test_meta_code_exchange_upgrades_to_long_lived_token():
    calls = []

    def handler(request):
        params = dict(request.url.params)
        calls.append(params)
        if "code" in params:
            return httpx.Response(200, json={"access_token": "short", "expires_in": 3600})
        assert params["grant_type"] == "fb_exchange_token"
        assert params["fb_exchange_token"] == "short"
        return httpx.Response(200, json={"access_token": "long"})

    adapter = MetaAdsAdapter("app", "secret", http_client=_http(handler))
    tokens = await adapter.exchange_code("code-1", "http://localhost/cb")

    assert len(calls) == 2
    assert tokens.access_token == "long"
    assert tokens.refresh_token is None
    assert tokens.expires_in == 60 * 24 * 3600


# ── Ad platforms ──────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_google_ads_without_developer_token_skips_the_api():
    def handler(request):
        raise AssertionError("no request expected without a developer token")

    adapter = GoogleAdsAdapter("cid", "secret", http_client=_http(handler), developer_token="")
    result = await adapter.fetch_metrics(_credential("google-ads"), RANGE)

    assert result.is_empty
    assert result.notes == {"developer_token_status": "missing"}


@pytest.mark.anyio
async def test_google_ads_converts_cost_micros():
    def handler(request):
        assert request.headers["developer-token"] == "dev-token"
        url = str(request.url)
        if "listAccessibleCustomers" in url:
            return httpx.Response(200, json={"resourceNames": ["customers/5550001111"]})
        return httpx.Response(200, json=[{
            "results": [{
                "campaign": {"id": "9", "name": "Brand"},
                "metrics": {"impressions": "1000", "clicks": "50", "costMicros": "12345678", "conversions": 2.5},
            }],
        }])

    adapter = GoogleAdsAdapter("cid", "secret", http_client=_http(handler), developer_token="dev-token")
    result = await adapter.fetch_metrics(_credential("google-ads"), RANGE, selector="5550001111")

    assert result.metrics.spend == 12.35
    assert result.metrics.impressions == 1000
    assert result.metrics.conversions == 2.5
    assert result.entities[0].parent_id == "5550001111"


def _meta_handler(request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    if "me/adaccounts" in url:
        return httpx.Response(200, json={"data": [
            {"id": "act_1", "name": "Brand", "currency": "USD"},
            {"id": "act_2", "name": "Performance", "currency": "USD"},
        ]})
    if "act_1/insights" in url:
        return httpx.Response(200, json={"data": [
            {"campaign_id": "11", "campaign_name": "Awareness", "impressions": "5000", "clicks": "40", "spend": "25.50"},
        ]})
    if "act_2/insights" in url:
        return httpx.Response(200, json={"data": [{
            "campaign_id": "21",
            "campaign_name": "Retargeting",
            "impressions": "2000",
            "clicks": "80",
            "spend": "40.00",
            "actions": [
                {"action_type": "purchase", "value": "3"},
                {"action_type": "link_click", "value": "80"},
            ],
        }]})
    return httpx.Response(404)


@pytest.mark.anyio
async def test_meta_account_selector_picks_that_accounts_campaigns():
    adapter = MetaAdsAdapter("app", "secret", http_client=_http(_meta_handler))
    result = await adapter.fetch_metrics(_credential("meta-ads"), RANGE, selector="act_2")

    assert [e.id for e in result.entities] == ["21"]
    assert result.metrics.spend == 40.0
    assert result.metrics.conversions == 3.0
    assert result.cumulative.spend == 65.5
    assert result.cumulative.impressions == 7000


@pytest.mark.anyio
async def test_linkedin_campaign_pivot_is_parsed():
    def handler(request):
        assert request.headers["LinkedIn-Version"]
        url = str(request.url)
        if "adAccounts" in url:
            return httpx.Response(200, json={"elements": [{"id": 507, "name": "Acme B2B"}]})
        assert "pivot=CAMPAIGN" in url
        return httpx.Response(200, json={"elements": [{
            "pivotValues": ["urn:li:sponsoredCampaign:7001"],
            "impressions": 900,
            "clicks": 12,
            "costInLocalCurrency": "30.10",
            "externalWebsiteConversions": 1,
        }]})

    adapter = LinkedInAdsAdapter("cid", "secret", http_client=_http(handler))
    result = await adapter.fetch_metrics(_credential("linkedin-ads"), RANGE)

    assert result.entities[0].id == "7001"
    assert result.entities[0].parent_id == "507"
    assert result.metrics.clicks == 12
    assert result.metrics.spend == 30.1


def test_unknown_platform_is_rejected():
    with pytest.raises(ValidationFailure):
        get_adapter("myspace-ads")
