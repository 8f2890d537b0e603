"""
Meta (Facebook/Instagram) Ads adapter — Graph API ad accounts and campaign-level insights.

Meta issues no refresh token. A short-lived code exchange is upgraded to a
~60 day token, and "refresh" re-exchanges the current token for a new one.
"""

import json
import logging
from typing import Optional

from insighthub.platforms.base import (
    DateRange, EntityMetrics, MetricSet, NormalizedResult, PlatformAdapter,
    PlatformCredential, TokenSet, build_result, to_float, to_int,
)

logger = logging.getLogger(__name__)

API_VERSION = "v18.0"
GRAPH_API = f"https://graph.facebook.com/{API_VERSION}"

CONVERSION_ACTIONS = {
    "purchase",
    "lead",
    "complete_registration",
    "offsite_conversion.fb_pixel_purchase",
    "offsite_conversion.fb_pixel_lead",
}


class MetaAdsAdapter(PlatformAdapter):
    platform = "meta-ads"
    display_name = "Meta Ads"
    authorize_url = f"https://www.facebook.com/{API_VERSION}/dialog/oauth"
    token_url = f"{GRAPH_API}/oauth/access_token"
    scopes = ["ads_read", "ads_management", "business_management"]
    scope_separator = ","
    default_expires_in = 60 * 24 * 3600
    refreshes_with_access_token = True

    @classmethod
    def from_settings(cls, settings, http_client=None):
        return cls(
            client_id=settings.meta_app_id,
            client_secret=settings.meta_app_secret,
            http_client=http_client,
        )

    # ── OAuth ────────────────────────────────────────────────────────

    async def _long_lived(self, token: str) -> TokenSet:
        data = await self._token_request(
            "GET",
            self.token_url,
            params={
                "grant_type": "fb_exchange_token",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "fb_exchange_token": token,
            },
        )
        return self._parse_token_response(data)

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        data = await self._token_request(
            "GET",
            self.token_url,
            params={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": redirect_uri,
                "code": code,
            },
        )
        short = self._parse_token_response(data)
        return await self._long_lived(short.access_token)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        # Called with the current access token (refreshes_with_access_token)
        return await self._long_lived(refresh_token)

    async def revoke_token(self, token: str) -> bool:
        response = await self._send("DELETE", f"{GRAPH_API}/me/permissions", params={"access_token": token})
        return response.status_code < 400

    # ── Data ─────────────────────────────────────────────────────────

    async def _paged(self, url: str, credential: PlatformCredential, params: dict) -> list[dict]:
        items = []
        data = await self._api("GET", url, credential, params=params)
        while True:
            items.extend(data.get("data", []))
            next_url = (data.get("paging") or {}).get("next")
            if not next_url:
                return items
            data = await self._api("GET", next_url, credential)

    async def list_ad_accounts(self, credential: PlatformCredential) -> list[dict]:
        accounts = await self._paged(
            f"{GRAPH_API}/me/adaccounts",
            credential,
            {"fields": "id,account_id,name,account_status,currency", "limit": 100},
        )
        return [
            {
                "id": a.get("id"),
                "name": a.get("name") or a.get("id"),
                "currency": a.get("currency"),
                "status": a.get("account_status"),
            }
            for a in accounts
        ]

    async def discover(self, credential: PlatformCredential) -> list[dict]:
        return await self.list_ad_accounts(credential)

    async def fetch_metrics(
        self,
        credential: PlatformCredential,
        date_range: Optional[DateRange] = None,
        selector: Optional[str] = None,
    ) -> NormalizedResult:
        date_range = date_range or DateRange.last_days(7)
        time_range = json.dumps({"since": date_range.start.isoformat(), "until": date_range.end.isoformat()})

        entities = []
        for account in await self.list_ad_accounts(credential):
            rows = await self._paged(
                f"{GRAPH_API}/{account['id']}/insights",
                credential,
                {
                    "fields": "campaign_id,campaign_name,impressions,clicks,spend,actions",
                    "level": "campaign",
                    "time_range": time_range,
                    "limit": 500,
                },
            )
            for row in rows:
                conversions = sum(
                    to_float(a.get("value"))
                    for a in row.get("actions") or []
                    if a.get("action_type") in CONVERSION_ACTIONS
                )
                entities.append(EntityMetrics(
                    id=str(row.get("campaign_id")),
                    name=row.get("campaign_name") or str(row.get("campaign_id")),
                    kind="campaign",
                    parent_id=account["id"],
                    metrics=MetricSet(
                        impressions=to_int(row.get("impressions")),
                        clicks=to_int(row.get("clicks")),
                        spend=round(to_float(row.get("spend")), 2),
                        conversions=conversions,
                    ),
                ))
        return build_result(self.platform, entities, date_range, selector)
