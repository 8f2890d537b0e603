"""
Google Ads adapter — REST searchStream with GAQL, one query per accessible customer.

Requires a developer token (GOOGLE_ADS_DEVELOPER_TOKEN). Without one every
call returns an empty result flagged ``developer_token_status: missing``
instead of failing the aggregation.
"""

import logging
from typing import Optional

from insighthub.platforms.base import (
    DateRange, EntityMetrics, MetricSet, NormalizedResult, PlatformCredential,
    build_result, to_float, to_int,
)
from insighthub.platforms.google import GoogleOAuthAdapter

logger = logging.getLogger(__name__)

API_VERSION = "v20"
API_BASE = f"https://googleads.googleapis.com/{API_VERSION}"

CAMPAIGN_QUERY = """
    SELECT
      campaign.id,
      campaign.name,
      metrics.impressions,
      metrics.clicks,
      metrics.cost_micros,
      metrics.conversions
    FROM campaign
    WHERE segments.date BETWEEN '{start}' AND '{end}'
      AND campaign.status != 'REMOVED'
"""


class GoogleAdsAdapter(GoogleOAuthAdapter):
    platform = "google-ads"
    display_name = "Google Ads"
    scopes = [
        "https://www.googleapis.com/auth/adwords",
        "https://www.googleapis.com/auth/userinfo.email",
    ]

    def __init__(self, *args, developer_token: str = "", **kwargs):
        super().__init__(*args, **kwargs)
        self.developer_token = developer_token

    @classmethod
    def from_settings(cls, settings, http_client=None):
        return cls(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            developer_token=settings.google_ads_developer_token,
            http_client=http_client,
        )

    def _headers(self, credential: PlatformCredential) -> dict:
        headers = {"developer-token": self.developer_token}
        login_customer = credential.metadata.get("loginCustomerId")
        if login_customer:
            headers["login-customer-id"] = str(login_customer).replace("-", "")
        return headers

    async def list_customers(self, credential: PlatformCredential) -> list[dict]:
        if not self.developer_token:
            return []
        data = await self._api(
            "GET",
            f"{API_BASE}/customers:listAccessibleCustomers",
            credential,
            headers=self._headers(credential),
        )
        return [
            {"id": name.replace("customers/", ""), "name": name}
            for name in data.get("resourceNames", [])
        ]

    async def discover(self, credential: PlatformCredential) -> list[dict]:
        return await self.list_customers(credential)

    async def _campaign_metrics(self, credential: PlatformCredential, customer_id: str, date_range: DateRange) -> list[EntityMetrics]:
        query = CAMPAIGN_QUERY.format(start=date_range.start.isoformat(), end=date_range.end.isoformat())
        batches = await self._api(
            "POST",
            f"{API_BASE}/customers/{customer_id}/googleAds:searchStream",
            credential,
            headers=self._headers(credential),
            json={"query": query},
        )
        # searchStream returns a JSON array of result batches
        if isinstance(batches, dict):
            batches = [batches]

        campaigns: dict[str, EntityMetrics] = {}
        for batch in batches:
            for row in batch.get("results", []):
                campaign = row.get("campaign", {})
                m = row.get("metrics", {})
                cid = str(campaign.get("id", ""))
                metrics = MetricSet(
                    impressions=to_int(m.get("impressions")),
                    clicks=to_int(m.get("clicks")),
                    spend=round(to_int(m.get("costMicros")) / 1_000_000, 2),
                    conversions=to_float(m.get("conversions")),
                )
                if cid in campaigns:
                    campaigns[cid].metrics = campaigns[cid].metrics + metrics
                else:
                    campaigns[cid] = EntityMetrics(
                        id=cid, name=campaign.get("name") or cid, kind="campaign",
                        parent_id=customer_id, metrics=metrics,
                    )
        return list(campaigns.values())

    async def fetch_metrics(
        self,
        credential: PlatformCredential,
        date_range: Optional[DateRange] = None,
        selector: Optional[str] = None,
    ) -> NormalizedResult:
        date_range = date_range or DateRange.last_days(7)
        if not self.developer_token:
            logger.info("Google Ads developer token not configured — returning empty result")
            return build_result(
                self.platform, [], date_range, selector,
                notes={"developer_token_status": "missing"},
            )

        entities = []
        for customer in await self.list_customers(credential):
            entities.extend(await self._campaign_metrics(credential, customer["id"], date_range))
        return build_result(self.platform, entities, date_range, selector)
