"""
Google Analytics 4 adapter — Admin API for property discovery,
Data API runReport for sessions, page views, users and traffic source.
"""

import asyncio
import logging
from typing import Optional

from insighthub.platforms.base import (
    DateRange, EntityMetrics, MetricSet, NormalizedResult, PlatformCredential,
    build_result, to_int,
)
from insighthub.platforms.google import GoogleOAuthAdapter

logger = logging.getLogger(__name__)

ADMIN_API = "https://analyticsadmin.googleapis.com/v1beta"
DATA_API = "https://analyticsdata.googleapis.com/v1beta"

REPORT_METRICS = ["sessions", "screenPageViews", "activeUsers"]


class GoogleAnalyticsAdapter(GoogleOAuthAdapter):
    platform = "google-analytics"
    display_name = "Google Analytics"
    scopes = [
        "https://www.googleapis.com/auth/analytics.readonly",
        "https://www.googleapis.com/auth/userinfo.email",
    ]
    selection_key = "propertyId"
    selection_name_key = "propertyName"
    auto_select_on_connect = True

    async def list_properties(self, credential: PlatformCredential) -> list[dict]:
        """Every GA4 property the credential can read, across all accounts."""
        properties = []
        page_token = None
        while True:
            params = {"pageSize": 200}
            if page_token:
                params["pageToken"] = page_token
            data = await self._api("GET", f"{ADMIN_API}/accountSummaries", credential, params=params)
            for account in data.get("accountSummaries", []):
                for prop in account.get("propertySummaries", []):
                    properties.append({
                        "id": prop.get("property", "").replace("properties/", ""),
                        "name": prop.get("displayName") or prop.get("property"),
                        "account": account.get("displayName"),
                    })
            page_token = data.get("nextPageToken")
            if not page_token:
                return properties

    async def discover(self, credential: PlatformCredential) -> list[dict]:
        return await self.list_properties(credential)

    async def _run_report(self, credential: PlatformCredential, property_id: str, date_range: DateRange) -> tuple[MetricSet, Optional[str]]:
        body = {
            "dateRanges": [{"startDate": date_range.start.isoformat(), "endDate": date_range.end.isoformat()}],
            "dimensions": [{"name": "sessionMedium"}],
            "metrics": [{"name": m} for m in REPORT_METRICS],
            "metricAggregations": ["TOTAL"],
            "orderBys": [{"metric": {"metricName": "sessions"}, "desc": True}],
            "limit": 25,
        }
        data = await self._api(
            "POST", f"{DATA_API}/properties/{property_id}:runReport", credential, json=body,
        )
        rows = data.get("rows") or []
        totals = data.get("totals") or []
        if totals:
            values = [to_int(v.get("value")) for v in totals[0].get("metricValues", [])]
        else:
            values = [0] * len(REPORT_METRICS)
            for row in rows:
                for i, v in enumerate(row.get("metricValues", [])[:len(values)]):
                    values[i] += to_int(v.get("value"))
        values += [0] * (len(REPORT_METRICS) - len(values))

        top_source = None
        if rows:
            top_source = rows[0].get("dimensionValues", [{}])[0].get("value")
        metrics = MetricSet(sessions=values[0], page_views=values[1], users=values[2])
        return metrics, top_source

    async def fetch_metrics(
        self,
        credential: PlatformCredential,
        date_range: Optional[DateRange] = None,
        selector: Optional[str] = None,
    ) -> NormalizedResult:
        date_range = date_range or DateRange.last_days(7)
        properties = await self.list_properties(credential)
        if not properties:
            return build_result(self.platform, [], date_range, selector)

        reports = await asyncio.gather(*(
            self._run_report(credential, prop["id"], date_range) for prop in properties
        ))
        entities = [
            EntityMetrics(
                id=prop["id"],
                name=prop["name"],
                kind="property",
                metrics=metrics,
                top_source=top_source,
            )
            for prop, (metrics, top_source) in zip(properties, reports)
        ]
        return build_result(self.platform, entities, date_range, selector)
