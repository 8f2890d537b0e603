"""
Platform adapter contract — OAuth plumbing, HTTP error mapping and the
normalized result every adapter returns.

Subclasses only describe their endpoints and map platform payloads into
EntityMetrics; everything that touches a status code lives here so that
"reconnect" (AuthFailure) and "try again later" (TransientNetworkFailure)
mean the same thing for every platform.
"""

import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import date, timedelta
from typing import Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel, Field

from insighthub.errors import AuthFailure, TransientNetworkFailure

logger = logging.getLogger(__name__)


# ── Normalized types ─────────────────────────────────────────────────

class DateRange(BaseModel):
    start: date
    end: date

    @classmethod
    def last_days(cls, days: int = 7) -> "DateRange":
        end = date.today()
        return cls(start=end - timedelta(days=days - 1), end=end)

    @property
    def label(self) -> str:
        days = (self.end - self.start).days + 1
        if self.end == date.today():
            return f"Last {days} days"
        return f"{self.start.isoformat()} to {self.end.isoformat()}"


class PlatformCredential(BaseModel):
    """Decrypted, session-free view of a Connection handed to adapters."""
    platform: str
    access_token: str
    connection_id: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class TokenSet(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scopes: list[str] = Field(default_factory=list)


class MetricSet(BaseModel):
    sessions: int = 0
    page_views: int = 0
    users: int = 0
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    conversions: float = 0.0

    def __add__(self, other: "MetricSet") -> "MetricSet":
        return MetricSet(
            sessions=self.sessions + other.sessions,
            page_views=self.page_views + other.page_views,
            users=self.users + other.users,
            spend=round(self.spend + other.spend, 2),
            impressions=self.impressions + other.impressions,
            clicks=self.clicks + other.clicks,
            conversions=self.conversions + other.conversions,
        )

    @classmethod
    def total(cls, items) -> "MetricSet":
        result = cls()
        for item in items:
            result = result + item
        return result


class EntityMetrics(BaseModel):
    """One property, account or campaign with its metrics."""
    id: str
    name: str
    kind: str
    parent_id: Optional[str] = None  # owning account for campaigns
    metrics: MetricSet = Field(default_factory=MetricSet)
    top_source: Optional[str] = None


class NormalizedResult(BaseModel):
    """
    What fetch_metrics returns. ``metrics`` is the selected entity when a
    selector was given, otherwise the same as ``cumulative``.
    """
    platform: str
    date_range: DateRange
    entities: list[EntityMetrics] = Field(default_factory=list)
    metrics: MetricSet = Field(default_factory=MetricSet)
    cumulative: MetricSet = Field(default_factory=MetricSet)
    selected_id: Optional[str] = None
    top_source: Optional[str] = None
    notes: dict = Field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.entities


def _normalize_id(value) -> str:
    """'properties/123', 'urn:li:sponsoredCampaign:123' and '123' all compare equal."""
    return str(value).rsplit("/", 1)[-1].rsplit(":", 1)[-1]


def most_common_source(sources) -> Optional[str]:
    counts = Counter(s for s in sources if s)
    if not counts:
        return None
    return counts.most_common(1)[0][0]


def build_result(
    platform: str,
    entities: list[EntityMetrics],
    date_range: DateRange,
    selector: Optional[str] = None,
    notes: Optional[dict] = None,
) -> NormalizedResult:
    cumulative = MetricSet.total(e.metrics for e in entities)
    selected_id = None
    visible = entities
    metrics = cumulative
    if selector:
        selected_id = _normalize_id(selector)
        visible = [
            e for e in entities
            if selected_id in (_normalize_id(e.id), e.parent_id and _normalize_id(e.parent_id))
        ]
        metrics = MetricSet.total(e.metrics for e in visible)
    return NormalizedResult(
        platform=platform,
        date_range=date_range,
        entities=visible,
        metrics=metrics,
        cumulative=cumulative,
        selected_id=selected_id,
        top_source=most_common_source(e.top_source for e in visible),
        notes=notes or {},
    )


def to_int(value) -> int:
    try:
        return int(float(value or 0))
    except (TypeError, ValueError):
        return 0


def to_float(value) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


# ── Adapter base ─────────────────────────────────────────────────────

class PlatformAdapter:
    """Base class for one external marketing platform."""

    platform: str = ""
    display_name: str = ""

    authorize_url: str = ""
    token_url: str = ""
    revoke_url: Optional[str] = None
    scopes: list[str] = []
    scope_separator = " "
    extra_auth_params: dict = {}

    # Used when the token endpoint omits expires_in
    default_expires_in = 3600
    # Meta has no refresh token; its long-lived token is re-exchanged instead
    refreshes_with_access_token = False
    # Metadata keys holding the connection's chosen sub-resource
    selection_key = "selectedId"
    selection_name_key = "selectedName"
    auto_select_on_connect = False

    def __init__(
        self,
        client_id: str = "",
        client_secret: str = "",
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self._http = http_client
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings, http_client: Optional[httpx.AsyncClient] = None) -> "PlatformAdapter":
        raise NotImplementedError

    # ── HTTP ─────────────────────────────────────────────────────────

    @asynccontextmanager
    async def _client(self):
        if self._http is not None:
            yield self._http
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                yield client

    async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            async with self._client() as client:
                return await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.warning(f"{self.display_name} request failed: {type(e).__name__}: {e}")
            raise TransientNetworkFailure(
                f"{self.display_name} is temporarily unavailable. Please try again later.",
                platform=self.platform,
            ) from e

    async def _api(self, method: str, url: str, credential: PlatformCredential, **kwargs) -> dict:
        """Authenticated data-API call; returns the decoded JSON body."""
        headers = dict(kwargs.pop("headers", None) or {})
        headers["Authorization"] = f"Bearer {credential.access_token}"
        response = await self._send(method, url, headers=headers, **kwargs)
        self._raise_for_api_status(response)
        return response.json() if response.content else {}

    def _raise_for_api_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status < 400:
            return
        logger.warning(f"{self.display_name} API error {status}: {response.text[:500]}")
        if status in (401, 403):
            raise AuthFailure(f"Please reconnect your {self.display_name} account", platform=self.platform)
        if status == 429:
            raise TransientNetworkFailure(
                f"{self.display_name} rate limit reached. Please try again later.",
                platform=self.platform,
                rate_limited=True,
            )
        if status >= 500:
            raise TransientNetworkFailure(
                f"{self.display_name} is temporarily unavailable. Please try again later.",
                platform=self.platform,
            )
        raise TransientNetworkFailure(
            f"{self.display_name} rejected the request ({status}).",
            platform=self.platform,
        )

    async def _token_request(self, method: str, url: str, **kwargs) -> dict:
        """Token endpoint call. Any 4xx means the grant is no longer usable."""
        response = await self._send(method, url, **kwargs)
        if 400 <= response.status_code < 500:
            logger.warning(f"{self.display_name} token endpoint {response.status_code}: {response.text[:500]}")
            raise AuthFailure(
                f"{self.display_name} rejected the credentials. Please reconnect the platform.",
                platform=self.platform,
            )
        if response.status_code >= 500:
            raise TransientNetworkFailure(
                f"{self.display_name} is temporarily unavailable. Please try again later.",
                platform=self.platform,
            )
        return response.json()

    # ── OAuth ────────────────────────────────────────────────────────

    def authorization_url(self, state: str, redirect_uri: str) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": self.scope_separator.join(self.scopes),
            "state": state,
            **self.extra_auth_params,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    def _parse_token_response(self, data: dict, fallback_refresh: Optional[str] = None) -> TokenSet:
        if not data.get("access_token"):
            raise AuthFailure(
                f"{self.display_name} did not return an access token.",
                platform=self.platform,
            )
        scope = data.get("scope") or ""
        scopes = scope.replace(",", " ").split() if isinstance(scope, str) else list(scope)
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or fallback_refresh,
            expires_in=to_int(data.get("expires_in")) or self.default_expires_in,
            scopes=scopes or list(self.scopes),
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        data = await self._token_request(
            "POST",
            self.token_url,
            data={
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return self._parse_token_response(data)

    async def refresh_access_token(self, refresh_token: str) -> TokenSet:
        data = await self._token_request(
            "POST",
            self.token_url,
            data={
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        # Google and LinkedIn usually keep the old refresh token valid
        return self._parse_token_response(data, fallback_refresh=refresh_token)

    async def revoke_token(self, token: str) -> bool:
        if not self.revoke_url:
            return False
        response = await self._send(
            "POST",
            self.revoke_url,
            data={"token": token, "client_id": self.client_id, "client_secret": self.client_secret},
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        return response.status_code < 400

    # ── Data ─────────────────────────────────────────────────────────

    async def discover(self, credential: PlatformCredential) -> list[dict]:
        """List the selectable sub-resources (properties, ad accounts, customers)."""
        raise NotImplementedError

    async def fetch_metrics(
        self,
        credential: PlatformCredential,
        date_range: Optional[DateRange] = None,
        selector: Optional[str] = None,
    ) -> NormalizedResult:
        raise NotImplementedError

    async def test_connection(self, credential: PlatformCredential) -> bool:
        """False when the credential is rejected; transient failures propagate."""
        try:
            await self.discover(credential)
        except AuthFailure:
            return False
        return True
