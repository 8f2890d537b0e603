"""
Aggregation Service — fan out platform fetches for a client (or a user's whole
account), fold the results into one summary, and build the dashboard stats.

Every adapter call runs concurrently and is contained on its own: a failed or
slow platform is reported under ``errors`` and left out of the sums, while the
others still count. Numbers are never cached between requests.
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, NamedTuple, Optional

from pydantic import BaseModel, Field
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insighthub.config import get_settings
from insighthub.errors import InsightHubError, TransientNetworkFailure
from insighthub.models import (
    Client, Connection, ConnectionStatus, Conversation, ConversationMessage, MessageRole,
)
from insighthub.platforms import ADAPTERS, get_adapter, platform_display_name
from insighthub.platforms.base import (
    DateRange, EntityMetrics, MetricSet, NormalizedResult, PlatformAdapter,
    PlatformCredential, most_common_source,
)
from insighthub.services.connection_service import (
    get_owned_client, health, is_usable, to_credential,
)
from insighthub.services.rate_limiter import RateLimiter
from insighthub.utils import isoformat, utcnow

logger = logging.getLogger(__name__)

RECENT_PER_KIND = 5
RECENT_ACTIVITY_LIMIT = 10


# ── Result types ──────────────────────────────────────────────────────

class PlatformBreakdown(BaseModel):
    platform: str
    platform_name: str
    connections: int = 0
    metrics: MetricSet = Field(default_factory=MetricSet)
    cumulative: MetricSet = Field(default_factory=MetricSet)
    entities: list[EntityMetrics] = Field(default_factory=list)
    selected_id: Optional[str] = None
    top_source: Optional[str] = None
    notes: dict = Field(default_factory=dict)


class FetchError(BaseModel):
    connection_id: Optional[str] = None
    platform: str
    platform_name: str
    error_type: str
    message: str


class AggregatedMetrics(BaseModel):
    sessions: int = 0
    page_views: int = 0
    users: int = 0
    spend: float = 0.0
    impressions: int = 0
    clicks: int = 0
    conversions: float = 0.0
    ctr: float = 0.0
    cpc: float = 0.0
    top_traffic_source: Optional[str] = None
    platforms: dict[str, PlatformBreakdown] = Field(default_factory=dict)
    errors: list[FetchError] = Field(default_factory=list)
    insights: list[str] = Field(default_factory=list)
    date_range: DateRange = Field(default_factory=DateRange.last_days)


class FetchOutcome(NamedTuple):
    credential: PlatformCredential
    result: Optional[NormalizedResult]
    error: Optional[InsightHubError]


# ── Fan-out ───────────────────────────────────────────────────────────

class MetricsAggregator:
    """Runs one adapter call per credential at the same time and settles all of them."""

    def __init__(
        self,
        adapter_factory: Callable[[str], PlatformAdapter] = get_adapter,
        timeout_seconds: Optional[float] = None,
    ):
        self._adapter_factory = adapter_factory
        self.timeout_seconds = timeout_seconds or get_settings().platform_fetch_timeout_seconds

    async def _fetch_one(
        self,
        credential: PlatformCredential,
        date_range: DateRange,
        selector: Optional[str],
    ) -> NormalizedResult:
        adapter = self._adapter_factory(credential.platform)
        return await asyncio.wait_for(
            adapter.fetch_metrics(credential, date_range=date_range, selector=selector),
            timeout=self.timeout_seconds,
        )

    async def fetch_all(
        self,
        credentials: list[PlatformCredential],
        date_range: DateRange,
        selectors: Optional[dict[str, Optional[str]]] = None,
    ) -> list[FetchOutcome]:
        selectors = selectors or {}
        settled = await asyncio.gather(
            *(self._fetch_one(c, date_range, selectors.get(c.connection_id)) for c in credentials),
            return_exceptions=True,
        )

        outcomes = []
        for credential, item in zip(credentials, settled):
            if isinstance(item, NormalizedResult):
                outcomes.append(FetchOutcome(credential, item, None))
                continue
            if not isinstance(item, Exception):
                raise item
            outcomes.append(FetchOutcome(credential, None, _classify(credential, item)))
        return outcomes


def _classify(credential: PlatformCredential, exc: Exception) -> InsightHubError:
    name = platform_display_name(credential.platform)
    if isinstance(exc, InsightHubError):
        logger.warning(f"{name} fetch failed for connection {credential.connection_id}: {exc.message}")
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        logger.warning(f"{name} fetch timed out for connection {credential.connection_id}")
        return TransientNetworkFailure(f"{name} took too long to respond.", platform=credential.platform)
    logger.error(f"{name} fetch crashed for connection {credential.connection_id}: {exc}", exc_info=exc)
    return TransientNetworkFailure(f"{name} data could not be loaded.", platform=credential.platform)


# ── Fan-in ────────────────────────────────────────────────────────────

def merge_outcomes(outcomes: list[FetchOutcome], date_range: DateRange) -> AggregatedMetrics:
    aggregated = AggregatedMetrics(date_range=date_range)
    totals = MetricSet()
    sources = []

    for outcome in outcomes:
        platform = outcome.credential.platform
        if outcome.error is not None:
            aggregated.errors.append(FetchError(
                connection_id=outcome.credential.connection_id,
                platform=platform,
                platform_name=platform_display_name(platform),
                error_type=outcome.error.error_type,
                message=outcome.error.message,
            ))
            continue

        result = outcome.result
        totals = totals + result.metrics
        if result.top_source:
            sources.append(result.top_source)

        breakdown = aggregated.platforms.get(platform)
        if breakdown is None:
            breakdown = PlatformBreakdown(platform=platform, platform_name=platform_display_name(platform))
            aggregated.platforms[platform] = breakdown
        breakdown.connections += 1
        breakdown.metrics = breakdown.metrics + result.metrics
        breakdown.cumulative = breakdown.cumulative + result.cumulative
        breakdown.entities.extend(result.entities)
        breakdown.selected_id = breakdown.selected_id or result.selected_id
        breakdown.top_source = breakdown.top_source or result.top_source
        breakdown.notes.update(result.notes)

    aggregated.sessions = totals.sessions
    aggregated.page_views = totals.page_views
    aggregated.users = totals.users
    aggregated.spend = round(totals.spend, 2)
    aggregated.impressions = totals.impressions
    aggregated.clicks = totals.clicks
    aggregated.conversions = totals.conversions
    aggregated.ctr = round(totals.clicks / totals.impressions * 100, 2) if totals.impressions else 0.0
    aggregated.cpc = round(totals.spend / totals.clicks, 2) if totals.clicks else 0.0
    aggregated.top_traffic_source = most_common_source(sources)
    aggregated.insights = _build_insights(aggregated)
    return aggregated


def _build_insights(agg: AggregatedMetrics) -> list[str]:
    insights = []
    if not agg.platforms and not agg.errors:
        insights.append("No platforms connected yet. Connect Google Analytics or an ad platform to see insights.")
        return insights

    if agg.sessions:
        line = f"{agg.sessions:,} sessions and {agg.page_views:,} page views in the {agg.date_range.label.lower()}."
        if agg.top_traffic_source:
            line += f" Top traffic source: {agg.top_traffic_source}."
        insights.append(line)

    if agg.impressions:
        insights.append(
            f"Ads delivered {agg.impressions:,} impressions and {agg.clicks:,} clicks "
            f"(CTR {agg.ctr:.2f}%, CPC {agg.cpc:.2f}) on {agg.spend:,.2f} spend."
        )

    if agg.spend > 0:
        ad_platforms = [b for b in agg.platforms.values() if b.metrics.spend > 0]
        if len(ad_platforms) > 1:
            top = max(ad_platforms, key=lambda b: b.metrics.spend)
            share = top.metrics.spend / agg.spend * 100
            insights.append(f"{top.platform_name} accounts for {share:.0f}% of ad spend.")

    for breakdown in agg.platforms.values():
        if breakdown.notes.get("developer_token_status") == "missing":
            insights.append(f"{breakdown.platform_name} metrics need a developer token to be configured.")
        elif not breakdown.entities:
            insights.append(f"{breakdown.platform_name} is connected but returned no data for this period.")

    for error in agg.errors:
        if error.error_type in ("auth", "expired"):
            insights.append(f"{error.platform_name} needs to be reconnected: {error.message}")
        else:
            insights.append(f"{error.platform_name} data is missing from this summary: {error.message}")
    return insights


# ── Entry points ──────────────────────────────────────────────────────

async def _aggregate_connections(
    db: AsyncSession,
    connections: list[Connection],
    date_range: Optional[DateRange],
    selectors: Optional[dict[str, str]],
    aggregator: Optional[MetricsAggregator],
) -> AggregatedMetrics:
    date_range = date_range or DateRange.last_days(7)
    aggregator = aggregator or MetricsAggregator()
    selectors = selectors or {}
    now = utcnow()

    usable = []
    skipped: list[FetchError] = []
    for connection in connections:
        if is_usable(connection, now):
            usable.append(connection)
            continue
        if connection.status == ConnectionStatus.ERROR.value:
            error_type, message = "auth", connection.last_error or "Connection error. Please reconnect."
        else:
            error_type, message = "expired", health(connection, now).message
        skipped.append(FetchError(
            connection_id=str(connection.id),
            platform=connection.platform,
            platform_name=connection.platform_name,
            error_type=error_type,
            message=message,
        ))

    # Decrypt up front: the concurrent branches never touch the session
    credentials = [to_credential(c) for c in usable]
    per_connection_selector = {}
    for connection, credential in zip(usable, credentials):
        adapter_cls = ADAPTERS.get(connection.platform)
        default = credential.metadata.get(adapter_cls.selection_key) if adapter_cls else None
        per_connection_selector[credential.connection_id] = selectors.get(connection.platform) or default

    outcomes = await aggregator.fetch_all(credentials, date_range, per_connection_selector)

    synced_ids = {o.credential.connection_id for o in outcomes if o.error is None}
    if synced_ids:
        for connection in usable:
            if str(connection.id) in synced_ids:
                connection.last_synced_at = now
        await db.flush()

    aggregated = merge_outcomes(outcomes, date_range)
    if skipped:
        aggregated.errors = skipped + aggregated.errors
        aggregated.insights = _build_insights(aggregated)
    return aggregated


async def aggregate_client_metrics(
    db: AsyncSession,
    user_id,
    client_id,
    date_range: Optional[DateRange] = None,
    selectors: Optional[dict[str, str]] = None,
    aggregator: Optional[MetricsAggregator] = None,
) -> AggregatedMetrics:
    """Summary for one client. ``selectors`` maps platform id to a sub-resource id."""
    client = await get_owned_client(db, user_id, client_id)
    result = await db.execute(
        select(Connection).where(
            Connection.client_id == client.id,
            Connection.status != ConnectionStatus.DISCONNECTED.value,
        )
    )
    return await _aggregate_connections(db, list(result.scalars().all()), date_range, selectors, aggregator)


async def aggregate_user_metrics(
    db: AsyncSession,
    user_id,
    date_range: Optional[DateRange] = None,
    aggregator: Optional[MetricsAggregator] = None,
) -> AggregatedMetrics:
    """Summary across every client the user owns."""
    result = await db.execute(
        select(Connection).where(
            Connection.user_id == user_id,
            Connection.status != ConnectionStatus.DISCONNECTED.value,
        )
    )
    return await _aggregate_connections(db, list(result.scalars().all()), date_range, None, aggregator)


# ── Dashboard ─────────────────────────────────────────────────────────

async def _contained(
    session_factory: async_sessionmaker,
    name: str,
    build: Callable[[AsyncSession], Awaitable],
    fallback,
):
    """
    Run one dashboard section in its own session. A failure rolls back only
    that session and yields the fallback, so a broken statement in one section
    never aborts the transaction another section is reading through.
    """
    try:
        async with session_factory() as db:
            value = await build(db)
            await db.commit()
            return value
    except Exception as e:
        logger.error(f"Dashboard section '{name}' failed: {e}", exc_info=True)
        return fallback


async def get_platform_health(db: AsyncSession, user_id, now: Optional[datetime] = None) -> list[dict]:
    now = now or utcnow()
    result = await db.execute(
        select(Connection, Client.name)
        .join(Client, Client.id == Connection.client_id)
        .where(
            Connection.user_id == user_id,
            Connection.status.in_([
                ConnectionStatus.CONNECTED.value,
                ConnectionStatus.ACTIVE.value,
                ConnectionStatus.EXPIRED.value,
                ConnectionStatus.ERROR.value,
            ]),
        )
        .order_by(Client.name, Connection.platform)
    )
    entries = []
    for connection, client_name in result.all():
        status = health(connection, now)
        entry = {
            "connection_id": str(connection.id),
            "client_id": str(connection.client_id),
            "client_name": client_name,
            "platform": connection.platform,
            "platform_name": connection.platform_name,
            "status": status.status,
            "message": status.message,
            "days_until_expiry": status.days_until_expiry,
            "last_synced_at": isoformat(connection.last_synced_at),
        }
        # Stored failure outranks the time-based view (unless already expired)
        if connection.status == ConnectionStatus.ERROR.value and status.status != "expired":
            entry["status"] = "error"
            entry["message"] = connection.last_error or "Connection error. Please reconnect."
        entries.append(entry)
    return entries


async def get_ai_usage(
    db: AsyncSession,
    user_id,
    rate_limiter: Optional[RateLimiter] = None,
    now: Optional[datetime] = None,
) -> dict:
    now = now or utcnow()
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    month_start = day_start.replace(day=1)

    async def _count_since(since: datetime) -> int:
        result = await db.execute(
            select(func.count(ConversationMessage.id))
            .join(Conversation, Conversation.id == ConversationMessage.conversation_id)
            .where(
                Conversation.user_id == user_id,
                ConversationMessage.role == MessageRole.USER.value,
                ConversationMessage.created_at >= since,
            )
        )
        return result.scalar() or 0

    usage = {
        "messages_today": await _count_since(day_start),
        "messages_this_month": await _count_since(month_start),
        "period": now.strftime("%B %Y"),
    }
    if rate_limiter is not None:
        usage.update({
            "limit": rate_limiter.max_requests,
            "window_seconds": int(rate_limiter.window_seconds),
            "remaining": rate_limiter.get_remaining(str(user_id)),
            "resets_in_ms": rate_limiter.get_time_until_reset(str(user_id)),
        })
    return usage


async def get_recent_activity(db: AsyncSession, user_id, limit: int = RECENT_ACTIVITY_LIMIT) -> list[dict]:
    """Newest clients, connections and conversations interleaved by time."""
    activity = []

    clients = await db.execute(
        select(Client).where(Client.user_id == user_id)
        .order_by(Client.created_at.desc()).limit(RECENT_PER_KIND)
    )
    for c in clients.scalars().all():
        activity.append({
            "type": "client",
            "id": str(c.id),
            "description": f"Added client {c.name}",
            "timestamp": c.created_at,
        })

    connections = await db.execute(
        select(Connection).where(Connection.user_id == user_id)
        .order_by(Connection.updated_at.desc()).limit(RECENT_PER_KIND)
    )
    for conn in connections.scalars().all():
        verb = "Disconnected" if conn.status == ConnectionStatus.DISCONNECTED.value else "Connected"
        activity.append({
            "type": "connection",
            "id": str(conn.id),
            "description": f"{verb} {conn.platform_name}",
            "timestamp": conn.updated_at or conn.created_at,
        })

    conversations = await db.execute(
        select(Conversation).where(Conversation.user_id == user_id)
        .order_by(Conversation.updated_at.desc()).limit(RECENT_PER_KIND)
    )
    for conv in conversations.scalars().all():
        activity.append({
            "type": "conversation",
            "id": str(conv.id),
            "description": f"Chat: {conv.title or 'New conversation'}",
            "timestamp": conv.last_message_at or conv.updated_at,
        })

    activity.sort(key=lambda a: a["timestamp"] or datetime.min, reverse=True)
    for item in activity:
        item["timestamp"] = isoformat(item["timestamp"])
    return activity[:limit]


def _empty_metrics() -> dict:
    return AggregatedMetrics().model_dump(mode="json")


async def get_dashboard_stats(
    session_factory: async_sessionmaker,
    user_id,
    rate_limiter: Optional[RateLimiter] = None,
    aggregator: Optional[MetricsAggregator] = None,
    date_range: Optional[DateRange] = None,
) -> dict:
    """Dashboard summary. Sections are built side by side, and each fails on its own."""
    now = utcnow()

    async def _metrics(db: AsyncSession):
        aggregated = await aggregate_user_metrics(db, user_id, date_range=date_range, aggregator=aggregator)
        return aggregated.model_dump(mode="json")

    metrics, platform_health, ai_usage, recent_activity = await asyncio.gather(
        _contained(session_factory, "metrics", _metrics, _empty_metrics()),
        _contained(session_factory, "platform_health", lambda db: get_platform_health(db, user_id, now), []),
        _contained(
            session_factory,
            "ai_usage",
            lambda db: get_ai_usage(db, user_id, rate_limiter, now),
            {"messages_today": 0, "messages_this_month": 0, "period": now.strftime("%B %Y")},
        ),
        _contained(session_factory, "recent_activity", lambda db: get_recent_activity(db, user_id), []),
    )

    return {
        "metrics": metrics,
        "platform_health": platform_health,
        "ai_usage": ai_usage,
        "recent_activity": recent_activity,
        "generated_at": isoformat(now),
    }
