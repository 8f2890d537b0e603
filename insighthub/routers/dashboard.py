"""
Dashboard Router — Cross-platform summary, platform health, AI usage and
recent activity.
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from insighthub.auth import get_current_user
from insighthub.database import get_db
from insighthub.models import User
from insighthub.platforms.base import DateRange
from insighthub.routers.chat import get_rate_limiter, get_session_factory
from insighthub.services.aggregation_service import aggregate_client_metrics, get_dashboard_stats
from insighthub.services.rate_limiter import RateLimiter

router = APIRouter()


@router.get("/stats")
async def dashboard_stats(
    days: int = Query(7, ge=1, le=90),
    user: User = Depends(get_current_user),
    session_factory: async_sessionmaker = Depends(get_session_factory),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
):
    """Every section is built in its own session; a failing one comes back empty."""
    return await get_dashboard_stats(
        session_factory, user.id, rate_limiter=rate_limiter, date_range=DateRange.last_days(days),
    )


@router.get("/metrics")
async def client_metrics(
    client_id: str = Query(...),
    days: int = Query(7, ge=1, le=90),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    aggregated = await aggregate_client_metrics(db, user.id, client_id, date_range=DateRange.last_days(days))
    return aggregated.model_dump(mode="json")
