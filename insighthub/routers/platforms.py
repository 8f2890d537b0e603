"""
Platforms Router — OAuth connect/callback and connection management for
Google Analytics, Google Ads, Meta Ads and LinkedIn Ads.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import RedirectResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from insighthub.auth import get_current_user
from insighthub.database import get_db
from insighthub.errors import InsightHubError
from insighthub.models import User
from insighthub.services import connection_service
from insighthub.services.connection_service import serialize_connection

logger = logging.getLogger(__name__)

router = APIRouter()


class ConnectRequest(BaseModel):
    client_id: str
    return_path: Optional[str] = None


class PropertySelect(BaseModel):
    property_id: str
    property_name: Optional[str] = None


# ── OAuth ─────────────────────────────────────────────────────────────

@router.post("/{platform}/connect")
async def connect_platform(
    platform: str,
    payload: ConnectRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Return the platform's consent URL. The browser is sent there by the frontend."""
    url = await connection_service.connect(db, user.id, payload.client_id, platform, payload.return_path)
    return {"auth_url": url}


@router.get("/{platform}/callback")
async def oauth_callback(
    platform: str,
    code: Optional[str] = None,
    state: Optional[str] = None,
    error: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """OAuth redirect target. Always answers with a redirect back into the app."""
    return_path = connection_service.read_return_path(state)
    try:
        connection = await connection_service.complete_connect(db, platform, code, state, error)
    except InsightHubError as e:
        logger.warning(f"{platform} OAuth callback failed: {e.message}")
        return RedirectResponse(
            connection_service.build_return_url(return_path, error=e.message, platform=platform),
            status_code=302,
        )
    return RedirectResponse(
        connection_service.build_return_url(
            return_path, success=platform, connection_id=str(connection.id),
        ),
        status_code=302,
    )


# ── Connections ───────────────────────────────────────────────────────

@router.get("")
async def list_connections(
    client_id: str = Query(...),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    connections = await connection_service.list_connections(db, user.id, client_id)
    return [serialize_connection(c) for c in connections]


@router.post("/connections/{connection_id}/refresh")
async def refresh_connection(
    connection_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    connection = await connection_service.refresh(db, user.id, connection_id)
    return {"success": True, "connection": serialize_connection(connection)}


@router.delete("/connections/{connection_id}")
async def disconnect_connection(
    connection_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await connection_service.disconnect(db, user.id, connection_id)


@router.get("/connections/{connection_id}/properties")
async def list_properties(
    connection_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Selectable sub-resources: GA4 properties, Ads customers or ad accounts."""
    properties = await connection_service.list_properties(db, user.id, connection_id)
    return {"properties": properties}


@router.put("/connections/{connection_id}/property")
async def select_property(
    connection_id: str,
    payload: PropertySelect,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    connection = await connection_service.select_property(
        db, user.id, connection_id, payload.property_id, payload.property_name,
    )
    return serialize_connection(connection)
