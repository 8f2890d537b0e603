"""
Connection Service — OAuth connect/callback, token refresh, disconnect and
time-based health for platform connections.

Token endpoints are called once per operation; a failure is reported to the
caller (and reflected in the connection status) rather than retried here.
"""

import asyncio
import logging
import math
import weakref
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from insighthub.config import get_settings
from insighthub.crypto import decrypt_token, encrypt_token
from insighthub.errors import AuthFailure, InsightHubError, NotFoundError, ValidationFailure
from insighthub.models import LIVE_STATUSES, Client, Connection, ConnectionStatus
from insighthub.platforms import SUPPORTED_PLATFORMS, get_adapter, platform_display_name
from insighthub.platforms.base import PlatformAdapter, PlatformCredential, TokenSet
from insighthub.services.auth_service import create_state_token, decode_state_token
from insighthub.utils import isoformat, try_parse_uuid, utcnow

logger = logging.getLogger(__name__)

DEFAULT_RETURN_PATH = "/settings/platforms"
EXPIRY_WARNING_DAYS = 7
NO_REFRESH_TOKEN_MESSAGE = "No refresh token available. Please reconnect the platform."

# One lock per connection id so refresh and disconnect never interleave in-process
_connection_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def _lock_for(connection_id) -> asyncio.Lock:
    key = str(connection_id)
    lock = _connection_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _connection_locks[key] = lock
    return lock


# ── Health ────────────────────────────────────────────────────────────

class ConnectionHealth(BaseModel):
    status: str  # healthy | warning | expired
    message: str
    days_until_expiry: Optional[int] = None


def _as_naive_utc(dt: datetime) -> datetime:
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def health(connection: Connection, now: Optional[datetime] = None) -> ConnectionHealth:
    """Derive health from the expiry time alone. Never writes."""
    if connection.expires_at is None:
        return ConnectionHealth(status="healthy", message="Connection is healthy")

    now = _as_naive_utc(now) if now else utcnow()
    expires_at = _as_naive_utc(connection.expires_at)
    days = math.floor((expires_at - now).total_seconds() / 86400)

    if now > expires_at:
        return ConnectionHealth(
            status="expired",
            message="Connection expired. Please reconnect to resume syncing.",
            days_until_expiry=days,
        )
    if days <= EXPIRY_WARNING_DAYS:
        when = "today" if days == 0 else f"in {days} day{'s' if days != 1 else ''}"
        return ConnectionHealth(
            status="warning",
            message=f"Connection expires {when}. Refresh or reconnect soon.",
            days_until_expiry=days,
        )
    return ConnectionHealth(status="healthy", message="Connection is healthy", days_until_expiry=days)


def is_usable(connection: Connection, now: Optional[datetime] = None) -> bool:
    """Live status and not past expiry: the connections aggregation may call."""
    if connection.status not in LIVE_STATUSES:
        return False
    return health(connection, now).status != "expired"


# ── Helpers ───────────────────────────────────────────────────────────

def redirect_uri(platform: str) -> str:
    return f"{get_settings().oauth_redirect_base}/api/platforms/{platform}/callback"


def _validate_platform(platform: str) -> None:
    if platform not in SUPPORTED_PLATFORMS:
        raise ValidationFailure(f"Unsupported platform: {platform}")


def _safe_return_path(path: Optional[str]) -> str:
    # Relative paths only; never redirect off-site
    if not path or not path.startswith("/") or path.startswith("//"):
        return DEFAULT_RETURN_PATH
    return path


def to_credential(connection: Connection) -> PlatformCredential:
    return PlatformCredential(
        platform=connection.platform,
        access_token=decrypt_token(connection.access_token) or "",
        connection_id=str(connection.id),
        metadata=dict(connection.platform_metadata or {}),
    )


def _apply_tokens(connection: Connection, tokens: TokenSet) -> None:
    connection.access_token = encrypt_token(tokens.access_token)
    if tokens.refresh_token:
        connection.refresh_token = encrypt_token(tokens.refresh_token)
    if tokens.expires_in:
        connection.expires_at = utcnow() + timedelta(seconds=tokens.expires_in)
    if tokens.scopes:
        connection.scopes = tokens.scopes


async def get_owned_client(db: AsyncSession, user_id, client_id) -> Client:
    cid = try_parse_uuid(client_id)
    client = None
    if cid:
        result = await db.execute(select(Client).where(Client.id == cid, Client.user_id == user_id))
        client = result.scalar_one_or_none()
    if not client:
        raise NotFoundError("Client not found")
    return client


async def _get_owned_connection(db: AsyncSession, user_id, connection_id) -> Optional[Connection]:
    cid = try_parse_uuid(connection_id)
    if not cid:
        return None
    result = await db.execute(
        select(Connection).where(Connection.id == cid, Connection.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def _get_live_connection(db: AsyncSession, user_id, connection_id) -> Connection:
    connection = await _get_owned_connection(db, user_id, connection_id)
    if not connection or connection.status == ConnectionStatus.DISCONNECTED.value:
        raise NotFoundError("Connection not found")
    return connection


def serialize_connection(connection: Connection, now: Optional[datetime] = None) -> dict:
    return {
        "id": str(connection.id),
        "client_id": str(connection.client_id),
        "platform": connection.platform,
        "platform_name": connection.platform_name,
        "status": connection.status,
        "expires_at": isoformat(connection.expires_at),
        "scopes": connection.scopes or [],
        "metadata": connection.platform_metadata or {},
        "last_error": connection.last_error,
        "last_synced_at": isoformat(connection.last_synced_at),
        "created_at": isoformat(connection.created_at),
        "health": health(connection, now).model_dump(),
    }


# ── Connect ───────────────────────────────────────────────────────────

async def connect(
    db: AsyncSession,
    user_id,
    client_id,
    platform: str,
    return_path: Optional[str] = None,
) -> str:
    """Build the platform's authorization URL. Nothing is stored until the callback."""
    _validate_platform(platform)
    client = await get_owned_client(db, user_id, client_id)

    state = create_state_token(
        client_id=str(client.id),
        platform=platform,
        user_id=str(user_id),
        return_path=_safe_return_path(return_path),
    )
    adapter = get_adapter(platform)
    logger.info(f"Starting {platform} OAuth for client {client.id}")
    return adapter.authorization_url(state, redirect_uri(platform))


def read_return_path(state: Optional[str]) -> str:
    """Best-effort return path for redirecting after a failed callback."""
    payload = decode_state_token(state) if state else None
    return _safe_return_path(payload.get("return_path") if payload else None)


def build_return_url(return_path: str, **params) -> str:
    separator = "&" if "?" in return_path else "?"
    return f"{return_path}{separator}{urlencode(params)}"


async def _auto_select(adapter: PlatformAdapter, connection: Connection) -> None:
    """Pick the first discovered sub-resource so the connection is usable at once."""
    metadata = dict(connection.platform_metadata or {})
    if metadata.get(adapter.selection_key):
        return
    try:
        resources = await adapter.discover(to_credential(connection))
    except InsightHubError as e:
        logger.warning(f"{adapter.display_name} discovery after connect failed: {e.message}")
        return
    if not resources:
        logger.info(f"{adapter.display_name}: no selectable resources for connection {connection.id}")
        return
    first = resources[0]
    metadata[adapter.selection_key] = first["id"]
    metadata[adapter.selection_name_key] = first.get("name")
    connection.platform_metadata = metadata


async def complete_connect(
    db: AsyncSession,
    platform: str,
    code: Optional[str],
    state: Optional[str],
    error: Optional[str] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Connection:
    """Exchange the callback code and upsert the client's connection for this platform."""
    _validate_platform(platform)
    if error:
        raise AuthFailure(f"Authorization was declined: {error}", platform=platform)
    if not code or not state:
        raise ValidationFailure("Missing authorization code or state")

    payload = decode_state_token(state)
    if not payload or payload.get("platform") != platform:
        raise ValidationFailure("Invalid or expired authorization state. Please try connecting again.")

    user_id = try_parse_uuid(payload.get("user_id"))
    client = await get_owned_client(db, user_id, payload.get("client_id"))

    adapter = get_adapter(platform, http_client)
    tokens = await adapter.exchange_code(code, redirect_uri(platform))

    result = await db.execute(
        select(Connection).where(
            Connection.client_id == client.id,
            Connection.platform == platform,
            Connection.status != ConnectionStatus.DISCONNECTED.value,
        )
    )
    connection = result.scalar_one_or_none()
    if connection is None:
        connection = Connection(
            user_id=user_id,
            client_id=client.id,
            platform=platform,
            platform_name=platform_display_name(platform),
            platform_metadata={},
        )
        db.add(connection)

    _apply_tokens(connection, tokens)
    connection.status = ConnectionStatus.ACTIVE.value
    connection.last_error = None
    await db.flush()

    if adapter.auto_select_on_connect:
        await _auto_select(adapter, connection)
        await db.flush()

    logger.info(f"Connected {platform} for client {client.id} (connection {connection.id})")
    return connection


# ── Refresh / disconnect ──────────────────────────────────────────────

async def _mark_error(db: AsyncSession, connection: Connection, message: str) -> None:
    connection.status = ConnectionStatus.ERROR.value
    connection.last_error = message
    # Committed before the error propagates, so the request rollback keeps it
    await db.commit()


async def refresh(
    db: AsyncSession,
    user_id,
    connection_id,
    http_client: Optional[httpx.AsyncClient] = None,
) -> Connection:
    async with _lock_for(connection_id):
        connection = await _get_live_connection(db, user_id, connection_id)
        adapter = get_adapter(connection.platform, http_client)

        grant = decrypt_token(connection.refresh_token)
        if not grant and adapter.refreshes_with_access_token:
            grant = decrypt_token(connection.access_token)
        if not grant:
            await _mark_error(db, connection, NO_REFRESH_TOKEN_MESSAGE)
            raise AuthFailure(NO_REFRESH_TOKEN_MESSAGE, platform=connection.platform)

        try:
            tokens = await adapter.refresh_access_token(grant)
        except AuthFailure as e:
            logger.warning(f"Token refresh rejected for connection {connection.id} ({connection.platform})")
            await _mark_error(db, connection, e.message)
            raise

        # Another process may have disconnected the row while the token call was in flight
        await db.refresh(connection)
        if connection.status == ConnectionStatus.DISCONNECTED.value:
            raise NotFoundError("Connection was disconnected during refresh")

        _apply_tokens(connection, tokens)
        connection.status = ConnectionStatus.ACTIVE.value
        connection.last_error = None
        await db.flush()
        logger.info(f"Refreshed {connection.platform} token for connection {connection.id}, expires {connection.expires_at}")
        return connection


async def disconnect(
    db: AsyncSession,
    user_id,
    connection_id,
    http_client: Optional[httpx.AsyncClient] = None,
) -> dict:
    """Revoke (best effort) and mark disconnected. Unknown ids yield a failure dict."""
    async with _lock_for(connection_id):
        connection = await _get_owned_connection(db, user_id, connection_id)
        if not connection or connection.status == ConnectionStatus.DISCONNECTED.value:
            return {"success": False, "error": "Connection not found"}

        token = decrypt_token(connection.access_token)
        if token:
            try:
                adapter = get_adapter(connection.platform, http_client)
                revoked = await adapter.revoke_token(token)
                if not revoked:
                    logger.warning(f"{connection.platform} did not confirm token revocation for {connection.id}")
            except Exception as e:
                logger.warning(f"Token revoke failed for connection {connection.id}: {e}")

        connection.status = ConnectionStatus.DISCONNECTED.value
        connection.access_token = None
        connection.refresh_token = None
        connection.last_error = None
        await db.flush()
        logger.info(f"Disconnected {connection.platform} connection {connection.id}")
        return {"success": True}


# ── Listing and property selection ────────────────────────────────────

async def list_connections(db: AsyncSession, user_id, client_id) -> list[Connection]:
    client = await get_owned_client(db, user_id, client_id)
    result = await db.execute(
        select(Connection)
        .where(
            Connection.client_id == client.id,
            Connection.status != ConnectionStatus.DISCONNECTED.value,
        )
        .order_by(Connection.created_at)
    )
    return list(result.scalars().all())


async def list_properties(
    db: AsyncSession,
    user_id,
    connection_id,
    http_client: Optional[httpx.AsyncClient] = None,
) -> list[dict]:
    connection = await _get_live_connection(db, user_id, connection_id)
    adapter = get_adapter(connection.platform, http_client)
    return await adapter.discover(to_credential(connection))


async def select_property(
    db: AsyncSession,
    user_id,
    connection_id,
    property_id: str,
    property_name: Optional[str] = None,
) -> Connection:
    if not property_id or not str(property_id).strip():
        raise ValidationFailure("property_id is required")
    connection = await _get_live_connection(db, user_id, connection_id)
    adapter = get_adapter(connection.platform)

    metadata = dict(connection.platform_metadata or {})
    metadata[adapter.selection_key] = str(property_id).strip()
    metadata[adapter.selection_name_key] = property_name
    connection.platform_metadata = metadata
    await db.flush()
    logger.info(f"Connection {connection.id}: selected {adapter.selection_key}={property_id}")
    return connection
