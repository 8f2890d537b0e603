"""
Tests for the connection lifecycle: connect, callback upsert, refresh, disconnect.
"""

from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from sqlalchemy import func, select

from insighthub.errors import AuthFailure, NotFoundError, ValidationFailure
from insighthub.models import Connection
from insighthub.services import connection_service
from insighthub.services.auth_service import create_state_token, decode_state_token
from insighthub.utils import utcnow


def _http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _google_handler(request: httpx.Request) -> httpx.Response:
    url = str(request.url)
    if url.startswith("https://oauth2.googleapis.com/token"):
        form = parse_qs(request.content.decode())
        if form["grant_type"] == ["authorization_code"]:
            return httpx.Response(200, json={
                "access_token": "ga-access", "refresh_token": "ga-refresh", "expires_in": 3600,
                "scope": "https://www.googleapis.com/auth/analytics.readonly",
            })
        return httpx.Response(200, json={"access_token": "ga-access-2", "expires_in": 3600})
    if "accountSummaries" in url:
        return httpx.Response(200, json={"accountSummaries": [{
            "displayName": "Acme",
            "propertySummaries": [{"property": "properties/987", "displayName": "Main site"}],
        }]})
    if url.startswith("https://oauth2.googleapis.com/revoke"):
        return httpx.Response(200)
    return httpx.Response(404)


async def _connection(db, user, client, platform="google-analytics", **overrides) -> Connection:
    values = dict(
        user_id=user.id,
        client_id=client.id,
        platform=platform,
        platform_name="Google Analytics",
        access_token="old-access",
        refresh_token="old-refresh",
        expires_at=utcnow() + timedelta(hours=1),
        status="active",
        platform_metadata={},
    )
    values.update(overrides)
    connection = Connection(**values)
    db.add(connection)
    await db.commit()
    return connection


def _state(user, client, platform="google-analytics") -> str:
    return create_state_token(str(client.id), platform, str(user.id), "/clients/acme?tab=platforms")


# ── Connect ───────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_connect_builds_consent_url_with_signed_state(db, user, client_row):
    url = await connection_service.connect(db, user.id, str(client_row.id), "google-ads", "/dashboard")
    query = parse_qs(urlparse(url).query)

    assert query["redirect_uri"] == ["http://localhost:8000/api/platforms/google-ads/callback"]
    state = decode_state_token(query["state"][0])
    assert state["client_id"] == str(client_row.id)
    assert state["platform"] == "google-ads"
    assert state["return_path"] == "/dashboard"


@pytest.mark.anyio
async def test_connect_rejects_unknown_platform_and_foreign_client(db, user, client_row):
    with pytest.raises(ValidationFailure):
        await connection_service.connect(db, user.id, str(client_row.id), "tiktok-ads")
    with pytest.raises(NotFoundError):
        await connection_service.connect(db, user.id, "00000000-0000-0000-0000-000000000000", "google-ads")


def test_return_path_never_leaves_the_site():
    state = create_state_token("c", "google-ads", "u", "//evil.example.com")
    assert connection_service.read_return_path(state) == connection_service.DEFAULT_RETURN_PATH
    assert connection_service.read_return_path("garbage") == connection_service.DEFAULT_RETURN_PATH


@pytest.mark.anyio
async def test_callback_creates_then_updates_the_same_live_connection(db, user, client_row):
    http = _http(_google_handler)
    first = await connection_service.complete_connect(
        db, "google-analytics", "code-1", _state(user, client_row), http_client=http,
    )
    await db.commit()

    assert first.status == "active"
    assert first.platform_metadata["propertyId"] == "987"
    assert first.platform_metadata["propertyName"] == "Main site"
    assert first.expires_at > utcnow()

    second = await connection_service.complete_connect(
        db, "google-analytics", "code-2", _state(user, client_row), http_client=http,
    )
    await db.commit()

    assert second.id == first.id
    count = await db.execute(select(func.count()).select_from(Connection))
    assert count.scalar() == 1


@pytest.mark.anyio
async def test_callback_with_declined_consent_or_bad_state(db, user, client_row):
    with pytest.raises(AuthFailure):
        await connection_service.complete_connect(db, "google-analytics", None, _state(user, client_row), error="access_denied")
    with pytest.raises(ValidationFailure):
        await connection_service.complete_connect(db, "google-analytics", "code", "not-a-jwt")
    with pytest.raises(ValidationFailure):
        # State minted for a different platform
        await connection_service.complete_connect(db, "google-analytics", "code", _state(user, client_row, "meta-ads"))


# ── Refresh ───────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_refresh_replaces_access_token_and_extends_expiry(db, user, client_row):
    connection = await _connection(db, user, client_row, expires_at=utcnow() + timedelta(minutes=5))
    refreshed = await connection_service.refresh(db, user.id, connection.id, http_client=_http(_google_handler))

    assert refreshed.access_token == "ga-access-2"
    assert refreshed.refresh_token == "old-refresh"
    assert refreshed.expires_at > utcnow() + timedelta(minutes=50)
    assert refreshed.status == "active"


@pytest.mark.anyio
async def test_rejected_refresh_marks_connection_error(db, session_factory, user, client_row):
    connection = await _connection(db, user, client_row)
    http = _http(lambda request: httpx.Response(400, json={"error": "invalid_grant"}))

    with pytest.raises(AuthFailure):
        await connection_service.refresh(db, user.id, connection.id, http_client=http)

    await db.rollback()
    async with session_factory() as other:
        stored = await other.get(Connection, connection.id)
        assert stored.status == "error"
        assert stored.last_error


@pytest.mark.anyio
async def test_refresh_without_refresh_token_marks_error(db, user, client_row):
    connection = await _connection(db, user, client_row, refresh_token=None)
    with pytest.raises(AuthFailure) as exc:
        await connection_service.refresh(db, user.id, connection.id, http_client=_http(_google_handler))
    assert exc.value.message == connection_service.NO_REFRESH_TOKEN_MESSAGE
    assert connection.status == "error"


@pytest.mark.anyio
async def test_meta_refresh_re_exchanges_the_access_token(db, user, client_row):
    def handler(request):
        assert request.url.params["fb_exchange_token"] == "meta-current"
        return httpx.Response(200, json={"access_token": "meta-new", "expires_in": 5184000})

    connection = await _connection(
        db, user, client_row, platform="meta-ads", platform_name="Meta Ads",
        access_token="meta-current", refresh_token=None,
    )
    refreshed = await connection_service.refresh(db, user.id, connection.id, http_client=_http(handler))
    assert refreshed.access_token == "meta-new"


# ── Disconnect ────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_disconnect_is_idempotent_and_wipes_tokens(db, user, client_row):
    connection = await _connection(db, user, client_row)
    http = _http(_google_handler)

    assert await connection_service.disconnect(db, user.id, connection.id, http_client=http) == {"success": True}
    assert connection.status == "disconnected"
    assert connection.access_token is None
    assert connection.refresh_token is None

    again = await connection_service.disconnect(db, user.id, connection.id, http_client=http)
    assert again == {"success": False, "error": "Connection not found"}

    live = await connection_service.list_connections(db, user.id, client_row.id)
    assert live == []


@pytest.mark.anyio
async def test_disconnect_survives_a_failing_revoke(db, user, client_row):
    def handler(request):
        raise httpx.ConnectError("down", request=request)

    connection = await _connection(db, user, client_row)
    result = await connection_service.disconnect(db, user.id, connection.id, http_client=_http(handler))
    assert result == {"success": True}
    assert connection.status == "disconnected"


@pytest.mark.anyio
async def test_disconnect_unknown_id(db, user):
    result = await connection_service.disconnect(db, user.id, "not-a-uuid")
    assert result["success"] is False


@pytest.mark.anyio
async def test_reconnect_after_disconnect_creates_a_new_row(db, user, client_row):
    old = await _connection(db, user, client_row)
    await connection_service.disconnect(db, user.id, old.id, http_client=_http(_google_handler))
    await db.commit()

    new = await connection_service.complete_connect(
        db, "google-analytics", "code", _state(user, client_row), http_client=_http(_google_handler),
    )
    assert new.id != old.id
    assert new.status == "active"


# ── Properties ────────────────────────────────────────────────────────

@pytest.mark.anyio
async def test_list_and_select_property(db, user, client_row):
    connection = await _connection(db, user, client_row)
    properties = await connection_service.list_properties(
        db, user.id, connection.id, http_client=_http(_google_handler),
    )
    assert properties == [{"id": "987", "name": "Main site", "account": "Acme"}]

    updated = await connection_service.select_property(db, user.id, connection.id, "987", "Main site")
    assert updated.platform_metadata == {"propertyId": "987", "propertyName": "Main site"}

    with pytest.raises(ValidationFailure):
        await connection_service.select_property(db, user.id, connection.id, "  ")
