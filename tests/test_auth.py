"""Tests for authentication endpoints."""

import time
from unittest.mock import patch

import pytest

from bms_auth.core import settings
from tests.conftest import TEST_PASSWORD, bearer

NEW_PASSWORD = "a-much-longer-new-passphrase"


def _refresh_cookie(token: str) -> dict[str, str]:
    return {"Cookie": f"{settings.refresh_cookie_name}={token}"}


@pytest.mark.asyncio
async def test_login_success(async_client, user_factory, login):
    """Test successful login."""
    user = await user_factory(email="tenant@ultrabms.test")

    response = await login("tenant@ultrabms.test")

    assert response.status_code == 200
    data = response.json()
    assert data["token_type"] == "bearer"
    assert data["expires_in"] == 3600
    assert data["access_token"]
    assert data["session_id"]
    assert data["user"]["id"] == str(user.id)
    assert data["user"]["role"] == "TENANT"
    assert "password_hash" not in data["user"]
    # The refresh token never appears in the body
    assert "refresh_token" not in data


@pytest.mark.asyncio
async def test_login_sets_http_only_refresh_cookie(user_factory, login):
    """Test that the refresh token is delivered as an HTTP-only cookie."""
    await user_factory(email="cookie@ultrabms.test")

    response = await login("cookie@ultrabms.test")

    set_cookie = response.headers["set-cookie"]
    assert set_cookie.startswith(f"{settings.refresh_cookie_name}=")
    assert "HttpOnly" in set_cookie
    assert "Path=/auth" in set_cookie
    assert "samesite=strict" in set_cookie.lower()


@pytest.mark.asyncio
async def test_login_email_is_case_insensitive(user_factory, login):
    await user_factory(email="mixed@ultrabms.test")

    response = await login("Mixed@UltraBMS.test")

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_login_wrong_password(user_factory, login):
    """Test login with wrong password."""
    await user_factory(email="wrong@ultrabms.test")

    response = await login("wrong@ultrabms.test", password="not-the-password")

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


@pytest.mark.asyncio
async def test_login_unknown_email_looks_like_wrong_password(login):
    """Test that unknown users get the same answer as wrong passwords."""
    response = await login("nobody@ultrabms.test")

    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid email or password"


@pytest.mark.asyncio
async def test_login_deactivated_user(user_factory, login):
    await user_factory(email="gone@ultrabms.test", is_active=False)

    response = await login("gone@ultrabms.test")

    assert response.status_code == 401
    assert response.json()["detail"] == "User account is deactivated"


@pytest.mark.asyncio
async def test_account_locks_after_repeated_failures(user_factory, login):
    """Test that the account locks after 5 failed attempts, even with the right password."""
    await user_factory(email="locked@ultrabms.test")

    # Spread attempts across IPs so the per-IP limiter stays out of the way
    for i in range(settings.max_failed_login_attempts):
        response = await login("locked@ultrabms.test", "bad-password", client_ip=f"198.51.100.{i}")
        assert response.status_code == 401

    response = await login("locked@ultrabms.test", client_ip="198.51.100.200")

    assert response.status_code == 423
    assert "locked" in response.json()["detail"].lower()


@pytest.mark.asyncio
async def test_account_unlocks_after_lock_period(clock, user_factory, login):
    await user_factory(email="unlock@ultrabms.test")
    for i in range(settings.max_failed_login_attempts):
        await login("unlock@ultrabms.test", "bad-password", client_ip=f"198.51.100.{i}")

    clock.advance(minutes=settings.account_lock_minutes, seconds=1)
    response = await login("unlock@ultrabms.test", client_ip="198.51.100.200")

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_login_rate_limit_per_ip(login):
    """Test that repeated failed logins from one IP are rate limited."""
    for _ in range(settings.login_rate_limit_attempts):
        response = await login("nobody@ultrabms.test", client_ip="192.0.2.7")
        assert response.status_code == 401

    response = await login("nobody@ultrabms.test", client_ip="192.0.2.7")

    assert response.status_code == 429
    assert "Retry-After" in response.headers

    # Other clients are unaffected
    response = await login("nobody@ultrabms.test", client_ip="192.0.2.8")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_login_validates_payload(async_client):
    response = await async_client.post("/auth/login", json={"email": "x"})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_refresh_with_cookie(async_client, user_factory, login):
    """Test issuing a new access token from the refresh cookie."""
    await user_factory(email="refresh@ultrabms.test")
    login_response = await login("refresh@ultrabms.test")
    refresh_token = login_response.cookies[settings.refresh_cookie_name]

    response = await async_client.post("/auth/refresh", headers=_refresh_cookie(refresh_token))

    assert response.status_code == 200
    data = response.json()
    assert data["session_id"] == login_response.json()["session_id"]
    assert data["access_token"] != login_response.json()["access_token"]

    me = await async_client.get("/auth/me", headers=bearer(data["access_token"]))
    assert me.status_code == 200


@pytest.mark.asyncio
async def test_refresh_with_body(async_client, user_factory, login):
    """Test that non-browser clients can send the refresh token in the body."""
    await user_factory(email="body@ultrabms.test")
    login_response = await login("body@ultrabms.test")
    refresh_token = login_response.cookies[settings.refresh_cookie_name]
    async_client.cookies.clear()

    response = await async_client.post("/auth/refresh", json={"refresh_token": refresh_token})

    assert response.status_code == 200


@pytest.mark.asyncio
async def test_refresh_without_token(async_client):
    async_client.cookies.clear()

    response = await async_client.post("/auth/refresh")

    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"


@pytest.mark.asyncio
async def test_refresh_rejects_access_token(async_client, user_factory, login):
    await user_factory(email="kind@ultrabms.test")
    access_token = (await login("kind@ultrabms.test")).json()["access_token"]
    async_client.cookies.clear()

    response = await async_client.post("/auth/refresh", json={"refresh_token": access_token})

    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"


@pytest.mark.asyncio
async def test_refresh_after_idle_timeout_reports_expiry(clock, async_client, user_factory, login):
    """Test that an idle session cannot be revived with its refresh token."""
    await user_factory(email="idle@ultrabms.test")
    refresh_token = (await login("idle@ultrabms.test")).cookies[settings.refresh_cookie_name]

    clock.advance(minutes=31)
    response = await async_client.post("/auth/refresh", headers=_refresh_cookie(refresh_token))

    assert response.status_code == 401
    data = response.json()
    assert data["code"] == "session_expired"
    assert data["reason"] == "idle"
    assert response.headers["WWW-Authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_refresh_does_not_count_as_activity(clock, async_client, user_factory, login):
    """Test that background refreshes do not keep an idle session alive."""
    await user_factory(email="quiet@ultrabms.test")
    refresh_token = (await login("quiet@ultrabms.test")).cookies[settings.refresh_cookie_name]

    clock.advance(minutes=20)
    refreshed = await async_client.post("/auth/refresh", headers=_refresh_cookie(refresh_token))
    assert refreshed.status_code == 200

    clock.advance(minutes=11)
    response = await async_client.get("/auth/me", headers=bearer(refreshed.json()["access_token"]))

    assert response.status_code == 401
    assert response.json()["reason"] == "idle"


@pytest.mark.asyncio
async def test_logout_revokes_token(async_client, user_factory, login):
    """Test that a logged-out access token is rejected."""
    await user_factory(email="logout@ultrabms.test")
    login_response = await login("logout@ultrabms.test")
    access_token = login_response.json()["access_token"]
    refresh_token = login_response.cookies[settings.refresh_cookie_name]

    response = await async_client.post("/auth/logout", headers=bearer(access_token))
    assert response.status_code == 200
    assert response.json()["message"] == "Logged out successfully"

    response = await async_client.get("/auth/me", headers=bearer(access_token))
    assert response.status_code == 401
    assert response.json() == {"detail": "Authentication required", "code": "unauthenticated"}

    response = await async_client.post("/auth/refresh", json={"refresh_token": refresh_token})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_logout_requires_auth(async_client):
    response = await async_client.post("/auth/logout")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_logout_all_ends_every_session(async_client, user_factory, login):
    await user_factory(email="everywhere@ultrabms.test")
    first = (await login("everywhere@ultrabms.test")).json()["access_token"]
    second = (await login("everywhere@ultrabms.test")).json()["access_token"]

    response = await async_client.post("/auth/logout-all", headers=bearer(first))

    assert response.status_code == 200
    assert response.json()["revoked"] == 2
    for token in (first, second):
        assert (await async_client.get("/auth/me", headers=bearer(token))).status_code == 401


@pytest.mark.asyncio
async def test_me_returns_user_and_permissions(async_client, user_factory, login):
    """Test the current-user endpoint."""
    from bms_auth.models.enums import UserRole

    user = await user_factory(email="vendor@ultrabms.test", role=UserRole.VENDOR)
    login_response = await login("vendor@ultrabms.test")

    response = await async_client.get(
        "/auth/me", headers=bearer(login_response.json()["access_token"])
    )

    assert response.status_code == 200
    data = response.json()
    assert data["id"] == str(user.id)
    assert data["email"] == "vendor@ultrabms.test"
    assert data["role"] == "VENDOR"
    assert data["permissions"] == ["workorder:read", "workorder:update"]
    assert data["session_id"] == login_response.json()["session_id"]
    assert data["last_login_at"] is not None


@pytest.mark.asyncio
async def test_change_password_ends_all_sessions(async_client, user_factory, login):
    """Test that changing the password logs the user out everywhere."""
    await user_factory(email="rotate@ultrabms.test")
    access_token = (await login("rotate@ultrabms.test")).json()["access_token"]
    await login("rotate@ultrabms.test", client_ip="203.0.113.11")

    response = await async_client.post(
        "/auth/change-password",
        json={"current_password": TEST_PASSWORD, "new_password": NEW_PASSWORD},
        headers=bearer(access_token),
    )

    assert response.status_code == 200
    assert response.json()["revoked"] == 2
    assert (await async_client.get("/auth/me", headers=bearer(access_token))).status_code == 401

    assert (await login("rotate@ultrabms.test")).status_code == 401
    assert (await login("rotate@ultrabms.test", password=NEW_PASSWORD)).status_code == 200


@pytest.mark.asyncio
async def test_change_password_wrong_current_password(async_client, user_factory, login):
    await user_factory(email="nochange@ultrabms.test")
    access_token = (await login("nochange@ultrabms.test")).json()["access_token"]

    response = await async_client.post(
        "/auth/change-password",
        json={"current_password": "not-my-password", "new_password": NEW_PASSWORD},
        headers=bearer(access_token),
    )

    assert response.status_code == 400
    assert (await async_client.get("/auth/me", headers=bearer(access_token))).status_code == 200


@pytest.mark.asyncio
async def test_change_password_validates_length(async_client, user_factory, login):
    await user_factory(email="short@ultrabms.test")
    access_token = (await login("short@ultrabms.test")).json()["access_token"]

    response = await async_client.post(
        "/auth/change-password",
        json={"current_password": TEST_PASSWORD, "new_password": "short"},
        headers=bearer(access_token),
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_session_records_device_details(async_client, user_factory, login):
    await user_factory(email="device@ultrabms.test")
    access_token = (await login("device@ultrabms.test")).json()["access_token"]

    response = await async_client.get("/api/sessions", headers=bearer(access_token))

    item = response.json()["items"][0]
    assert item["browser"] == "Chrome"
    assert item["device_type"] == "Desktop"
    assert item["ip_address"] == "203.0.113.10"


@pytest.mark.asyncio
async def test_logout_all_revokes_access_tokens_replaced_by_refresh(
    async_client, user_factory, login, ledger
):
    """Test that ending a session also revokes access tokens issued before a refresh."""
    await user_factory(email="rotated@ultrabms.test")
    login_response = await login("rotated@ultrabms.test")
    first = login_response.json()["access_token"]
    refresh_token = login_response.cookies[settings.refresh_cookie_name]

    refreshed = await async_client.post("/auth/refresh", headers=_refresh_cookie(refresh_token))
    second = refreshed.json()["access_token"]
    # The earlier token keeps working while the session is open
    assert (await async_client.get("/auth/me", headers=bearer(first))).status_code == 200

    response = await async_client.post("/auth/logout-all", headers=bearer(second))

    assert response.status_code == 200
    assert await ledger.is_revoked(first) is True
    assert await ledger.is_revoked(second) is True


def test_rate_limiter_forgets_idle_clients():
    """Test that clients with no attempts left in the window are dropped."""
    from bms_auth.api import auth as auth_api

    auth_api._record_login_attempt("192.0.2.50")
    later = time.monotonic() + settings.login_rate_limit_window_seconds + 1

    with patch("bms_auth.api.auth.time.monotonic", return_value=later):
        auth_api._check_login_rate_limit("192.0.2.50")
        auth_api._check_login_rate_limit("192.0.2.51")

    assert "192.0.2.50" not in auth_api._login_attempts
    assert "192.0.2.51" not in auth_api._login_attempts
