"""Tests for the authentication audit trail."""

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from bms_auth.core import settings
from bms_auth.models.audit_log import AuditLog
from bms_auth.models.enums import AuditAction, UserRole
from bms_auth.services.audit import AuditService
from tests.conftest import T0, TEST_PASSWORD, TEST_USER_AGENT, bearer


async def _events(db_session, action: AuditAction | None = None) -> list[AuditLog]:
    query = select(AuditLog).order_by(AuditLog.created_at)
    if action is not None:
        query = query.where(AuditLog.action == action)
    result = await db_session.execute(query)
    return list(result.scalars())


class TestAuditServiceSanitization:
    """Tests for redaction of sensitive detail values."""

    @pytest.fixture
    def audit_service(self):
        """Audit service over a mocked database session."""
        return AuditService(AsyncMock())

    def test_sanitize_password_field(self, audit_service):
        """Test that password fields are redacted."""
        sanitized = audit_service._sanitize_details({"email": "a@b.test", "password": "hunter2"})

        assert sanitized["email"] == "a@b.test"
        assert sanitized["password"] == "[REDACTED - set]"

    def test_sanitize_token_fields(self, audit_service):
        """Test that token fields are redacted."""
        sanitized = audit_service._sanitize_details(
            {"access_token": "eyJ.a.b", "refresh_token": None}
        )

        assert sanitized["access_token"] == "[REDACTED - set]"
        assert sanitized["refresh_token"] == "[REDACTED - unset]"

    def test_sanitize_nested_dict(self, audit_service):
        sanitized = audit_service._sanitize_details(
            {"request": {"client_secret": "s3cret", "client_id": "public-id"}}
        )

        assert sanitized["request"]["client_secret"] == "[REDACTED - set]"
        assert sanitized["request"]["client_id"] == "public-id"

    def test_datetimes_become_iso_strings(self, audit_service):
        sanitized = audit_service._sanitize_details({"locked_until": T0})

        assert sanitized["locked_until"] == T0.isoformat()


class TestAuditService:
    """Recording, listing and purging events."""

    @pytest.mark.asyncio
    async def test_log_persists_event(self, db_session, clock, user_factory):
        user = await user_factory()
        audit = AuditService(db_session, clock=clock)

        await audit.log_login_success(user.id, "session-1", "198.51.100.7", "curl/8.5.0")
        await db_session.commit()

        (event,) = await _events(db_session)
        assert event.action == AuditAction.LOGIN_SUCCESS
        assert event.user_id == user.id
        assert event.ip_address == "198.51.100.7"
        assert event.user_agent == "curl/8.5.0"
        assert event.details == {"session_id": "session-1"}

    @pytest.mark.asyncio
    async def test_list_for_user_is_newest_first(self, db_session, clock, user_factory):
        user = await user_factory()
        other = await user_factory()
        audit = AuditService(db_session, clock=clock)

        await audit.log(AuditAction.LOGIN_SUCCESS, user_id=user.id)
        clock.advance(minutes=1)
        await audit.log(AuditAction.LOGOUT, user_id=user.id)
        await audit.log(AuditAction.LOGIN_SUCCESS, user_id=other.id)
        await db_session.commit()

        events = await audit.list_for_user(user.id)

        assert [e.action for e in events] == [AuditAction.LOGOUT, AuditAction.LOGIN_SUCCESS]

    @pytest.mark.asyncio
    async def test_purge_older_than(self, db_session, clock, user_factory):
        user = await user_factory()
        audit = AuditService(db_session, clock=clock)
        for _ in range(3):
            await audit.log(AuditAction.TOKEN_REFRESH, user_id=user.id)
        clock.advance(days=10)
        await audit.log(AuditAction.LOGOUT, user_id=user.id)
        await db_session.commit()

        purged = await audit.purge_older_than(T0 + timedelta(days=1), batch_size=2)

        assert purged == 3
        assert [e.action for e in await _events(db_session)] == [AuditAction.LOGOUT]


class TestLoginAudit:
    """Login outcomes leave a row each."""

    @pytest.mark.asyncio
    async def test_successful_login(self, user_factory, login, db_session):
        user = await user_factory(email="audited@ultrabms.test")

        response = await login("audited@ultrabms.test")

        (event,) = await _events(db_session, AuditAction.LOGIN_SUCCESS)
        assert event.user_id == user.id
        assert event.ip_address == "203.0.113.10"
        assert event.user_agent == TEST_USER_AGENT
        assert event.details["session_id"] == response.json()["session_id"]

    @pytest.mark.asyncio
    async def test_wrong_password(self, user_factory, login, db_session):
        user = await user_factory(email="typo@ultrabms.test")

        await login("typo@ultrabms.test", password="not-the-password")

        (event,) = await _events(db_session, AuditAction.LOGIN_FAILED)
        assert event.user_id == user.id
        assert event.details == {"reason": "Invalid password", "failed_attempts": 1}
        # The attempted password never reaches the table
        assert "not-the-password" not in str(event.details)

    @pytest.mark.asyncio
    async def test_unknown_email(self, login, db_session):
        await login("Ghost@UltraBMS.test")

        (event,) = await _events(db_session, AuditAction.LOGIN_FAILED)
        assert event.user_id is None
        assert event.details == {"reason": "User not found", "email": "ghost@ultrabms.test"}

    @pytest.mark.asyncio
    async def test_locked_account(self, user_factory, login, db_session):
        await user_factory(email="locked-audit@ultrabms.test")
        for i in range(settings.max_failed_login_attempts):
            await login("locked-audit@ultrabms.test", "bad-password", client_ip=f"198.51.100.{i}")

        response = await login("locked-audit@ultrabms.test", client_ip="198.51.100.200")

        assert response.status_code == 423
        events = await _events(db_session, AuditAction.LOGIN_FAILED)
        (locked,) = [e for e in events if e.details["reason"] == "Account locked"]
        assert locked.ip_address == "198.51.100.200"
        assert len(events) == settings.max_failed_login_attempts + 1

    @pytest.mark.asyncio
    async def test_deactivated_user(self, user_factory, login, db_session):
        await user_factory(email="off@ultrabms.test", is_active=False)

        await login("off@ultrabms.test")

        (event,) = await _events(db_session, AuditAction.LOGIN_FAILED)
        assert event.details == {"reason": "Account deactivated"}

    @pytest.mark.asyncio
    async def test_rate_limited(self, login, db_session):
        for _ in range(settings.login_rate_limit_attempts):
            await login("nobody@ultrabms.test", client_ip="192.0.2.70")

        response = await login("nobody@ultrabms.test", client_ip="192.0.2.70")

        assert response.status_code == 429
        events = await _events(db_session, AuditAction.LOGIN_FAILED)
        (limited,) = [e for e in events if e.details["reason"] == "Rate limited"]
        assert limited.details["email"] == "nobody@ultrabms.test"
        assert limited.ip_address == "192.0.2.70"


class TestSessionAudit:
    """Refresh, logout and timeouts are recorded against the user."""

    @pytest.mark.asyncio
    async def test_refresh(self, async_client, user_factory, login, db_session):
        user = await user_factory(email="fresh@ultrabms.test")
        login_response = await login("fresh@ultrabms.test")
        refresh_token = login_response.cookies[settings.refresh_cookie_name]

        response = await async_client.post(
            "/auth/refresh", headers={"Cookie": f"{settings.refresh_cookie_name}={refresh_token}"}
        )

        assert response.status_code == 200
        (event,) = await _events(db_session, AuditAction.TOKEN_REFRESH)
        assert event.user_id == user.id
        assert event.details == {"session_id": login_response.json()["session_id"]}

    @pytest.mark.asyncio
    async def test_logout_and_logout_all(self, async_client, user_factory, login, db_session):
        user = await user_factory(email="bye@ultrabms.test")
        first = (await login("bye@ultrabms.test")).json()
        second = (await login("bye@ultrabms.test")).json()

        await async_client.post("/auth/logout", headers=bearer(first["access_token"]))
        await async_client.post("/auth/logout-all", headers=bearer(second["access_token"]))

        (logout,) = await _events(db_session, AuditAction.LOGOUT)
        assert logout.user_id == user.id
        assert logout.details == {"session_id": first["session_id"]}
        (logout_all,) = await _events(db_session, AuditAction.LOGOUT_ALL)
        assert logout_all.details == {"revoked": 1, "reason": "LOGOUT_ALL"}

    @pytest.mark.asyncio
    async def test_revoking_one_session(self, async_client, user_factory, login, db_session):
        await user_factory(email="pick@ultrabms.test")
        keeper = (await login("pick@ultrabms.test")).json()
        other = (await login("pick@ultrabms.test")).json()

        await async_client.delete(
            f"/api/sessions/{other['session_id']}", headers=bearer(keeper["access_token"])
        )

        (event,) = await _events(db_session, AuditAction.SESSION_REVOKED)
        assert event.details == {
            "session_id": other["session_id"],
            "revoked_by": keeper["session_id"],
        }

    @pytest.mark.asyncio
    async def test_idle_timeout(self, clock, async_client, user_factory, login, db_session):
        user = await user_factory(email="dozed@ultrabms.test")
        login_response = (await login("dozed@ultrabms.test")).json()

        clock.advance(minutes=31)
        response = await async_client.get(
            "/auth/me",
            headers={**bearer(login_response["access_token"]), "X-Real-IP": "198.51.100.99"},
        )

        assert response.json()["code"] == "session_expired"
        (event,) = await _events(db_session, AuditAction.SESSION_TIMEOUT)
        assert event.user_id == user.id
        assert event.ip_address == "198.51.100.99"
        assert event.details == {"session_id": login_response["session_id"], "reason": "idle"}

    @pytest.mark.asyncio
    async def test_password_change(self, async_client, user_factory, login, db_session):
        user = await user_factory(email="newpw@ultrabms.test")
        token = (await login("newpw@ultrabms.test")).json()["access_token"]

        await async_client.post(
            "/auth/change-password",
            json={"current_password": TEST_PASSWORD, "new_password": "another-long-passphrase"},
            headers=bearer(token),
        )

        (event,) = await _events(db_session, AuditAction.PASSWORD_CHANGE)
        assert event.user_id == user.id
        assert event.details == {"revoked": 1}


class TestAdminAudit:
    """Force logout and the per-user audit listing."""

    @pytest.mark.asyncio
    async def test_forced_logout_records_actor(self, async_client, user_factory, login, db_session):
        target = await user_factory(email="kicked@ultrabms.test")
        admin_user = await user_factory(email="boss@ultrabms.test", role=UserRole.SUPER_ADMIN)
        await login("kicked@ultrabms.test")
        admin = (await login("boss@ultrabms.test")).json()["access_token"]

        await async_client.delete(f"/api/users/{target.id}/sessions", headers=bearer(admin))

        (event,) = await _events(db_session, AuditAction.FORCED_LOGOUT)
        assert event.user_id == target.id
        assert event.details == {
            "revoked": 1,
            "reason": "SECURITY_VIOLATION",
            "actor_id": str(admin_user.id),
        }

    @pytest.mark.asyncio
    async def test_admin_lists_user_events(self, clock, async_client, user_factory, login):
        target = await user_factory(email="watched@ultrabms.test")
        await user_factory(email="auditor@ultrabms.test", role=UserRole.SUPER_ADMIN)
        await login("watched@ultrabms.test", password="wrong-password")
        clock.advance(seconds=5)
        await login("watched@ultrabms.test")
        clock.advance(seconds=5)
        admin = (await login("auditor@ultrabms.test")).json()["access_token"]

        response = await async_client.get(
            f"/api/users/{target.id}/audit", headers=bearer(admin)
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 2
        assert [item["action"] for item in data["items"]] == ["LOGIN_SUCCESS", "LOGIN_FAILED"]
        assert data["items"][1]["details"]["reason"] == "Invalid password"

    @pytest.mark.asyncio
    async def test_non_admin_cannot_list_events(self, async_client, user_factory, login):
        target = await user_factory(email="private@ultrabms.test")
        await user_factory(email="nosy@ultrabms.test", role=UserRole.PROPERTY_MANAGER)
        token = (await login("nosy@ultrabms.test")).json()["access_token"]

        response = await async_client.get(f"/api/users/{target.id}/audit", headers=bearer(token))

        assert response.status_code == 403
