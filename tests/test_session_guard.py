"""Tests for the per-request SessionGuard pipeline."""

import uuid
from datetime import timedelta

import pytest

from bms_auth.models.enums import BlacklistReason, TokenType, UserRole
from bms_auth.services.errors import (
    ExpiredTokenError,
    InvalidTokenError,
    RevokedTokenError,
    SessionAbsoluteTimeoutError,
    SessionIdleTimeoutError,
    SessionNotFoundError,
    UserInactiveError,
)
from bms_auth.services.permissions import get_permission_resolver
from tests.conftest import T0


async def _login(guard, db_session, user):
    """Open a session and return its bound access token."""
    store = guard.store(db_session)
    user_session = await store.create(user.id, "pytest", "127.0.0.1")
    token = guard.codec.issue(
        str(user.id),
        user.role.value,
        get_permission_resolver().permission_strings(user.role),
        TokenType.ACCESS,
        session_id=user_session.session_id,
    )
    await store.bind_tokens(user_session, token)
    await db_session.commit()
    return user_session, token


@pytest.mark.asyncio
async def test_valid_token_yields_principal(guard, db_session, user_factory):
    user = await user_factory(role=UserRole.VENDOR)
    user_session, token = await _login(guard, db_session, user)

    principal = await guard.authenticate(db_session, token)

    assert principal.user_id == user.id
    assert principal.role == "VENDOR"
    assert principal.session_id == user_session.session_id
    assert principal.permissions == frozenset({"workorder:read", "workorder:update"})


@pytest.mark.asyncio
async def test_missing_token_is_rejected(guard, db_session):
    with pytest.raises(InvalidTokenError):
        await guard.authenticate(db_session, None)


@pytest.mark.asyncio
async def test_refresh_token_is_not_an_access_token(guard, db_session, user_factory):
    user = await user_factory()
    user_session, _ = await _login(guard, db_session, user)
    refresh = guard.codec.issue(
        str(user.id), "TENANT", [], TokenType.REFRESH, session_id=user_session.session_id
    )

    with pytest.raises(InvalidTokenError):
        await guard.authenticate(db_session, refresh)


@pytest.mark.asyncio
async def test_revocation_wins_over_valid_signature(guard, db_session, user_factory):
    user = await user_factory()
    _, token = await _login(guard, db_session, user)
    await guard.ledger(db_session).revoke(token, TokenType.ACCESS, BlacklistReason.LOGOUT)
    await db_session.commit()

    # The signature alone still checks out
    assert guard.codec.verify(token).subject_id == str(user.id)
    with pytest.raises(RevokedTokenError):
        await guard.authenticate(db_session, token)


@pytest.mark.asyncio
async def test_token_without_session_is_rejected(guard, db_session, user_factory):
    user = await user_factory()
    token = guard.codec.issue(str(user.id), "TENANT", [], TokenType.ACCESS)

    with pytest.raises(SessionNotFoundError):
        await guard.authenticate(db_session, token)


@pytest.mark.asyncio
async def test_token_for_someone_elses_session_is_rejected(guard, db_session, user_factory):
    owner = await user_factory()
    other = await user_factory()
    user_session, _ = await _login(guard, db_session, owner)
    forged = guard.codec.issue(
        str(other.id), "TENANT", [], TokenType.ACCESS, session_id=user_session.session_id
    )

    with pytest.raises(SessionNotFoundError):
        await guard.authenticate(db_session, forged)


@pytest.mark.asyncio
async def test_idle_session_is_rejected_and_stays_ended(guard, clock, db_session, user_factory):
    user = await user_factory()
    user_session, token = await _login(guard, db_session, user)

    clock.advance(minutes=31)
    with pytest.raises(SessionIdleTimeoutError):
        await guard.authenticate(db_session, token)

    # The invalidation was committed before the error propagated
    await db_session.rollback()
    ended = await guard.store(db_session).get(user_session.session_id)
    await db_session.refresh(ended)
    assert ended.is_active is False
    assert ended.end_reason == BlacklistReason.IDLE_TIMEOUT
    assert await guard.ledger(db_session).is_revoked(token) is True


@pytest.mark.asyncio
async def test_absolute_timeout_reaches_before_token_expiry(guard, clock, db_session, user_factory):
    user = await user_factory()
    _, token = await _login(guard, db_session, user)

    # Keep the session busy; access tokens last an hour, so issue fresh ones
    step = timedelta(minutes=29, seconds=59)
    while clock.now + step < T0 + timedelta(hours=12):
        clock.advance(minutes=29, seconds=59)
        principal = await guard.authenticate(db_session, token)
        user_session = await guard.store(db_session).get(principal.session_id)
        token = guard.codec.issue(
            str(user.id), "TENANT", [], TokenType.ACCESS, session_id=principal.session_id
        )
        await guard.store(db_session).bind_tokens(user_session, token)
        await db_session.commit()

    clock.advance(minutes=29, seconds=59)
    with pytest.raises(SessionAbsoluteTimeoutError):
        await guard.authenticate(db_session, token)


@pytest.mark.asyncio
async def test_expired_token_is_rejected(guard, clock, db_session, user_factory):
    user = await user_factory()
    _, token = await _login(guard, db_session, user)

    clock.advance(hours=1)

    with pytest.raises(ExpiredTokenError):
        await guard.authenticate(db_session, token)


@pytest.mark.asyncio
async def test_inactive_user_is_rejected(guard, db_session, user_factory):
    user = await user_factory()
    _, token = await _login(guard, db_session, user)
    user.is_active = False
    await db_session.commit()

    with pytest.raises(UserInactiveError):
        await guard.authenticate(db_session, token)


@pytest.mark.asyncio
async def test_malformed_subject_is_invalid(guard, db_session):
    token = guard.codec.issue("not-a-uuid", "TENANT", [], TokenType.ACCESS, session_id="x")

    with pytest.raises(InvalidTokenError):
        await guard.authenticate(db_session, token)


@pytest.mark.asyncio
async def test_unknown_session_id_is_rejected(guard, db_session, user_factory):
    user = await user_factory()
    token = guard.codec.issue(
        str(user.id), "TENANT", [], TokenType.ACCESS, session_id=str(uuid.uuid4())
    )

    with pytest.raises(SessionNotFoundError):
        await guard.authenticate(db_session, token)
