from __future__ import annotations

import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from services.auth_service.app.core.errors import (
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
    TokenReuseDetected,
    TokenRevoked,
    TokenStoreUnavailable,
    UserInactive,
)
from services.auth_service.app.core.security import hash_token
from services.auth_service.app.models import RefreshToken, RevokeReason, User
from services.auth_service.app.services import IssuedToken, RefreshTokenAuthority


@pytest.mark.asyncio
async def test_issue_starts_a_family_at_generation_one(authority, user, family_rows, clock):
    issued = await authority.issue(user.id, "tablet-7", ip_address="10.0.0.5", user_agent="pytest")

    rows = await family_rows(issued.family_id)
    assert len(rows) == 1
    row = rows[0]
    assert row.generation == 1
    assert row.previous_token_hash is None
    assert row.token_hash == hash_token(issued.token)
    assert row.token_hash != issued.token
    assert row.device_id == "tablet-7"
    assert row.used_at is None and row.revoke_reason is None
    assert issued.expires_at == clock() + authority.ttl


@pytest.mark.asyncio
async def test_issue_creates_a_new_family_per_login(authority, user):
    first = await authority.issue(user.id)
    second = await authority.issue(user.id)
    assert first.family_id != second.family_id
    assert first.token != second.token


@pytest.mark.asyncio
async def test_rotate_links_successor_to_predecessor(authority, user, family_rows, clock):
    issued = await authority.issue(user.id, "laptop")
    clock.advance(minutes=5)

    rotated = await authority.rotate(issued.token)

    assert rotated.family_id == issued.family_id
    assert rotated.generation == 2
    assert rotated.user_id == user.id
    first, second = await family_rows(issued.family_id)
    assert first.used_at is not None
    assert second.previous_token_hash == first.token_hash
    assert second.generation == first.generation + 1
    assert second.token_hash == hash_token(rotated.token)
    assert second.device_id == "laptop"


@pytest.mark.asyncio
async def test_replaying_an_old_token_revokes_the_whole_family(authority, user, family_rows):
    gen1 = await authority.issue(user.id)
    gen2 = await authority.rotate(gen1.token)
    gen3 = await authority.rotate(gen2.token)
    assert gen3.generation == 3

    with pytest.raises(TokenReuseDetected) as excinfo:
        await authority.rotate(gen1.token)
    assert excinfo.value.family_id == gen1.family_id

    rows = await family_rows(gen1.family_id)
    assert [row.generation for row in rows] == [1, 2, 3]
    assert rows[2].revoke_reason == RevokeReason.reuse_detected.value
    assert rows[2].revoked_at is not None
    # Used rows keep their history untouched
    assert rows[0].revoke_reason is None and rows[1].revoke_reason is None

    with pytest.raises(TokenRevoked):
        await authority.rotate(gen3.token)


@pytest.mark.asyncio
async def test_second_replay_is_still_reported_as_reuse(authority, user):
    gen1 = await authority.issue(user.id)
    await authority.rotate(gen1.token)

    with pytest.raises(TokenReuseDetected):
        await authority.rotate(gen1.token)
    with pytest.raises(TokenReuseDetected):
        await authority.rotate(gen1.token)


@pytest.mark.asyncio
async def test_expired_token_is_rejected_without_mutation(authority, user, family_rows, clock):
    issued = await authority.issue(user.id)
    clock.advance(minutes=61)

    with pytest.raises(TokenExpired):
        await authority.rotate(issued.token)

    rows = await family_rows(issued.family_id)
    assert len(rows) == 1
    assert rows[0].used_at is None
    assert rows[0].revoke_reason is None


@pytest.mark.asyncio
async def test_unknown_token_is_not_found(authority, user):
    with pytest.raises(TokenNotFound):
        await authority.rotate("not-a-token")
    with pytest.raises(TokenNotFound):
        await authority.validate("not-a-token")


@pytest.mark.asyncio
async def test_revoke_family_is_idempotent(authority, user, family_rows):
    gen1 = await authority.issue(user.id)
    gen2 = await authority.rotate(gen1.token)

    assert await authority.revoke_family(gen1.family_id, RevokeReason.admin_revoked) == 1
    after_first = [(row.used_at, row.revoke_reason, row.revoked_at) for row in await family_rows(gen1.family_id)]

    assert await authority.revoke_family(gen1.family_id, RevokeReason.logout) == 0
    after_second = [(row.used_at, row.revoke_reason, row.revoked_at) for row in await family_rows(gen1.family_id)]

    assert after_first == after_second
    assert after_second[1][1] == RevokeReason.admin_revoked.value
    with pytest.raises(TokenRevoked):
        await authority.rotate(gen2.token)


@pytest.mark.asyncio
async def test_validate_is_read_only(authority, user, family_rows):
    gen1 = await authority.issue(user.id)
    assert await authority.validate(gen1.token) == user.id

    gen2 = await authority.rotate(gen1.token)
    with pytest.raises(TokenAlreadyUsed) as excinfo:
        await authority.validate(gen1.token)
    assert not isinstance(excinfo.value, TokenReuseDetected)

    rows = await family_rows(gen1.family_id)
    assert rows[1].revoke_reason is None
    assert await authority.validate(gen2.token) == user.id


@pytest.mark.asyncio
async def test_validate_rejects_expired_and_revoked_tokens(authority, user, clock):
    revoked = await authority.issue(user.id)
    await authority.revoke_token(revoked.token)
    with pytest.raises(TokenRevoked):
        await authority.validate(revoked.token)

    expiring = await authority.issue(user.id)
    clock.advance(hours=2)
    with pytest.raises(TokenExpired):
        await authority.validate(expiring.token)


@pytest.mark.asyncio
async def test_concurrent_rotation_has_a_single_winner(session_factory, settings, clock, user):
    # Extra retries absorb SQLite "database is locked" answers to the losing writer
    authority = RefreshTokenAuthority(
        session_factory,
        settings.model_copy(update={"rotation_retry_attempts": 5, "rotation_retry_base_delay_ms": 20}),
        clock=clock,
    )
    issued = await authority.issue(user.id)

    results = await asyncio.gather(
        authority.rotate(issued.token),
        authority.rotate(issued.token),
        return_exceptions=True,
    )

    winners = [result for result in results if isinstance(result, IssuedToken)]
    losers = [result for result in results if isinstance(result, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], TokenAlreadyUsed)

    async with session_factory() as session:
        count = await session.scalar(
            select(func.count()).select_from(RefreshToken).where(RefreshToken.family_id == issued.family_id)
        )
    assert count == 2
    # The loser saw a replay, so the winner's successor is revoked too
    with pytest.raises(TokenRevoked):
        await authority.rotate(winners[0].token)


@pytest.mark.asyncio
async def test_grace_window_returns_current_successor(session_factory, settings, clock, user, family_rows):
    authority = RefreshTokenAuthority(
        session_factory,
        settings.model_copy(update={"reuse_grace_seconds": 120}),
        clock=clock,
    )
    gen1 = await authority.issue(user.id)
    gen2 = await authority.rotate(gen1.token)

    clock.advance(seconds=30)
    retried = await authority.rotate(gen1.token)
    assert retried.token is None
    assert retried.generation == 2
    assert len(await family_rows(gen1.family_id)) == 2

    clock.advance(seconds=120)
    with pytest.raises(TokenReuseDetected):
        await authority.rotate(gen1.token)
    with pytest.raises(TokenRevoked):
        await authority.rotate(gen2.token)


@pytest.mark.asyncio
async def test_inactive_owner_revokes_the_token(authority, user, session_factory, family_rows):
    issued = await authority.issue(user.id)
    async with session_factory() as session:
        record = await session.get(User, user.id)
        record.is_active = False
        await session.commit()

    with pytest.raises(UserInactive):
        await authority.rotate(issued.token)

    rows = await family_rows(issued.family_id)
    assert rows[0].revoke_reason == RevokeReason.user_inactive.value
    assert rows[0].used_at is None


@pytest.mark.asyncio
async def test_revoke_all_for_user_covers_every_family(authority, user, family_rows):
    phone = await authority.issue(user.id, "phone")
    laptop = await authority.issue(user.id, "laptop")
    await authority.rotate(laptop.token)

    assert await authority.revoke_all_for_user(user.id) == 2

    for family_id in (phone.family_id, laptop.family_id):
        live = [row for row in await family_rows(family_id) if row.used_at is None]
        assert all(row.revoke_reason == RevokeReason.logout.value for row in live)


@pytest.mark.asyncio
async def test_revoke_token_ignores_unknown_tokens(authority, user):
    assert await authority.revoke_token("never-issued") == 0


@pytest.mark.asyncio
async def test_purge_stale_deletes_only_long_expired_rows(authority, user, family_rows, clock):
    old = await authority.issue(user.id)
    clock.advance(days=31, minutes=61)
    fresh = await authority.issue(user.id)

    assert await authority.purge_stale() == 1
    assert await family_rows(old.family_id) == []
    assert len(await family_rows(fresh.family_id)) == 1


@pytest.mark.asyncio
async def test_store_errors_are_retried_once(authority, clock, monkeypatch):
    calls = []
    expected = IssuedToken("next-secret", uuid4(), 1, 2, clock() + authority.ttl)

    async def flaky(*_args):
        calls.append(1)
        if len(calls) == 1:
            raise OperationalError("UPDATE refresh_tokens", {}, Exception("database is locked"))
        return expected

    monkeypatch.setattr(authority, "_rotate_once", flaky)
    assert await authority.rotate("presented") is expected
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_persistent_store_errors_surface_as_unavailable(authority, monkeypatch):
    calls = []

    async def broken(*_args):
        calls.append(1)
        raise OperationalError("UPDATE refresh_tokens", {}, Exception("could not serialize access"))

    monkeypatch.setattr(authority, "_rotate_once", broken)
    with pytest.raises(TokenStoreUnavailable):
        await authority.rotate("whatever")
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_purge_stale_deletes_long_used_and_revoked_rows(session_factory, settings, clock, user, family_rows):
    authority = RefreshTokenAuthority(
        session_factory,
        settings.model_copy(update={"refresh_token_expires_minutes": 60 * 24 * 90}),
        clock=clock,
    )
    rotated = await authority.issue(user.id)
    successor = await authority.rotate(rotated.token)
    await authority.revoke_family(successor.family_id, RevokeReason.logout)
    live = await authority.issue(user.id)

    clock.advance(days=31)

    assert await authority.purge_stale() == 2
    assert await family_rows(rotated.family_id) == []
    assert len(await family_rows(live.family_id)) == 1
