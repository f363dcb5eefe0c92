from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, TypeVar
from uuid import UUID, uuid4

from loguru import logger
from sqlalchemy import ColumnElement, delete, or_, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.clock import Clock, as_utc, utc_now
from ..core.errors import RefreshTokenError, TokenReuseDetected, TokenStoreUnavailable, UserInactive
from ..core.security import generate_secret, hash_token
from ..metrics import family_revocations_total, token_reuse_detected_total, tokens_purged_total
from ..models import RefreshToken, RevokeReason, User
from ..settings import AuthSettings, auth_settings
from .rotation_policy import TokenState, Verdict, judge_rotation, judge_validation, rotation_error, validation_error

T = TypeVar("T")


@dataclass
class IssuedToken:
    """Result of issue/rotate. ``token`` is the only copy of the plaintext secret.

    ``token`` is ``None`` when a rotation was answered inside the reuse grace
    window; the client keeps using the successor it already holds.
    """

    token: str | None
    family_id: UUID
    user_id: int
    generation: int
    expires_at: datetime


class RefreshTokenAuthority:
    """Issues, rotates and revokes refresh tokens grouped into families.

    Each rotation runs in its own transaction: the presented row is locked, its
    ``used_at`` is claimed with a compare-and-swap and the successor inserted.
    Failures that carry side effects (family revocation on replay, revocation
    for inactive owners) are committed before the error is raised.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: AuthSettings | None = None,
        *,
        clock: Clock = utc_now,
        secret_factory: Callable[[], str] = generate_secret,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or auth_settings()
        self._clock = clock
        self._secret_factory = secret_factory

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self._settings.refresh_token_expires_minutes)

    @property
    def grace(self) -> timedelta:
        return timedelta(seconds=self._settings.reuse_grace_seconds)

    async def issue(
        self,
        user_id: int,
        device_id: str | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedToken:
        """Start a new family with a generation 1 token."""
        secret = self._secret_factory()
        now = self._clock()
        record = RefreshToken(
            id=uuid4(),
            user_id=user_id,
            family_id=uuid4(),
            token_hash=hash_token(secret),
            previous_token_hash=None,
            generation=1,
            device_id=device_id,
            ip_address=ip_address,
            user_agent=user_agent,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        async with self._session_factory() as session:
            async with session.begin():
                session.add(record)
        logger.bind(user_id=user_id, family_id=str(record.family_id)).info(
            f"auth.refresh.issued family={record.family_id} user={user_id}"
        )
        return IssuedToken(secret, record.family_id, user_id, record.generation, record.expires_at)

    async def rotate(
        self,
        presented_token: str,
        device_id: str | None = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedToken:
        """Exchange a live token for its successor.

        Raises ``TokenNotFound``, ``TokenExpired``, ``TokenReuseDetected``,
        ``TokenRevoked`` or ``UserInactive``; ``TokenStoreUnavailable`` when the
        database keeps failing after the configured retries.
        """
        token_hash = hash_token(presented_token)
        outcome = await self._with_retry(
            lambda: self._rotate_once(token_hash, device_id, ip_address, user_agent)
        )
        if isinstance(outcome, RefreshTokenError):
            self._log_failure(outcome)
            raise outcome
        if outcome.token is not None:
            logger.bind(user_id=outcome.user_id, family_id=str(outcome.family_id)).info(
                f"auth.refresh.rotated family={outcome.family_id} generation={outcome.generation}"
            )
        return outcome

    async def validate(self, presented_token: str) -> int:
        """Return the owner of a live token without changing any row."""
        token_hash = hash_token(presented_token)
        async with self._session_factory() as session:
            record = await session.scalar(select(RefreshToken).where(RefreshToken.token_hash == token_hash))
        verdict = judge_validation(TokenState.of(record) if record else None, self._clock())
        error = validation_error(verdict)
        if error is not None:
            failure = error(
                family_id=record.family_id if record else None,
                user_id=record.user_id if record else None,
            )
            self._log_failure(failure)
            raise failure
        return record.user_id

    async def revoke_family(self, family_id: UUID, reason: RevokeReason) -> int:
        """Revoke every live row of a family. Revoking twice changes nothing."""

        async def _revoke() -> int:
            async with self._session_factory() as session:
                async with session.begin():
                    return await self._revoke_where(session, [RefreshToken.family_id == family_id], reason)

        count = await self._with_retry(_revoke)
        if count:
            logger.bind(family_id=str(family_id)).info(
                f"auth.refresh.family_revoked family={family_id} reason={reason.value} rows={count}"
            )
        return count

    async def revoke_token(self, presented_token: str, reason: RevokeReason = RevokeReason.logout) -> int:
        """Revoke the family of a presented token; unknown tokens are ignored."""
        async with self._session_factory() as session:
            family_id = await session.scalar(
                select(RefreshToken.family_id).where(RefreshToken.token_hash == hash_token(presented_token))
            )
        if family_id is None:
            return 0
        return await self.revoke_family(family_id, reason)

    async def revoke_all_for_user(self, user_id: int, reason: RevokeReason = RevokeReason.logout) -> int:
        async def _revoke() -> int:
            async with self._session_factory() as session:
                async with session.begin():
                    return await self._revoke_where(session, [RefreshToken.user_id == user_id], reason)

        count = await self._with_retry(_revoke)
        logger.bind(user_id=user_id).info(f"auth.refresh.user_revoked user={user_id} reason={reason.value} rows={count}")
        return count

    async def purge_stale(self, now: datetime | None = None) -> int:
        """Delete rows expired, used or revoked more than ``retention_days`` ago."""
        cutoff = (now or self._clock()) - timedelta(days=self._settings.retention_days)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(RefreshToken)
                    .where(
                        or_(
                            RefreshToken.expires_at < cutoff,
                            RefreshToken.used_at < cutoff,
                            RefreshToken.revoked_at < cutoff,
                        )
                    )
                    .execution_options(synchronize_session=False)
                )
        purged = result.rowcount or 0
        tokens_purged_total.inc(purged)
        logger.info(f"auth.refresh.purged rows={purged} cutoff={cutoff.isoformat()}")
        return purged

    async def _rotate_once(
        self,
        token_hash: str,
        device_id: str | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> IssuedToken | RefreshTokenError:
        async with self._session_factory() as session:
            async with session.begin():
                record = await session.scalar(
                    select(RefreshToken).where(RefreshToken.token_hash == token_hash).with_for_update()
                )
                now = self._clock()
                verdict = judge_rotation(TokenState.of(record) if record else None, now, grace=self.grace)

                if verdict is Verdict.valid:
                    owner = await session.get(User, record.user_id)
                    if owner is None or not owner.is_active:
                        await self._revoke_where(session, [RefreshToken.id == record.id], RevokeReason.user_inactive)
                        return UserInactive(family_id=record.family_id, user_id=record.user_id)
                    if await self._claim(session, record, now):
                        return await self._insert_successor(session, record, now, device_id, ip_address, user_agent)
                    # Another rotation claimed the row first
                    verdict = Verdict.replayed

                if verdict is Verdict.within_grace:
                    current = await self._live_successor(session, record, now)
                    if current is not None:
                        logger.bind(family_id=str(record.family_id)).debug(
                            f"auth.refresh.grace family={record.family_id} generation={record.generation}"
                        )
                        return IssuedToken(None, current.family_id, current.user_id, current.generation, current.expires_at)
                    verdict = Verdict.replayed

                if verdict is Verdict.replayed:
                    await self._revoke_where(session, [RefreshToken.family_id == record.family_id], RevokeReason.reuse_detected)

                error = rotation_error(verdict)
                return error(
                    family_id=record.family_id if record else None,
                    user_id=record.user_id if record else None,
                )

    async def _claim(self, session: AsyncSession, record: RefreshToken, now: datetime) -> bool:
        result = await session.execute(
            update(RefreshToken)
            .where(
                RefreshToken.id == record.id,
                RefreshToken.used_at.is_(None),
                RefreshToken.revoke_reason.is_(None),
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _insert_successor(
        self,
        session: AsyncSession,
        previous: RefreshToken,
        now: datetime,
        device_id: str | None,
        ip_address: str | None,
        user_agent: str | None,
    ) -> IssuedToken:
        secret = self._secret_factory()
        successor = RefreshToken(
            id=uuid4(),
            user_id=previous.user_id,
            family_id=previous.family_id,
            token_hash=hash_token(secret),
            previous_token_hash=previous.token_hash,
            generation=previous.generation + 1,
            device_id=device_id or previous.device_id,
            ip_address=ip_address,
            user_agent=user_agent,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        session.add(successor)
        await session.flush()
        return IssuedToken(secret, successor.family_id, successor.user_id, successor.generation, successor.expires_at)

    async def _live_successor(self, session: AsyncSession, record: RefreshToken, now: datetime) -> RefreshToken | None:
        successor = await session.scalar(
            select(RefreshToken).where(
                RefreshToken.family_id == record.family_id,
                RefreshToken.previous_token_hash == record.token_hash,
            )
        )
        if successor is None or successor.used_at is not None or successor.revoke_reason is not None:
            return None
        if as_utc(successor.expires_at) <= now:
            return None
        return successor

    async def _revoke_where(self, session: AsyncSession, criteria: list[ColumnElement[bool]], reason: RevokeReason) -> int:
        result = await session.execute(
            update(RefreshToken)
            .where(
                *criteria,
                RefreshToken.used_at.is_(None),
                RefreshToken.revoke_reason.is_(None),
            )
            .values(revoke_reason=reason.value, revoked_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        count = result.rowcount or 0
        if count:
            family_revocations_total.labels(reason=reason.value).inc(count)
        return count

    async def _with_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        attempts = self._settings.rotation_retry_attempts
        base_delay = self._settings.rotation_retry_base_delay_ms / 1000
        attempt = 0
        while True:
            try:
                return await operation()
            except DBAPIError as exc:
                if attempt >= attempts:
                    logger.error(f"auth.refresh.store_unavailable attempts={attempt + 1}: {exc}")
                    raise TokenStoreUnavailable("Refresh token store is unavailable") from exc
                wait_time = base_delay * (2 ** attempt) + random.uniform(0, base_delay)
                logger.warning(
                    f"auth.refresh.store_conflict attempt={attempt + 1}/{attempts + 1}: {exc}. Retrying in {wait_time:.3f}s"
                )
                await asyncio.sleep(wait_time)
                attempt += 1

    @staticmethod
    def _log_failure(error: RefreshTokenError) -> None:
        log = logger.bind(family_id=str(error.family_id) if error.family_id else None, user_id=error.user_id)
        message = f"auth.refresh.{error.reason} family={error.family_id} user={error.user_id}"
        if isinstance(error, TokenReuseDetected):
            token_reuse_detected_total.inc()
            log.error(f"{message} - family revoked")
        else:
            log.warning(message)
