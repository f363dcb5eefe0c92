from __future__ import annotations

import math
from datetime import timedelta
from uuid import uuid4

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock, as_utc, utc_now
from ..models import FailedLoginAttempt
from ..settings import AuthSettings, auth_settings


class LoginAttemptTracker:
    """Throttles password logins per (email, client IP) from recorded failures.

    Works on the caller's session; the route commits.
    """

    def __init__(self, settings: AuthSettings | None = None, *, clock: Clock = utc_now) -> None:
        self._settings = settings or auth_settings()
        self._clock = clock

    @property
    def window(self) -> timedelta:
        return timedelta(minutes=self._settings.login_block_minutes)

    async def retry_after(self, session: AsyncSession, email: str, ip_address: str) -> int | None:
        """Seconds until the pair may try again, or ``None`` when not blocked."""
        now = self._clock()
        limit = self._settings.login_max_attempts
        result = await session.scalars(
            select(FailedLoginAttempt.attempted_at)
            .where(
                FailedLoginAttempt.email == email.lower(),
                FailedLoginAttempt.ip_address == ip_address,
                FailedLoginAttempt.attempted_at > now - self.window,
            )
            .order_by(FailedLoginAttempt.attempted_at)
        )
        attempts = list(result)
        if len(attempts) < limit:
            return None
        # Unblocked once enough of the counted failures age out of the window
        released_at = as_utc(attempts[len(attempts) - limit]) + self.window
        return max(1, math.ceil((released_at - now).total_seconds()))

    async def record_failure(
        self,
        session: AsyncSession,
        email: str,
        ip_address: str,
        *,
        user_agent: str | None = None,
        reason: str | None = None,
    ) -> None:
        session.add(
            FailedLoginAttempt(
                id=uuid4(),
                email=email.lower(),
                ip_address=ip_address,
                user_agent=user_agent,
                attempted_at=self._clock(),
                reason=reason,
            )
        )
        logger.bind(client=ip_address).info(f"auth.login.failed email={email.lower()} reason={reason}")

    async def clear(self, session: AsyncSession, email: str, ip_address: str) -> None:
        await session.execute(
            delete(FailedLoginAttempt).where(
                FailedLoginAttempt.email == email.lower(),
                FailedLoginAttempt.ip_address == ip_address,
            )
        )
