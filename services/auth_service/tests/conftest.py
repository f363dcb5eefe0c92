from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine

from services.auth_service.app.core.security import hash_password
from services.auth_service.app.db.base import Base
from services.auth_service.app.db.session import build_session_factory
from services.auth_service.app.models import RefreshToken, User
from services.auth_service.app.services import RefreshTokenAuthority
from services.auth_service.app.settings import AuthSettings


class FrozenClock:
    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> None:
        self.current += timedelta(**delta)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # File backed so concurrent sessions see each other's commits
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'auth.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> AuthSettings:
    return AuthSettings(
        refresh_token_expires_minutes=60,
        reuse_grace_seconds=0,
        rotation_retry_attempts=1,
        rotation_retry_base_delay_ms=1,
        retention_days=30,
    )


@pytest.fixture
def authority(session_factory, settings, clock) -> RefreshTokenAuthority:
    return RefreshTokenAuthority(session_factory, settings, clock=clock)


@pytest_asyncio.fixture
async def user(session_factory) -> User:
    async with session_factory() as session:
        record = User(email="site.manager@example.com", hashed_password=hash_password("Passw0rd!"))
        session.add(record)
        await session.commit()
        await session.refresh(record)
        return record


@pytest.fixture
def family_rows(session_factory):
    """Load every row of a family ordered by generation."""

    async def _fetch(family_id) -> list[RefreshToken]:
        async with session_factory() as session:
            result = await session.scalars(
                select(RefreshToken).where(RefreshToken.family_id == family_id).order_by(RefreshToken.generation)
            )
            return list(result)

    return _fetch
