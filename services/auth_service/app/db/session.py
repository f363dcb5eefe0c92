from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..settings import auth_settings


def build_engine(url: str | None = None) -> AsyncEngine:
    settings = auth_settings()
    engine = create_async_engine(
        url or settings.async_db_url,
        echo=False,
        pool_pre_ping=True,
    )
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async_engine = build_engine()
async_session_factory = build_session_factory(async_engine)
