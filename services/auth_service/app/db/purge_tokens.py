"""Retention sweep for the refresh_tokens table.

Run periodically, e.g. from cron:
    python -m services.auth_service.app.db.purge_tokens
"""

import asyncio

from loguru import logger

from ..services import RefreshTokenAuthority
from ..settings import auth_settings
from .session import async_engine, async_session_factory


async def purge_expired_tokens() -> int:
    authority = RefreshTokenAuthority(async_session_factory, auth_settings())
    purged = await authority.purge_stale()
    logger.success(f"🧹 Purged {purged} stale refresh tokens.")
    return purged


async def _main() -> None:
    try:
        await purge_expired_tokens()
    finally:
        await async_engine.dispose()


if __name__ == "__main__":
    asyncio.run(_main())
