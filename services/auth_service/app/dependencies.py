from collections.abc import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from jose import JWTError
from loguru import logger
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .core.clock import Clock, utc_now
from .core.security import ACCESS_SCOPE, decode_access_token
from .db.session import async_session_factory
from .models import User
from .schemas import TokenPayload
from .services import LoginAttemptTracker, RefreshTokenAuthority
from .settings import auth_settings


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session_factory


def get_clock() -> Clock:
    return utc_now


async def get_session(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


def get_authority(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    clock: Clock = Depends(get_clock),
) -> RefreshTokenAuthority:
    return RefreshTokenAuthority(session_factory, auth_settings(), clock=clock)


def get_login_tracker(clock: Clock = Depends(get_clock)) -> LoginAttemptTracker:
    return LoginAttemptTracker(auth_settings(), clock=clock)


async def get_current_user(request: Request, session: AsyncSession = Depends(get_session)) -> User:
    """Resolve the user behind a bearer access token."""
    auth = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing bearer token")
    token = auth.split(" ", 1)[1].strip()
    try:
        claims = TokenPayload.model_validate(decode_access_token(token))
    except (JWTError, ValidationError) as exc:
        logger.info(f"auth.access.jwt_decode_failed: {exc}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc
    if claims.scope != ACCESS_SCOPE:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token scope")
    if not claims.sub.isdigit():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    user = await session.get(User, int(claims.sub))
    if not user or not user.is_active:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if "admin" not in user.role_set:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return user
