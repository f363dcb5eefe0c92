from datetime import timedelta
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, status
from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.clock import Clock
from ..core.errors import RefreshTokenError, TokenStoreUnavailable
from ..core.security import ACCESS_SCOPE, create_token, hash_password, verify_password
from ..dependencies import get_authority, get_clock, get_current_user, get_login_tracker, get_session, require_admin
from ..metrics import login_attempt_total, registration_total, token_refresh_total
from ..models import RevokeReason, User
from ..rate_limit import client_ip, enforce_refresh_rate_limit
from ..schemas import (
    FamilyRevocationResponse,
    IntrospectionResponse,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    Token,
    UserResponse,
)
from ..services import IssuedToken, LoginAttemptTracker, RefreshTokenAuthority
from ..settings import auth_settings

router = APIRouter(prefix="/auth")

DEVICE_ID_HEADER = "x-device-id"


def _token_response(user_id: int, issued: IssuedToken) -> Token:
    settings = auth_settings()
    access_delta = timedelta(minutes=settings.access_token_expires_minutes)
    access_token = create_token(
        str(user_id),
        scope=ACCESS_SCOPE,
        expires_delta=access_delta,
        token_type="access",
        family_id=str(issued.family_id),
    )
    return Token(
        access_token=access_token,
        refresh_token=issued.token,
        expires_in=int(access_delta.total_seconds()),
    )


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register_user(payload: RegisterRequest, session: AsyncSession = Depends(get_session)) -> UserResponse:
    email = payload.email.lower()
    existing = await session.scalar(select(User).where(func.lower(User.email) == email))
    if existing:
        registration_total.labels(outcome="conflict").inc()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="User already exists")
    user = User(email=email, hashed_password=hash_password(payload.password))
    session.add(user)
    await session.commit()
    await session.refresh(user)
    registration_total.labels(outcome="created").inc()
    return UserResponse.model_validate(user)


@router.post("/token", response_model=Token)
async def login(
    payload: LoginRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    authority: RefreshTokenAuthority = Depends(get_authority),
    attempts: LoginAttemptTracker = Depends(get_login_tracker),
    clock: Clock = Depends(get_clock),
) -> Token:
    email = payload.email.lower()
    ip_address = client_ip(request)
    user_agent = request.headers.get("user-agent")

    # Blocked pairs are refused before the password is checked
    retry_after = await attempts.retry_after(session, email, ip_address)
    if retry_after is not None:
        login_attempt_total.labels(outcome="throttled").inc()
        logger.bind(client=ip_address).warning(f"auth.login.throttled email={email} retry_after={retry_after}")
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Too many failed login attempts. Please try again in {auth_settings().login_block_minutes} minutes.",
            headers={"Retry-After": str(retry_after)},
        )

    user = await session.scalar(select(User).where(func.lower(User.email) == email))

    # Same answer for unknown email and wrong password
    if not user or not verify_password(payload.password, user.hashed_password):
        reason = "user_not_found" if not user else "invalid_password"
        await attempts.record_failure(session, email, ip_address, user_agent=user_agent, reason=reason)
        await session.commit()
        login_attempt_total.labels(outcome="invalid_credentials").inc()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not user.is_active:
        login_attempt_total.labels(outcome="inactive").inc()
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="User account is inactive")

    issued = await authority.issue(
        user.id,
        request.headers.get(DEVICE_ID_HEADER),
        ip_address=ip_address,
        user_agent=user_agent,
    )

    await attempts.clear(session, email, ip_address)
    user.last_login_at = clock()
    session.add(user)
    await session.commit()
    login_attempt_total.labels(outcome="success").inc()
    return _token_response(user.id, issued)


@router.post("/refresh", response_model=Token, dependencies=[Depends(enforce_refresh_rate_limit)])
async def refresh(
    payload: RefreshRequest,
    request: Request,
    authority: RefreshTokenAuthority = Depends(get_authority),
) -> Token:
    try:
        issued = await authority.rotate(
            payload.refresh_token,
            request.headers.get(DEVICE_ID_HEADER),
            ip_address=client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except RefreshTokenError as exc:
        token_refresh_total.labels(outcome=exc.reason).inc()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token") from exc
    except TokenStoreUnavailable as exc:
        token_refresh_total.labels(outcome="unavailable").inc()
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Token refresh temporarily unavailable",
        ) from exc
    token_refresh_total.labels(outcome="grace" if issued.token is None else "rotated").inc()
    return _token_response(issued.user_id, issued)


@router.post("/introspect", response_model=IntrospectionResponse)
async def introspect(
    payload: RefreshRequest,
    authority: RefreshTokenAuthority = Depends(get_authority),
) -> IntrospectionResponse:
    try:
        user_id = await authority.validate(payload.refresh_token)
    except RefreshTokenError:
        return IntrospectionResponse(active=False)
    return IntrospectionResponse(active=True, user_id=user_id)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(payload: RefreshRequest, authority: RefreshTokenAuthority = Depends(get_authority)) -> None:
    # Unknown or already revoked tokens still get a 204
    await authority.revoke_token(payload.refresh_token, RevokeReason.logout)


@router.post("/logout-all", status_code=status.HTTP_204_NO_CONTENT)
async def logout_all(
    user: User = Depends(get_current_user),
    authority: RefreshTokenAuthority = Depends(get_authority),
) -> None:
    await authority.revoke_all_for_user(user.id, RevokeReason.logout)


@router.post("/families/{family_id}/revoke", response_model=FamilyRevocationResponse)
async def revoke_family(
    family_id: UUID,
    admin: User = Depends(require_admin),
    authority: RefreshTokenAuthority = Depends(get_authority),
) -> FamilyRevocationResponse:
    revoked = await authority.revoke_family(family_id, RevokeReason.admin_revoked)
    logger.bind(user_id=admin.id).info(f"auth.admin.family_revoked family={family_id} rows={revoked}")
    return FamilyRevocationResponse(family_id=family_id, revoked=revoked)


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.model_validate(user)
