import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import jwt
from passlib.context import CryptContext

from ..settings import auth_settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ACCESS_SCOPE = "access"


def create_token(subject: str, scope: str, expires_delta: timedelta, *, token_type: str, family_id: str | None = None) -> str:
    settings = auth_settings()
    now = datetime.now(tz=timezone.utc)
    expire = now + expires_delta
    payload: dict[str, Any] = {
        "sub": subject,
        "scope": scope,
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int(expire.timestamp()),
        "typ": token_type,
    }
    if family_id is not None:
        payload["fid"] = family_id
    return jwt.encode(payload, settings.secret_key, algorithm="HS256")


def decode_access_token(token: str) -> dict[str, Any]:
    """Decode and verify an access JWT. Raises ``jose.JWTError`` on any failure."""
    settings = auth_settings()
    return jwt.decode(
        token,
        settings.secret_key,
        algorithms=["HS256"],
        audience=settings.jwt_audience,
        issuer=settings.jwt_issuer,
    )


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_secret() -> str:
    return secrets.token_hex(32)
