import re
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationInfo, field_validator


class Token(BaseModel):
    access_token: str
    # Omitted when a refresh is answered inside the reuse grace window
    refresh_token: str | None = None
    token_type: str = "bearer"
    expires_in: int


class TokenPayload(BaseModel):
    sub: str
    aud: str
    iss: str
    exp: int
    scope: str
    fid: str | None = None


SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{}|;:,.<>?"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)

    @field_validator("password")
    @classmethod
    def password_strength(cls, v: str, info: ValidationInfo) -> str:
        if v != v.strip():
            raise ValueError("Password cannot have leading or trailing spaces")
        if not re.search(r"[A-Z]", v):
            raise ValueError("Password must contain at least one uppercase letter")
        if not re.search(r"[a-z]", v):
            raise ValueError("Password must contain at least one lowercase letter")
        if not re.search(r"[0-9]", v):
            raise ValueError("Password must contain at least one number")
        if not any(char in SPECIAL_CHARACTERS for char in v):
            raise ValueError(f"Password must contain at least one special character ({SPECIAL_CHARACTERS})")
        email = info.data.get("email")
        if email and email.lower() in v.lower():
            raise ValueError("Password cannot contain your email address")
        return v


class RefreshRequest(BaseModel):
    refresh_token: str = Field(min_length=1)


class IntrospectionResponse(BaseModel):
    active: bool
    user_id: int | None = None


class FamilyRevocationResponse(BaseModel):
    family_id: UUID
    revoked: int


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: EmailStr
    is_active: bool
    roles: str
    created_at: datetime
    updated_at: datetime
