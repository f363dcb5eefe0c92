from .auth import (
    FamilyRevocationResponse,
    IntrospectionResponse,
    LoginRequest,
    RefreshRequest,
    RegisterRequest,
    Token,
    TokenPayload,
    UserResponse,
)

__all__ = [
    "FamilyRevocationResponse",
    "IntrospectionResponse",
    "LoginRequest",
    "RefreshRequest",
    "RegisterRequest",
    "Token",
    "TokenPayload",
    "UserResponse",
]
