"""Service-layer helpers for the auth service."""

from .login_attempts import LoginAttemptTracker
from .refresh_tokens import IssuedToken, RefreshTokenAuthority
from .rotation_policy import TokenState, Verdict, judge_rotation, judge_validation

__all__ = [
    "IssuedToken",
    "LoginAttemptTracker",
    "RefreshTokenAuthority",
    "TokenState",
    "Verdict",
    "judge_rotation",
    "judge_validation",
]
