from .failed_login_attempt import FailedLoginAttempt
from .refresh_token import RefreshToken, RevokeReason
from .user import User

__all__ = [
    "FailedLoginAttempt",
    "RefreshToken",
    "RevokeReason",
    "User",
]
