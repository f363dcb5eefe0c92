"""Failures raised by the refresh token authority.

Every ``RefreshTokenError`` is a terminal credential failure: callers must not
retry it and should force the client to authenticate again. The HTTP layer
collapses all of them into the same 401 so clients learn nothing about which
check failed; the ``reason`` is kept for logs and metrics.
"""

from __future__ import annotations

from uuid import UUID


class RefreshTokenError(Exception):
    reason = "invalid"

    def __init__(self, message: str | None = None, *, family_id: UUID | None = None, user_id: int | None = None) -> None:
        super().__init__(message or self.reason)
        self.family_id = family_id
        self.user_id = user_id


class TokenNotFound(RefreshTokenError):
    reason = "not_found"


class TokenExpired(RefreshTokenError):
    reason = "expired"


class TokenAlreadyUsed(RefreshTokenError):
    reason = "already_used"


class TokenReuseDetected(TokenAlreadyUsed):
    """A superseded token was presented again; its family has been revoked."""

    reason = "reuse_detected"


class TokenRevoked(RefreshTokenError):
    reason = "revoked"


class UserInactive(TokenRevoked):
    reason = "user_inactive"


class TokenStoreUnavailable(Exception):
    """Storage conflicts persisted after the configured retries."""
