"""Decision rules for presented refresh tokens.

No database access here; the authority in ``refresh_tokens`` applies these
rules inside a transaction.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta

from ..core.clock import as_utc
from ..core.errors import (
    RefreshTokenError,
    TokenAlreadyUsed,
    TokenExpired,
    TokenNotFound,
    TokenReuseDetected,
    TokenRevoked,
)


class Verdict(str, enum.Enum):
    valid = "valid"
    not_found = "not_found"
    expired = "expired"
    replayed = "replayed"
    within_grace = "within_grace"
    revoked = "revoked"


@dataclass(frozen=True)
class TokenState:
    expires_at: datetime
    used_at: datetime | None = None
    revoke_reason: str | None = None

    @classmethod
    def of(cls, record) -> "TokenState":
        return cls(expires_at=record.expires_at, used_at=record.used_at, revoke_reason=record.revoke_reason)


def judge_rotation(state: TokenState | None, now: datetime, *, grace: timedelta = timedelta(0)) -> Verdict:
    """Classify a token presented for rotation.

    Checks run in a fixed order: unknown, expired, already used, revoked. A used
    token is a replay unless ``grace`` is positive and it was used no longer
    than ``grace`` ago.
    """
    if state is None:
        return Verdict.not_found
    if as_utc(state.expires_at) <= now:
        return Verdict.expired
    if state.used_at is not None:
        if grace > timedelta(0) and now - as_utc(state.used_at) <= grace:
            return Verdict.within_grace
        return Verdict.replayed
    if state.revoke_reason is not None:
        return Verdict.revoked
    return Verdict.valid


def judge_validation(state: TokenState | None, now: datetime) -> Verdict:
    """Read-only variant of ``judge_rotation``; a used token is never acceptable."""
    verdict = judge_rotation(state, now)
    return Verdict.replayed if verdict is Verdict.within_grace else verdict


_ROTATION_ERRORS: dict[Verdict, type[RefreshTokenError]] = {
    Verdict.not_found: TokenNotFound,
    Verdict.expired: TokenExpired,
    Verdict.replayed: TokenReuseDetected,
    Verdict.revoked: TokenRevoked,
}

_VALIDATION_ERRORS: dict[Verdict, type[RefreshTokenError]] = {
    **_ROTATION_ERRORS,
    Verdict.replayed: TokenAlreadyUsed,
}


def rotation_error(verdict: Verdict) -> type[RefreshTokenError] | None:
    return _ROTATION_ERRORS.get(verdict)


def validation_error(verdict: Verdict) -> type[RefreshTokenError] | None:
    return _VALIDATION_ERRORS.get(verdict)
