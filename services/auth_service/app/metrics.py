"""Prometheus metrics for auth service flows."""

from __future__ import annotations

from prometheus_client import Counter

registration_total = Counter(
    "auth_registration_total",
    "Number of registration attempts grouped by outcome",
    ["outcome"],
)

login_attempt_total = Counter(
    "auth_login_attempt_total",
    "Number of login attempts grouped by outcome",
    ["outcome"],
)

token_refresh_total = Counter(
    "auth_token_refresh_total",
    "Refresh token exchanges grouped by outcome",
    ["outcome"],
)

token_reuse_detected_total = Counter(
    "auth_token_reuse_detected_total",
    "Replays of already rotated refresh tokens",
)

family_revocations_total = Counter(
    "auth_family_revocations_total",
    "Refresh token rows revoked grouped by reason",
    ["reason"],
)

tokens_purged_total = Counter(
    "auth_tokens_purged_total",
    "Refresh token rows deleted by the retention sweep",
)
