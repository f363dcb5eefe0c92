from __future__ import annotations

import enum
from datetime import datetime
from uuid import UUID

from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from ..db.base import Base


class RevokeReason(str, enum.Enum):
    reuse_detected = "REUSE_DETECTED"
    logout = "LOGOUT"
    admin_revoked = "ADMIN_REVOKED"
    user_inactive = "USER_INACTIVE"


class RefreshToken(Base):
    """One issued refresh token. Rows of a family form a chain through previous_token_hash."""

    __tablename__ = "refresh_tokens"
    __table_args__ = (UniqueConstraint("family_id", "generation", name="uq_refresh_tokens_family_generation"),)

    id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    family_id: Mapped[UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)
    token_hash: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    previous_token_hash: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    generation: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    device_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoke_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
