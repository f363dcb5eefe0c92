"""create failed_login_attempts table

Revision ID: 20261015_0003
Revises: 20261001_0002
Create Date: 2026-10-15 00:00:00

"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261015_0003"
down_revision = "20261001_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "failed_login_attempts",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=False),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("reason", sa.String(length=50), nullable=True),
    )
    op.create_index("ix_failed_login_attempts_email_ip", "failed_login_attempts", ["email", "ip_address"])
    op.create_index("ix_failed_login_attempts_attempted_at", "failed_login_attempts", ["attempted_at"])


def downgrade() -> None:
    op.drop_index("ix_failed_login_attempts_attempted_at", table_name="failed_login_attempts")
    op.drop_index("ix_failed_login_attempts_email_ip", table_name="failed_login_attempts")
    op.drop_table("failed_login_attempts")
