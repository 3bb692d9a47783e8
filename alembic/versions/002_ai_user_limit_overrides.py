"""Add per-user rate limit overrides.

Revision ID: 002_ai_user_limit_overrides
Revises: 001_ai_usage_gate_tables
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "002_ai_user_limit_overrides"
down_revision: Union[str, None] = "001_ai_usage_gate_tables"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    if sa.inspect(op.get_bind()).has_table("ai_user_limit_overrides"):
        return
    op.create_table(
        "ai_user_limit_overrides",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("feature_type", sa.String(50), nullable=False),
        sa.Column("hourly_limit", sa.Integer, nullable=True),
        sa.Column("daily_limit", sa.Integer, nullable=True),
        sa.Column("reason", sa.String(255), nullable=True),
        sa.Column("expires_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint("user_id", "feature_type", name="uq_ai_user_limit_overrides_user_feature"),
    )
    op.create_index("ix_ai_user_limit_overrides_user_id", "ai_user_limit_overrides", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_ai_user_limit_overrides_user_id", table_name="ai_user_limit_overrides")
    op.drop_table("ai_user_limit_overrides")
