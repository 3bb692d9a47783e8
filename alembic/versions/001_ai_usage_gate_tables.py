"""Create users and the AI usage gate tables.

Startup runs Base.metadata.create_all before migrations, so every table is
guarded and the revision is safe to apply over an existing schema.

Revision ID: 001_ai_usage_gate_tables
Revises:
Create Date: 2026-10-18
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "001_ai_usage_gate_tables"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _has_table(name: str) -> bool:
    return sa.inspect(op.get_bind()).has_table(name)


def upgrade() -> None:
    if not _has_table("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("email", sa.String(255), nullable=False, unique=True),
            sa.Column("plan_name", sa.String(100), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        )

    if not _has_table("ai_preview_usage"):
        op.create_table(
            "ai_preview_usage",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("fingerprint", sa.String(255), nullable=False),
            sa.Column("ip_address", sa.String(64), nullable=False),
            sa.Column("feature_type", sa.String(50), nullable=False),
            sa.Column("used_at", sa.DateTime, nullable=False),
        )
        op.create_index(
            "ix_ai_preview_usage_fingerprint_feature_used_at",
            "ai_preview_usage",
            ["fingerprint", "feature_type", "used_at"],
        )

    if not _has_table("ai_feature_usage"):
        op.create_table(
            "ai_feature_usage",
            sa.Column("id", sa.Integer, primary_key=True),
            sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
            sa.Column("feature_type", sa.String(50), nullable=False),
            sa.Column("action_id", sa.String(128), nullable=False),
            sa.Column("used_at", sa.DateTime, nullable=False),
            sa.Column("reset_at", sa.DateTime, nullable=True),
            sa.UniqueConstraint("user_id", "feature_type", "action_id", name="uq_ai_feature_usage_action"),
        )
        op.create_index("ix_ai_feature_usage_user_feature", "ai_feature_usage", ["user_id", "feature_type"])

    if not _has_table("ai_preview_sessions"):
        op.create_table(
            "ai_preview_sessions",
            sa.Column("id", sa.String(64), primary_key=True),
            sa.Column("feature_type", sa.String(50), nullable=False),
            sa.Column("input_data", sa.JSON, nullable=False),
            sa.Column("preview_content", sa.JSON, nullable=False),
            sa.Column("full_content_encrypted", sa.Text, nullable=False),
            sa.Column("session_fingerprint", sa.String(255), nullable=True),
            sa.Column("ip_address", sa.String(64), nullable=True),
            sa.Column("user_agent", sa.String(512), nullable=True),
            sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
            sa.Column("created_at", sa.DateTime, nullable=False),
            sa.Column("converted_at", sa.DateTime, nullable=True),
        )
        op.create_index("ix_ai_preview_sessions_user_id", "ai_preview_sessions", ["user_id"])


def downgrade() -> None:
    op.drop_table("ai_preview_sessions")
    op.drop_table("ai_feature_usage")
    op.drop_table("ai_preview_usage")
    op.drop_table("users")
