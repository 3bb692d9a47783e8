"""
One-shot AI feature allowance usage per user.
Each row is one consumed free try; action_id makes a single user action count once.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Index
from apptrack.db.base import Base


class FeatureUsage(Base):
    __tablename__ = "ai_feature_usage"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    feature_type = Column(String(50), nullable=False)
    action_id = Column(String(128), nullable=False)  # Idempotency key of the user action that consumed the try
    used_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    reset_at = Column(DateTime, nullable=True)  # Set by an explicit reset; reset rows no longer count

    __table_args__ = (
        UniqueConstraint("user_id", "feature_type", "action_id", name="uq_ai_feature_usage_action"),
        Index("ix_ai_feature_usage_user_feature", "user_id", "feature_type"),
    )

    def __repr__(self):
        return f"<FeatureUsage(user_id={self.user_id}, feature={self.feature_type}, action_id={self.action_id})>"
