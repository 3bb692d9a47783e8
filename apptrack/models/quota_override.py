"""
Per-user rate limit overrides for one AI feature, set by support or sales.
A null limit keeps the tier's value for that window; a past expires_at disables the row.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from apptrack.db.base import Base


class QuotaOverride(Base):
    __tablename__ = "ai_user_limit_overrides"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    feature_type = Column(String(50), nullable=False)
    hourly_limit = Column(Integer, nullable=True)
    daily_limit = Column(Integer, nullable=True)
    reason = Column(String(255), nullable=True)
    expires_at = Column(DateTime, nullable=True)  # Null means permanent
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "feature_type", name="uq_ai_user_limit_overrides_user_feature"),
    )

    def __repr__(self):
        return (
            f"<QuotaOverride(user_id={self.user_id}, feature={self.feature_type}, "
            f"hourly={self.hourly_limit}, daily={self.daily_limit}, expires_at={self.expires_at})>"
        )
