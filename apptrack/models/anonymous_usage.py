"""
Append-only ledger of anonymous (pre-signup) AI feature uses.
Rows are written only after a generation succeeds and are never updated or deleted.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Index
from apptrack.db.base import Base


class AnonymousUsageRecord(Base):
    __tablename__ = "ai_preview_usage"

    id = Column(Integer, primary_key=True, index=True)
    fingerprint = Column(String(255), nullable=False)  # Best-effort browser identifier, not unique
    ip_address = Column(String(64), nullable=False)
    feature_type = Column(String(50), nullable=False)
    used_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("ix_ai_preview_usage_fingerprint_feature_used_at", "fingerprint", "feature_type", "used_at"),
    )

    def __repr__(self):
        return f"<AnonymousUsageRecord(fingerprint={self.fingerprint}, feature={self.feature_type}, used_at={self.used_at})>"
