"""
AI output generated for an anonymous visitor, withheld until signup.
State machine: ANONYMOUS (user_id NULL, converted_at NULL) -> CONVERTED (both set). CONVERTED is terminal.
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, JSON, ForeignKey
from apptrack.db.base import Base


def new_session_id() -> str:
    return uuid.uuid4().hex


class PreviewSession(Base):
    __tablename__ = "ai_preview_sessions"

    id = Column(String(64), primary_key=True, default=new_session_id)
    feature_type = Column(String(50), nullable=False)
    input_data = Column(JSON, nullable=False)
    preview_content = Column(JSON, nullable=False)  # Teaser shown before signup
    full_content_encrypted = Column(Text, nullable=False)
    session_fingerprint = Column(String(255), nullable=True)
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    converted_at = Column(DateTime, nullable=True)

    @property
    def is_converted(self) -> bool:
        return self.converted_at is not None

    def __repr__(self):
        return f"<PreviewSession(id={self.id}, feature={self.feature_type}, converted={self.is_converted})>"
