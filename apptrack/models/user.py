from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
from apptrack.db.base import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True, index=True)  # Supabase user ID (JWT "sub")
    email = Column(String(255), unique=True, index=True, nullable=False)
    plan_name = Column(String(100), nullable=True)  # Raw plan label from billing; resolved to a Tier per request
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
