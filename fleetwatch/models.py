"""
SQLAlchemy ORM models for the local user/session store.

Devices and positions are owned by the upstream tracking server and are
never persisted here.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, JSON, Index
)
from sqlalchemy.orm import DeclarativeBase, relationship
import secrets


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def generate_id(prefix: str) -> str:
    """Generate a prefixed random ID."""
    return f"{prefix}_{secrets.token_hex(6)}"


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class User(Base):
    """Dashboard user with a role and a device allow-list."""
    __tablename__ = "users"

    user_id = Column(String, primary_key=True, default=lambda: generate_id("usr"))
    email = Column(String, nullable=False, unique=True, index=True)  # case-sensitive as stored
    password_hash = Column(String, nullable=False)
    name = Column(String, nullable=False)
    role = Column(String, nullable=False, default="CLIENT")  # ADMIN, CLIENT
    active = Column(Boolean, nullable=False, default=True)
    device_ids = Column(JSON, nullable=False, default=list)  # Upstream device ids, ordered
    traccar_user_id = Column(Integer)  # Informational link to the upstream account
    created_by = Column(String)  # Informational only, no ownership
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Relationships
    sessions = relationship(
        "UserSession",
        back_populates="user",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class UserSession(Base):
    """Opaque login session token with an absolute expiry."""
    __tablename__ = "sessions"

    token = Column(String, primary_key=True)
    user_id = Column(String, ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_sessions_user", "user_id"),
    )

    # Relationships
    user = relationship("User", back_populates="sessions")
