"""Login session model"""

from sqlalchemy import Column, String, DateTime, ForeignKey, Index
from sqlalchemy.orm import relationship

from inventory_backend.core.database import Base
from inventory_backend.core.durations import utcnow
from inventory_backend.core.security import new_id


class UserSession(Base):
    """One logged-in device.

    ``token_id`` is the access token currently backing it and
    ``refresh_token_id`` the live refresh token of the device, if any.
    The refresh link outlives the short-lived access token, so a refresh
    always finds the session it belongs to.
    """

    __tablename__ = "sessions"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    token_id = Column(String(36), ForeignKey("tokens.id", ondelete="SET NULL"), nullable=True, unique=True)
    refresh_token_id = Column(String(36), ForeignKey("tokens.id", ondelete="SET NULL"), nullable=True, unique=True)
    last_active = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="sessions")
    token = relationship("Token", foreign_keys=[token_id])
    refresh_token = relationship("Token", foreign_keys=[refresh_token_id])

    __table_args__ = (
        Index("idx_sessions_user_last_active", "user_id", "last_active"),
    )

    def __repr__(self):
        return f"<UserSession(id={self.id}, user_id={self.user_id}, last_active={self.last_active})>"
