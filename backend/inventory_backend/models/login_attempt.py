"""Login attempt history used for lockout decisions"""

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index

from inventory_backend.core.database import Base
from inventory_backend.core.durations import utcnow
from inventory_backend.core.security import new_id


class LoginAttempt(Base):
    __tablename__ = "login_attempts"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    success = Column(Boolean, nullable=False)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_login_attempts_user_created", "user_id", "success", "created_at"),
    )

    def __repr__(self):
        return f"<LoginAttempt(user_id={self.user_id}, success={self.success})>"
