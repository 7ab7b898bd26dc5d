"""Persisted token records - the source of truth for revocation"""

from enum import Enum

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index, CheckConstraint
from sqlalchemy.orm import relationship

from inventory_backend.core.database import Base
from inventory_backend.core.durations import utcnow
from inventory_backend.core.security import new_id


class TokenType(str, Enum):
    """Token purposes; each is signed with its own secret"""
    ACCESS = "ACCESS"
    REFRESH = "REFRESH"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    PASSWORD_RESET = "PASSWORD_RESET"


SESSION_TOKEN_TYPES = (TokenType.ACCESS.value, TokenType.REFRESH.value)


class Token(Base):
    """Issued token record.

    ``id`` is embedded in the signed token as ``jti``. A refresh token points
    at the access token it was minted with through ``paired_token_id``.
    ``invalidated`` only ever moves from False to True.
    """

    __tablename__ = "tokens"

    id = Column(String(36), primary_key=True, default=new_id)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    type = Column(String(32), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    paired_token_id = Column(String(36), ForeignKey("tokens.id", ondelete="SET NULL"), nullable=True)
    expires_at = Column(DateTime, nullable=False)
    invalidated = Column(Boolean, default=False, nullable=False)
    last_used = Column(DateTime, nullable=True)
    device_info = Column(String(512), nullable=True)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="tokens")

    __table_args__ = (
        Index("idx_tokens_user_type", "user_id", "type"),
        Index("idx_tokens_paired", "paired_token_id"),
        Index("idx_tokens_expires_at", "expires_at"),
        CheckConstraint(
            "type IN ('ACCESS', 'REFRESH', 'EMAIL_VERIFICATION', 'PASSWORD_RESET')",
            name="chk_token_type",
        ),
    )

    def is_expired(self, now=None) -> bool:
        return self.expires_at <= (now or utcnow())

    def is_usable(self, expected_type: TokenType, now=None) -> bool:
        return (
            self.type == expected_type.value
            and not self.invalidated
            and not self.is_expired(now)
        )

    def __repr__(self):
        return f"<Token(id={self.id}, type='{self.type}', user_id={self.user_id}, invalidated={self.invalidated})>"
