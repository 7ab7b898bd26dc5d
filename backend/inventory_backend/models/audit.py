"""Security and audit log models"""

import json

from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Index, CheckConstraint

from inventory_backend.core.database import Base
from inventory_backend.core.durations import utcnow
from inventory_backend.core.security import new_id


class SecurityLog(Base):
    """Security-relevant events; user is optional (e.g. missing token)."""

    __tablename__ = "security_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    event = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False, default="info")
    details_json = Column(Text, nullable=False, default="{}")
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_security_logs_user_severity", "user_id", "severity", "created_at"),
        Index("idx_security_logs_created_at", "created_at"),
        CheckConstraint("severity IN ('info', 'warning', 'error')", name="chk_security_severity"),
    )

    @property
    def details(self):
        return json.loads(self.details_json or "{}")


class AuditLog(Base):
    """Immutable audit trail of state changes made by a known user."""

    __tablename__ = "audit_logs"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    action = Column(String(64), nullable=False, index=True)
    resource = Column(String(64), nullable=False)
    details_json = Column(Text, nullable=False, default="{}")
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(String(512), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_audit_logs_created_at", "created_at"),
    )

    @property
    def details(self):
        return json.loads(self.details_json or "{}")
