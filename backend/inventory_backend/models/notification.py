"""Notification model"""

import json
from enum import Enum

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Text, Index, CheckConstraint

from inventory_backend.core.database import Base
from inventory_backend.core.durations import utcnow
from inventory_backend.core.security import new_id


class NotificationType(str, Enum):
    LOW_STOCK = "LOW_STOCK"
    ORDER_STATUS = "ORDER_STATUS"
    SYSTEM = "SYSTEM"
    TASK = "TASK"


class Notification(Base):
    """Stored notification; persisted before any live delivery is attempted."""

    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True, default=new_id)
    type = Column(String(32), nullable=False)
    message = Column(Text, nullable=False)
    recipient_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    order_id = Column(String(36), nullable=True)
    payload_json = Column(Text, nullable=True)
    seen = Column(Boolean, default=False, nullable=False)
    read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("idx_notifications_recipient_seen", "recipient_id", "seen", "created_at"),
        CheckConstraint(
            "type IN ('LOW_STOCK', 'ORDER_STATUS', 'SYSTEM', 'TASK')",
            name="chk_notification_type",
        ),
    )

    @property
    def payload(self):
        return json.loads(self.payload_json) if self.payload_json else None

    def __repr__(self):
        return f"<Notification(id={self.id}, type='{self.type}', recipient_id={self.recipient_id})>"
