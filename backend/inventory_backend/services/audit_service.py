"""Security and audit event logging."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.orm import Session

from inventory_backend.config import Settings
from inventory_backend.core.database import atomic
from inventory_backend.core.durations import utcnow
from inventory_backend.models.audit import AuditLog, SecurityLog
from inventory_backend.schemas.events import (
    AuditAction,
    EventDetails,
    GenericDetails,
    RequestContext,
    SecurityEvent,
    Severity,
    ThresholdDetails,
)

logger = logging.getLogger(__name__)

_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


def _dump(details: Optional[EventDetails]) -> str:
    details = details if details is not None else GenericDetails()
    return json.dumps(details.model_dump(mode="json"), ensure_ascii=False)


class AuditService:
    """Persist security events and the audit trail, mirrored to the process log."""

    def __init__(self, settings: Settings) -> None:
        self._security_enabled = settings.ENABLE_SECURITY_LOGS
        self._audit_enabled = settings.ENABLE_AUDIT_LOGS
        self._threshold = settings.SUSPICIOUS_ACTIVITY_THRESHOLD
        self._threshold_window = settings.suspicious_activity_window
        self._retention = settings.log_retention

    def log_security_event(
        self,
        db: Session,
        *,
        user_id: Optional[str],
        event: SecurityEvent,
        details: Optional[EventDetails] = None,
        severity: Severity = Severity.INFO,
        context: Optional[RequestContext] = None,
    ) -> Optional[SecurityLog]:
        if not self._security_enabled:
            return None

        context = context or RequestContext()
        details_json = _dump(details)
        entry = SecurityLog(
            user_id=user_id,
            event=SecurityEvent(event).value,
            severity=Severity(severity).value,
            details_json=details_json,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        db.add(entry)
        db.commit()

        logger.log(
            _LEVELS[Severity(severity)],
            "Security event: %s user=%s ip=%s details=%s",
            entry.event,
            user_id or "anonymous",
            context.ip_address,
            details_json,
        )
        return entry

    def log_audit_event(
        self,
        db: Session,
        *,
        user_id: str,
        action: AuditAction,
        resource: str = "User",
        details: Optional[EventDetails] = None,
        context: Optional[RequestContext] = None,
    ) -> Optional[AuditLog]:
        if not self._audit_enabled:
            return None

        context = context or RequestContext()
        entry = AuditLog(
            user_id=user_id,
            action=AuditAction(action).value,
            resource=resource,
            details_json=_dump(details),
            ip_address=context.ip_address,
            user_agent=context.user_agent,
        )
        db.add(entry)
        db.commit()
        logger.info("Audit: %s on %s by user=%s", entry.action, resource, user_id)
        return entry

    def log_suspicious_activity(
        self,
        db: Session,
        *,
        user_id: Optional[str],
        event: SecurityEvent,
        details: Optional[EventDetails] = None,
        context: Optional[RequestContext] = None,
    ) -> int:
        """
        Record a warning and escalate once the user's recent warnings reach the threshold.

        Returns:
            int: Number of warnings for the user inside the threshold window
        """
        self.log_security_event(
            db,
            user_id=user_id,
            event=event,
            details=details,
            severity=Severity.WARNING,
            context=context,
        )
        if not self._security_enabled or user_id is None:
            return 0

        since = utcnow() - self._threshold_window
        recent = (
            db.query(SecurityLog)
            .filter(
                SecurityLog.user_id == user_id,
                SecurityLog.severity == Severity.WARNING.value,
                SecurityLog.created_at >= since,
            )
            .count()
        )
        if recent >= self._threshold:
            self.log_security_event(
                db,
                user_id=user_id,
                event=SecurityEvent.SUSPICIOUS_ACTIVITY_THRESHOLD_EXCEEDED,
                details=ThresholdDetails(
                    activity=SecurityEvent(event).value,
                    recent_activities=recent,
                    threshold=self._threshold,
                ),
                severity=Severity.ERROR,
                context=context,
            )
        return recent

    def cleanup_old_logs(self, db: Session, retention: Optional[timedelta] = None) -> int:
        """Delete security and audit rows older than the retention window in one transaction."""
        cutoff = utcnow() - (retention or self._retention)
        with atomic(db):
            deleted = db.query(SecurityLog).filter(SecurityLog.created_at < cutoff).delete(
                synchronize_session=False
            )
            deleted += db.query(AuditLog).filter(AuditLog.created_at < cutoff).delete(
                synchronize_session=False
            )
        if deleted:
            logger.info("Removed %d log rows older than %s", deleted, cutoff.isoformat())
        return deleted
