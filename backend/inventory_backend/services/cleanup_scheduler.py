"""Background sweep of expired sessions, tokens and old log rows."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import sessionmaker

from inventory_backend.core.durations import utcnow

from inventory_backend.services.audit_service import AuditService
from inventory_backend.services.security_service import CleanupOutcome, SecurityService

logger = logging.getLogger(__name__)


class CleanupScheduler:
    """Single recurring timer; starting it twice is a no-op."""

    def __init__(
        self,
        session_factory: sessionmaker,
        security: SecurityService,
        audit: AuditService,
        interval: timedelta,
    ) -> None:
        self._session_factory = session_factory
        self._security = security
        self._audit = audit
        self._interval = interval
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._last_run: Optional[datetime] = None
        self._runs: int = 0

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        if self.is_running():
            logger.warning("Cleanup scheduler already running")
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="cleanup-scheduler", daemon=True)
        self._thread.start()
        logger.info("Cleanup scheduler started (interval %ss)", int(self._interval.total_seconds()))
        return True

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=5)
        self._thread = None
        logger.info("Cleanup scheduler stopped")

    def status(self) -> dict:
        return {
            "running": self.is_running(),
            "last_run": self._last_run.isoformat() if self._last_run else None,
            "runs": self._runs,
        }

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self._interval.total_seconds()):
            try:
                self.run_once()
            except Exception:
                logger.exception("Cleanup sweep failed")

    def run_once(self) -> CleanupOutcome:
        """
        Purge expired security state and old log rows.

        Safe to call repeatedly; a second call right after the first finds
        nothing to delete.
        """
        db = self._session_factory()
        try:
            outcome = self._security.cleanup_expired(db)
            logs = self._audit.cleanup_old_logs(db)
        finally:
            db.close()

        self._last_run = utcnow()
        self._runs += 1
        logger.info(
            "Cleanup removed %d session(s), %d token(s), %d login attempt(s), %d log row(s)",
            outcome.sessions,
            outcome.tokens,
            outcome.login_attempts,
            logs,
        )
        return outcome
