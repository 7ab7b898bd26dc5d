"""Explicitly owned service graph for one application instance."""

import logging
from typing import Optional

from inventory_backend.config import Settings, get_settings
from inventory_backend.core.database import build_engine, build_session_factory, init_db
from inventory_backend.services.audit_service import AuditService
from inventory_backend.services.auth_service import AuthService
from inventory_backend.services.cleanup_scheduler import CleanupScheduler
from inventory_backend.services.email_service import EmailService
from inventory_backend.services.notification_gateway import ConnectionRegistry, NotificationGateway
from inventory_backend.services.rate_limiter import InMemoryRateLimiter
from inventory_backend.services.security_service import SecurityService
from inventory_backend.services.token_service import TokenService

logger = logging.getLogger(__name__)


class Runtime:
    """
    Builds the engine, session factory and every service once.

    The FastAPI app holds one Runtime on ``app.state``; tests build their own
    with overridden settings and a fake mailer.
    """

    def __init__(self, settings: Optional[Settings] = None, *, mailer: Optional[EmailService] = None) -> None:
        self.settings = settings or get_settings()

        self.engine = build_engine(
            self.settings.DATABASE_URL,
            pool_size=self.settings.DATABASE_POOL_SIZE,
            max_overflow=self.settings.DATABASE_MAX_OVERFLOW,
            echo=self.settings.DEBUG,
        )
        self.session_factory = build_session_factory(self.engine)

        self.tokens = TokenService(self.settings)
        self.audit = AuditService(self.settings)
        self.security = SecurityService(self.settings)
        self.mailer = mailer or EmailService(self.settings)
        self.rate_limiter = InMemoryRateLimiter()
        self.auth = AuthService(self.settings, self.tokens, self.security, self.audit, self.mailer)
        self.registry = ConnectionRegistry()
        self.gateway = NotificationGateway(self.tokens, self.registry, self.audit)
        self.cleanup = CleanupScheduler(
            self.session_factory,
            self.security,
            self.audit,
            self.settings.cleanup_interval,
        )

    def init_db(self) -> None:
        init_db(self.engine, self.settings.DB_INIT_MODE, self.settings.DB_REQUIRE_HEAD)

    def startup(self) -> None:
        self.settings.validate_security_settings()
        self.init_db()
        if self.settings.RUN_CLEANUP_SCHEDULER:
            self.cleanup.start()
        logger.info("Runtime started (%s)", self.settings.ENVIRONMENT)

    def shutdown(self) -> None:
        if self.cleanup.is_running():
            self.cleanup.stop()
        self.engine.dispose()
        logger.info("Runtime stopped")
