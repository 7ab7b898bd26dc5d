"""Database models"""

from inventory_backend.models.user import User, Role
from inventory_backend.models.token import Token, TokenType
from inventory_backend.models.session import UserSession
from inventory_backend.models.login_attempt import LoginAttempt
from inventory_backend.models.audit import SecurityLog, AuditLog
from inventory_backend.models.notification import Notification, NotificationType

__all__ = [
    "User", "Role",
    "Token", "TokenType",
    "UserSession",
    "LoginAttempt",
    "SecurityLog", "AuditLog",
    "Notification", "NotificationType",
]
