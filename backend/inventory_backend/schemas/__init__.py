"""Pydantic schemas for API validation"""

from inventory_backend.schemas.user import (
    RegisterRequest,
    LoginRequest,
    LogoutRequest,
    ForgotPasswordRequest,
    ResetPasswordRequest,
    ChangePasswordRequest,
    UserResponse,
    SessionResponse,
)
from inventory_backend.schemas.notification import (
    NotificationCreate,
    NotificationResponse,
    NotificationPage,
    BroadcastRequest,
    BroadcastResult,
)
from inventory_backend.schemas.events import RequestContext, SecurityEvent, AuditAction, Severity
from inventory_backend.schemas.response import APIResponse, ErrorResponse

__all__ = [
    "RegisterRequest", "LoginRequest", "LogoutRequest", "ForgotPasswordRequest",
    "ResetPasswordRequest", "ChangePasswordRequest", "UserResponse", "SessionResponse",
    "NotificationCreate", "NotificationResponse", "NotificationPage", "BroadcastRequest", "BroadcastResult",
    "RequestContext", "SecurityEvent", "AuditAction", "Severity",
    "APIResponse", "ErrorResponse",
]
