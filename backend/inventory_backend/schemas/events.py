"""Typed details attached to security and audit log entries"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class SecurityEvent(str, Enum):
    """Security log event names"""
    AUTH_FAILED_NO_TOKEN = "AUTH_FAILED_NO_TOKEN"
    AUTH_FAILED_EXPIRED_TOKEN = "AUTH_FAILED_EXPIRED_TOKEN"
    AUTH_FAILED_INVALID_TOKEN = "AUTH_FAILED_INVALID_TOKEN"
    AUTH_FAILED_INVALID_TOKEN_TYPE = "AUTH_FAILED_INVALID_TOKEN_TYPE"
    AUTH_FAILED_INVALIDATED_TOKEN = "AUTH_FAILED_INVALIDATED_TOKEN"
    AUTH_FAILED_USER_NOT_FOUND = "AUTH_FAILED_USER_NOT_FOUND"
    AUTH_FAILED_INACTIVE_USER = "AUTH_FAILED_INACTIVE_USER"
    AUTH_FAILED_LOCKED_ACCOUNT = "AUTH_FAILED_LOCKED_ACCOUNT"
    AUTHZ_FAILED_INSUFFICIENT_PERMISSIONS = "AUTHZ_FAILED_INSUFFICIENT_PERMISSIONS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGIN_BLOCKED_LOCKED = "LOGIN_BLOCKED_LOCKED"
    LOGIN_BLOCKED_UNVERIFIED = "LOGIN_BLOCKED_UNVERIFIED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    SESSIONS_EVICTED = "SESSIONS_EVICTED"
    REFRESH_TOKEN_REJECTED = "REFRESH_TOKEN_REJECTED"
    PASSWORD_RESET_TOKEN_REJECTED = "PASSWORD_RESET_TOKEN_REJECTED"
    EMAIL_TOKEN_REJECTED = "EMAIL_TOKEN_REJECTED"
    REALTIME_AUTH_FAILED = "REALTIME_AUTH_FAILED"
    SUSPICIOUS_ACTIVITY_THRESHOLD_EXCEEDED = "SUSPICIOUS_ACTIVITY_THRESHOLD_EXCEEDED"


class AuditAction(str, Enum):
    """Audit log action names"""
    REGISTER = "REGISTER"
    LOGIN = "LOGIN"
    TOKEN_REFRESH = "TOKEN_REFRESH"
    LOGOUT = "LOGOUT"
    LOGOUT_ALL = "LOGOUT_ALL"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET = "PASSWORD_RESET"
    PASSWORD_CHANGE = "PASSWORD_CHANGE"
    EMAIL_VERIFICATION = "EMAIL_VERIFICATION"
    SESSION_REVOKED = "SESSION_REVOKED"
    OTHER_SESSIONS_REVOKED = "OTHER_SESSIONS_REVOKED"
    NOTIFICATION_BROADCAST = "NOTIFICATION_BROADCAST"


class RequestContext(BaseModel):
    """Where a request came from; stored alongside each log row."""
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


class LoginFailureDetails(BaseModel):
    kind: Literal["login_failure"] = "login_failure"
    email: str
    reason: str
    recent_failures: Optional[int] = None


class LockoutDetails(BaseModel):
    kind: Literal["lockout"] = "lockout"
    locked_until: datetime
    failed_attempts: int


class TokenDetails(BaseModel):
    kind: Literal["token"] = "token"
    token_id: Optional[str] = None
    token_type: Optional[str] = None
    expected_type: Optional[str] = None
    reason: Optional[str] = None


class SessionDetails(BaseModel):
    kind: Literal["session"] = "session"
    session_id: Optional[str] = None
    token_id: Optional[str] = None
    affected_sessions: List[str] = Field(default_factory=list)
    invalidated_tokens: int = 0


class PasswordDetails(BaseModel):
    kind: Literal["password"] = "password"
    method: str
    invalidated_tokens: int = 0


class RegistrationDetails(BaseModel):
    kind: Literal["registration"] = "registration"
    role: str
    method: str = "password"


class AuthorizationDetails(BaseModel):
    kind: Literal["authorization"] = "authorization"
    user_role: Optional[str] = None
    required_roles: List[str] = Field(default_factory=list)


class ThresholdDetails(BaseModel):
    kind: Literal["threshold"] = "threshold"
    activity: str
    recent_activities: int
    threshold: int


class GenericDetails(BaseModel):
    """Open-ended metadata that has no dedicated shape."""
    kind: Literal["generic"] = "generic"
    data: Dict[str, Any] = Field(default_factory=dict)


EventDetails = Annotated[
    Union[
        LoginFailureDetails,
        LockoutDetails,
        TokenDetails,
        SessionDetails,
        PasswordDetails,
        RegistrationDetails,
        AuthorizationDetails,
        ThresholdDetails,
        GenericDetails,
    ],
    Field(discriminator="kind"),
]
