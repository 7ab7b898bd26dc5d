"""Custom exception classes for the application"""

from typing import Optional, Dict, Any

from sqlalchemy.exc import IntegrityError


class BaseAPIException(Exception):
    """Base exception for all API errors"""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


# Authentication Errors
class AuthenticationError(BaseAPIException):
    """Base authentication error"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=401, details=details)


class InvalidCredentialsError(AuthenticationError):
    """Invalid email or password"""
    def __init__(self):
        super().__init__("Invalid email or password")


class TokenExpiredError(AuthenticationError):
    """JWT token has expired"""
    def __init__(self, message: str = "Token expired"):
        super().__init__(message)


class TokenInvalidError(AuthenticationError):
    """JWT token is invalid"""
    def __init__(self, message: str = "Invalid token"):
        super().__init__(message)


class TokenTypeMismatchError(TokenInvalidError):
    """Token was signed for a different purpose"""
    def __init__(self, expected: str, actual: Optional[str]):
        super().__init__("Invalid token type")
        self.details = {"expected_type": expected, "token_type": actual}


class TokenRevokedError(AuthenticationError):
    """Token record is invalidated or gone"""
    def __init__(self, message: str = "Token has been revoked"):
        super().__init__(message)


# Authorization Errors
class AuthorizationError(BaseAPIException):
    """Insufficient permissions"""
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__(message, status_code=403)


class EmailNotVerifiedError(AuthorizationError):
    """Login attempted before email verification"""
    def __init__(self):
        super().__init__("Verify your email first")


# Resource Errors
class ResourceNotFoundError(BaseAPIException):
    """Resource not found"""
    def __init__(self, resource: str):
        super().__init__(f"{resource} not found", status_code=404)


class ResourceAlreadyExistsError(BaseAPIException):
    """Resource already exists"""
    def __init__(self, message: str):
        super().__init__(message, status_code=409)


# Validation Errors
class BadRequestError(BaseAPIException):
    """Malformed or inconsistent input"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=400, details=details)


class ValidationError(BaseAPIException):
    """Validation error"""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, status_code=422, details=details)


# Throttling Errors
class RateLimitExceededError(BaseAPIException):
    """Rate limit exceeded"""
    def __init__(self, message: str = "Rate limit exceeded. Please try again later."):
        super().__init__(message, status_code=429)


class AccountLockedError(BaseAPIException):
    """Account is locked due to failed login attempts"""
    def __init__(self, message: str = "Account is locked. Please try again later.", locked_until: Optional[str] = None):
        super().__init__(
            message,
            status_code=429,
            details={"locked_until": locked_until} if locked_until else None,
        )


# System Errors
class ConfigurationError(BaseAPIException):
    """Server is misconfigured"""
    def __init__(self, message: str = "Server configuration error"):
        super().__init__(message, status_code=500)


class DatabaseError(BaseAPIException):
    """Database operation failed"""
    def __init__(self, message: str = "Database operation failed"):
        super().__init__(message, status_code=500)


def translate_integrity_error(exc: IntegrityError) -> BaseAPIException:
    """
    Map a store constraint violation onto the API error taxonomy.

    Args:
        exc: SQLAlchemy integrity error

    Returns:
        BaseAPIException: Conflict for unique violations, bad request otherwise
    """
    text = str(getattr(exc, "orig", exc)).lower()
    if "unique" in text or "duplicate" in text:
        return ResourceAlreadyExistsError("A record with the same unique value already exists")
    if "foreign key" in text:
        return BadRequestError("Operation failed due to a relation constraint")
    if "not null" in text or "null value" in text:
        return BadRequestError("A required field is missing")
    return DatabaseError()
