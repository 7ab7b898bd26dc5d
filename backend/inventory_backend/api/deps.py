"""API dependencies - runtime, database session, authentication and authorization"""

from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from inventory_backend.core.exceptions import (
    AccountLockedError,
    AuthenticationError,
    AuthorizationError,
    RateLimitExceededError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
    TokenTypeMismatchError,
)
from inventory_backend.core.security import token_fingerprint
from inventory_backend.models.session import UserSession
from inventory_backend.models.token import Token, TokenType
from inventory_backend.models.user import Role, User
from inventory_backend.runtime import Runtime
from inventory_backend.schemas.events import (
    AuthorizationDetails,
    GenericDetails,
    LockoutDetails,
    RequestContext,
    SecurityEvent,
    Severity,
    TokenDetails,
)


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_db(runtime: Runtime = Depends(get_runtime)) -> Iterator[Session]:
    """
    Database session dependency

    Yields:
        Session: Database session bound to the app's runtime
    """
    db = runtime.session_factory()
    try:
        yield db
    finally:
        db.close()


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )


def enforce_rate_limit(runtime: Runtime, key: str, limit: int, window_seconds: int, message: str) -> None:
    if not runtime.rate_limiter.allow(key, limit, window_seconds):
        raise RateLimitExceededError(message)


@dataclass
class AuthContext:
    """The caller behind a request: user, backing access token and session."""
    user: User
    token_id: str
    session_id: Optional[str] = None


def get_auth_context(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    db: Session = Depends(get_db),
) -> AuthContext:
    """
    Authenticate the request with its ACCESS token

    The signature alone is not enough: the stored record must exist, match
    the presented token and be neither invalidated nor expired.

    Raises:
        AuthenticationError: Any token or account problem (401)
        AccountLockedError: Account is locked (429)
    """
    context = request_context(request)

    def fail(event: SecurityEvent, exc: Exception, user_id: Optional[str] = None, details=None) -> Exception:
        runtime.audit.log_security_event(
            db,
            user_id=user_id,
            event=event,
            details=details or TokenDetails(expected_type=TokenType.ACCESS.value, reason=str(exc)),
            severity=Severity.WARNING,
            context=context,
        )
        return exc

    token = runtime.tokens.extract(request)
    if not token:
        raise fail(SecurityEvent.AUTH_FAILED_NO_TOKEN, AuthenticationError("Authentication required"))

    try:
        payload = runtime.tokens.verify(token, TokenType.ACCESS)
    except TokenExpiredError as exc:
        raise fail(SecurityEvent.AUTH_FAILED_EXPIRED_TOKEN, exc)
    except TokenTypeMismatchError as exc:
        raise fail(
            SecurityEvent.AUTH_FAILED_INVALID_TOKEN_TYPE,
            exc,
            details=TokenDetails(
                token_type=exc.details.get("token_type"),
                expected_type=TokenType.ACCESS.value,
                reason=exc.message,
            ),
        )
    except TokenInvalidError as exc:
        raise fail(SecurityEvent.AUTH_FAILED_INVALID_TOKEN, exc)

    record = db.query(Token).filter(Token.id == payload.get("jti")).first()
    if record is None or record.token_hash != token_fingerprint(token) or record.invalidated:
        raise fail(
            SecurityEvent.AUTH_FAILED_INVALIDATED_TOKEN,
            TokenRevokedError(),
            user_id=record.user_id if record else None,
        )
    if record.is_expired():
        raise fail(SecurityEvent.AUTH_FAILED_EXPIRED_TOKEN, TokenExpiredError(), user_id=record.user_id)

    user = db.query(User).filter(User.id == record.user_id).first()
    if user is None or user.deleted_at is not None:
        raise fail(SecurityEvent.AUTH_FAILED_USER_NOT_FOUND, AuthenticationError("User not found"))
    if not user.is_active:
        raise fail(
            SecurityEvent.AUTH_FAILED_INACTIVE_USER,
            AuthenticationError("User account is disabled"),
            user_id=user.id,
            details=GenericDetails(data={"token_id": record.id}),
        )
    if runtime.security.is_locked(db, user):
        raise fail(
            SecurityEvent.AUTH_FAILED_LOCKED_ACCOUNT,
            AccountLockedError(locked_until=user.lockout_expiry.isoformat()),
            user_id=user.id,
            details=LockoutDetails(locked_until=user.lockout_expiry, failed_attempts=runtime.security.max_attempts),
        )

    runtime.security.touch_session(db, record)
    session_id = db.query(UserSession.id).filter(UserSession.token_id == record.id).scalar()
    return AuthContext(user=user, token_id=record.id, session_id=session_id)


def get_current_user(auth: AuthContext = Depends(get_auth_context)) -> User:
    """Current authenticated user"""
    return auth.user


def require_roles(*roles: Role) -> Callable[..., User]:
    """
    Build a dependency that admits only the given roles

    Args:
        roles: Allowed roles

    Returns:
        Dependency returning the current user
    """
    allowed = [Role(r).value for r in roles]

    def checker(
        request: Request,
        auth: AuthContext = Depends(get_auth_context),
        runtime: Runtime = Depends(get_runtime),
        db: Session = Depends(get_db),
    ) -> User:
        if auth.user.role not in allowed:
            runtime.audit.log_security_event(
                db,
                user_id=auth.user.id,
                event=SecurityEvent.AUTHZ_FAILED_INSUFFICIENT_PERMISSIONS,
                details=AuthorizationDetails(user_role=auth.user.role, required_roles=allowed),
                severity=Severity.WARNING,
                context=request_context(request),
            )
            raise AuthorizationError("You do not have permission to perform this action")
        return auth.user

    return checker
