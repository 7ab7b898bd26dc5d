"""Authentication flows: registration, login, refresh, logout and password management."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from inventory_backend.config import Settings
from inventory_backend.core.database import atomic
from inventory_backend.core.durations import utcnow
from inventory_backend.core.exceptions import (
    AccountLockedError,
    AuthenticationError,
    BadRequestError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    ResourceAlreadyExistsError,
    ResourceNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    TokenRevokedError,
    translate_integrity_error,
)
from inventory_backend.core.security import get_password_hash, new_id, token_fingerprint, verify_password
from inventory_backend.models.token import Token, TokenType
from inventory_backend.models.user import User
from inventory_backend.schemas.events import (
    AuditAction,
    LockoutDetails,
    LoginFailureDetails,
    PasswordDetails,
    RegistrationDetails,
    RequestContext,
    SecurityEvent,
    SessionDetails,
    Severity,
    TokenDetails,
)
from inventory_backend.schemas.user import LoginRequest, RegisterRequest
from inventory_backend.services.audit_service import AuditService
from inventory_backend.services.email_service import EmailService
from inventory_backend.services.security_service import SecurityService
from inventory_backend.services.token_service import TokenService

logger = logging.getLogger(__name__)

FORGOT_PASSWORD_MESSAGE = "If your email is registered, you will receive a password reset link"


@dataclass
class IssuedToken:
    value: str
    record_id: str
    expires_at: datetime


@dataclass
class LoginResult:
    user: User
    access: IssuedToken
    session_id: str
    refresh: Optional[IssuedToken] = None
    evicted_sessions: Optional[List[str]] = None


@dataclass
class RefreshResult:
    user: User
    access: IssuedToken
    refresh: IssuedToken


class AuthService:
    """Composes token, security and logging services into the authentication flows."""

    def __init__(
        self,
        settings: Settings,
        tokens: TokenService,
        security: SecurityService,
        audit: AuditService,
        mailer: EmailService,
    ) -> None:
        self.tokens = tokens
        self.security = security
        self.audit = audit
        self.mailer = mailer
        self.bcrypt_rounds = settings.BCRYPT_ROUNDS

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _new_token(
        self,
        user_id: str,
        token_type: TokenType,
        *,
        context: Optional[RequestContext] = None,
        claims: Optional[Dict[str, Any]] = None,
        paired_token_id: Optional[str] = None,
    ) -> Tuple[IssuedToken, Token]:
        """Sign a token whose ``jti`` is the id of the record returned alongside it."""
        context = context or RequestContext()
        token_id = new_id()
        payload = {"sub": user_id, "jti": token_id}
        payload.update(claims or {})
        value, expires_at = self.tokens.issue(payload, token_type)
        record = Token(
            id=token_id,
            token_hash=token_fingerprint(value),
            type=TokenType(token_type).value,
            user_id=user_id,
            paired_token_id=paired_token_id,
            expires_at=expires_at,
            invalidated=False,
            device_info=context.user_agent,
            ip_address=context.ip_address,
        )
        return IssuedToken(value=value, record_id=token_id, expires_at=expires_at), record

    def _get_user(self, db: Session, user_id: str) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    def _reject_token(
        self,
        db: Session,
        event: SecurityEvent,
        *,
        record: Optional[Token],
        token_type: TokenType,
        reason: str,
        context: Optional[RequestContext],
    ) -> None:
        self.audit.log_security_event(
            db,
            user_id=record.user_id if record else None,
            event=event,
            details=TokenDetails(
                token_id=record.id if record else None,
                token_type=record.type if record else None,
                expected_type=token_type.value,
                reason=reason,
            ),
            severity=Severity.WARNING,
            context=context,
        )

    def _load_stored_token(
        self,
        db: Session,
        value: str,
        token_type: TokenType,
        rejected_event: SecurityEvent,
        context: Optional[RequestContext],
    ) -> Token:
        """
        Resolve a presented token against its stored record, then its signature.

        The record is checked first: an unknown, mistyped or invalidated record
        is rejected outright, and an expired one is invalidated before rejection.

        Raises:
            TokenRevokedError: No usable record for the token
            TokenExpiredError: Record past its expiry
            TokenInvalidError: Signature, type tag or ``jti`` do not match
        """
        record = db.query(Token).filter(Token.token_hash == token_fingerprint(value)).first()
        if record is None or record.type != token_type.value or record.invalidated:
            reason = "unknown" if record is None else ("wrong_type" if record.type != token_type.value else "invalidated")
            self._reject_token(db, rejected_event, record=record, token_type=token_type, reason=reason, context=context)
            raise TokenRevokedError("Invalid or expired token")

        if record.is_expired():
            record.invalidated = True
            db.commit()
            self._reject_token(db, rejected_event, record=record, token_type=token_type, reason="expired", context=context)
            raise TokenExpiredError()

        try:
            payload = self.tokens.verify(value, token_type)
        except AuthenticationError as exc:
            self._reject_token(
                db, rejected_event, record=record, token_type=token_type, reason=exc.message, context=context
            )
            raise

        if payload.get("jti") != record.id or payload.get("sub") != record.user_id:
            self._reject_token(db, rejected_event, record=record, token_type=token_type, reason="claims", context=context)
            raise TokenInvalidError()
        return record

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, db: Session, data: RegisterRequest, context: Optional[RequestContext] = None) -> User:
        """
        Create an active but unverified user and mail a verification link.

        Raises:
            ResourceAlreadyExistsError: If the email is taken
        """
        if db.query(User).filter(User.email == data.email).first():
            raise ResourceAlreadyExistsError("Email already registered")

        user = User(
            id=new_id(),
            email=data.email,
            password_hash=get_password_hash(data.password, self.bcrypt_rounds),
            name=data.name,
            role=data.role.value,
            phone=data.phone,
            is_active=True,
            is_verified=False,
        )
        db.add(user)
        issued, record = self._new_token(user.id, TokenType.EMAIL_VERIFICATION, context=context)
        db.add(record)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise translate_integrity_error(exc) from exc
        db.refresh(user)

        if not self.mailer.send_verification_email(user.email, user.name, issued.value):
            logger.warning("Verification email for user %s was not delivered", user.id)

        self.audit.log_audit_event(
            db,
            user_id=user.id,
            action=AuditAction.REGISTER,
            details=RegistrationDetails(role=user.role),
            context=context,
        )
        logger.info("User registered: %s", user.id)
        return user

    # ------------------------------------------------------------------
    # Login / refresh / logout
    # ------------------------------------------------------------------

    def login(self, db: Session, data: LoginRequest, context: Optional[RequestContext] = None) -> LoginResult:
        """
        Authenticate by email and password and open a session.

        An access token is always issued. A refresh token paired with it is
        issued only when ``remember_me`` is set.

        Raises:
            InvalidCredentialsError: Unknown email, disabled account or wrong password
            AccountLockedError: Account is locked, or this failure locked it
            EmailNotVerifiedError: Password is right but the email is unverified
        """
        context = context or RequestContext()
        user = db.query(User).filter(User.email == data.email).first()
        if user is None or not user.can_authenticate:
            self.audit.log_security_event(
                db,
                user_id=user.id if user else None,
                event=SecurityEvent.LOGIN_FAILED,
                details=LoginFailureDetails(
                    email=data.email,
                    reason="unknown_user" if user is None else "inactive_user",
                ),
                severity=Severity.WARNING,
                context=context,
            )
            raise InvalidCredentialsError()

        if self.security.is_locked(db, user):
            self.audit.log_security_event(
                db,
                user_id=user.id,
                event=SecurityEvent.LOGIN_BLOCKED_LOCKED,
                details=LockoutDetails(locked_until=user.lockout_expiry, failed_attempts=self.security.max_attempts),
                severity=Severity.WARNING,
                context=context,
            )
            raise AccountLockedError(locked_until=user.lockout_expiry.isoformat())

        if not verify_password(data.password, user.password_hash):
            outcome = self.security.record_failed_attempt(db, user, context.ip_address)
            if outcome.locked:
                self.audit.log_security_event(
                    db,
                    user_id=user.id,
                    event=SecurityEvent.ACCOUNT_LOCKED,
                    details=LockoutDetails(locked_until=outcome.locked_until, failed_attempts=outcome.failed_attempts),
                    severity=Severity.ERROR,
                    context=context,
                )
                raise AccountLockedError(
                    "Too many failed login attempts. Account is locked.",
                    locked_until=outcome.locked_until.isoformat(),
                )
            self.audit.log_suspicious_activity(
                db,
                user_id=user.id,
                event=SecurityEvent.LOGIN_FAILED,
                details=LoginFailureDetails(
                    email=data.email,
                    reason="invalid_password",
                    recent_failures=outcome.failed_attempts,
                ),
                context=context,
            )
            raise InvalidCredentialsError()

        if not user.is_verified:
            self.audit.log_security_event(
                db,
                user_id=user.id,
                event=SecurityEvent.LOGIN_BLOCKED_UNVERIFIED,
                details=LoginFailureDetails(email=data.email, reason="unverified"),
                severity=Severity.WARNING,
                context=context,
            )
            raise EmailNotVerifiedError()

        access, access_record = self._new_token(user.id, TokenType.ACCESS, context=context)
        db.add(access_record)
        refresh = None
        if data.remember_me:
            # The access row must exist before a refresh row can reference it.
            db.flush()
            refresh, refresh_record = self._new_token(
                user.id,
                TokenType.REFRESH,
                context=context,
                claims={"tid": access.record_id},
                paired_token_id=access.record_id,
            )
            db.add(refresh_record)
            db.flush()

        user.last_login = utcnow()
        session_outcome = self.security.manage_sessions(
            db,
            user.id,
            token_id=access.record_id,
            refresh_token_id=refresh.record_id if refresh else None,
        )
        session_id = session_outcome.session.id
        self.security.record_success(db, user, context.ip_address)

        if session_outcome.evicted:
            self.audit.log_security_event(
                db,
                user_id=user.id,
                event=SecurityEvent.SESSIONS_EVICTED,
                details=SessionDetails(session_id=session_id, affected_sessions=session_outcome.evicted),
                context=context,
            )
        self.audit.log_audit_event(
            db,
            user_id=user.id,
            action=AuditAction.LOGIN,
            details=SessionDetails(session_id=session_id, token_id=access.record_id),
            context=context,
        )
        return LoginResult(
            user=user,
            access=access,
            session_id=session_id,
            refresh=refresh,
            evicted_sessions=session_outcome.evicted,
        )

    def refresh(
        self,
        db: Session,
        refresh_token: Optional[str],
        context: Optional[RequestContext] = None,
        access_user_id: Optional[str] = None,
    ) -> RefreshResult:
        """
        Exchange a refresh token for a new access/refresh pair.

        Both new records, the old refresh token's invalidation and its
        last-used touch are committed together. The device session moves to
        the new pair and the previous access token is retired in the same
        transaction. Of two concurrent refreshes with one token, only one
        succeeds.

        ``access_user_id`` is the owner of an access token sent alongside;
        when present it must match the refresh token's owner.
        """
        if not refresh_token:
            self._reject_token(
                db,
                SecurityEvent.REFRESH_TOKEN_REJECTED,
                record=None,
                token_type=TokenType.REFRESH,
                reason="missing",
                context=context,
            )
            raise AuthenticationError("Refresh token required")

        old = self._load_stored_token(db, refresh_token, TokenType.REFRESH, SecurityEvent.REFRESH_TOKEN_REJECTED, context)
        if access_user_id is not None and access_user_id != old.user_id:
            self._reject_token(
                db,
                SecurityEvent.REFRESH_TOKEN_REJECTED,
                record=old,
                token_type=TokenType.REFRESH,
                reason="user_mismatch",
                context=context,
            )
            raise TokenInvalidError()

        user = self._get_user(db, old.user_id)
        if user is None or not user.can_authenticate:
            raise AuthenticationError("User account is disabled")

        access, access_record = self._new_token(user.id, TokenType.ACCESS, context=context)
        refresh, refresh_record = self._new_token(
            user.id,
            TokenType.REFRESH,
            context=context,
            claims={"tid": access.record_id},
            paired_token_id=access.record_id,
        )

        try:
            rotation = self.security.rotate_refresh_token(db, old, refresh_record, access_record)
        except TokenRevokedError:
            self._reject_token(
                db,
                SecurityEvent.REFRESH_TOKEN_REJECTED,
                record=old,
                token_type=TokenType.REFRESH,
                reason="already_used",
                context=context,
            )
            raise

        if rotation.evicted:
            self.audit.log_security_event(
                db,
                user_id=user.id,
                event=SecurityEvent.SESSIONS_EVICTED,
                details=SessionDetails(session_id=rotation.session.id, affected_sessions=rotation.evicted),
                context=context,
            )
        self.audit.log_audit_event(
            db,
            user_id=user.id,
            action=AuditAction.TOKEN_REFRESH,
            details=TokenDetails(token_id=refresh.record_id, token_type=TokenType.REFRESH.value),
            context=context,
        )
        return RefreshResult(user=user, access=access, refresh=refresh)

    def logout(
        self,
        db: Session,
        user: User,
        token_id: Optional[str],
        all_devices: bool = False,
        context: Optional[RequestContext] = None,
    ) -> int:
        """
        End the current session, or every session of the user.

        Returns:
            int: Number of token records invalidated

        Raises:
            BadRequestError: Single-device logout without an identifying token
        """
        if all_devices:
            invalidated = self.security.end_all_sessions(db, user.id)
            action = AuditAction.LOGOUT_ALL
        else:
            if not token_id:
                raise BadRequestError("No active session to log out from")
            invalidated = self.security.end_session_for_token(db, token_id)
            action = AuditAction.LOGOUT
        db.commit()

        self.audit.log_audit_event(
            db,
            user_id=user.id,
            action=action,
            details=SessionDetails(token_id=token_id, invalidated_tokens=invalidated),
            context=context,
        )
        return invalidated

    # ------------------------------------------------------------------
    # Password management
    # ------------------------------------------------------------------

    def forgot_password(self, db: Session, email: str, context: Optional[RequestContext] = None) -> str:
        """Mail a reset link when the account exists and is active; the reply never says which."""
        user = db.query(User).filter(User.email == email).first()
        if user is None or not user.can_authenticate:
            logger.info("Password reset requested for unknown or inactive account")
            return FORGOT_PASSWORD_MESSAGE

        # Only the newest reset link stays usable.
        db.query(Token).filter(
            Token.user_id == user.id,
            Token.type == TokenType.PASSWORD_RESET.value,
            Token.invalidated == False,  # noqa: E712
        ).update({Token.invalidated: True}, synchronize_session=False)
        issued, record = self._new_token(user.id, TokenType.PASSWORD_RESET, context=context)
        db.add(record)
        db.commit()

        if not self.mailer.send_password_reset_email(user.email, user.name, issued.value):
            logger.warning("Password reset email for user %s was not delivered", user.id)

        self.audit.log_audit_event(
            db,
            user_id=user.id,
            action=AuditAction.PASSWORD_RESET_REQUEST,
            details=PasswordDetails(method="email"),
            context=context,
        )
        return FORGOT_PASSWORD_MESSAGE

    def reset_password(
        self,
        db: Session,
        token: str,
        new_password: str,
        confirm_password: str,
        context: Optional[RequestContext] = None,
    ) -> None:
        """
        Set a new password from a reset link and sign the user out everywhere.

        The password change, the reset token's invalidation and the
        invalidation of every ACCESS/REFRESH token commit as one transaction.
        """
        record = self._load_stored_token(
            db, token, TokenType.PASSWORD_RESET, SecurityEvent.PASSWORD_RESET_TOKEN_REJECTED, context
        )
        if new_password != confirm_password:
            raise BadRequestError("Passwords do not match")

        user = self._get_user(db, record.user_id)
        if user is None or not user.can_authenticate:
            raise ResourceNotFoundError("User")

        with atomic(db):
            user.password_hash = get_password_hash(new_password, self.bcrypt_rounds)
            record.invalidated = True
            record.last_used = utcnow()
            invalidated = self.security.end_all_sessions(db, user.id)

        self.audit.log_audit_event(
            db,
            user_id=user.id,
            action=AuditAction.PASSWORD_RESET,
            details=PasswordDetails(method="reset_token", invalidated_tokens=invalidated),
            context=context,
        )
        logger.info("Password reset for user %s; %d token(s) invalidated", user.id, invalidated)

    def change_password(
        self,
        db: Session,
        user: User,
        current_password: str,
        new_password: str,
        confirm_password: str,
        context: Optional[RequestContext] = None,
    ) -> None:
        """Change the password of an authenticated user; other sessions stay open."""
        if not verify_password(current_password, user.password_hash):
            raise AuthenticationError("Current password is incorrect")
        if verify_password(new_password, user.password_hash):
            raise BadRequestError("New password must be different from current password")
        if new_password != confirm_password:
            raise BadRequestError("Please confirm the new password")

        user.password_hash = get_password_hash(new_password, self.bcrypt_rounds)
        db.commit()

        self.audit.log_audit_event(
            db,
            user_id=user.id,
            action=AuditAction.PASSWORD_CHANGE,
            details=PasswordDetails(method="current_password"),
            context=context,
        )

    def verify_email(self, db: Session, token: str, context: Optional[RequestContext] = None) -> User:
        record = self._load_stored_token(
            db, token, TokenType.EMAIL_VERIFICATION, SecurityEvent.EMAIL_TOKEN_REJECTED, context
        )
        user = self._get_user(db, record.user_id)
        if user is None:
            raise ResourceNotFoundError("User")

        user.is_verified = True
        record.invalidated = True
        record.last_used = utcnow()
        db.commit()

        self.audit.log_audit_event(
            db,
            user_id=user.id,
            action=AuditAction.EMAIL_VERIFICATION,
            details=TokenDetails(token_id=record.id, token_type=record.type),
            context=context,
        )
        return user
