"""Login lockout, concurrent-session and token-rotation policy."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from inventory_backend.config import Settings
from inventory_backend.core.database import atomic
from inventory_backend.core.durations import utcnow
from inventory_backend.core.exceptions import TokenRevokedError
from inventory_backend.models.login_attempt import LoginAttempt
from inventory_backend.models.session import UserSession
from inventory_backend.models.token import SESSION_TOKEN_TYPES, Token, TokenType
from inventory_backend.models.user import User

logger = logging.getLogger(__name__)


@dataclass
class FailedAttemptOutcome:
    locked: bool
    failed_attempts: int
    locked_until: Optional[datetime] = None


@dataclass
class SessionOutcome:
    session: UserSession
    evicted: List[str] = field(default_factory=list)


@dataclass
class RotationOutcome:
    token: Token
    session: Optional[UserSession] = None
    evicted: List[str] = field(default_factory=list)


@dataclass
class CleanupOutcome:
    sessions: int = 0
    tokens: int = 0
    login_attempts: int = 0

    @property
    def total(self) -> int:
        return self.sessions + self.tokens + self.login_attempts


class SecurityService:
    """
    Per-user login state machine and session bookkeeping.

    UNLOCKED -> LOCKED(until T) after MAX_LOGIN_ATTEMPTS failures inside
    LOGIN_ATTEMPT_WINDOW; LOCKED -> UNLOCKED lazily on the first check after T.
    """

    def __init__(self, settings: Settings) -> None:
        self.max_attempts = settings.MAX_LOGIN_ATTEMPTS
        self.attempt_window = settings.login_attempt_window
        self.lockout_duration = settings.account_lockout_duration
        self.max_sessions = settings.MAX_CONCURRENT_SESSIONS
        self.session_timeout = settings.session_inactive_timeout
        self.attempt_retention = settings.log_retention

    # ------------------------------------------------------------------
    # Lockout
    # ------------------------------------------------------------------

    def record_failed_attempt(
        self, db: Session, user: User, ip_address: Optional[str] = None
    ) -> FailedAttemptOutcome:
        """
        Record a failed login and lock the account when the threshold is reached.

        The caller must reject the login with a 429 when ``locked`` is True.
        """
        now = utcnow()
        window_start = now - self.attempt_window
        recent = (
            db.query(LoginAttempt)
            .filter(
                LoginAttempt.user_id == user.id,
                LoginAttempt.success == False,  # noqa: E712
                LoginAttempt.created_at >= window_start,
            )
            .count()
        )
        db.add(LoginAttempt(user_id=user.id, success=False, ip_address=ip_address, created_at=now))

        failed = recent + 1
        if failed >= self.max_attempts:
            user.is_locked = True
            user.lockout_expiry = now + self.lockout_duration
            db.commit()
            logger.warning("Account %s locked until %s", user.id, user.lockout_expiry.isoformat())
            return FailedAttemptOutcome(locked=True, failed_attempts=failed, locked_until=user.lockout_expiry)

        db.commit()
        return FailedAttemptOutcome(locked=False, failed_attempts=failed)

    def record_success(self, db: Session, user: User, ip_address: Optional[str] = None) -> None:
        """Record a successful login and forget earlier failures."""
        db.add(LoginAttempt(user_id=user.id, success=True, ip_address=ip_address))
        db.query(LoginAttempt).filter(
            LoginAttempt.user_id == user.id,
            LoginAttempt.success == False,  # noqa: E712
        ).delete(synchronize_session=False)
        db.commit()

    def is_locked(self, db: Session, user: User) -> bool:
        if not user.is_locked:
            return False

        if user.lockout_expiry is None or user.lockout_expiry <= utcnow():
            user.is_locked = False
            user.lockout_expiry = None
            db.commit()
            logger.info("Lockout expired for account %s", user.id)
            return False

        return True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _invalidate_session_tokens(self, db: Session, token_ids: Sequence[str]) -> int:
        """Invalidate the given tokens and any refresh tokens paired with them."""
        token_ids = [t for t in token_ids if t]
        if not token_ids:
            return 0
        return (
            db.query(Token)
            .filter(
                or_(Token.id.in_(token_ids), Token.paired_token_id.in_(token_ids)),
                Token.invalidated == False,  # noqa: E712
            )
            .update({Token.invalidated: True}, synchronize_session=False)
        )

    @staticmethod
    def _session_token_ids(sessions: Sequence[UserSession]) -> List[str]:
        return [t for s in sessions for t in (s.token_id, s.refresh_token_id)]

    def _make_room(self, db: Session, user_id: str) -> List[str]:
        """Drop least-recently-active sessions until one more fits; no commit."""
        sessions = (
            db.query(UserSession)
            .filter(UserSession.user_id == user_id)
            .order_by(UserSession.last_active.asc(), UserSession.created_at.asc())
            .all()
        )
        if len(sessions) < self.max_sessions:
            return []

        overflow = len(sessions) - max(self.max_sessions - 1, 0)
        stale_sessions = sessions[:overflow]
        self._invalidate_session_tokens(db, self._session_token_ids(stale_sessions))
        for stale in stale_sessions:
            db.delete(stale)
        return [s.id for s in stale_sessions]

    def manage_sessions(
        self,
        db: Session,
        user_id: str,
        token_id: Optional[str] = None,
        session_id: Optional[str] = None,
        refresh_token_id: Optional[str] = None,
    ) -> SessionOutcome:
        """
        Evict least-recently-active sessions so the new one fits under the limit, then insert it.

        Pending writes on ``db`` (such as the freshly issued token records)
        are committed together with the eviction and the new session.
        """
        evicted = self._make_room(db, user_id)

        now = utcnow()
        session = UserSession(
            user_id=user_id,
            token_id=token_id,
            refresh_token_id=refresh_token_id,
            last_active=now,
            created_at=now,
        )
        if session_id:
            session.id = session_id
        db.add(session)
        db.commit()

        if evicted:
            logger.info("Evicted %d session(s) for user %s", len(evicted), user_id)
        return SessionOutcome(session=session, evicted=evicted)

    def touch_session(self, db: Session, token: Token) -> None:
        now = utcnow()
        token.last_used = now
        db.query(UserSession).filter(UserSession.token_id == token.id).update(
            {UserSession.last_active: now}, synchronize_session=False
        )
        db.commit()

    def list_sessions(self, db: Session, user_id: str) -> List[UserSession]:
        return (
            db.query(UserSession)
            .filter(UserSession.user_id == user_id)
            .order_by(UserSession.last_active.desc())
            .all()
        )

    def revoke_session(self, db: Session, user_id: str, session_id: str) -> bool:
        session = (
            db.query(UserSession)
            .filter(UserSession.id == session_id, UserSession.user_id == user_id)
            .first()
        )
        if not session:
            return False
        self._invalidate_session_tokens(db, self._session_token_ids([session]))
        db.delete(session)
        db.commit()
        return True

    def revoke_other_sessions(self, db: Session, user_id: str, keep_token_id: Optional[str]) -> List[str]:
        query = db.query(UserSession).filter(UserSession.user_id == user_id)
        if keep_token_id:
            query = query.filter(
                or_(UserSession.token_id != keep_token_id, UserSession.token_id.is_(None))
            )
        others = query.all()
        revoked = [s.id for s in others]
        self._invalidate_session_tokens(db, self._session_token_ids(others))
        for session in others:
            db.delete(session)
        db.commit()
        return revoked

    def end_session_for_token(self, db: Session, token_id: str) -> int:
        """Invalidate an access token with its paired refresh tokens and drop its session; no commit."""
        sessions = db.query(UserSession).filter(UserSession.token_id == token_id).all()
        invalidated = self._invalidate_session_tokens(db, [token_id] + self._session_token_ids(sessions))
        for session in sessions:
            db.delete(session)
        return invalidated

    def end_all_sessions(self, db: Session, user_id: str) -> int:
        """Invalidate every live ACCESS/REFRESH token of the user and drop all sessions; no commit."""
        invalidated = (
            db.query(Token)
            .filter(
                Token.user_id == user_id,
                Token.type.in_(SESSION_TOKEN_TYPES),
                Token.invalidated == False,  # noqa: E712
            )
            .update({Token.invalidated: True}, synchronize_session=False)
        )
        db.query(UserSession).filter(UserSession.user_id == user_id).delete(synchronize_session=False)
        return invalidated

    # ------------------------------------------------------------------
    # Token rotation
    # ------------------------------------------------------------------

    def _move_session(
        self, db: Session, old_token: Token, new_token: Token, access_token: Token, now: datetime
    ) -> RotationOutcome:
        """Re-point the device session from the old token pair to the new one; no commit."""
        match = [UserSession.refresh_token_id == old_token.id]
        if old_token.paired_token_id:
            match.append(UserSession.token_id == old_token.paired_token_id)
        session = (
            db.query(UserSession)
            .filter(UserSession.user_id == old_token.user_id, or_(*match))
            .first()
        )

        retired = {old_token.paired_token_id}
        evicted: List[str] = []
        if session is None:
            # Swept as idle; the device gets a fresh session under the limit.
            evicted = self._make_room(db, old_token.user_id)
            session = UserSession(user_id=old_token.user_id, created_at=now)
            db.add(session)
        else:
            retired.add(session.token_id)
        session.token_id = access_token.id
        session.refresh_token_id = new_token.id
        session.last_active = now

        retired.discard(None)
        if retired:
            db.query(Token).filter(Token.id.in_(retired), Token.invalidated == False).update(  # noqa: E712
                {Token.invalidated: True}, synchronize_session=False
            )
        return RotationOutcome(token=new_token, session=session, evicted=evicted)

    def rotate_refresh_token(
        self,
        db: Session,
        old_token: Token,
        new_token: Token,
        access_token: Optional[Token] = None,
    ) -> RotationOutcome:
        """
        Invalidate ``old_token`` and persist ``new_token`` in a single commit.

        The old token is claimed with a conditional UPDATE, so when two
        requests race on the same refresh token exactly one commits and the
        other raises ``TokenRevokedError``. When ``access_token`` is given it
        is stored too and the device session moves onto the new pair.

        Any write already pending on ``db`` joins the same transaction; on
        failure everything is rolled back and neither token changes.
        """
        if old_token.type != TokenType.REFRESH.value or new_token.type != TokenType.REFRESH.value:
            raise ValueError("rotate_refresh_token only rotates refresh tokens")

        now = utcnow()
        with atomic(db):
            claimed = (
                db.query(Token)
                .filter(Token.id == old_token.id, Token.invalidated == False)  # noqa: E712
                .update({Token.invalidated: True, Token.last_used: now}, synchronize_session=False)
            )
            if claimed != 1:
                raise TokenRevokedError("Invalid or expired token")

            new_token.last_used = now
            if access_token is not None:
                db.add(access_token)
                db.flush()
            db.add(new_token)
            db.flush()
            outcome = RotationOutcome(token=new_token)
            if access_token is not None:
                outcome = self._move_session(db, old_token, new_token, access_token, now)

        if outcome.evicted:
            logger.info("Evicted %d session(s) for user %s", len(outcome.evicted), old_token.user_id)
        return outcome

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup_expired(self, db: Session) -> CleanupOutcome:
        """Delete idle sessions, expired tokens and old login attempts as one transaction."""
        now = utcnow()
        inactive_before = now - self.session_timeout
        with atomic(db):
            sessions = (
                db.query(UserSession)
                .filter(UserSession.last_active < inactive_before)
                .delete(synchronize_session=False)
            )
            # Detach sessions and pairings from tokens about to disappear.
            expired_ids = select(Token.id).where(Token.expires_at < now)
            db.query(UserSession).filter(UserSession.token_id.in_(expired_ids)).update(
                {UserSession.token_id: None}, synchronize_session=False
            )
            db.query(UserSession).filter(UserSession.refresh_token_id.in_(expired_ids)).update(
                {UserSession.refresh_token_id: None}, synchronize_session=False
            )
            db.query(Token).filter(Token.paired_token_id.in_(expired_ids)).update(
                {Token.paired_token_id: None}, synchronize_session=False
            )
            tokens = db.query(Token).filter(Token.expires_at < now).delete(synchronize_session=False)
            attempts = (
                db.query(LoginAttempt)
                .filter(LoginAttempt.created_at < now - self.attempt_retention)
                .delete(synchronize_session=False)
            )
        return CleanupOutcome(sessions=sessions, tokens=tokens, login_attempts=attempts)
