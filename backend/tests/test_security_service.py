from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from inventory_backend.core.durations import utcnow
from inventory_backend.core.exceptions import TokenRevokedError
from inventory_backend.models.login_attempt import LoginAttempt
from inventory_backend.models.session import UserSession
from inventory_backend.models.token import Token

from conftest import make_token_record, make_user


@pytest.fixture
def security(runtime):
    return runtime.security


def _failed_count(db, user):
    return (
        db.query(LoginAttempt)
        .filter(LoginAttempt.user_id == user.id, LoginAttempt.success == False)  # noqa: E712
        .count()
    )


def test_account_locks_after_max_failures(db, security):
    user = make_user(db)

    for expected in range(1, security.max_attempts):
        outcome = security.record_failed_attempt(db, user, "10.0.0.1")
        assert outcome.locked is False
        assert outcome.failed_attempts == expected

    outcome = security.record_failed_attempt(db, user, "10.0.0.1")
    assert outcome.locked is True
    assert outcome.failed_attempts == security.max_attempts
    assert outcome.locked_until > utcnow()
    assert security.is_locked(db, user) is True


def test_failures_outside_window_do_not_count(db, security):
    user = make_user(db)
    old = utcnow() - security.attempt_window - timedelta(minutes=1)
    for _ in range(10):
        db.add(LoginAttempt(user_id=user.id, success=False, created_at=old))
    db.commit()

    outcome = security.record_failed_attempt(db, user)
    assert outcome.locked is False
    assert outcome.failed_attempts == 1


def test_lock_expires_lazily_on_next_check(db, security):
    user = make_user(db, is_locked=True, lockout_expiry=utcnow() - timedelta(seconds=1))

    assert security.is_locked(db, user) is False
    db.refresh(user)
    assert user.is_locked is False
    assert user.lockout_expiry is None


def test_record_success_clears_failures(db, security):
    user = make_user(db)
    security.record_failed_attempt(db, user)
    security.record_failed_attempt(db, user)
    assert _failed_count(db, user) == 2

    security.record_success(db, user, "10.0.0.1")
    assert _failed_count(db, user) == 0
    assert db.query(LoginAttempt).filter(LoginAttempt.user_id == user.id).count() == 1


def _seed_sessions(db, user, count):
    now = utcnow()
    sessions = []
    for i in range(count):
        token = make_token_record(db, user, "ACCESS")
        session = UserSession(
            user_id=user.id,
            token_id=token.id,
            last_active=now - timedelta(minutes=count - i),
            created_at=now - timedelta(hours=1),
        )
        db.add(session)
        sessions.append(session)
    db.commit()
    return sessions


def test_new_session_evicts_least_recently_active(db, security):
    user = make_user(db)
    sessions = _seed_sessions(db, user, security.max_sessions)
    oldest_id, oldest_token_id = sessions[0].id, sessions[0].token_id
    refresh = make_token_record(db, user, "REFRESH", paired_token_id=oldest_token_id)

    new_token = make_token_record(db, user, "ACCESS")
    outcome = security.manage_sessions(db, user.id, token_id=new_token.id)

    assert outcome.evicted == [oldest_id]
    assert db.query(UserSession).filter(UserSession.user_id == user.id).count() == security.max_sessions
    assert db.get(UserSession, oldest_id) is None
    assert db.get(Token, oldest_token_id).invalidated is True
    assert db.get(Token, refresh.id).invalidated is True
    assert outcome.session.token_id == new_token.id


def test_session_under_limit_evicts_nothing(db, security):
    user = make_user(db)
    _seed_sessions(db, user, 2)
    new_token = make_token_record(db, user, "ACCESS")

    outcome = security.manage_sessions(db, user.id, token_id=new_token.id)

    assert outcome.evicted == []
    assert db.query(UserSession).filter(UserSession.user_id == user.id).count() == 3


def test_revoke_other_sessions_keeps_current(db, security):
    user = make_user(db)
    sessions = _seed_sessions(db, user, 3)
    keep = sessions[1]

    revoked = security.revoke_other_sessions(db, user.id, keep.token_id)

    assert sorted(revoked) == sorted([sessions[0].id, sessions[2].id])
    remaining = db.query(UserSession).filter(UserSession.user_id == user.id).all()
    assert [s.id for s in remaining] == [keep.id]
    assert db.get(Token, keep.token_id).invalidated is False


def test_revoke_session_of_another_user_is_refused(db, security):
    owner = make_user(db, "owner@example.com")
    intruder = make_user(db, "intruder@example.com")
    session = _seed_sessions(db, owner, 1)[0]

    assert security.revoke_session(db, intruder.id, session.id) is False
    assert security.revoke_session(db, owner.id, session.id) is True
    assert db.get(UserSession, session.id) is None


def test_rotation_swaps_refresh_tokens(db, security):
    user = make_user(db)
    old = make_token_record(db, user, "REFRESH")
    new = Token(token_hash="f" * 64, type="REFRESH", user_id=user.id, expires_at=utcnow() + timedelta(days=7))

    security.rotate_refresh_token(db, old, new)

    assert db.get(Token, old.id).invalidated is True
    stored = db.get(Token, new.id)
    assert stored is not None
    assert stored.invalidated is False


def test_failed_rotation_changes_nothing(db, security):
    user = make_user(db)
    old = make_token_record(db, user, "REFRESH")
    other = make_token_record(db, user, "REFRESH")
    clash = Token(token_hash=other.token_hash, type="REFRESH", user_id=user.id, expires_at=utcnow() + timedelta(days=7))

    with pytest.raises(IntegrityError):
        security.rotate_refresh_token(db, old, clash)

    assert db.get(Token, old.id).invalidated is False
    assert db.query(Token).filter(Token.user_id == user.id).count() == 2


def test_rotation_rejects_non_refresh_tokens(db, security):
    user = make_user(db)
    access = make_token_record(db, user, "ACCESS")
    new = Token(token_hash="e" * 64, type="REFRESH", user_id=user.id, expires_at=utcnow() + timedelta(days=7))

    with pytest.raises(ValueError):
        security.rotate_refresh_token(db, access, new)


def test_cleanup_expired_is_idempotent(db, security):
    user = make_user(db)
    live = make_token_record(db, user, "ACCESS")
    expired = make_token_record(db, user, "ACCESS", expires_in=timedelta(minutes=-5))
    make_token_record(db, user, "REFRESH", expires_in=timedelta(minutes=-5), paired_token_id=live.id)
    make_token_record(db, user, "REFRESH", paired_token_id=expired.id)
    db.add(UserSession(user_id=user.id, token_id=live.id, last_active=utcnow()))
    db.add(UserSession(user_id=user.id, token_id=expired.id, last_active=utcnow()))
    db.add(UserSession(user_id=user.id, last_active=utcnow() - security.session_timeout - timedelta(minutes=1)))
    db.add(LoginAttempt(user_id=user.id, success=False, created_at=utcnow() - security.attempt_retention - timedelta(days=1)))
    db.commit()

    first = security.cleanup_expired(db)
    assert first.sessions == 1
    assert first.tokens == 2
    assert first.login_attempts == 1

    second = security.cleanup_expired(db)
    assert second.total == 0

    assert db.get(Token, live.id) is not None
    assert db.query(UserSession).filter(UserSession.user_id == user.id).count() == 2


def test_user_dict_omits_credentials(db):
    user = make_user(db)
    data = user.to_dict()
    assert data["email"] == "user@example.com"
    assert "password_hash" not in data
    assert "lockout_expiry" not in data


def test_rotation_of_a_token_already_claimed_elsewhere_fails(db, security):
    user = make_user(db)
    old = make_token_record(db, user, "REFRESH")
    # Another transaction invalidated the row; this session still holds the stale copy.
    db.query(Token).filter(Token.id == old.id).update({Token.invalidated: True}, synchronize_session=False)
    assert old.invalidated is False
    new = Token(token_hash="d" * 64, type="REFRESH", user_id=user.id, expires_at=utcnow() + timedelta(days=7))

    with pytest.raises(TokenRevokedError):
        security.rotate_refresh_token(db, old, new)

    assert db.query(Token).filter(Token.token_hash == "d" * 64).count() == 0


def test_revoking_a_swept_session_still_kills_its_refresh_token(db, security):
    user = make_user(db)
    access = make_token_record(db, user, "ACCESS", expires_in=timedelta(minutes=-1))
    refresh = make_token_record(db, user, "REFRESH", paired_token_id=access.id)
    session = UserSession(user_id=user.id, token_id=access.id, refresh_token_id=refresh.id, last_active=utcnow())
    db.add(session)
    db.commit()
    session_id, refresh_id = session.id, refresh.id

    security.cleanup_expired(db)
    db.expire_all()
    swept = db.get(UserSession, session_id)
    assert swept.token_id is None
    assert swept.refresh_token_id == refresh_id

    assert security.revoke_session(db, user.id, session_id) is True
    assert db.get(Token, refresh_id).invalidated is True
