from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from inventory_backend.core.durations import utcnow
from inventory_backend.core.exceptions import TokenRevokedError
from inventory_backend.main import create_app
from inventory_backend.models.audit import AuditLog, SecurityLog
from inventory_backend.models.session import UserSession
from inventory_backend.models.token import Token
from inventory_backend.runtime import Runtime
from inventory_backend.schemas.user import LoginRequest

from conftest import PASSWORD, RecordingMailer, make_settings, make_user

API = "/api/v1/auth"
NEW_PASSWORD = "Bb2@bbbb"


def register(client, email="alice@example.com", password=PASSWORD):
    return client.post(
        f"{API}/register",
        json={"email": email, "password": password, "name": "Alice Example"},
    )


def register_verified(client, runtime, email="alice@example.com"):
    assert register(client, email).status_code == 201
    token = runtime.mailer.last_token("verify", email)
    assert client.get(f"{API}/verify-email", params={"token": token}).status_code == 200


def login(client, email="alice@example.com", password=PASSWORD, remember=False):
    return client.post(
        f"{API}/login",
        json={"email": email, "password": password, "rememberMe": remember},
    )


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def test_register_returns_sanitized_user(client, runtime):
    response = register(client, "Alice@Example.com")

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    user = body["data"]
    assert user["email"] == "alice@example.com"
    assert user["is_verified"] is False
    assert user["role"] == "STAFF"
    assert "password" not in response.text
    assert "password_hash" not in user
    assert runtime.mailer.last_token("verify", "alice@example.com")


def test_register_duplicate_email_conflicts(client):
    assert register(client).status_code == 201
    response = register(client)

    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Email already registered"
    assert body["path"] == f"{API}/register"


def test_register_rejects_weak_password(client):
    response = register(client, password="alllowercase")
    assert response.status_code == 422
    assert response.json()["error"] == "Validation failed"


def test_login_requires_verified_email(client):
    register(client)
    response = login(client)
    assert response.status_code == 403
    assert "access_token" not in client.cookies


def test_verification_token_is_single_use(client, runtime):
    register(client)
    token = runtime.mailer.last_token("verify", "alice@example.com")

    assert client.get(f"{API}/verify-email", params={"token": token}).status_code == 200
    assert client.get(f"{API}/verify-email", params={"token": token}).status_code == 401


def test_login_with_remember_me_sets_both_cookies(client, runtime):
    register_verified(client, runtime)
    response = login(client, remember=True)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["email"] == "alice@example.com"
    assert not any("token" in key for key in data)
    assert client.cookies.get("access_token")
    assert client.cookies.get("refresh_token")
    set_cookie = ",".join(response.headers.get_list("set-cookie"))
    assert "HttpOnly" in set_cookie
    assert f"Path={API}/refresh-token" in set_cookie


def test_login_without_remember_me_has_no_refresh_cookie(client, runtime):
    register_verified(client, runtime)
    assert login(client).status_code == 200
    assert client.cookies.get("access_token")
    assert client.cookies.get("refresh_token") is None


def test_me_accepts_cookie_and_bearer(client, runtime):
    register_verified(client, runtime)
    login(client)
    token = client.cookies.get("access_token")

    assert client.get(f"{API}/me").json()["email"] == "alice@example.com"
    client.cookies.clear()
    assert client.get(f"{API}/me", headers=bearer(token)).status_code == 200


def test_me_without_token_is_unauthorized(client, runtime):
    response = client.get(f"{API}/me")
    assert response.status_code == 401
    body = response.json()
    assert body["success"] is False
    assert body["error"] == "Authentication required"

    db = runtime.session_factory()
    try:
        events = [row.event for row in db.query(SecurityLog).all()]
    finally:
        db.close()
    assert "AUTH_FAILED_NO_TOKEN" in events


def test_unknown_email_and_wrong_password_look_the_same(client, runtime):
    register_verified(client, runtime)
    unknown = login(client, email="nobody@example.com")
    wrong = login(client, password="Wrong1!pass")

    assert unknown.status_code == wrong.status_code == 401
    assert unknown.json()["error"] == wrong.json()["error"]


def test_refresh_rotates_tokens(client, runtime):
    register_verified(client, runtime)
    login(client, remember=True)
    old_access = client.cookies.get("access_token")
    old_refresh = client.cookies.get("refresh_token")

    response = client.post(f"{API}/refresh-token")
    assert response.status_code == 200
    new_access = client.cookies.get("access_token")
    new_refresh = client.cookies.get("refresh_token")
    assert new_access != old_access
    assert new_refresh != old_refresh

    assert client.get(f"{API}/me", headers=bearer(new_access)).status_code == 200
    assert client.get(f"{API}/me", headers=bearer(old_access)).status_code == 401

    replay = client.post(f"{API}/refresh-token", headers={"Cookie": f"refresh_token={old_refresh}"})
    assert replay.status_code == 401
    assert replay.json()["error"] == "Invalid or expired token"


def test_refresh_keeps_one_session(client, runtime):
    register_verified(client, runtime)
    login(client, remember=True)
    client.post(f"{API}/refresh-token")

    sessions = client.get(f"{API}/sessions").json()["data"]
    assert len(sessions) == 1
    assert sessions[0]["current"] is True


def test_refresh_without_cookie_is_unauthorized(client):
    response = client.post(f"{API}/refresh-token")
    assert response.status_code == 401
    assert response.json()["error"] == "Refresh token required"


def test_access_token_cannot_refresh(client, runtime):
    register_verified(client, runtime)
    login(client)
    access = client.cookies.get("access_token")

    response = client.post(f"{API}/refresh-token", headers={"Cookie": f"refresh_token={access}"})
    assert response.status_code == 401


def test_email_token_is_not_an_access_token(client, runtime):
    register(client)
    token = runtime.mailer.last_token("verify", "alice@example.com")
    assert client.get(f"{API}/me", headers=bearer(token)).status_code == 401


def test_logout_revokes_current_token(client, runtime):
    register_verified(client, runtime)
    login(client, remember=True)
    access = client.cookies.get("access_token")
    refresh = client.cookies.get("refresh_token")

    response = client.post(f"{API}/logout")
    assert response.status_code == 200
    assert client.cookies.get("access_token") is None

    assert client.get(f"{API}/me", headers=bearer(access)).status_code == 401
    replay = client.post(f"{API}/refresh-token", headers={"Cookie": f"refresh_token={refresh}"})
    assert replay.status_code == 401


def test_logout_all_devices(client, runtime):
    register_verified(client, runtime)
    login(client)
    first = client.cookies.get("access_token")
    login(client)
    second = client.cookies.get("access_token")

    response = client.post(f"{API}/logout", json={"allDevices": True}, headers=bearer(second))
    assert response.status_code == 200
    assert response.json()["message"] == "Logged out from all devices successfully"
    assert client.get(f"{API}/me", headers=bearer(first)).status_code == 401
    assert client.get(f"{API}/me", headers=bearer(second)).status_code == 401


def test_forgot_password_reply_does_not_reveal_accounts(client, runtime):
    register_verified(client, runtime)
    known = client.post(f"{API}/forgot-password", json={"email": "alice@example.com"})
    unknown = client.post(f"{API}/forgot-password", json={"email": "nobody@example.com"})

    assert known.status_code == unknown.status_code == 200
    assert known.content == unknown.content
    assert [kind for kind, _, _ in runtime.mailer.sent].count("reset") == 1


def test_reset_password_signs_out_everywhere(client, runtime):
    register_verified(client, runtime)
    login(client)
    old_access = client.cookies.get("access_token")

    client.post(f"{API}/forgot-password", json={"email": "alice@example.com"})
    token = runtime.mailer.last_token("reset", "alice@example.com")
    payload = {"token": token, "newPassword": NEW_PASSWORD, "confirmPassword": NEW_PASSWORD}

    assert client.post(f"{API}/reset-password", json=payload).status_code == 200
    assert client.get(f"{API}/me", headers=bearer(old_access)).status_code == 401
    assert login(client).status_code == 401
    assert login(client, password=NEW_PASSWORD).status_code == 200

    assert client.post(f"{API}/reset-password", json=payload).status_code == 401


def test_only_latest_reset_link_works(client, runtime):
    register_verified(client, runtime)
    client.post(f"{API}/forgot-password", json={"email": "alice@example.com"})
    first = runtime.mailer.last_token("reset", "alice@example.com")
    client.post(f"{API}/forgot-password", json={"email": "alice@example.com"})
    second = runtime.mailer.last_token("reset", "alice@example.com")

    stale = {"token": first, "newPassword": NEW_PASSWORD, "confirmPassword": NEW_PASSWORD}
    assert client.post(f"{API}/reset-password", json=stale).status_code == 401
    fresh = dict(stale, token=second)
    assert client.post(f"{API}/reset-password", json=fresh).status_code == 200


def test_reset_password_requires_matching_confirmation(client, runtime):
    register_verified(client, runtime)
    client.post(f"{API}/forgot-password", json={"email": "alice@example.com"})
    token = runtime.mailer.last_token("reset", "alice@example.com")

    response = client.post(
        f"{API}/reset-password",
        json={"token": token, "newPassword": NEW_PASSWORD, "confirmPassword": "Cc3#cccc"},
    )
    assert response.status_code == 400


def test_change_password(client, runtime):
    register_verified(client, runtime)
    login(client)

    wrong = client.post(
        f"{API}/change-password",
        json={"currentPassword": "Wrong1!pass", "newPassword": NEW_PASSWORD, "confirmPassword": NEW_PASSWORD},
    )
    assert wrong.status_code == 401

    same = client.post(
        f"{API}/change-password",
        json={"currentPassword": PASSWORD, "newPassword": PASSWORD, "confirmPassword": PASSWORD},
    )
    assert same.status_code == 400

    ok = client.post(
        f"{API}/change-password",
        json={"currentPassword": PASSWORD, "newPassword": NEW_PASSWORD, "confirmPassword": NEW_PASSWORD},
    )
    assert ok.status_code == 200
    assert login(client, password=NEW_PASSWORD).status_code == 200


def test_session_listing_and_revocation(client, runtime):
    register_verified(client, runtime)
    login(client)
    first = client.cookies.get("access_token")
    login(client)

    sessions = client.get(f"{API}/sessions").json()["data"]
    assert len(sessions) == 2
    assert [s["current"] for s in sessions].count(True) == 1

    response = client.delete(f"{API}/sessions")
    assert response.status_code == 200
    assert len(response.json()["data"]["revoked"]) == 1
    assert client.get(f"{API}/me", headers=bearer(first)).status_code == 401
    assert len(client.get(f"{API}/sessions").json()["data"]) == 1


def test_revoke_single_session(client, runtime):
    register_verified(client, runtime)
    login(client)
    first = client.cookies.get("access_token")
    login(client)

    sessions = client.get(f"{API}/sessions").json()["data"]
    other = next(s for s in sessions if not s["current"])

    assert client.delete(f"{API}/sessions/{other['id']}").status_code == 200
    assert client.get(f"{API}/me", headers=bearer(first)).status_code == 401
    assert client.delete(f"{API}/sessions/{other['id']}").status_code == 404


def test_repeated_failures_lock_the_account(client, runtime):
    register_verified(client, runtime)
    max_attempts = runtime.settings.MAX_LOGIN_ATTEMPTS

    for _ in range(max_attempts - 1):
        assert login(client, password="Wrong1!pass").status_code == 401

    locking = login(client, password="Wrong1!pass")
    assert locking.status_code == 429
    assert locking.json()["details"]["locked_until"]

    # Correct password is refused while the lock holds.
    assert login(client).status_code == 429


def test_login_writes_audit_trail(client, runtime):
    register_verified(client, runtime)
    login(client)

    db = runtime.session_factory()
    try:
        actions = {row.action for row in db.query(AuditLog).all()}
        token_types = {row.type for row in db.query(Token).all()}
    finally:
        db.close()
    assert {"REGISTER", "EMAIL_VERIFICATION", "LOGIN"} <= actions
    assert {"EMAIL_VERIFICATION", "ACCESS"} <= token_types


def test_login_rate_limit():
    settings = make_settings(LOGIN_RATE_LIMIT_PER_MINUTE=2)
    runtime = Runtime(settings, mailer=RecordingMailer(settings))
    with TestClient(create_app(runtime)) as client:
        assert login(client, email="nobody@example.com").status_code == 401
        assert login(client, email="nobody@example.com").status_code == 401
        limited = login(client, email="nobody@example.com")
    assert limited.status_code == 429


def test_inactive_user_token_is_rejected(client, runtime, db):
    user = make_user(db, "bob@example.com")
    login(client, email="bob@example.com")
    token = client.cookies.get("access_token")

    user.is_active = False
    db.commit()

    assert client.get(f"{API}/me", headers=bearer(token)).status_code == 401


def _login_remembered(runtime, db, email="alice@example.com"):
    make_user(db, email)
    return runtime.auth.login(db, LoginRequest(email=email, password=PASSWORD, remember_me=True))


def test_refresh_after_cleanup_keeps_one_session(runtime, db):
    result = _login_remembered(runtime, db)
    user_id, refresh_value, access_id = result.user.id, result.refresh.value, result.access.record_id

    for _ in range(runtime.security.max_sessions + 2):
        db.query(Token).filter(Token.id == access_id).update(
            {Token.expires_at: utcnow() - timedelta(minutes=1)}, synchronize_session=False
        )
        db.commit()
        runtime.security.cleanup_expired(db)

        refreshed = runtime.auth.refresh(db, refresh_value)
        refresh_value, access_id = refreshed.refresh.value, refreshed.access.record_id

    sessions = db.query(UserSession).filter(UserSession.user_id == user_id).all()
    assert len(sessions) == 1
    assert sessions[0].token_id == access_id
    assert sessions[0].refresh_token_id == refreshed.refresh.record_id


def test_concurrent_refresh_with_one_token_has_one_winner(runtime, db):
    result = _login_remembered(runtime, db)
    user_id, refresh_value = result.user.id, result.refresh.value

    racer = runtime.session_factory()
    try:
        # The racer has already read the refresh record when the other request commits.
        held = racer.query(Token).filter(Token.id == result.refresh.record_id).one()
        assert held.invalidated is False

        runtime.auth.refresh(db, refresh_value)
        with pytest.raises(TokenRevokedError):
            runtime.auth.refresh(racer, refresh_value)
    finally:
        racer.close()

    db.expire_all()
    live = (
        db.query(Token)
        .filter(Token.user_id == user_id, Token.invalidated == False)  # noqa: E712
        .all()
    )
    assert sorted(t.type for t in live) == ["ACCESS", "REFRESH"]
    assert db.query(UserSession).filter(UserSession.user_id == user_id).count() == 1
    assert "REFRESH_TOKEN_REJECTED" in [row.event for row in db.query(SecurityLog).all()]


def test_refresh_rejects_access_token_of_another_user(client, runtime):
    register_verified(client, runtime)
    login(client, remember=True)
    alice_access = client.cookies.get("access_token")
    register_verified(client, runtime, "bob@example.com")
    assert login(client, "bob@example.com").status_code == 200

    response = client.post(f"{API}/refresh-token")
    assert response.status_code == 401

    response = client.post(f"{API}/refresh-token", headers=bearer(alice_access))
    assert response.status_code == 200
    assert response.json()["data"]["email"] == "alice@example.com"
