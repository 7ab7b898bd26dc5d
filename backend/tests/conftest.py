import asyncio
import inspect
import os
import sys
import tempfile
from datetime import timedelta
from pathlib import Path

# Keep log output out of the repository before the app module is imported.
_test_tmp_dir = tempfile.mkdtemp(prefix="inventory_test_")
os.environ.setdefault("LOG_FILE", str(Path(_test_tmp_dir) / "test.log"))
os.environ.setdefault("RUN_CLEANUP_SCHEDULER", "false")
os.environ.setdefault("DB_INIT_MODE", "off")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from inventory_backend.config import Settings  # noqa: E402
from inventory_backend.main import create_app  # noqa: E402
from inventory_backend.runtime import Runtime  # noqa: E402
from inventory_backend.services.email_service import EmailService  # noqa: E402

PASSWORD = "Aa1!aaaa"


class RecordingMailer(EmailService):
    """Captures outgoing tokens instead of talking to SMTP."""

    def __init__(self, settings: Settings) -> None:
        super().__init__(settings)
        self.sent = []

    def send_verification_email(self, to_email, name, token):
        self.sent.append(("verify", to_email, token))
        return True

    def send_password_reset_email(self, to_email, name, token):
        self.sent.append(("reset", to_email, token))
        return True

    def last_token(self, kind, to_email):
        for sent_kind, sent_to, token in reversed(self.sent):
            if sent_kind == kind and sent_to == to_email:
                return token
        raise AssertionError(f"no {kind} mail sent to {to_email}")


def make_settings(**overrides) -> Settings:
    values = dict(
        DATABASE_URL="sqlite:///:memory:",
        DB_INIT_MODE="create_all",
        RUN_CLEANUP_SCHEDULER=False,
        BCRYPT_ROUNDS=4,
        LOGIN_RATE_LIMIT_PER_MINUTE=1000,
        LOGIN_RATE_LIMIT_PER_HOUR=1000,
        PASSWORD_RESET_RATE_LIMIT_PER_HOUR=1000,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def runtime(settings):
    rt = Runtime(settings, mailer=RecordingMailer(settings))
    rt.init_db()
    yield rt
    rt.engine.dispose()


@pytest.fixture
def db(runtime):
    session = runtime.session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(runtime):
    app = create_app(runtime)
    with TestClient(app) as test_client:
        yield test_client


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def make_user(db, email="user@example.com", *, role="STAFF", verified=True, password=PASSWORD, **fields):
    """Insert a user directly, bypassing registration."""
    from inventory_backend.core.security import get_password_hash
    from inventory_backend.models.user import User

    user = User(
        email=email,
        name=fields.pop("name", "Test User"),
        password_hash=get_password_hash(password, rounds=4),
        role=role,
        is_verified=verified,
        **fields,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_token_record(db, user, token_type="ACCESS", *, expires_in=timedelta(minutes=15), **fields):
    """Insert a bare token record with a random fingerprint."""
    from inventory_backend.core.durations import utcnow
    from inventory_backend.core.security import new_id, token_fingerprint
    from inventory_backend.models.token import Token

    record = Token(
        token_hash=token_fingerprint(new_id()),
        type=token_type,
        user_id=user.id,
        expires_at=utcnow() + expires_in,
        **fields,
    )
    db.add(record)
    db.commit()
    db.refresh(record)
    return record
