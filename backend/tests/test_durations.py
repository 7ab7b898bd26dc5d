from datetime import timedelta

import pytest

from inventory_backend.config import Settings
from inventory_backend.core.durations import parse_duration


@pytest.mark.parametrize(
    "value, expected",
    [
        ("30s", timedelta(seconds=30)),
        ("15m", timedelta(minutes=15)),
        ("24h", timedelta(hours=24)),
        ("7d", timedelta(days=7)),
    ],
)
def test_parse_duration_units(value, expected):
    assert parse_duration(value) == expected


@pytest.mark.parametrize("value", ["", "15", "m", "1.5h", "10w", "-5m", "15 m", "fifteen minutes"])
def test_parse_duration_rejects_malformed(value):
    with pytest.raises(ValueError):
        parse_duration(value)


def test_parse_duration_rejects_non_string():
    with pytest.raises(ValueError):
        parse_duration(900)


def test_settings_reject_bad_duration():
    with pytest.raises(ValueError):
        Settings(LOGIN_ATTEMPT_WINDOW="quarter-hour")


def test_settings_expose_parsed_windows():
    settings = Settings(LOGIN_ATTEMPT_WINDOW="10m", ACCOUNT_LOCKOUT_DURATION="1h", LOG_RETENTION_DAYS=7)
    assert settings.login_attempt_window == timedelta(minutes=10)
    assert settings.account_lockout_duration == timedelta(hours=1)
    assert settings.log_retention == timedelta(days=7)


def test_production_rejects_development_secrets():
    settings = Settings(ENVIRONMENT="production")
    with pytest.raises(ValueError):
        settings.validate_security_settings()


def test_production_rejects_shared_secrets():
    secret = "x" * 40
    settings = Settings(
        ENVIRONMENT="production",
        ACCESS_TOKEN_SECRET=secret,
        REFRESH_TOKEN_SECRET=secret,
        EMAIL_TOKEN_SECRET="e" * 40,
        PASSWORD_RESET_TOKEN_SECRET="p" * 40,
    )
    with pytest.raises(ValueError, match="own secret"):
        settings.validate_security_settings()


def test_production_accepts_distinct_strong_secrets():
    settings = Settings(
        ENVIRONMENT="production",
        ACCESS_TOKEN_SECRET="a" * 40,
        REFRESH_TOKEN_SECRET="r" * 40,
        EMAIL_TOKEN_SECRET="e" * 40,
        PASSWORD_RESET_TOKEN_SECRET="p" * 40,
    )
    settings.validate_security_settings()
