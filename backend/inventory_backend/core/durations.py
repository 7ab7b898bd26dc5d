"""Duration strings and UTC clock helpers"""

import re
from datetime import datetime, timedelta, timezone

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")

_UNITS = {
    "s": "seconds",
    "m": "minutes",
    "h": "hours",
    "d": "days",
}


def parse_duration(value: str) -> timedelta:
    """
    Parse a duration such as "30s", "15m", "24h" or "7d".

    Args:
        value: Duration string, a positive integer followed by one unit letter

    Returns:
        timedelta: Parsed duration

    Raises:
        ValueError: If the string does not match the grammar
    """
    if not isinstance(value, str):
        raise ValueError(f"Duration must be a string, got {type(value).__name__}")

    match = _DURATION_RE.match(value.strip())
    if not match:
        raise ValueError(f"Invalid duration {value!r}: expected <int><s|m|h|d>, e.g. '15m'")

    amount, unit = match.groups()
    return timedelta(**{_UNITS[unit]: int(amount)})


def utcnow() -> datetime:
    """Naive UTC now; every persisted timestamp uses this convention."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
