"""Security utilities - password hashing, identifiers, token fingerprints"""

import hashlib
import uuid

import bcrypt


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        bool: True if password matches
    """
    return bcrypt.checkpw(
        plain_password.encode('utf-8'),
        hashed_password.encode('utf-8')
    )


def get_password_hash(password: str, rounds: int = 12) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password
        rounds: bcrypt work factor

    Returns:
        str: Hashed password
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt(rounds=rounds)
    ).decode('utf-8')


def new_id() -> str:
    """Random UUID4 string used as primary key for security records"""
    return str(uuid.uuid4())


def token_fingerprint(token: str) -> str:
    """SHA-256 hex digest stored instead of the raw token string"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
