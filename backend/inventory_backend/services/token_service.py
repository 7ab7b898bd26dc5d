"""Signed token issuance, verification and extraction."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple, Union

from fastapi import Request, WebSocket
from jose import ExpiredSignatureError, JWTError, jwt

from inventory_backend.config import Settings
from inventory_backend.core.durations import parse_duration, utcnow
from inventory_backend.core.exceptions import (
    ConfigurationError,
    TokenExpiredError,
    TokenInvalidError,
    TokenTypeMismatchError,
)
from inventory_backend.models.token import TokenType


@dataclass(frozen=True)
class TokenConfig:
    secret: str
    lifetime: timedelta


class TokenService:
    """Issue and verify JWTs, each token type signed with its own secret."""

    def __init__(self, settings: Settings) -> None:
        self._algorithm = settings.JWT_ALGORITHM
        self._cookie_name = settings.ACCESS_COOKIE_NAME
        self._raw = {
            TokenType.ACCESS: (settings.ACCESS_TOKEN_SECRET, settings.ACCESS_TOKEN_EXPIRES_IN),
            TokenType.REFRESH: (settings.REFRESH_TOKEN_SECRET, settings.REFRESH_TOKEN_EXPIRES_IN),
            TokenType.EMAIL_VERIFICATION: (settings.EMAIL_TOKEN_SECRET, settings.EMAIL_TOKEN_EXPIRES_IN),
            TokenType.PASSWORD_RESET: (
                settings.PASSWORD_RESET_TOKEN_SECRET,
                settings.PASSWORD_RESET_TOKEN_EXPIRES_IN,
            ),
        }

    def config_for(self, token_type: TokenType) -> TokenConfig:
        secret, expires_in = self._raw[TokenType(token_type)]
        if not secret:
            raise ConfigurationError(f"No signing secret configured for {TokenType(token_type).value} tokens")
        try:
            lifetime = parse_duration(expires_in)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        return TokenConfig(secret=secret, lifetime=lifetime)

    def lifetime(self, token_type: TokenType) -> timedelta:
        return self.config_for(token_type).lifetime

    def issue(self, payload: Dict[str, Any], token_type: TokenType) -> Tuple[str, datetime]:
        """
        Sign a token of the given type.

        Args:
            payload: Claims to embed (``sub``, ``jti`` and so on)
            token_type: Selects secret and lifetime

        Returns:
            Tuple of (encoded token, naive-UTC expiry)

        Raises:
            ConfigurationError: If the type has no usable secret or lifetime
        """
        token_type = TokenType(token_type)
        config = self.config_for(token_type)
        issued_at = utcnow()
        expires_at = issued_at + config.lifetime

        claims = dict(payload)
        claims.update({
            "type": token_type.value,
            "iat": calendar.timegm(issued_at.utctimetuple()),
            "exp": calendar.timegm(expires_at.utctimetuple()),
        })
        token = jwt.encode(claims, config.secret, algorithm=self._algorithm)
        return token, expires_at.replace(microsecond=0)

    def verify(self, token: str, expected_type: TokenType, verify_exp: bool = True) -> Dict[str, Any]:
        """
        Check signature, expiry and type tag against the expected type's secret.

        ``verify_exp=False`` skips only the expiry check, for callers that
        need to know who a lapsed token belonged to.

        Raises:
            TokenExpiredError: Past ``exp``
            TokenTypeMismatchError: Valid signature but a different ``type`` claim
            TokenInvalidError: Bad signature or malformed token
        """
        expected_type = TokenType(expected_type)
        config = self.config_for(expected_type)
        try:
            payload = jwt.decode(
                token, config.secret, algorithms=[self._algorithm], options={"verify_exp": verify_exp}
            )
        except ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except JWTError as exc:
            raise TokenInvalidError() from exc

        if payload.get("type") != expected_type.value:
            raise TokenTypeMismatchError(expected_type.value, payload.get("type"))
        if not payload.get("sub"):
            raise TokenInvalidError("Invalid token payload")
        return payload

    def extract(self, request: Union[Request, WebSocket]) -> Optional[str]:
        """Bearer header first, then the access-token cookie."""
        auth_header = request.headers.get("authorization")
        if auth_header and auth_header.lower().startswith("bearer "):
            token = auth_header.split(" ", 1)[1].strip()
            if token:
                return token

        cookie = request.cookies.get(self._cookie_name)
        return cookie or None
