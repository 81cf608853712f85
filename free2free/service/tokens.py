"""JWT access and refresh token minting and verification.

Tokens are HS256-signed. The algorithm is pinned twice: the unverified header
must name HS256 before any decoding is attempted, and ``jwt.decode`` only
accepts HS256, so a token cannot talk the verifier into ``none`` or an
asymmetric algorithm.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import jwt

from free2free.service.errors import ConfigurationError
from free2free.storage.models import User

MIN_SECRET_LENGTH = 32
ALGORITHM = "HS256"

ACCESS_TOKEN_TTL = timedelta(minutes=15)
REFRESH_TOKEN_TTL = timedelta(days=7)


class TokenError(Exception):
    """Base class for token verification failures."""


class InvalidTokenError(TokenError):
    """Signature, structure, algorithm or token type is wrong."""


class TokenExpiredError(TokenError):
    """The ``exp`` claim has passed."""


@dataclass(frozen=True)
class AccessTokenPayload:
    user_id: str
    user_name: str
    is_admin: bool
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshTokenPayload:
    user_id: str
    token_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access: str
    refresh: str

    def as_dict(self) -> dict[str, str]:
        return {"access": self.access, "refresh": self.refresh}


def _timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenIssuer:
    """Mints and verifies the two token kinds with one symmetric secret."""

    def __init__(
        self,
        secret: Optional[str],
        *,
        access_ttl: timedelta = ACCESS_TOKEN_TTL,
        refresh_ttl: timedelta = REFRESH_TOKEN_TTL,
    ) -> None:
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"JWT secret must be at least {MIN_SECRET_LENGTH} characters"
            )
        self._secret = secret
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode(self, claims: dict[str, Any]) -> str:
        return jwt.encode(claims, self._secret, algorithm=ALGORITHM)

    def mint_access_token(self, user: User, *, now: Optional[datetime] = None) -> str:
        issued = int((now or self._now()).timestamp())
        return self._encode(
            {
                "user_id": user.id,
                "user_name": user.display_name,
                "is_admin": bool(user.is_admin),
                "iat": issued,
                "exp": issued + int(self.access_ttl.total_seconds()),
                "type": "access",
            }
        )

    def mint_refresh_token(self, user: User, *, now: Optional[datetime] = None) -> str:
        issued = int((now or self._now()).timestamp())
        return self._encode(
            {
                "user_id": user.id,
                "iat": issued,
                "exp": issued + int(self.refresh_ttl.total_seconds()),
                "type": "refresh",
                # Keeps two refreshes minted in the same second distinct
                "jti": secrets.token_urlsafe(16),
            }
        )

    def mint_token_pair(self, user: User, *, now: Optional[datetime] = None) -> TokenPair:
        issued_at = now or self._now()
        return TokenPair(
            access=self.mint_access_token(user, now=issued_at),
            refresh=self.mint_refresh_token(user, now=issued_at),
        )

    def _decode(self, token: str, expected_type: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidTokenError("token missing")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError("malformed token") from exc
        if header.get("alg") != ALGORITHM:
            raise InvalidTokenError("unexpected signing algorithm")
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"require": ["exp", "iat", "user_id", "type"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError("token expired") from exc
        except jwt.InvalidTokenError as exc:
            raise InvalidTokenError("invalid token") from exc
        if claims.get("type") != expected_type:
            raise InvalidTokenError(f"expected {expected_type} token")
        if not isinstance(claims.get("user_id"), str) or not claims["user_id"]:
            raise InvalidTokenError("token subject missing")
        return claims

    def verify_access_token(self, token: str) -> AccessTokenPayload:
        claims = self._decode(token, "access")
        is_admin = claims.get("is_admin", False)
        # Must be a JSON boolean; the string "false" is truthy
        if not isinstance(is_admin, bool):
            raise InvalidTokenError("malformed is_admin claim")
        return AccessTokenPayload(
            user_id=claims["user_id"],
            user_name=str(claims.get("user_name") or ""),
            is_admin=is_admin,
            issued_at=_timestamp(claims["iat"]),
            expires_at=_timestamp(claims["exp"]),
        )

    def verify_refresh_token(self, token: str) -> RefreshTokenPayload:
        """Check signature and expiry only; the ledger decides if it is still live."""
        claims = self._decode(token, "refresh")
        return RefreshTokenPayload(
            user_id=claims["user_id"],
            token_id=str(claims.get("jti") or ""),
            issued_at=_timestamp(claims["iat"]),
            expires_at=_timestamp(claims["exp"]),
        )
