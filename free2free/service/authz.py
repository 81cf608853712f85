from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from free2free.logging import get_logger
from free2free.service.errors import ForbiddenError, UnauthorizedError
from free2free.service.tokens import (
    AccessTokenPayload,
    TokenExpiredError,
    TokenError,
    TokenIssuer,
)
from free2free.storage.models import User

logger = get_logger(__name__)


class Tier(str, Enum):
    """Access levels a route can demand, weakest first."""

    ANONYMOUS = "anonymous"
    OPTIONAL = "optional"
    AUTHENTICATED = "authenticated"
    ORGANIZER = "organizer"
    ADMIN = "admin"


class UserLookup(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...


@dataclass
class Identity:
    user: User
    tier: Tier
    token: AccessTokenPayload

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def is_admin(self) -> bool:
        return self.user.is_admin

    def ensure_owner(self, owner_id: str) -> None:
        """Route-level ownership check, e.g. "is this user the match organizer"."""
        if self.user.id != owner_id:
            raise ForbiddenError("only the organizer may do this")


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class AuthorizationChain:
    """Turns an ``Authorization`` header into an ``Identity`` for a tier.

    Token library failures never escape: expired and invalid tokens both
    become ``UnauthorizedError`` and only the log line tells them apart.
    """

    def __init__(self, tokens: TokenIssuer, users: UserLookup) -> None:
        self.tokens = tokens
        self.users = users

    def _authenticate(self, authorization: Optional[str], tier: Tier) -> Identity:
        token = extract_bearer(authorization)
        if not token:
            raise UnauthorizedError("authentication required")
        try:
            payload = self.tokens.verify_access_token(token)
        except TokenExpiredError:
            logger.info("access_token_rejected", reason="expired", tier=tier.value)
            raise UnauthorizedError("access token expired") from None
        except TokenError as exc:
            logger.warning("access_token_rejected", reason=str(exc), tier=tier.value)
            raise UnauthorizedError("invalid access token") from None
        user = self.users.get_user(payload.user_id)
        if user is None:
            logger.warning("access_token_user_missing", user_id=payload.user_id)
            raise UnauthorizedError("user no longer exists")
        return Identity(user=user, tier=tier, token=payload)

    def authorize(self, authorization: Optional[str], tier: Tier) -> Optional[Identity]:
        if tier is Tier.ANONYMOUS:
            return None
        if tier is Tier.OPTIONAL:
            try:
                return self._authenticate(authorization, tier)
            except UnauthorizedError:
                return None
            except Exception as exc:
                # Guests must still get a page when the user lookup fails
                logger.warning(
                    "optional_auth_failed", error_type=type(exc).__name__, error=str(exc)
                )
                return None
        identity = self._authenticate(authorization, tier)
        # Organizer has no extra check here: match ownership is decided by
        # the route through Identity.ensure_owner.
        if tier is Tier.ADMIN and not identity.user.is_admin:
            logger.warning("admin_access_denied", user_id=identity.user_id)
            raise ForbiddenError("admin access required")
        return identity
