from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

SUPPORTED_PROVIDERS = ("facebook", "instagram")

# Columns profile sync may write; everything else on User is immutable or
# has a dedicated operation (is_admin via set_user_admin).
USER_MUTABLE_FIELDS = frozenset({"display_name", "email", "avatar_url"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: str
    external_id: str
    external_provider: str
    display_name: str
    email: str = ""
    avatar_url: Optional[str] = None
    is_admin: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        external_id: str,
        external_provider: str,
        display_name: str,
        *,
        email: str = "",
        avatar_url: Optional[str] = None,
        is_admin: bool = False,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            external_id=external_id,
            external_provider=external_provider,
            display_name=display_name,
            email=email,
            avatar_url=avatar_url or None,
            is_admin=is_admin,
            created_at=now,
            updated_at=now,
        )


@dataclass
class RefreshToken:
    """Persisted refresh token row; only the SHA-256 digest is stored."""

    id: str
    user_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    data: Dict = field(default_factory=dict)

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_minutes: int = 60 * 24,
        data: Dict | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            data=dict(data or {}),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())


@dataclass
class OAuthState:
    state: str
    provider: str
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at <= (now or utcnow())
