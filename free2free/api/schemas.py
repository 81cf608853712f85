from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from free2free.service.tokens import TokenPair
from free2free.storage.models import User

# Refresh JWTs are a few hundred bytes; anything far beyond is not ours
MAX_TOKEN_LENGTH = 4096
MAX_SESSION_ID_LENGTH = 128


class ErrorBody(BaseModel):
    """Uniform error payload: HTTP status, human message, machine tag."""

    code: int
    error: str
    code_error: str


class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    external_id: str
    external_provider: str
    display_name: str
    email: str = ""
    avatar_url: Optional[str] = None
    is_admin: bool = False
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls.model_validate(user)


class TokenPairResponse(BaseModel):
    access: str
    refresh: str

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokenPairResponse":
        return cls(access=pair.access, refresh=pair.refresh)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=MAX_TOKEN_LENGTH)


class TokenRefreshResponse(BaseModel):
    tokens: TokenPairResponse


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=MAX_TOKEN_LENGTH)
    session_id: Optional[str] = Field(default=None, max_length=MAX_SESSION_ID_LENGTH)

    @classmethod
    def from_payload(cls, payload: Any) -> "LogoutRequest":
        """Keep the usable values of an arbitrary decoded body.

        Logout never rejects a client, so wrong types and oversized strings
        are dropped instead of failing validation.
        """
        if not isinstance(payload, dict):
            return cls()
        values = {}
        for name, limit in (
            ("refresh_token", MAX_TOKEN_LENGTH),
            ("session_id", MAX_SESSION_ID_LENGTH),
        ):
            value = payload.get(name)
            if isinstance(value, str) and 0 < len(value) <= limit:
                values[name] = value
        return cls(**values)


class LogoutResponse(BaseModel):
    success: bool = True


class RevokedCounts(BaseModel):
    refresh_tokens: int
    sessions: int


class LogoutAllResponse(BaseModel):
    revoked: RevokedCounts


class MeResponse(BaseModel):
    user: UserResponse


class SessionExchangeRequest(BaseModel):
    session_id: str = Field(..., min_length=1, max_length=MAX_SESSION_ID_LENGTH)


class SessionExchangeResponse(BaseModel):
    user: UserResponse
    tokens: TokenPairResponse


class UserListResponse(BaseModel):
    users: List[UserResponse]


class DeleteUserResponse(BaseModel):
    deleted: bool = True
