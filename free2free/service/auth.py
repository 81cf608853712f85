from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol

from free2free.config import Settings
from free2free.logging import get_logger
from free2free.service.errors import ConflictError, NotFoundError, UnauthorizedError
from free2free.service.identity import IdentityResolver
from free2free.service.oauth import ExternalProfile, OAuthStateManager, ProviderRegistry
from free2free.service.refresh_tokens import RefreshTokenStore
from free2free.service.sessions import SessionStore
from free2free.service.tokens import TokenError, TokenIssuer, TokenPair
from free2free.storage.errors import ConstraintViolation
from free2free.storage.models import OAuthState, RefreshToken, Session, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        external_id: str,
        external_provider: str,
        display_name: str,
        *,
        email: str = "",
        avatar_url: Optional[str] = None,
        is_admin: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_external(self, provider: str, external_id: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def set_user_admin(self, user_id: str, is_admin: bool) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def insert_refresh_token(
        self, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshToken: ...

    def take_refresh_token(self, token_hash: str) -> Optional[RefreshToken]: ...

    def delete_user_refresh_tokens(self, user_id: str) -> int: ...

    def delete_expired_refresh_tokens(self, now: datetime) -> int: ...

    def insert_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session(
        self, session_id: str, *, expires_at: datetime, data: Optional[Dict] = None
    ) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def delete_user_sessions(self, user_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...

    def put_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None: ...

    def take_oauth_state(self, state: str) -> Optional[OAuthState]: ...

    def verify_connection(self) -> None: ...

    def close(self) -> None: ...


@dataclass
class OAuthResult:
    user: User
    session: Session
    tokens: TokenPair


class AuthService:
    """Login, rotation and logout flows built from the auth components."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        providers: ProviderRegistry,
        states: OAuthStateManager,
        tokens: TokenIssuer,
        refresh_tokens: RefreshTokenStore,
        sessions: SessionStore,
        identities: IdentityResolver,
    ) -> None:
        self.store = store
        self.settings = settings
        self.providers = providers
        self.states = states
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.sessions = sessions
        self.identities = identities
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _issue_tokens(self, user: User) -> TokenPair:
        pair = self.tokens.mint_token_pair(user)
        self.refresh_tokens.issue(
            user.id, pair.refresh, self._now() + self.tokens.refresh_ttl
        )
        return pair

    async def start_oauth(self, provider: str) -> dict:
        client = self.providers.get(provider)
        state = await self.states.issue(provider)
        self.logger.info("oauth_started", provider=provider)
        return {
            "authorization_url": client.build_authorization_url(state),
            "state": state,
            "provider": provider,
        }

    def _resolve_user(self, provider: str, profile: ExternalProfile) -> User:
        try:
            return self.identities.resolve(provider, profile)
        except ConflictError:
            # A concurrent first login won the insert; use its row
            user = self.identities.lookup(provider, profile.external_id)
            if user is None:
                raise
            return user

    async def complete_oauth(
        self, provider: str, code: str, state: Optional[str]
    ) -> OAuthResult:
        """Finish the authorization-code flow.

        Every provider call happens before the first write, so a failed
        exchange leaves no user, session or refresh token behind. The session
        is written before the refresh token and removed again if the token
        cannot be stored, so a failed login never leaves a live refresh token.
        """
        client = self.providers.get(provider)
        await self.states.consume(provider, state)
        provider_token = await client.exchange_code(code)
        profile = await client.fetch_profile(provider_token)
        user = self._resolve_user(provider, profile)
        try:
            session = self.sessions.create(
                user.id,
                {"provider": provider},
                ttl_minutes=self.settings.session_ttl_minutes,
            )
        except ConstraintViolation as exc:
            self.logger.warning(
                "oauth_session_rejected", provider=provider, user_id=user.id, constraint=exc.constraint
            )
            raise ConflictError("account changed during sign-in; please try again") from exc
        try:
            tokens = self._issue_tokens(user)
        except ConstraintViolation as exc:
            self.sessions.delete(session.id)
            self.logger.warning(
                "oauth_refresh_rejected", provider=provider, user_id=user.id, constraint=exc.constraint
            )
            raise ConflictError("account changed during sign-in; please try again") from exc
        self.logger.info("oauth_login_completed", provider=provider, user_id=user.id)
        return OAuthResult(user=user, session=session, tokens=tokens)

    async def refresh(self, refresh_token: str) -> TokenPair:
        try:
            claims = self.tokens.verify_refresh_token(refresh_token)
            user_id = self.refresh_tokens.redeem(refresh_token)
        except TokenError as exc:
            self.logger.warning("refresh_rejected", reason=str(exc))
            raise UnauthorizedError("invalid or expired refresh token") from None
        if user_id != claims.user_id:
            self.logger.error("refresh_owner_mismatch", user_id=user_id)
            raise UnauthorizedError("invalid or expired refresh token")
        user = self.store.get_user(user_id)
        if user is None:
            raise UnauthorizedError("user no longer exists")
        return self._issue_tokens(user)

    async def exchange_session(self, session_id: str) -> tuple[User, TokenPair]:
        """Mint API tokens for a browser that only holds a session id."""
        user = self.sessions.resolve_user(session_id)
        if user is None:
            raise UnauthorizedError("invalid or expired session")
        self.sessions.touch(session_id)
        return user, self._issue_tokens(user)

    async def logout(
        self, refresh_token: Optional[str] = None, session_id: Optional[str] = None
    ) -> None:
        """Best-effort revocation; the client is logged out whatever happens here."""
        if refresh_token:
            try:
                self.refresh_tokens.revoke(refresh_token)
            except Exception as exc:
                self.logger.warning(
                    "logout_refresh_revoke_failed", error_type=type(exc).__name__, error=str(exc)
                )
        if session_id:
            try:
                self.sessions.delete(session_id)
            except Exception as exc:
                self.logger.warning(
                    "logout_session_delete_failed", error_type=type(exc).__name__, error=str(exc)
                )

    async def logout_all(self, user_id: str) -> dict[str, int]:
        return {
            "refresh_tokens": self.refresh_tokens.revoke_all(user_id),
            "sessions": self.sessions.delete_all_for_user(user_id),
        }

    def delete_user(self, user_id: str) -> None:
        if not self.store.delete_user(user_id):
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.logger.info("user_deleted", user_id=user_id)

    def sweep_expired(self) -> dict[str, int]:
        return {
            "refresh_tokens": self.refresh_tokens.sweep_expired(),
            "sessions": self.sessions.sweep_expired(),
        }
