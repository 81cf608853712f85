from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib.parse import urlencode

import httpx

from free2free.config import Settings
from free2free.logging import get_logger
from free2free.service.errors import OAuthError, ValidationError
from free2free.storage.models import SUPPORTED_PROVIDERS, OAuthState
from free2free.storage.redis_cache import RedisCache

logger = get_logger(__name__)

FACEBOOK_GRAPH_VERSION = "v18.0"


@dataclass(frozen=True)
class ExternalProfile:
    """Provider identity normalized to the fields a local user needs."""

    external_id: str
    name: str = ""
    email: str = ""
    avatar_url: str = ""


class OAuthProvider:
    """Authorization-code client for one provider.

    Subclasses set the endpoint constants and implement ``exchange_code`` and
    ``fetch_profile``; all HTTP goes through ``_request_json`` so timeouts,
    transport failures and provider error objects surface as ``OAuthError``.
    """

    name: str = ""
    authorize_url: str = ""
    token_url: str = ""
    profile_url: str = ""
    scopes: tuple[str, ...] = ()
    scope_separator: str = ","

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        http: httpx.AsyncClient,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.http = http

    def build_authorization_url(self, state: str) -> str:
        if not state:
            raise ValueError("OAuth state is required")
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": self.scope_separator.join(self.scopes),
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> str:
        raise NotImplementedError

    async def fetch_profile(self, access_token: str) -> ExternalProfile:
        raise NotImplementedError

    @staticmethod
    def _provider_error(payload: Dict[str, Any]) -> Optional[str]:
        error = payload.get("error")
        if isinstance(error, dict):
            return str(error.get("message") or error.get("type") or "provider error")
        if error:
            return str(payload.get("error_description") or error)
        if payload.get("error_type") or payload.get("error_message"):
            return str(payload.get("error_message") or payload.get("error_type"))
        return None

    async def _request_json(
        self, method: str, url: str, *, stage: str, **kwargs: Any
    ) -> Dict[str, Any]:
        try:
            response = await self.http.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            logger.error("oauth_timeout", provider=self.name, stage=stage)
            raise OAuthError(f"{self.name} {stage} timed out", provider=self.name) from exc
        except httpx.HTTPError as exc:
            logger.error(
                "oauth_transport_error",
                provider=self.name,
                stage=stage,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise OAuthError(f"{self.name} {stage} request failed", provider=self.name) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error(
                "oauth_unparseable_response",
                provider=self.name,
                stage=stage,
                status_code=response.status_code,
            )
            raise OAuthError(
                f"{self.name} {stage} response is not valid JSON", provider=self.name
            ) from exc
        if not isinstance(payload, dict):
            raise OAuthError(f"{self.name} {stage} response has unexpected shape", provider=self.name)

        provider_error = self._provider_error(payload)
        if provider_error or response.status_code >= 400:
            logger.warning(
                "oauth_provider_error",
                provider=self.name,
                stage=stage,
                status_code=response.status_code,
                provider_error=provider_error,
            )
            raise OAuthError(
                f"{self.name} {stage} failed: {provider_error or response.status_code}",
                provider=self.name,
            )
        return payload

    def _access_token_from(self, payload: Dict[str, Any]) -> str:
        access_token = payload.get("access_token")
        if not access_token or not isinstance(access_token, str):
            logger.error("oauth_no_access_token", provider=self.name)
            raise OAuthError(f"{self.name} returned no access token", provider=self.name)
        return access_token


class FacebookProvider(OAuthProvider):
    name = "facebook"
    authorize_url = f"https://www.facebook.com/{FACEBOOK_GRAPH_VERSION}/dialog/oauth"
    token_url = f"https://graph.facebook.com/{FACEBOOK_GRAPH_VERSION}/oauth/access_token"
    profile_url = f"https://graph.facebook.com/{FACEBOOK_GRAPH_VERSION}/me"
    scopes = ("email", "public_profile")

    async def exchange_code(self, code: str) -> str:
        payload = await self._request_json(
            "GET",
            self.token_url,
            stage="token exchange",
            params={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "redirect_uri": self.redirect_uri,
                "code": code,
            },
        )
        return self._access_token_from(payload)

    async def fetch_profile(self, access_token: str) -> ExternalProfile:
        payload = await self._request_json(
            "GET",
            self.profile_url,
            stage="profile fetch",
            params={
                "fields": "id,name,email,picture.type(large)",
                "access_token": access_token,
            },
        )
        external_id = payload.get("id")
        if not external_id:
            raise OAuthError("facebook profile has no id", provider=self.name)
        picture = payload.get("picture")
        avatar_url = ""
        if isinstance(picture, dict) and isinstance(picture.get("data"), dict):
            avatar_url = picture["data"].get("url") or ""
        return ExternalProfile(
            external_id=str(external_id),
            name=payload.get("name") or "",
            email=payload.get("email") or "",
            avatar_url=avatar_url,
        )


class InstagramProvider(OAuthProvider):
    name = "instagram"
    authorize_url = "https://api.instagram.com/oauth/authorize"
    token_url = "https://api.instagram.com/oauth/access_token"
    profile_url = "https://graph.instagram.com/me"
    scopes = ("user_profile",)

    async def exchange_code(self, code: str) -> str:
        payload = await self._request_json(
            "POST",
            self.token_url,
            stage="token exchange",
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "authorization_code",
                "redirect_uri": self.redirect_uri,
                "code": code,
            },
        )
        return self._access_token_from(payload)

    async def fetch_profile(self, access_token: str) -> ExternalProfile:
        payload = await self._request_json(
            "GET",
            self.profile_url,
            stage="profile fetch",
            params={"fields": "id,username", "access_token": access_token},
        )
        external_id = payload.get("id")
        if not external_id:
            raise OAuthError("instagram profile has no id", provider=self.name)
        # Instagram exposes neither email nor picture to this scope
        return ExternalProfile(
            external_id=str(external_id),
            name=payload.get("username") or "",
        )


PROVIDER_CLASSES: Mapping[str, type[OAuthProvider]] = {
    "facebook": FacebookProvider,
    "instagram": InstagramProvider,
}


class ProviderRegistry:
    """The configured providers plus the HTTP client they share.

    Built once per runtime and handed to the services that need it.
    """

    def __init__(
        self,
        providers: Optional[Mapping[str, OAuthProvider]] = None,
        *,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._providers: Dict[str, OAuthProvider] = dict(providers or {})
        self.http = http

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "ProviderRegistry":
        http = httpx.AsyncClient(
            timeout=httpx.Timeout(settings.oauth_timeout_seconds),
            follow_redirects=False,
            headers={"Accept": "application/json"},
            transport=transport,
        )
        providers: Dict[str, OAuthProvider] = {}
        for name, provider_cls in PROVIDER_CLASSES.items():
            client_id, client_secret = settings.oauth_credentials(name)
            if not client_id or not client_secret:
                logger.info("oauth_provider_disabled", provider=name)
                continue
            providers[name] = provider_cls(
                client_id, client_secret, settings.oauth_redirect_uri(name), http
            )
        return cls(providers, http=http)

    def names(self) -> list[str]:
        return sorted(self._providers)

    def get(self, name: str) -> OAuthProvider:
        if name not in SUPPORTED_PROVIDERS:
            raise ValidationError(
                f"unsupported OAuth provider: {name}", detail={"provider": name}
            )
        provider = self._providers.get(name)
        if provider is None:
            logger.warning("oauth_not_configured", provider=name)
            raise ValidationError(
                f"OAuth provider {name} is not configured", detail={"provider": name}
            )
        return provider

    async def aclose(self) -> None:
        if self.http is not None:
            await self.http.aclose()


class OAuthStateStore(Protocol):
    def put_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None: ...

    def take_oauth_state(self, state: str) -> Optional[OAuthState]: ...


class OAuthStateManager:
    """Issues and consumes single-use anti-forgery ``state`` values.

    State lives in Redis when a cache is configured so any node can finish a
    flow another node started; otherwise it is kept in the record store.
    """

    def __init__(
        self,
        store: OAuthStateStore,
        cache: Optional[RedisCache] = None,
        *,
        ttl_minutes: int = 10,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl = timedelta(minutes=ttl_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def issue(self, provider: str) -> str:
        state = secrets.token_urlsafe(32)
        expires_at = self._now() + self.ttl
        if self.cache is not None:
            await self.cache.set_oauth_state(state, provider, expires_at)
        else:
            self.store.put_oauth_state(state, provider, expires_at)
        return state

    async def consume(self, provider: str, state: Optional[str]) -> None:
        if not state:
            logger.warning("oauth_state_missing", provider=provider)
            raise ValidationError("missing OAuth state")
        if self.cache is not None:
            stored = await self.cache.pop_oauth_state(state)
        else:
            stored = self.store.take_oauth_state(state)
        if stored is None:
            reason = "unknown"
        elif stored.is_expired(self._now()):
            reason = "expired"
        elif stored.provider != provider:
            reason = "provider_mismatch"
        else:
            return
        logger.warning("oauth_state_rejected", provider=provider, reason=reason)
        raise ValidationError("invalid or expired OAuth state")
