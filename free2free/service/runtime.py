from __future__ import annotations

from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

import httpx
from fastapi import Request

from free2free.config import Settings, get_settings
from free2free.logging import get_logger
from free2free.service.auth import AuthService, AuthStore
from free2free.service.authz import AuthorizationChain
from free2free.service.errors import InternalError
from free2free.service.identity import IdentityResolver
from free2free.service.oauth import OAuthStateManager, ProviderRegistry
from free2free.service.refresh_tokens import RefreshTokenStore
from free2free.service.sessions import SessionStore
from free2free.service.tokens import TokenIssuer
from free2free.storage.memory import MemoryStore
from free2free.storage.postgres import PostgresStore
from free2free.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_store(settings: Settings) -> AuthStore:
    """Open the record store the settings ask for."""
    store_type = "memory" if settings.use_memory_store else "postgres"
    try:
        store: AuthStore = (
            MemoryStore(fs_root=settings.shared_fs_root)
            if settings.use_memory_store
            else PostgresStore(settings.database_url)
        )
    except Exception as exc:
        logger.error(
            "runtime_store_init_failed",
            store_type=store_type,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise
    logger.info("runtime_store_initialized", store_type=store_type)
    return store


class Runtime:
    """Holds the service instances shared by every request of one app.

    The app keeps its Runtime on ``app.state.runtime``; handlers reach it
    through the ``get_runtime`` dependency rather than a module global.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[AuthStore] = None,
        cache: Optional[RedisCache] = None,
        http_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        # Fail before touching any backend when the signing secret is unusable
        self.tokens = TokenIssuer(
            self.settings.jwt_secret,
            access_ttl=timedelta(minutes=self.settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=self.settings.refresh_token_ttl_minutes),
        )
        self.store: AuthStore = store or build_store(self.settings)
        self.cache = cache if cache is not None else self._build_cache()

        self.providers = ProviderRegistry.from_settings(self.settings, transport=http_transport)
        self.oauth_states = OAuthStateManager(
            self.store, self.cache, ttl_minutes=self.settings.oauth_state_ttl_minutes
        )
        self.refresh_tokens = RefreshTokenStore(self.store)
        self.sessions = SessionStore(
            self.store, default_ttl_minutes=self.settings.session_ttl_minutes
        )
        self.identities = IdentityResolver(self.store)
        self.auth = AuthService(
            self.store,
            self.settings,
            providers=self.providers,
            states=self.oauth_states,
            tokens=self.tokens,
            refresh_tokens=self.refresh_tokens,
            sessions=self.sessions,
            identities=self.identities,
        )
        self.authz = AuthorizationChain(self.tokens, self.store)
        logger.info("runtime_init_complete", oauth_providers=self.providers.names())

    def _build_cache(self) -> Optional[RedisCache]:
        if not self.settings.redis_url:
            return None
        try:
            cache = RedisCache(self.settings.redis_url)
            cache.verify_connection()
        except Exception as exc:
            if not (self.settings.test_mode or self.settings.allow_redis_fallback_dev):
                raise RuntimeError(
                    "Redis is configured but unreachable; fix REDIS_URL or set "
                    "ALLOW_REDIS_FALLBACK_DEV=true to keep OAuth state in the store."
                ) from exc
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(exc),
            )
            return None
        return cache

    async def close(self) -> None:
        await self.providers.aclose()
        if self.cache is not None:
            await self.cache.close()
        self.store.close()


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency returning the Runtime attached to the running app."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise InternalError("runtime not initialized")
    return runtime
