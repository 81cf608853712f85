from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis

from free2free.storage.models import OAuthState


class RedisCache:
    """Thin Redis wrapper holding short-lived OAuth state across nodes."""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    @staticmethod
    def _ttl_seconds(expires_at: datetime) -> int:
        """Compute a TTL from an absolute expiry, clamped to at least 1 second."""

        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        else:
            expires_at = expires_at.astimezone(timezone.utc)
        return max(1, int((expires_at - datetime.now(timezone.utc)).total_seconds()))

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        from redis import Redis

        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def set_oauth_state(self, state: str, provider: str, expires_at: datetime) -> None:
        payload = {"provider": provider, "expires_at": expires_at.isoformat()}
        await self.client.set(
            f"auth:oauth:{state}", json.dumps(payload), ex=self._ttl_seconds(expires_at)
        )

    async def pop_oauth_state(self, state: str) -> Optional[OAuthState]:
        """Atomically get and delete OAuth state so it can be consumed once.

        Uses GETDEL so two concurrent callbacks can never both observe the
        same state value.
        """
        cached = await self.client.getdel(f"auth:oauth:{state}")
        if cached is None:
            return None
        try:
            data = json.loads(cached)
            expires_at = datetime.fromisoformat(data["expires_at"])
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            # Corrupted entry is already deleted; treat as unknown state
            return None
        return OAuthState(state=state, provider=data.get("provider", ""), expires_at=expires_at)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down."""
        await self.client.aclose()
        await self.client.connection_pool.disconnect()
