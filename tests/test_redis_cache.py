from datetime import timedelta

import pytest

from free2free.service.errors import ValidationError
from free2free.service.oauth import OAuthStateManager
from free2free.storage.models import utcnow
from free2free.storage.redis_cache import RedisCache


class FakeRedis:
    """Just enough of redis.asyncio.Redis for OAuth state."""

    def __init__(self):
        self.values = {}
        self.ttls = {}

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.ttls[key] = ex

    async def getdel(self, key):
        self.ttls.pop(key, None)
        return self.values.pop(key, None)


@pytest.fixture
def cache():
    cache = RedisCache("redis://localhost:6379/15")
    cache.client = FakeRedis()
    return cache


def test_ttl_is_clamped():
    assert RedisCache._ttl_seconds(utcnow() - timedelta(minutes=1)) == 1
    assert 590 <= RedisCache._ttl_seconds(utcnow() + timedelta(minutes=10)) <= 600


async def test_state_round_trip_is_single_use(cache):
    expires = utcnow() + timedelta(minutes=10)
    await cache.set_oauth_state("abc", "instagram", expires)
    assert cache.client.ttls["auth:oauth:abc"] > 0

    stored = await cache.pop_oauth_state("abc")
    assert stored.provider == "instagram"
    assert stored.expires_at == expires
    assert await cache.pop_oauth_state("abc") is None


async def test_corrupted_entry_is_unknown(cache):
    cache.client.values["auth:oauth:bad"] = "{not json"
    assert await cache.pop_oauth_state("bad") is None


async def test_state_manager_prefers_cache(cache, store):
    states = OAuthStateManager(store, cache)
    state = await states.issue("facebook")
    assert store.oauth_states == {}
    assert f"auth:oauth:{state}" in cache.client.values

    await states.consume("facebook", state)
    with pytest.raises(ValidationError):
        await states.consume("facebook", state)
