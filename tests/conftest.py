import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="free2free_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("FACEBOOK_KEY", "fb-client-id")
os.environ.setdefault("FACEBOOK_SECRET", "fb-client-secret")
os.environ.setdefault("INSTAGRAM_KEY", "ig-client-id")
os.environ.setdefault("INSTAGRAM_SECRET", "ig-client-secret")

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from free2free.app import create_app  # noqa: E402
from free2free.config import Settings, reset_settings_cache  # noqa: E402
from free2free.service.runtime import Runtime  # noqa: E402
from free2free.storage.memory import MemoryStore  # noqa: E402

TEST_JWT_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"

FACEBOOK_PROFILE = {
    "id": "fb-1001",
    "name": "Ana Pereira",
    "email": "ana@example.com",
    "picture": {"data": {"url": "https://cdn.example.com/ana.jpg"}},
}
INSTAGRAM_PROFILE = {"id": "ig-2002", "username": "bruno.plays"}


def provider_handler(request: httpx.Request) -> httpx.Response:
    """Stand-in for the Facebook and Instagram APIs."""
    host, path = request.url.host, request.url.path
    if host == "graph.facebook.com" and path.endswith("/oauth/access_token"):
        if request.url.params.get("code") == "bad-code":
            return httpx.Response(
                400,
                json={
                    "error": {
                        "message": "Invalid verification code format.",
                        "type": "OAuthException",
                        "code": 100,
                    }
                },
            )
        return httpx.Response(200, json={"access_token": "fb-access", "token_type": "bearer"})
    if host == "graph.facebook.com" and path.endswith("/me"):
        return httpx.Response(200, json=FACEBOOK_PROFILE)
    if host == "api.instagram.com" and path == "/oauth/access_token":
        return httpx.Response(200, json={"access_token": "ig-access", "user_id": 2002})
    if host == "graph.instagram.com" and path == "/me":
        return httpx.Response(200, json=INSTAGRAM_PROFILE)
    return httpx.Response(404, json={"error": {"message": f"unexpected {request.url}"}})


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def settings():
    return Settings(
        use_memory_store=True,
        test_mode=True,
        jwt_secret=TEST_JWT_SECRET,
        facebook_client_id="fb-client-id",
        facebook_client_secret="fb-client-secret",
        instagram_client_id="ig-client-id",
        instagram_client_secret="ig-client-secret",
        app_base_url="http://localhost:8080",
        frontend_origin="http://localhost:3000",
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def runtime(settings, store):
    return Runtime(settings, store=store, http_transport=httpx.MockTransport(provider_handler))


@pytest.fixture
def client(runtime):
    """Create a test client for the API."""
    return TestClient(create_app(runtime))


@pytest.fixture
def make_client(settings, store):
    """Build a client whose provider calls go to ``handler`` instead."""

    def _make(handler, **client_kwargs):
        rt = Runtime(settings, store=store, http_transport=httpx.MockTransport(handler))
        return TestClient(create_app(rt), **client_kwargs)

    return _make


@pytest.fixture
def fb_user(store):
    return store.create_user("fb-1001", "facebook", "Ana Pereira", email="ana@example.com")


@pytest.fixture
def admin_user(store):
    user = store.create_user("fb-9999", "facebook", "Site Admin")
    return store.set_user_admin(user.id, True)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
