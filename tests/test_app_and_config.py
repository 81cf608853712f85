import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from free2free.app import create_app
from free2free.config import Settings, get_settings
from free2free.service.errors import ConfigurationError
from free2free.service.runtime import Runtime, _mask_url_password


class TestSettings:
    def test_env_names(self, monkeypatch):
        monkeypatch.setenv("FACEBOOK_KEY", "from-env-id")
        monkeypatch.setenv("BASE_URL", "https://play.example.com/")
        monkeypatch.setenv("SESSION_TTL_MINUTES", "60")
        settings = Settings.from_env()
        assert settings.facebook_client_id == "from-env-id"
        assert settings.app_base_url == "https://play.example.com"
        assert settings.session_ttl_minutes == 60
        assert settings.oauth_redirect_uri("facebook") == (
            "https://play.example.com/auth/facebook/callback"
        )

    def test_defaults(self):
        settings = Settings()
        assert settings.access_token_ttl_minutes == 15
        assert settings.refresh_token_ttl_minutes == 7 * 24 * 60
        assert settings.session_ttl_minutes == 1440

    def test_blank_credentials_are_unset(self):
        settings = Settings(instagram_client_id="  ", instagram_client_secret="")
        assert settings.oauth_credentials("instagram") == (None, None)

    def test_insecure_base_url_rejected(self):
        with pytest.raises(ValidationError):
            Settings(app_base_url="http://play.example.com")
        with pytest.raises(ValidationError):
            Settings(app_base_url="ftp://localhost")

    def test_completion_origin(self):
        assert Settings(app_base_url="https://api.example.com/v1").completion_origin() == (
            "https://api.example.com"
        )
        assert Settings(frontend_origin="https://app.example.com").completion_origin() == (
            "https://app.example.com"
        )

    def test_cached(self):
        assert get_settings() is get_settings()


class TestRuntime:
    def test_short_secret_fails_fast(self, settings, store):
        with pytest.raises(ConfigurationError):
            Runtime(settings.model_copy(update={"jwt_secret": "too-short"}), store=store)

    def test_missing_secret_fails_fast(self, settings, store):
        with pytest.raises(ConfigurationError):
            Runtime(settings.model_copy(update={"jwt_secret": None}), store=store)

    def test_unconfigured_provider_is_skipped(self, settings, store):
        runtime = Runtime(
            settings.model_copy(
                update={"instagram_client_id": None, "instagram_client_secret": None}
            ),
            store=store,
        )
        assert runtime.providers.names() == ["facebook"]

    def test_mask_url_password(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert _mask_url_password("redis://cache:6379") == "redis://cache:6379"
        assert _mask_url_password(None) is None


class TestApp:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"] == {"status": "ok"}

    def test_healthz_reports_store_failure(self, client, store, monkeypatch):
        def down():
            raise RuntimeError("connection refused")

        monkeypatch.setattr(store, "verify_connection", down)
        response = client.get("/healthz")
        assert response.status_code == 503
        assert response.json()["checks"]["database"] == {"status": "error"}

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"
        generated = client.get("/healthz").headers["X-Request-ID"]
        assert generated and generated != "req-123"

    def test_security_headers(self, client):
        response = client.get("/auth/me")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"

    def test_missing_runtime_is_internal_error(self):
        client = TestClient(create_app(), raise_server_exceptions=False)
        response = client.get("/healthz")
        assert response.status_code == 500
        assert response.json()["code_error"] == "internal_error"

    def test_lifespan_builds_runtime_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SHARED_FS_ROOT", str(tmp_path))
        monkeypatch.delenv("REDIS_URL", raising=False)
        app = create_app()
        with TestClient(app) as client:
            assert isinstance(app.state.runtime, Runtime)
            assert client.get("/healthz").status_code == 200
        assert app.state.runtime is None
