"""Tests for the ``{code, error, code_error}`` error body.

Every failure the API returns, whether raised by a service, by request
validation, by routing, or by a bug, is serialized into the same shape.
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from free2free.api.error_handling import (
    _STATUS_TO_CODE,
    error_body,
    error_code_for_status,
    register_exception_handlers,
)
from free2free.api.schemas import ErrorBody
from free2free.service.errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    OAuthError,
    ServiceError,
    UnauthorizedError,
)
from free2free.service.errors import ValidationError as ServiceValidationError
from free2free.storage.errors import ConstraintViolation


class TestErrorBody:
    def test_required_fields(self):
        body = ErrorBody(code=401, error="authentication required", code_error="unauthorized")
        assert body.model_dump() == {
            "code": 401,
            "error": "authentication required",
            "code_error": "unauthorized",
        }

    def test_missing_fields_raise(self):
        with pytest.raises(ValidationError):
            ErrorBody(code=400, error="x")

    def test_error_body_helper_fills_code(self):
        assert error_body(404, "user not found") == {
            "code": 404,
            "error": "user not found",
            "code_error": "not_found",
        }


class TestStatusMapping:
    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "internal_error"),
            (502, "oauth_failed"),
        ],
    )
    def test_known_statuses(self, status, code):
        assert _STATUS_TO_CODE[status] == code
        assert error_code_for_status(status) == code

    def test_unknown_statuses_fall_back(self):
        assert error_code_for_status(418) == "validation_error"
        assert error_code_for_status(503) == "internal_error"


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc_cls,status,code",
        [
            (ServiceValidationError, 400, "validation_error"),
            (UnauthorizedError, 401, "unauthorized"),
            (ForbiddenError, 403, "forbidden"),
            (NotFoundError, 404, "not_found"),
            (ConflictError, 409, "conflict"),
            (InternalError, 500, "internal_error"),
            (OAuthError, 502, "oauth_failed"),
        ],
    )
    def test_class_defaults(self, exc_cls, status, code):
        exc = exc_cls("boom")
        assert isinstance(exc, ServiceError)
        assert exc.status_code == status
        assert exc.error_code == code
        assert exc.message == "boom"

    def test_overrides(self):
        exc = ServiceError("teapot", status_code=418, error_code="teapot", detail={"a": 1})
        assert (exc.status_code, exc.error_code, exc.detail) == (418, "teapot", {"a": 1})


@pytest.fixture
def failing_client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/unauthorized")
    async def unauthorized():
        raise UnauthorizedError("invalid access token")

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("external identity already exists", constraint="user_identity")

    @app.get("/oauth")
    async def oauth():
        raise OAuthError("facebook token exchange timed out", provider="facebook")

    @app.get("/bug")
    async def bug():
        raise RuntimeError("secret internals")

    @app.get("/items/{item_id}")
    async def item(item_id: int):
        return {"id": item_id}

    return TestClient(app, raise_server_exceptions=False)


class TestHandlers:
    def test_service_error(self, failing_client):
        response = failing_client.get("/unauthorized")
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert response.json() == {
            "code": 401,
            "error": "invalid access token",
            "code_error": "unauthorized",
        }

    def test_constraint_violation_is_conflict(self, failing_client):
        response = failing_client.get("/conflict")
        assert response.status_code == 409
        assert response.json()["code_error"] == "conflict"

    def test_oauth_error_is_bad_gateway(self, failing_client):
        response = failing_client.get("/oauth")
        assert response.status_code == 502
        assert response.json()["code_error"] == "oauth_failed"

    def test_unhandled_exception_is_opaque(self, failing_client):
        response = failing_client.get("/bug")
        assert response.status_code == 500
        assert response.json() == {
            "code": 500,
            "error": "internal server error",
            "code_error": "internal_error",
        }
        assert "secret internals" not in response.text

    def test_request_validation_is_400(self, failing_client):
        response = failing_client.get("/items/not-a-number")
        assert response.status_code == 400
        body = response.json()
        assert body["code"] == 400
        assert body["code_error"] == "validation_error"
        assert body["error"].startswith("path.item_id")

    def test_unknown_route(self, failing_client):
        response = failing_client.get("/nowhere")
        assert response.status_code == 404
        assert response.json()["code_error"] == "not_found"

    def test_wrong_method(self, failing_client):
        response = failing_client.post("/unauthorized")
        assert response.status_code == 405
        assert response.json()["code_error"] == "method_not_allowed"
