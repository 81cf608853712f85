from __future__ import annotations

import json
import secrets
from html import escape
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request
from fastapi.responses import HTMLResponse, RedirectResponse

from free2free.api.schemas import (
    DeleteUserResponse,
    LogoutAllResponse,
    LogoutRequest,
    LogoutResponse,
    MeResponse,
    RevokedCounts,
    SessionExchangeRequest,
    SessionExchangeResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TokenRefreshResponse,
    UserListResponse,
    UserResponse,
)
from free2free.logging import bind_request_identity, get_logger
from free2free.service.authz import Identity, Tier
from free2free.service.errors import ServiceError, ValidationError
from free2free.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

router = APIRouter()


def _authorize(
    request: Request, runtime: Runtime, authorization: Optional[str], tier: Tier
) -> Optional[Identity]:
    identity = runtime.authz.authorize(authorization, tier)
    # request.state lives and dies with this request
    request.state.identity = identity
    if identity is not None:
        bind_request_identity(identity.user_id, tier.value)
    return identity


async def get_optional_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Optional[Identity]:
    return _authorize(request, runtime, authorization, Tier.OPTIONAL)


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Identity:
    return _authorize(request, runtime, authorization, Tier.AUTHENTICATED)


async def get_organizer(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Identity:
    return _authorize(request, runtime, authorization, Tier.ORGANIZER)


async def get_admin_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> Identity:
    return _authorize(request, runtime, authorization, Tier.ADMIN)


def _json_for_script(value: Any) -> str:
    """JSON literal safe to inline inside a <script> element."""
    return (
        json.dumps(value)
        .replace("<", "\\u003c")
        .replace(">", "\\u003e")
        .replace("&", "\\u0026")
    )


_COMPLETION_PAGE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{title}</title>
</head>
<body>
<p>{text}</p>
<script nonce="{nonce}">
(function () {{
  var message = {message};
  if (window.opener) {{
    window.opener.postMessage(message, {origin});
  }}
  setTimeout(function () {{ window.close(); }}, 1000);
}})();
</script>
</body>
</html>
"""


def _completion_page(
    runtime: Runtime, message_type: str, payload: Dict[str, Any], status_code: int = 200
) -> HTMLResponse:
    """Popup page handing the login outcome to the window that opened it."""
    nonce = secrets.token_urlsafe(16)
    success = message_type == "auth_success"
    html = _COMPLETION_PAGE.format(
        title="Signed in" if success else "Sign-in failed",
        text=escape("You can close this window." if success else str(payload.get("error", ""))),
        nonce=nonce,
        message=_json_for_script({"type": message_type, "payload": payload}),
        origin=_json_for_script(runtime.settings.completion_origin()),
    )
    return HTMLResponse(
        html,
        status_code=status_code,
        headers={
            "Cache-Control": "no-store",
            "Content-Security-Policy": f"default-src 'none'; script-src 'nonce-{nonce}'",
        },
    )


@router.get("/auth/me", response_model=MeResponse, tags=["auth"])
async def me(identity: Identity = Depends(get_user)):
    return MeResponse(user=UserResponse.from_user(identity.user))


@router.get("/auth/users", response_model=UserListResponse, tags=["admin"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    admin: Identity = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    users = runtime.store.list_users(limit=limit)
    return UserListResponse(users=[UserResponse.from_user(u) for u in users])


@router.get("/auth/{provider}", tags=["auth"])
async def oauth_start(
    provider: str = Path(..., max_length=32, description="OAuth provider"),
    runtime: Runtime = Depends(get_runtime),
):
    """Redirect the browser to the provider's consent screen."""
    start = await runtime.auth.start_oauth(provider)
    return RedirectResponse(start["authorization_url"], status_code=307)


@router.get("/auth/{provider}/callback", response_class=HTMLResponse, tags=["auth"])
async def oauth_callback(
    provider: str = Path(..., max_length=32, description="OAuth provider"),
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
    error_description: Optional[str] = Query(None, max_length=1024),
    runtime: Runtime = Depends(get_runtime),
):
    """Complete the OAuth flow and post the outcome to the opener window.

    Provider-side denials, state failures and upstream errors all render an
    ``auth_error`` page; only a request with neither ``code`` nor ``error`` is
    rejected as malformed.
    """
    runtime.providers.get(provider)
    if error:
        logger.warning("oauth_provider_denied", provider=provider, provider_error=error)
        return _completion_page(
            runtime,
            "auth_error",
            {"error": error_description or error, "code_error": "oauth_failed"},
            status_code=400,
        )
    if not code:
        raise ValidationError("missing authorization code")

    try:
        result = await runtime.auth.complete_oauth(provider, code, state)
    except ServiceError as exc:
        logger.warning(
            "oauth_callback_failed",
            provider=provider,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return _completion_page(
            runtime,
            "auth_error",
            {"error": exc.message, "code_error": exc.error_code},
            status_code=exc.status_code,
        )
    except Exception:
        logger.exception("oauth_callback_crashed", provider=provider)
        return _completion_page(
            runtime,
            "auth_error",
            {"error": "internal server error", "code_error": "internal_error"},
            status_code=500,
        )

    return _completion_page(
        runtime,
        "auth_success",
        {
            "user": UserResponse.from_user(result.user).model_dump(mode="json"),
            "token": result.tokens.access,
            "refresh_token": result.tokens.refresh,
            "session_id": result.session.id,
        },
    )


@router.post("/auth/refresh", response_model=TokenRefreshResponse, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)
):
    tokens = await runtime.auth.refresh(body.refresh_token)
    return TokenRefreshResponse(tokens=TokenPairResponse.from_pair(tokens))


@router.post("/auth/logout", response_model=LogoutResponse, tags=["auth"])
async def logout(request: Request, runtime: Runtime = Depends(get_runtime)):
    """Revoke whatever the client sends; the answer is always success."""
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    body = LogoutRequest.from_payload(payload)
    await runtime.auth.logout(body.refresh_token, body.session_id)
    return LogoutResponse()


@router.post("/auth/logout-all", response_model=LogoutAllResponse, tags=["auth"])
async def logout_all(
    identity: Identity = Depends(get_user), runtime: Runtime = Depends(get_runtime)
):
    revoked = await runtime.auth.logout_all(identity.user_id)
    return LogoutAllResponse(revoked=RevokedCounts(**revoked))


@router.post("/auth/token", response_model=SessionExchangeResponse, tags=["auth"])
async def exchange_session(
    body: SessionExchangeRequest, runtime: Runtime = Depends(get_runtime)
):
    user, tokens = await runtime.auth.exchange_session(body.session_id)
    return SessionExchangeResponse(
        user=UserResponse.from_user(user), tokens=TokenPairResponse.from_pair(tokens)
    )


@router.delete("/auth/users/{user_id}", response_model=DeleteUserResponse, tags=["admin"])
async def delete_user(
    user_id: str = Path(..., max_length=64),
    admin: Identity = Depends(get_admin_user),
    runtime: Runtime = Depends(get_runtime),
):
    runtime.auth.delete_user(user_id)
    logger.info("admin_deleted_user", admin_id=admin.user_id, user_id=user_id)
    return DeleteUserResponse()
