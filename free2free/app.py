from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from free2free.api.error_handling import register_exception_handlers
from free2free.api.routes import router
from free2free.config import get_settings
from free2free.logging import (
    clear_request_context,
    configure_logging,
    get_logger,
    set_correlation_id,
)
from free2free.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the ASGI app.

    A prepared ``runtime`` is attached immediately (tests inject one with an
    in-memory store and a mocked provider transport). Without one, the
    lifespan builds a Runtime from the environment and closes it on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "runtime", None) is None
        if owned:
            settings = get_settings()
            configure_logging(settings.log_level, settings.log_json, settings.log_dev_mode)
            app.state.runtime = Runtime(settings)
        yield
        if owned:
            try:
                await app.state.runtime.close()
                logger.info("runtime_cleanup_complete")
            except Exception as exc:
                logger.error("shutdown_failed", error=str(exc))
            app.state.runtime = None

    app = FastAPI(title="free2free auth", version=__version__, lifespan=lifespan)
    if runtime is not None:
        app.state.runtime = runtime

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag every log line of a request with one correlation id.

        Taken from the client's ``X-Request-ID`` when present, generated
        otherwise, and echoed back in the response header.
        """
        clear_request_context()
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/auth/"):
            # Token-bearing responses must never sit in a shared cache
            response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault(
            "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
        )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health(runtime: Runtime = Depends(get_runtime)):
        """Report store connectivity and the app version."""
        checks: Dict[str, Dict[str, Any]] = {}
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.store.verify_connection),
                HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["database"] = {"status": "ok"}
        except asyncio.TimeoutError:
            logger.error("health_check_timeout", component="database")
            checks["database"] = {"status": "timeout"}
        except Exception as exc:
            logger.error("health_check_database_failed", error=str(exc))
            checks["database"] = {"status": "error"}
        healthy = all(check["status"] == "ok" for check in checks.values())
        body = {
            "status": "healthy" if healthy else "unhealthy",
            "version": __version__,
            "checks": checks,
        }
        return JSONResponse(status_code=200 if healthy else 503, content=body)

    return app


app = create_app()
