from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fairshare.api.error_handling import register_exception_handlers
from fairshare.api.schemas import Envelope
from fairshare.api.routes import router
from fairshare.config import Settings, get_settings
from fairshare.logging import get_logger, set_correlation_id
from fairshare.service import runtime as runtime_module

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the store on shutdown."""
    runtime = runtime_module.get_runtime()
    logger.info("app_started", store_backend=runtime.settings.store_backend.value)

    yield

    current = runtime_module.runtime
    if current is not None:
        current.close()
        logger.info("runtime_cleanup_complete")


def _install_middleware(app: FastAPI, settings: Settings) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Tag logs and the response with X-Request-ID (client-supplied or generated)."""
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
        if request.url.path.startswith("/api/"):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        if request.url.scheme == "https" and settings.enable_hsts:
            response.headers.setdefault(
                "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
            )
        return response


async def health() -> JSONResponse:
    """Liveness plus a bounded store connectivity check."""
    runtime = runtime_module.get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    try:
        store_ok = await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            HEALTH_CHECK_TIMEOUT_SECONDS,
        )
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        store_ok = False

    checks["store"] = {
        "status": "healthy" if store_ok else "unhealthy",
        "backend": runtime.settings.store_backend.value,
    }
    status_code = 200 if store_ok else 503
    envelope = Envelope(
        success=store_ok,
        message="healthy" if store_ok else "unhealthy",
        data={"checks": checks, "version": __version__},
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content=envelope.to_content())


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Fairshare Auth", version=__version__, lifespan=lifespan)
    _install_middleware(app, settings)
    register_exception_handlers(app)
    app.include_router(router)
    app.add_api_route("/health", health, methods=["GET"], tags=["health"])
    return app


app = create_app()
