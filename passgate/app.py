from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from passgate.api.error_handling import register_exception_handlers
from passgate.api.gateway import DEVICE_ID_HEADER, DEVICE_TYPE_HEADER, GatewayAuthInterceptor
from passgate.api.routes import router
from passgate.logging import get_logger, set_correlation_id
from passgate.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_HEALTH_PROBE_TIMEOUT = 2.0


def _allowed_origins(runtime: Runtime) -> List[str]:
    if runtime.settings.cors_allow_origins:
        return runtime.settings.cors_allow_origins
    # wildcard is not allowed together with credentials
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


def create_app(runtime: Optional[Runtime] = None) -> FastAPI:
    """Build the FastAPI application around one ``Runtime``."""

    runtime = runtime or Runtime()
    gateway = GatewayAuthInterceptor(
        runtime.tokens,
        runtime.cache,
        cookie_secure=runtime.settings.cookie_secure,
        blocklist_enabled=runtime.settings.ip_blocklist_enabled,
        blocklist_ttl_seconds=runtime.settings.ip_blocklist_ttl_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        try:
            await runtime.close()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="Passgate", version=__version__, lifespan=lifespan)
    app.state.runtime = runtime
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(runtime),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "X-Request-ID",
            DEVICE_ID_HEADER,
            DEVICE_TYPE_HEADER,
        ],
        expose_headers=["X-Request-ID", "API-Version", "Retry-After"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request: Request, call_next):
        """Reuse the client's X-Request-ID or mint one, and echo it back."""
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
        response.headers.setdefault("Cache-Control", "no-store")
        response.headers.setdefault("API-Version", __version__)
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/healthz")
    async def health() -> JSONResponse:
        checks: Dict[str, Any] = {}
        try:
            checks["cache"] = bool(
                await asyncio.wait_for(runtime.cache.ping(), timeout=_HEALTH_PROBE_TIMEOUT)
            )
        except Exception as exc:
            logger.warning("health_cache_probe_failed", error=str(exc))
            checks["cache"] = False
        try:
            checks["store"] = bool(
                await asyncio.wait_for(
                    asyncio.to_thread(runtime.store.ping), timeout=_HEALTH_PROBE_TIMEOUT
                )
            )
        except Exception as exc:
            logger.warning("health_store_probe_failed", error=str(exc))
            checks["store"] = False
        healthy = all(checks.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "ok" if healthy else "degraded", "checks": checks},
        )

    logger.info("app_created", version=__version__)
    return app
