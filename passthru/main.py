"""passthru FastAPI application factory + lifespan lifecycle.

This module implements:
  - create_app() - testable application factory
  - lifespan     - @asynccontextmanager startup/shutdown sequence
  - app = create_app() - module-level instance for uvicorn

Startup sequence:
  1. load_config()          → app.state.config
  2. config.header_policy() → app.state.header_policy (immutable, shared)
  3. create_http_client()   → app.state.http_client
  4. app.state.ready = True

Shutdown: app.state.ready = False → close the shared HTTP client.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from passthru.config import load_config
from passthru.health import router as health_router
from passthru.proxy.engine import router as engine_router
from passthru.proxy.upstream import create_http_client
from passthru.utils.logger import configure_logging_from_env, debug_enabled, get_logger

# ─── Logging Setup ────────────────────────────────────────────────────────────
configure_logging_from_env()
logger = get_logger(__name__)


# ─── Dependencies ─────────────────────────────────────────────────────────────


async def require_ready(request: Request) -> None:
    """FastAPI dependency: raises HTTP 503 if app.state.ready is not True."""
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "passthru is starting up"},
        )


# ─── Lifespan ─────────────────────────────────────────────────────────────────


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown sequence."""
    logger.info("passthru starting up...")

    config = load_config()
    app.state.config = config

    header_policy = config.header_policy()
    app.state.header_policy = header_policy
    logger.info(
        "Header policy loaded",
        blocked=list(header_policy.names),
    )

    http_client: httpx.AsyncClient = create_http_client(
        timeout_s=config.upstream.timeout_s,
        follow_redirects=config.upstream.follow_redirects,
    )
    app.state.http_client = http_client
    logger.info(
        "HTTP client created",
        upstream=config.upstream.base_url,
        timeout_s=config.upstream.timeout_s,
        follow_redirects=config.upstream.follow_redirects,
    )

    app.state.ready = True
    logger.info("passthru ready")

    yield

    logger.info("passthru shutting down...")
    app.state.ready = False

    try:
        await http_client.aclose()
        logger.info("HTTP client closed")
    except Exception as exc:
        logger.warning("HTTP client close error (non-fatal)", error=str(exc))

    logger.info("passthru shutdown complete")


# ─── Application Factory ──────────────────────────────────────────────────────


def create_app() -> FastAPI:
    """Create and configure the passthru FastAPI application.

    Call this function directly in tests to get an isolated app instance.
    The module-level `app` is created at import time for uvicorn.
    """
    _debug = debug_enabled()

    application = FastAPI(
        title="passthru",
        description="Header-filtering HTTP relay",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if _debug else None,
        redoc_url="/redoc" if _debug else None,
        openapi_url="/openapi.json" if _debug else None,
    )

    application.state.ready = False

    # health_router first: the engine router is a catch-all
    application.include_router(health_router)
    application.include_router(engine_router, dependencies=[Depends(require_ready)])

    @application.exception_handler(HTTPException)
    async def http_exception_handler(
        request: Request, exc: HTTPException
    ) -> JSONResponse:
        logger.warning(
            "HTTP exception",
            status_code=exc.status_code,
            detail=exc.detail,
            path=str(request.url.path),
        )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @application.exception_handler(Exception)
    async def unhandled_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.error(
            "Unhandled exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=str(request.url.path),
        )
        return JSONResponse(
            status_code=500, content={"error": "Internal server error"}
        )

    return application


app = create_app()
