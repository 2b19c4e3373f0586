"""Health endpoint for passthru.

GET /health returns 503 until the lifespan marks ``app.state.ready`` and 200
with a short status body afterwards. Polled by container probes.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from passthru.config import Config
from passthru.proxy.headers import DEFAULT_POLICY, HeaderPolicy

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check endpoint.

    Response body (200):
        {
          "status": "ok",
          "upstream": "http://127.0.0.1:8080",
          "blocked_headers": 17
        }
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "passthru is starting up"},
        )

    config: Config = request.app.state.config
    policy: HeaderPolicy = getattr(request.app.state, "header_policy", DEFAULT_POLICY)
    return {
        "status": "ok",
        "upstream": config.upstream.base_url,
        "blocked_headers": len(policy),
    }
