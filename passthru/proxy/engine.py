"""Async forwarding handler for passthru.

Forwards every request that reaches the catch-all route to the configured
upstream and relays the upstream response back:

  - Shared httpx.AsyncClient at app.state.http_client; never instantiated per request
  - Outbound headers projected from the caller's headers with the process
    HeaderPolicy (app.state.header_policy), plus X-Passthru-Request-ID
  - Upstream response relayed by RelayResponse: status and non-blocked
    headers copied, body streamed through a RelayTarget

Failure mode separation:
  - httpx.ConnectError / TimeoutException / RemoteProtocolError before a
    response exists → HTTP 502.
  - httpx.InvalidURL / UnsupportedProtocol → HTTP 500 (configuration error).
  - Upstream non-2xx → relayed as status only, empty body.
  - Body stream failure after hand-off → ErrorHandler (fallback status, end).
"""

from __future__ import annotations

import asyncio
from typing import Optional
from urllib.parse import quote

import httpx
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from starlette.background import BackgroundTask
from starlette.types import Receive, Scope, Send

from passthru.config import Config
from passthru.constants import (
    DEFAULT_STREAM_ERROR_MESSAGE,
    DEFAULT_STREAM_ERROR_STATUS,
    REQUEST_ID_HEADER,
)
from passthru.proxy.headers import DEFAULT_POLICY, HeaderPolicy, OutboundHeaderSet, project_request_headers
from passthru.proxy.relay import RelayTarget, make_error_handler, relay_response
from passthru.proxy.upstream import UpstreamResponse
from passthru.utils.logger import clear_request_id, get_logger, set_request_id
from passthru.utils.ulid import generate_ulid

logger = get_logger(__name__)

# ─── Router ───────────────────────────────────────────────────────────────────

router = APIRouter(tags=["proxy"])

FORWARDED_METHODS: list[str] = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"]


# ─── Relay response ───────────────────────────────────────────────────────────


class RelayResponse(Response):
    """Starlette response that relays a streamed upstream response.

    Instead of rendering a body, ``__call__`` wraps the ASGI ``send`` channel
    in a RelayTarget, runs relay_response() with an ErrorHandler bound to
    that target, and waits for the target to close. The upstream
    ``httpx.Response`` is closed on every path.
    """

    def __init__(
        self,
        upstream_response: httpx.Response,
        *,
        method: str = "GET",
        policy: HeaderPolicy = DEFAULT_POLICY,
        error_message: str = DEFAULT_STREAM_ERROR_MESSAGE,
        error_status: int = DEFAULT_STREAM_ERROR_STATUS,
        background: Optional[BackgroundTask] = None,
    ) -> None:
        super().__init__(status_code=upstream_response.status_code, background=background)
        self.upstream_response = upstream_response
        self.method = method
        self.policy = policy
        self.error_message = error_message
        self.error_status = error_status

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        target = RelayTarget(send)
        on_error = make_error_handler(target, self.error_message, self.error_status)

        try:
            await relay_response(
                UpstreamResponse.from_httpx(self.upstream_response, self.method),
                target,
                on_error,
                self.policy,
            )
            await target.wait_closed()
            logger.info(
                "request_completed",
                status_code=target.status_code,
                headers_sent=target.headers_sent,
            )
        except asyncio.CancelledError:
            target.cancel()
            raise
        finally:
            await self.upstream_response.aclose()
            clear_request_id()

        if self.background is not None:
            await self.background()


# ─── Upstream URL ─────────────────────────────────────────────────────────────


def _raw_request_target(request: Request) -> tuple[str, str]:
    """Return the caller's path and query exactly as they were sent.

    The decoded ``path`` route parameter loses percent-escapes (``%3F``,
    ``%2F``, ``%23``), so the upstream URL is built from the scope's
    ``raw_path`` and ``query_string`` instead. A mount prefix in
    ``root_path`` is stripped.
    """
    scope = request.scope
    raw_path: bytes = scope.get("raw_path") or quote(scope["path"]).encode("ascii")
    raw_path = raw_path.split(b"?", 1)[0]
    root_path: bytes = scope.get("root_path", "").encode("latin-1")
    if root_path and raw_path.startswith(root_path):
        raw_path = raw_path[len(root_path):]
    query: bytes = scope.get("query_string", b"")
    return raw_path.decode("latin-1"), query.decode("latin-1")


def _build_upstream_url(base_url: str, raw_path: str, query: str = "") -> str:
    """Join the configured base URL with the raw request path and query."""
    url = f"{base_url.rstrip('/')}/{raw_path.lstrip('/')}"
    return f"{url}?{query}" if query else url


def _upstream_unavailable_response(request_id: str, reason: str) -> JSONResponse:
    response = JSONResponse(
        status_code=502,
        content={
            "error": {
                "message": "Upstream unavailable",
                "code": "upstream_unavailable",
                "detail": reason if reason else None,
            }
        },
    )
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


# ─── Forwarding handler ───────────────────────────────────────────────────────


@router.api_route("/{path:path}", methods=FORWARDED_METHODS)
async def forward_handler(request: Request, path: str) -> Response:
    """Forward the request upstream and relay the response.

    Args:
        request: Incoming FastAPI request.
        path:    URL path captured by the catch-all route.

    Returns:
        RelayResponse streaming the upstream result, or a JSON error response
        when no upstream response could be obtained.
    """
    # Cleared by RelayResponse once the caller's response is closed, or
    # below when no upstream response exists. The drain task inherits it.
    request_id = generate_ulid()
    set_request_id(request_id)

    config: Config = request.app.state.config
    http_client: httpx.AsyncClient = request.app.state.http_client
    policy: HeaderPolicy = getattr(request.app.state, "header_policy", DEFAULT_POLICY)

    raw_path, query = _raw_request_target(request)
    upstream_url = _build_upstream_url(config.upstream.base_url, raw_path, query)

    outbound = project_request_headers(request.headers, OutboundHeaderSet(), policy)
    outbound.append(REQUEST_ID_HEADER, request_id)

    body: bytes = await request.body()

    upstream_request = http_client.build_request(
        method=request.method,
        url=upstream_url,
        headers=outbound.multi_items(),
        content=body or None,
    )

    try:
        upstream_response = await http_client.send(upstream_request, stream=True)
    except (httpx.ConnectError, httpx.TimeoutException, httpx.RemoteProtocolError) as exc:
        logger.warning(
            "upstream_unavailable",
            upstream_url=upstream_url,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        clear_request_id()
        return _upstream_unavailable_response(request_id, type(exc).__name__)
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
        logger.error(
            "invalid_upstream_url",
            upstream_url=upstream_url,
            error=str(exc),
        )
        clear_request_id()
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal configuration error", "code": "config_error"}},
        )

    logger.info(
        "request_forwarded",
        method=request.method,
        path=path,
        upstream=upstream_url,
        status_code=upstream_response.status_code,
    )

    return RelayResponse(
        upstream_response,
        method=request.method,
        policy=policy,
        error_message=config.errors.stream_error_message,
        error_status=config.errors.stream_error_status,
    )
