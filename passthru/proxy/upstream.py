"""Upstream side of the relay: the outbound client and its response shape.

The relay core only needs five things from an upstream response: an ok flag,
the numeric status, the status text, the header pairs in order, and an
optional body stream. UpstreamResponse carries exactly those, and
``UpstreamResponse.from_httpx()`` adapts a streamed ``httpx.Response``.

The body is the decoded byte stream (``aiter_bytes``): ``content-encoding``
and ``content-length`` are withheld from the caller by the default policy,
so the bytes relayed must already be decoded.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import AsyncIterator, Optional

import httpx

from passthru.constants import (
    DEFAULT_FOLLOW_REDIRECTS,
    DEFAULT_UPSTREAM_TIMEOUT_S,
    NO_BODY_STATUSES,
)


@dataclass
class UpstreamResponse:
    """Completed upstream response as seen by the relay.

    Attributes:
        status:      Numeric status code.
        status_text: Reason phrase (may be empty, e.g. over HTTP/2).
        headers:     ``(name, value)`` pairs in upstream order; repeated
                     headers appear once per value. Names are lowercase;
                     values are the raw bytes decoded as latin-1, so they
                     encode back to the exact upstream bytes.
        body:        Async byte stream, or None when the response has no body.
    """

    status: int
    status_text: str = ""
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: Optional[AsyncIterator[bytes]] = None

    @property
    def ok(self) -> bool:
        """True for 2xx statuses, matching the fetch ``Response.ok`` flag."""
        return 200 <= self.status < 300

    @classmethod
    def from_httpx(cls, response: httpx.Response, method: str = "GET") -> "UpstreamResponse":
        """Wrap a response obtained with ``client.send(..., stream=True)``.

        The caller keeps ownership of ``response`` and must ``aclose()`` it
        once the relay target has closed.
        """
        has_body = method.upper() != "HEAD" and response.status_code not in NO_BODY_STATUSES
        return cls(
            status=response.status_code,
            status_text=response.reason_phrase,
            headers=[
                (name.decode("latin-1").lower(), value.decode("latin-1"))
                for name, value in response.headers.raw
            ],
            body=response.aiter_bytes() if has_body else None,
        )


def create_http_client(
    timeout_s: float = DEFAULT_UPSTREAM_TIMEOUT_S,
    follow_redirects: bool = DEFAULT_FOLLOW_REDIRECTS,
) -> httpx.AsyncClient:
    """Create the shared outbound ``httpx.AsyncClient``.

    Created once at lifespan startup and stored in ``app.state.http_client``;
    never instantiated per request.
    """
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout_s),
        follow_redirects=follow_redirects,
    )
