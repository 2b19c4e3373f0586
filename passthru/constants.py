"""Shared constants for passthru.

Defaults used by config loading, the outbound client and the relay error
handler live here so no module carries its own magic numbers.
"""

# ─── Upstream client ─────────────────────────────────────────────────────────

# Total timeout for one upstream exchange (connect + headers), in seconds.
# Body streaming is bounded by the same read timeout per chunk.
DEFAULT_UPSTREAM_TIMEOUT_S: float = 30.0

# Upstream redirects are resolved by the client, so the caller only ever sees
# the final response. A 3xx that reaches the relay is a not-ok result.
DEFAULT_FOLLOW_REDIRECTS: bool = True

# Base URL used when neither the config file nor PASSTHRU_UPSTREAM sets one.
DEFAULT_UPSTREAM_BASE_URL: str = "http://127.0.0.1:8080"

# ─── Relay error handling ────────────────────────────────────────────────────

# Logged by the error handler when the body stream fails after hand-off.
DEFAULT_STREAM_ERROR_MESSAGE: str = "Request streaming error:"

# Status set on the caller-facing response when the body stream fails.
# Only observable when the failure happens before the first body chunk.
DEFAULT_STREAM_ERROR_STATUS: int = 500

# ─── Outbound request ────────────────────────────────────────────────────────

# Header injected on every upstream request; value is the request ULID.
REQUEST_ID_HEADER: str = "X-Passthru-Request-ID"

# Upstream statuses that never carry a body (RFC 9110 §6.4.1).
NO_BODY_STATUSES: frozenset[int] = frozenset({204, 205, 304})
