"""Request identifier generation.

Every forwarded request gets a 26-character ULID that is bound to the log
context and sent upstream as ``X-Passthru-Request-ID`` so operator logs on
both sides of the relay can be correlated.
"""

from __future__ import annotations

from ulid import ULID


def generate_ulid() -> str:
    """Return a new ULID as a 26-character uppercase Crockford Base32 string."""
    return str(ULID())
