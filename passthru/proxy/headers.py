"""Header policy and inbound header projection.

Implements the rules for which headers may cross the relay in either
direction:

  - HeaderPolicy: an immutable, ordered set of lowercase header names that
    are never forwarded. DEFAULT_POLICY is built from the fetch standard's
    forbidden header names, minus the identity headers we deliberately keep.

  - project_request_headers(): copies the caller's request headers into an
    OutboundHeaderSet, skipping blocked names and absorbing malformed values.

Header values arrive in several shapes (a plain string, a list for repeated
headers, None, or whatever a host framework hands us). They are classified
into the Absent / Single / Multiple variants before projection, so the
projector never inspects raw types itself.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Optional, Union

# ─── Constants ────────────────────────────────────────────────────────────────

# See https://fetch.spec.whatwg.org/#forbidden-header-name
# Hop-by-hop, framing and CORS-preflight headers. The relay recomputes framing
# on each leg, so forwarding these would corrupt the message or leak the
# caller's connection details to the upstream.
REQUEST_HEADERS_BLOCKLIST: tuple[str, ...] = (
    "accept-charset",
    "accept-encoding",
    "access-control-request-headers",
    "access-control-request-method",
    "connection",
    "content-length",
    "content-encoding",
    "date",
    "dnt",
    "expect",
    "host",
    "keep-alive",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
    "via",
)

# Forbidden by the fetch standard but forwarded anyway: session and identity
# context must survive the relay. Never add these to the default policy.
RETAINED_HEADERS: tuple[str, ...] = (
    "cookie",
    "cookie2",
    "origin",
    "referer",
    "user-agent",
)


# ─── Policy ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class HeaderPolicy:
    """Ordered, de-duplicated set of header names that are never forwarded.

    Names are normalised to lowercase on construction; membership checks are
    case-insensitive. Instances are immutable and safe to share between
    concurrent relays.

    Example::

        policy = HeaderPolicy(("Host", "via", "HOST"))
        policy.names            # ("host", "via")
        "X-Forwarded-Host" in policy   # False
        policy.blocks("VIA")    # True
    """

    names: tuple[str, ...] = REQUEST_HEADERS_BLOCKLIST
    _index: frozenset[str] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        ordered: dict[str, None] = {}
        for name in self.names:
            ordered.setdefault(str(name).strip().lower(), None)
        ordered.pop("", None)
        object.__setattr__(self, "names", tuple(ordered))
        object.__setattr__(self, "_index", frozenset(ordered))

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "HeaderPolicy":
        return cls(tuple(names))

    def blocks(self, name: str) -> bool:
        """Return True if ``name`` must not be forwarded."""
        return name.lower() in self._index

    def extend(self, names: Iterable[str]) -> "HeaderPolicy":
        """Return a new policy with ``names`` appended after the current ones."""
        return HeaderPolicy(self.names + tuple(names))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.blocks(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self.names)

    def __len__(self) -> int:
        return len(self.names)


DEFAULT_POLICY: HeaderPolicy = HeaderPolicy(REQUEST_HEADERS_BLOCKLIST)


# ─── Header values ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Absent:
    """No usable value: nothing is forwarded for this header."""


@dataclass(frozen=True)
class Single:
    value: str


@dataclass(frozen=True)
class Multiple:
    """A repeated header; every element is forwarded as its own entry."""

    values: tuple[str, ...]


HeaderValue = Union[Absent, Single, Multiple]

ABSENT = Absent()


def _scalar(raw: Any) -> Optional[str]:
    if isinstance(raw, str):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        return bytes(raw).decode("latin-1")
    # bool is an int subclass but never a meaningful header value
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return str(raw)
    return None


def classify_header_value(raw: Any) -> HeaderValue:
    """Map a raw header value onto the Absent / Single / Multiple variants.

    Strings, bytes and numbers are single values. Lists and tuples are
    repeated headers; elements that are not usable scalars are dropped.
    None and any other type classify as Absent and are never forwarded.
    """
    if raw is None:
        return ABSENT
    if isinstance(raw, (list, tuple)):
        values = tuple(v for v in (_scalar(item) for item in raw) if v is not None)
        return Multiple(values)
    value = _scalar(raw)
    if value is None:
        return ABSENT
    return Single(value)


# ─── Outbound header set ──────────────────────────────────────────────────────


class OutboundHeaderSet:
    """Append-only header multi-map for the upstream-bound request.

    ``append`` never overwrites: repeated names keep every value in order.
    Lookups are case-insensitive; names keep the casing they were added with.
    Pass ``multi_items()`` straight to ``httpx`` as the request headers.
    """

    def __init__(self, items: Optional[Iterable[tuple[str, str]]] = None) -> None:
        self._items: list[tuple[str, str]] = []
        for name, value in items or ():
            self.append(name, value)

    def append(self, name: str, value: str) -> None:
        self._items.append((name, value))

    def get_list(self, name: str) -> list[str]:
        wanted = name.lower()
        return [value for key, value in self._items if key.lower() == wanted]

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        values = self.get_list(name)
        return ", ".join(values) if values else default

    def multi_items(self) -> list[tuple[str, str]]:
        return list(self._items)

    def keys(self) -> list[str]:
        """Distinct lowercase names in first-appended order."""
        seen: dict[str, None] = {}
        for key, _ in self._items:
            seen.setdefault(key.lower(), None)
        return list(seen)

    def __contains__(self, name: object) -> bool:
        if not isinstance(name, str):
            return False
        wanted = name.lower()
        return any(key.lower() == wanted for key, _ in self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"OutboundHeaderSet({self._items!r})"


# ─── Projection ───────────────────────────────────────────────────────────────


RawHeaders = Union[Mapping[str, Any], Iterable[tuple[str, Any]]]


def iter_header_pairs(request_headers: RawHeaders) -> Iterator[tuple[str, Any]]:
    """Yield ``(name, raw_value)`` pairs in the container's natural order.

    Accepts header containers exposing ``multi_items()`` (httpx), mappings
    (plain dicts, or Starlette headers whose ``items()`` repeats names for
    repeated headers) and iterables of pairs.
    """
    multi_items = getattr(request_headers, "multi_items", None)
    if callable(multi_items):
        yield from multi_items()
    elif isinstance(request_headers, Mapping):
        yield from request_headers.items()
    else:
        yield from request_headers


def project_request_headers(
    request_headers: RawHeaders,
    outbound: OutboundHeaderSet,
    policy: HeaderPolicy = DEFAULT_POLICY,
) -> OutboundHeaderSet:
    """Copy the caller's request headers into ``outbound``, applying ``policy``.

    Rules applied per header, in iteration order:
      1. Blocked names are skipped entirely (no partial copy).
      2. Repeated values are appended one entry per element.
      3. Single values are appended as-is.
      4. Absent or malformed values are omitted silently.

    Nothing is deduplicated: projecting the same request twice into one set
    yields every entry twice. Never raises for malformed values.

    Args:
        request_headers: Caller's headers (mapping, ``multi_items()`` container
                         or iterable of pairs).
        outbound:        Set to append into; mutated in place.
        policy:          Names to withhold. Defaults to DEFAULT_POLICY.

    Returns:
        ``outbound``, for chaining.
    """
    for name, raw in iter_header_pairs(request_headers):
        if not isinstance(name, str) or policy.blocks(name):
            continue
        value = classify_header_value(raw)
        if isinstance(value, Multiple):
            for item in value.values:
                outbound.append(name, item)
        elif isinstance(value, Single):
            outbound.append(name, value.value)
    return outbound
