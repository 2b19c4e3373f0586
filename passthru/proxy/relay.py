"""Response relay: drive the caller-facing response from an upstream result.

Provides:

  - RelayTarget: the caller-facing response sink, written over a raw ASGI
    ``send`` channel. Status and headers are mutable until the first body
    chunk (or ``end()``) emits the ``http.response.start`` message.

  - relay_response(): applies upstream status and headers to a RelayTarget
    and hands the upstream body off to a background drain task.

  - ErrorHandler / make_error_handler(): the single funnel for failures
    after the hand-off. Sets a fallback status and finalizes the target.

Finalization contract: ``RelayTarget.end()`` is idempotent. The first call
emits the closing body message; later calls are logged at debug level and
return without touching the connection. This makes a late error arriving
after a natural end (or the error handler firing twice) harmless.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from starlette.types import Message, Send

from passthru.constants import DEFAULT_STREAM_ERROR_MESSAGE, DEFAULT_STREAM_ERROR_STATUS
from passthru.proxy.headers import DEFAULT_POLICY, HeaderPolicy
from passthru.proxy.upstream import UpstreamResponse
from passthru.utils.logger import get_logger

logger = get_logger(__name__)

OnError = Callable[[BaseException], Awaitable[None]]
HeaderValue = Union[str, list[str]]


# ─── Pipe result ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class PipeResult:
    """Outcome of attaching a body stream to a RelayTarget.

    ``error`` is None when the drain task was scheduled. Otherwise nothing
    was scheduled and the caller must route ``error`` to its error handler.
    """

    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


PIPE_OK = PipeResult()


def _encode_header(text: str) -> bytes:
    # Upstream header bytes arrive latin-1 decoded and round-trip exactly;
    # anything set with characters outside latin-1 goes out as UTF-8.
    try:
        return text.encode("latin-1")
    except UnicodeEncodeError:
        return text.encode("utf-8")


# ─── Relay target ─────────────────────────────────────────────────────────────


class RelayTarget:
    """Caller-facing response over an ASGI ``send`` callable.

    Lifecycle:
      1. ``status_code`` and ``set_header()`` are freely mutable.
      2. The first ``write()`` (or ``end()``) sends ``http.response.start``
         with the current status and headers. Later changes are ignored by
         the transport.
      3. ``end()`` sends the final empty body message exactly once and marks
         the target closed; ``wait_closed()`` returns after that.

    A send failure with ``OSError`` during ``end()`` means the caller is gone;
    the target is marked closed and the failure is logged, not raised.
    """

    def __init__(self, send: Send) -> None:
        self._send = send
        self.status_code: int = 200
        self._headers: dict[str, list[str]] = {}
        self._headers_sent = False
        self._ended = False
        self._closed = asyncio.Event()
        self._pipe_task: Optional[asyncio.Task[None]] = None

    # ── Headers ──────────────────────────────────────────────────────────────

    def set_header(self, name: str, value: HeaderValue) -> None:
        """Set ``name`` to ``value``, replacing any earlier value.

        A list sets a repeated header (one line per element), which is how
        multiple ``set-cookie`` values are relayed.
        """
        values = list(value) if isinstance(value, list) else [value]
        self._headers[name.lower()] = [str(v) for v in values]

    def get_header(self, name: str) -> Optional[HeaderValue]:
        values = self._headers.get(name.lower())
        if values is None:
            return None
        return values[0] if len(values) == 1 else list(values)

    def has_header(self, name: str) -> bool:
        return name.lower() in self._headers

    @property
    def headers(self) -> list[tuple[str, str]]:
        return [(name, value) for name, values in self._headers.items() for value in values]

    # ── State ────────────────────────────────────────────────────────────────

    @property
    def headers_sent(self) -> bool:
        return self._headers_sent

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    # ── Body ─────────────────────────────────────────────────────────────────

    async def _start(self) -> None:
        message: Message = {
            "type": "http.response.start",
            "status": self.status_code,
            "headers": [
                (_encode_header(name), _encode_header(value)) for name, value in self.headers
            ],
        }
        await self._send(message)
        self._headers_sent = True

    async def write(self, chunk: bytes) -> None:
        if self._ended:
            raise RuntimeError("write() after end()")
        if not self._headers_sent:
            await self._start()
        if chunk:
            message: Message = {"type": "http.response.body", "body": chunk, "more_body": True}
            await self._send(message)

    async def end(self) -> None:
        """Finalize the response. Idempotent."""
        if self._ended:
            logger.debug("relay_target_already_ended", status_code=self.status_code)
            return
        self._ended = True
        try:
            if not self._headers_sent:
                await self._start()
            await self._send({"type": "http.response.body", "body": b"", "more_body": False})
        except OSError as exc:
            logger.info("relay_target_disconnected", error=str(exc))
        finally:
            self._closed.set()

    async def wait_closed(self) -> None:
        await self._closed.wait()

    # ── Streaming hand-off ───────────────────────────────────────────────────

    def pipe(self, body: AsyncIterable[bytes], on_error: OnError) -> PipeResult:
        """Schedule ``body`` to be streamed into this target.

        Returns immediately. The drain task writes every chunk, then ends the
        target; any exception raised while draining goes to ``on_error`` once.

        Returns:
            PIPE_OK when the drain task was scheduled, otherwise a PipeResult
            carrying the reason nothing was scheduled.
        """
        if self._ended:
            return PipeResult(RuntimeError("cannot pipe into an ended response"))
        if self._pipe_task is not None:
            return PipeResult(RuntimeError("response is already being piped"))
        if not isinstance(body, AsyncIterable):
            return PipeResult(TypeError(f"body is not an async iterable: {type(body).__name__}"))
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            return PipeResult(exc)
        self._pipe_task = loop.create_task(self._drain(body, on_error))
        return PIPE_OK

    async def _drain(self, body: AsyncIterable[bytes], on_error: OnError) -> None:
        try:
            async for chunk in body:
                await self.write(chunk)
        except asyncio.CancelledError:
            self._closed.set()
            raise
        except Exception as exc:  # noqa: BLE001 - every drain failure goes to on_error
            await on_error(exc)
        else:
            await self.end()
        finally:
            aclose = getattr(body, "aclose", None)
            if aclose is not None:
                await aclose()

    def cancel(self) -> None:
        """Cancel a running drain task, if any."""
        if self._pipe_task is not None and not self._pipe_task.done():
            self._pipe_task.cancel()


# ─── Error handler ────────────────────────────────────────────────────────────


@dataclass
class ErrorHandler:
    """Failure callback bound to one RelayTarget.

    Logs ``message`` with the error, sets ``status_code`` on the target and
    finalizes it. Safe to invoke more than once: the second ``end()`` is a
    no-op on the target.
    """

    target: RelayTarget
    message: str = DEFAULT_STREAM_ERROR_MESSAGE
    status_code: int = DEFAULT_STREAM_ERROR_STATUS

    async def handle(self, error: BaseException) -> None:
        logger.error(
            self.message,
            error=str(error),
            error_type=type(error).__name__,
            status_code=self.status_code,
            headers_sent=self.target.headers_sent,
        )
        self.target.status_code = self.status_code
        await self.target.end()

    async def __call__(self, error: BaseException) -> None:
        await self.handle(error)


def make_error_handler(
    target: RelayTarget,
    message: str = DEFAULT_STREAM_ERROR_MESSAGE,
    status_code: int = DEFAULT_STREAM_ERROR_STATUS,
) -> ErrorHandler:
    return ErrorHandler(target=target, message=message, status_code=status_code)


# ─── Relay ────────────────────────────────────────────────────────────────────


def _group_headers(pairs: list[tuple[str, str]]) -> dict[str, list[str]]:
    grouped: dict[str, list[str]] = {}
    for name, value in pairs:
        grouped.setdefault(name.lower(), []).append(value)
    return grouped


async def relay_response(
    upstream: UpstreamResponse,
    target: RelayTarget,
    on_error: OnError,
    policy: HeaderPolicy = DEFAULT_POLICY,
) -> None:
    """Apply ``upstream`` to ``target`` and hand its body off for streaming.

    Branches:
      - Upstream not ok: log, copy the status, end with an empty body. No
        upstream header is copied.
      - Ok with a body: copy status and non-blocked headers, schedule the
        drain task and return without waiting for it.
      - Ok without a body: copy status and headers, end immediately.

    Never raises for relay failures: a body that cannot be attached is routed
    to ``on_error`` and the error handler finalizes the target.

    Args:
        upstream: Completed upstream response.
        target:   Caller-facing sink to drive to completion.
        on_error: Async failure callback, normally an ErrorHandler.
        policy:   Header names withheld from the caller.
    """
    if not upstream.ok:
        logger.warning(
            "upstream_request_failed",
            status=upstream.status,
            status_text=upstream.status_text,
        )
        target.status_code = upstream.status
        await target.end()
        return

    target.status_code = upstream.status
    for name, values in _group_headers(upstream.headers).items():
        if policy.blocks(name):
            continue
        target.set_header(name, values[0] if len(values) == 1 else values)

    if upstream.body is None:
        await target.end()
        return

    result = target.pipe(upstream.body, on_error)
    if not result.ok:
        await on_error(result.error)
