"""Unit tests for ErrorHandler / make_error_handler().

Verifies:
  - Defaults: "Request streaming error:" message, status 500
  - handle() logs the message with the error, sets status, finalizes
  - Custom message and status code
  - Invoking twice finalizes the target only once
"""

from __future__ import annotations

from typing import Any
from unittest.mock import MagicMock

import pytest

from passthru.proxy.relay import ErrorHandler, RelayTarget, make_error_handler


class TestMakeErrorHandler:

    def test_defaults(self, asgi_send: Any) -> None:
        target = RelayTarget(asgi_send)
        handler = make_error_handler(target)
        assert isinstance(handler, ErrorHandler)
        assert handler.target is target
        assert handler.message == "Request streaming error:"
        assert handler.status_code == 500

    def test_custom_values(self, asgi_send: Any) -> None:
        handler = make_error_handler(RelayTarget(asgi_send), "Upstream body failed:", 504)
        assert handler.message == "Upstream body failed:"
        assert handler.status_code == 504


class TestHandle:

    @pytest.mark.asyncio
    async def test_sets_status_and_finalizes(self, asgi_send: Any) -> None:
        target = RelayTarget(asgi_send)
        handler = make_error_handler(target)

        await handler.handle(RuntimeError("stream broke"))

        assert target.status_code == 500
        assert target.ended
        assert target.closed
        assert asgi_send.status == 500
        assert asgi_send.body == b""

    @pytest.mark.asyncio
    async def test_callable_form(self, asgi_send: Any) -> None:
        target = RelayTarget(asgi_send)
        await make_error_handler(target, status_code=503)(ValueError("x"))
        assert asgi_send.status == 503

    @pytest.mark.asyncio
    async def test_logs_message_and_error(
        self, asgi_send: Any, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        mock_logger = MagicMock()
        monkeypatch.setattr("passthru.proxy.relay.logger", mock_logger)
        handler = make_error_handler(RelayTarget(asgi_send), "Custom failure:")

        await handler.handle(ConnectionResetError("peer reset"))

        mock_logger.error.assert_called_once()
        args, kwargs = mock_logger.error.call_args
        assert args[0] == "Custom failure:"
        assert kwargs["error"] == "peer reset"
        assert kwargs["error_type"] == "ConnectionResetError"

    @pytest.mark.asyncio
    async def test_double_invocation_finalizes_once(self, asgi_send: Any) -> None:
        target = RelayTarget(asgi_send)
        handler = make_error_handler(target)

        await handler.handle(RuntimeError("first"))
        await handler.handle(RuntimeError("second"))

        assert len(asgi_send.final_messages) == 1
        assert target.status_code == 500

    @pytest.mark.asyncio
    async def test_after_natural_end_is_harmless(self, asgi_send: Any) -> None:
        target = RelayTarget(asgi_send)
        await target.end()

        await make_error_handler(target).handle(RuntimeError("late"))

        assert asgi_send.status == 200
        assert len(asgi_send.final_messages) == 1
