"""Root test configuration for passthru.

Clears the PASSTHRU_* environment overrides for every test so a developer's
shell cannot change config defaults under the suite, and provides an
in-memory ASGI ``send`` recorder for driving RelayTarget directly.
"""

from __future__ import annotations

from typing import Any, Optional

import pytest


@pytest.fixture(autouse=True)
def clear_passthru_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("PASSTHRU_CONFIG", "PASSTHRU_PORT", "PASSTHRU_UPSTREAM"):
        monkeypatch.delenv(name, raising=False)


class RecordingSend:
    """ASGI ``send`` callable that records every message it receives.

    ``fail_after`` makes the N+1th call raise ``fail_with``, simulating a
    caller that disconnects mid-stream.
    """

    def __init__(
        self,
        fail_after: Optional[int] = None,
        fail_with: Optional[BaseException] = None,
    ) -> None:
        self.messages: list[dict[str, Any]] = []
        self._fail_after = fail_after
        self._fail_with = fail_with or OSError("client disconnected")

    async def __call__(self, message: dict[str, Any]) -> None:
        if self._fail_after is not None and len(self.messages) >= self._fail_after:
            raise self._fail_with
        self.messages.append(message)

    @property
    def start(self) -> Optional[dict[str, Any]]:
        starts = [m for m in self.messages if m["type"] == "http.response.start"]
        return starts[0] if starts else None

    @property
    def status(self) -> Optional[int]:
        return self.start["status"] if self.start else None

    @property
    def headers(self) -> list[tuple[str, str]]:
        if self.start is None:
            return []
        return [(k.decode("latin-1"), v.decode("latin-1")) for k, v in self.start["headers"]]

    @property
    def body(self) -> bytes:
        return b"".join(
            m.get("body", b"") for m in self.messages if m["type"] == "http.response.body"
        )

    @property
    def final_messages(self) -> list[dict[str, Any]]:
        return [
            m
            for m in self.messages
            if m["type"] == "http.response.body" and not m.get("more_body", False)
        ]


@pytest.fixture
def asgi_send() -> RecordingSend:
    return RecordingSend()


@pytest.fixture
def make_send() -> type[RecordingSend]:
    """Factory for RecordingSend with failure injection."""
    return RecordingSend
