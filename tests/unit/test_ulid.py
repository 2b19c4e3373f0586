"""Unit tests for request id generation (passthru/utils/ulid.py)."""

from __future__ import annotations

import re
import threading
import time

from passthru.utils.ulid import generate_ulid

# Crockford Base32 charset: 0-9 and A-Z, excluding I, L, O, U
ULID_CHARSET = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")


def test_generate_ulid_format() -> None:
    result = generate_ulid()
    assert isinstance(result, str)
    assert ULID_CHARSET.match(result), f"{result!r} is not a 26-char Crockford ULID"


def test_generate_ulid_unique_1000() -> None:
    ulids = [generate_ulid() for _ in range(1000)]
    assert len(set(ulids)) == 1000


def test_generate_ulid_sorts_by_time() -> None:
    """The timestamp prefix makes later ids sort after earlier ones."""
    first_batch = [generate_ulid() for _ in range(10)]
    time.sleep(0.002)
    second_batch = [generate_ulid() for _ in range(10)]
    assert all(b > a for a in first_batch for b in second_batch)


def test_generate_ulid_thread_safe() -> None:
    results: list[str] = []
    lock = threading.Lock()

    def worker() -> None:
        ulids = [generate_ulid() for _ in range(50)]
        with lock:
            results.extend(ulids)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(set(results)) == 500


def test_generate_ulid_valid_as_header_value() -> None:
    """X-Passthru-Request-ID is set verbatim, so the id must be plain printable ASCII."""
    ulid = generate_ulid()
    assert all(0x20 <= ord(c) <= 0x7E for c in ulid)
    assert not set("\r\n\x00:") & set(ulid)
