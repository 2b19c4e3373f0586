"""Programmatic uvicorn entry point for passthru.

Reads host and port from the loaded config (127.0.0.1:4343 by default).

Usage:
    python -m passthru.run
    passthru                   # via pyproject.toml [project.scripts]
"""

from __future__ import annotations

import uvicorn

from passthru.config import load_config

# HTTP keep-alive timeout in seconds. Low value reduces the Slow Loris window.
UVICORN_TIMEOUT_KEEP_ALIVE: int = 5


def main() -> None:
    """Start the passthru server.

    Raises:
        SystemExit: Propagated from load_config() on config errors.
    """
    config = load_config()

    uvicorn.run(
        "passthru.main:app",
        host=config.proxy.host,
        port=config.proxy.port,
        timeout_keep_alive=UVICORN_TIMEOUT_KEEP_ALIVE,
    )


if __name__ == "__main__":
    main()
