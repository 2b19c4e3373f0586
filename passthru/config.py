"""Config loading for passthru.

Reads `.passthru/config.yaml` (or `~/.passthru/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field or invalid values.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided: for testing or explicit override)
  2. PASSTHRU_CONFIG environment variable (if set)
  3. `.passthru/config.yaml` (working directory: for development)
  4. `~/.passthru/config.yaml` (home directory: for deployments)

Environment variable overrides:
  PASSTHRU_PORT     overrides proxy.port
  PASSTHRU_UPSTREAM overrides upstream.base_url
  PASSTHRU_CONFIG   sets an explicit config file path to try first
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional

import yaml

from passthru.constants import (
    DEFAULT_FOLLOW_REDIRECTS,
    DEFAULT_STREAM_ERROR_MESSAGE,
    DEFAULT_STREAM_ERROR_STATUS,
    DEFAULT_UPSTREAM_BASE_URL,
    DEFAULT_UPSTREAM_TIMEOUT_S,
)
from passthru.proxy.headers import REQUEST_HEADERS_BLOCKLIST, HeaderPolicy
from passthru.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

DEFAULT_CONFIG_PATHS = [
    ".passthru/config.yaml",
    os.path.expanduser("~/.passthru/config.yaml"),
]


def _fail(msg: str) -> NoReturn:
    print(msg, file=sys.stderr)
    raise SystemExit(1)


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class UpstreamConfig:
    """Where and how requests are forwarded.

    base_url:         Prefix joined with the inbound path and query.
    timeout_s:        httpx timeout for connect, read, write and pool.
    follow_redirects: Resolve upstream 3xx before relaying.
    """

    base_url: str = DEFAULT_UPSTREAM_BASE_URL
    timeout_s: float = DEFAULT_UPSTREAM_TIMEOUT_S
    follow_redirects: bool = DEFAULT_FOLLOW_REDIRECTS


@dataclass
class ProxyConfig:
    """Listener binding configuration."""

    host: str = "127.0.0.1"
    port: int = 4343


@dataclass
class HeadersConfig:
    """Header policy configuration.

    blocklist:     Replaces the default blocklist entirely when set.
    extra_blocked: Appended to whichever blocklist is in effect.
    """

    blocklist: Optional[list[str]] = None
    extra_blocked: list[str] = field(default_factory=list)


@dataclass
class ErrorsConfig:
    """Error handler settings used when a body stream fails."""

    stream_error_message: str = DEFAULT_STREAM_ERROR_MESSAGE
    stream_error_status: int = DEFAULT_STREAM_ERROR_STATUS


@dataclass
class Config:
    """Root configuration object populated from .passthru/config.yaml.

    All fields have safe defaults; passthru can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)
    proxy: ProxyConfig = field(default_factory=ProxyConfig)
    headers: HeadersConfig = field(default_factory=HeadersConfig)
    errors: ErrorsConfig = field(default_factory=ErrorsConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        """Return a fully-default Config (no file required)."""
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On a non-numeric timeout, an invalid port, a non-list
                           header list or an out-of-range status.
        """
        # ── Upstream ──────────────────────────────────────────────────────────
        upstream_raw = raw.get("upstream") or {}
        timeout_s = upstream_raw.get("timeout_s", DEFAULT_UPSTREAM_TIMEOUT_S)
        if (
            not isinstance(timeout_s, (int, float))
            or isinstance(timeout_s, bool)
            or timeout_s <= 0
        ):
            _fail(
                f"CONFIG ERROR: Invalid upstream.timeout_s: {timeout_s!r}. "
                "Must be a positive number of seconds."
            )
        upstream = UpstreamConfig(
            base_url=str(upstream_raw.get("base_url", DEFAULT_UPSTREAM_BASE_URL)),
            timeout_s=float(timeout_s),
            follow_redirects=bool(
                upstream_raw.get("follow_redirects", DEFAULT_FOLLOW_REDIRECTS)
            ),
        )

        # ── Proxy ─────────────────────────────────────────────────────────────
        proxy_raw = raw.get("proxy") or {}
        port = proxy_raw.get("port", 4343)
        if not _is_port(port):
            _fail(
                f"CONFIG ERROR: Invalid proxy.port: {port!r}. "
                "Must be an integer between 1 and 65535."
            )
        proxy = ProxyConfig(
            host=str(proxy_raw.get("host", "127.0.0.1")),
            port=port,
        )

        # ── Headers ───────────────────────────────────────────────────────────
        headers_raw = raw.get("headers") or {}
        blocklist = headers_raw.get("blocklist")
        extra_blocked = headers_raw.get("extra_blocked", [])
        for key, value in (("headers.blocklist", blocklist), ("headers.extra_blocked", extra_blocked)):
            if value is not None and not _is_name_list(value):
                _fail(
                    f"CONFIG ERROR: {key} must be a list of header names, "
                    f"got {type(value).__name__}."
                )
        headers = HeadersConfig(
            blocklist=list(blocklist) if blocklist is not None else None,
            extra_blocked=list(extra_blocked or []),
        )

        # ── Errors ────────────────────────────────────────────────────────────
        errors_raw = raw.get("errors") or {}
        status = errors_raw.get("stream_error_status", DEFAULT_STREAM_ERROR_STATUS)
        if not isinstance(status, int) or isinstance(status, bool) or not 100 <= status <= 599:
            _fail(
                f"CONFIG ERROR: Invalid errors.stream_error_status: {status!r}. "
                "Must be an HTTP status code between 100 and 599."
            )
        errors = ErrorsConfig(
            stream_error_message=str(
                errors_raw.get("stream_error_message", DEFAULT_STREAM_ERROR_MESSAGE)
            ),
            stream_error_status=status,
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            upstream=upstream,
            proxy=proxy,
            headers=headers,
            errors=errors,
            path=path,
        )

    def header_policy(self) -> HeaderPolicy:
        """Build the process-wide HeaderPolicy from the headers section."""
        base = (
            self.headers.blocklist
            if self.headers.blocklist is not None
            else REQUEST_HEADERS_BLOCKLIST
        )
        return HeaderPolicy(tuple(base)).extend(self.headers.extra_blocked)


def _is_name_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def _is_port(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= 65535


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate passthru configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes error to stderr and raises SystemExit(1).

    Env var overrides are applied afterwards regardless of whether a config
    file was found.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, invalid values, or invalid ``PASSTHRU_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("PASSTHRU_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    if found_path is None:
        logger.info("No config file found, using defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    logger.info("Loading config", path=found_path)

    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _fail(
            f"CONFIG ERROR: Failed to parse {found_path}: {exc}\n"
            "passthru refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _fail(f"CONFIG ERROR: Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _fail(
                f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _fail(
            f"CONFIG ERROR: {found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    version = raw.get("version")
    if version is None:
        _fail(
            f"CONFIG ERROR: {found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )

    if version not in SUPPORTED_VERSIONS:
        _fail(
            f"CONFIG ERROR: Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.proxy.host == "0.0.0.0":
        logger.warning(
            "passthru is configured to bind on 0.0.0.0 (all interfaces). "
            "Recommended: use proxy.host: '127.0.0.1' behind a front proxy."
        )

    logger.info(
        "Config loaded",
        path=found_path,
        version=config.version,
        upstream=config.upstream.base_url,
        blocked_headers=len(config.header_policy()),
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Raises:
        SystemExit(1): If PASSTHRU_PORT is set but not a valid integer.
    """
    env_port = os.environ.get("PASSTHRU_PORT")
    if env_port is not None:
        try:
            port = int(env_port)
        except ValueError:
            port = None
        if not _is_port(port):
            _fail(
                "CONFIG ERROR: PASSTHRU_PORT environment variable is not a valid "
                f"port number: '{env_port}'"
            )
        config.proxy.port = port

    env_upstream = os.environ.get("PASSTHRU_UPSTREAM")
    if env_upstream:
        config.upstream.base_url = env_upstream
