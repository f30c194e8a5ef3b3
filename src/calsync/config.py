"""calsync configuration loading and validation.

Reads an optional ``calsync.toml`` and returns a validated ``CalsyncConfig``
dataclass.  Every field has a default so the service can run from the
environment alone; provider OAuth app credentials fall back to the
``GOOGLE_OAUTH_*`` / ``GITHUB_*`` environment variables.

Example ``calsync.toml``::

    [logging]
    level = "INFO"
    format = "json"

    [sync]
    lookback_days = 7
    lookahead_days = 30
    refresh_safety_margin_s = 60
    provider_timeout_s = 15

    [providers.google]
    client_id = "${GOOGLE_OAUTH_CLIENT_ID}"
    client_secret = "${GOOGLE_OAUTH_CLIENT_SECRET}"
    redirect_uri = "http://localhost:8000/api/integrations/google/callback"

    [rate_limit]
    max_requests = 10
    window_s = 60
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from calsync.models import Provider

# Pattern matching ${VAR_NAME}; alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")

CONFIG_FILE_NAME = "calsync.toml"
CONFIG_PATH_ENV = "CALSYNC_CONFIG"

_PROVIDER_ENV_VARS: dict[Provider, tuple[str, str, str]] = {
    Provider.google: (
        "GOOGLE_OAUTH_CLIENT_ID",
        "GOOGLE_OAUTH_CLIENT_SECRET",
        "GOOGLE_OAUTH_REDIRECT_URI",
    ),
    Provider.github: ("GITHUB_CLIENT_ID", "GITHUB_CLIENT_SECRET", "GITHUB_REDIRECT_URI"),
}


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_file: str | None = None


@dataclass
class SyncConfig:
    """Sync window and timing knobs from the [sync] section."""

    lookback_days: int = 7
    lookahead_days: int = 30
    refresh_safety_margin_s: float = 60.0
    provider_timeout_s: float = 15.0
    # Integrations not synced within this many hours are reported as stale.
    stale_after_hours: float = 24.0


@dataclass
class ProviderAppConfig:
    """OAuth application credentials for one provider."""

    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = ""

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def __repr__(self) -> str:
        return (
            f"ProviderAppConfig(client_id={self.client_id!r}, client_secret=<REDACTED>, "
            f"redirect_uri={self.redirect_uri!r})"
        )


@dataclass
class RateLimitConfig:
    """Fixed-window limits for the sync endpoint."""

    max_requests: int = 10
    window_s: float = 60.0


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class CalsyncConfig:
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    providers: dict[Provider, ProviderAppConfig] = field(default_factory=dict)

    def provider_app(self, provider: Provider | str) -> ProviderAppConfig:
        return self.providers.get(Provider(provider), ProviderAppConfig())


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values are returned
    unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        # The original value may itself hold a secret, so it is not echoed.
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_number(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{path}.{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{path}.{key} must be positive, got {raw!r}")
    return value


def _non_negative_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 0:
        raise ConfigError(f"{path}.{key} must be a non-negative integer, got {raw!r}")
    return raw


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    level = str(section.get("level", os.environ.get("LOG_LEVEL", "INFO"))).upper()
    fmt = str(section.get("format", os.environ.get("LOG_FORMAT", "text"))).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Must be 'text' or 'json'.")
    log_file = section.get("log_file")
    return LoggingConfig(level=level, format=fmt, log_file=str(log_file) if log_file else None)


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    margin_raw = section.get("refresh_safety_margin_s", 60.0)
    try:
        margin = float(margin_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(
            f"sync.refresh_safety_margin_s must be a number, got {margin_raw!r}"
        ) from exc
    if margin < 0:
        raise ConfigError("sync.refresh_safety_margin_s must not be negative")
    return SyncConfig(
        lookback_days=_non_negative_int(section, "lookback_days", 7, "sync"),
        lookahead_days=_non_negative_int(section, "lookahead_days", 30, "sync"),
        refresh_safety_margin_s=margin,
        provider_timeout_s=_positive_number(section, "provider_timeout_s", 15.0, "sync"),
        stale_after_hours=_positive_number(section, "stale_after_hours", 24.0, "sync"),
    )


def _parse_rate_limit(data: dict[str, Any]) -> RateLimitConfig:
    section = _section(data, "rate_limit")
    max_requests = section.get("max_requests", 10)
    if isinstance(max_requests, bool) or not isinstance(max_requests, int) or max_requests <= 0:
        raise ConfigError(
            f"rate_limit.max_requests must be a positive integer, got {max_requests!r}"
        )
    return RateLimitConfig(
        max_requests=max_requests,
        window_s=_positive_number(section, "window_s", 60.0, "rate_limit"),
    )


def _parse_server(data: dict[str, Any]) -> ServerConfig:
    section = _section(data, "server")
    port = section.get("port", 8000)
    if isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536:
        raise ConfigError(f"server.port must be a valid TCP port, got {port!r}")
    return ServerConfig(host=str(section.get("host", "127.0.0.1")), port=port)


def _parse_providers(data: dict[str, Any]) -> dict[Provider, ProviderAppConfig]:
    section = _section(data, "providers")
    unknown = set(section) - {p.value for p in Provider}
    if unknown:
        raise ConfigError(f"Unknown provider section(s): {', '.join(sorted(unknown))}")

    providers: dict[Provider, ProviderAppConfig] = {}
    for provider in Provider:
        raw = section.get(provider.value, {})
        if not isinstance(raw, dict):
            raise ConfigError(f"[providers.{provider.value}] must be a TOML table")
        id_env, secret_env, redirect_env = _PROVIDER_ENV_VARS[provider]
        providers[provider] = ProviderAppConfig(
            client_id=str(raw.get("client_id") or os.environ.get(id_env, "")).strip(),
            client_secret=str(raw.get("client_secret") or os.environ.get(secret_env, "")).strip(),
            redirect_uri=str(raw.get("redirect_uri") or os.environ.get(redirect_env, "")).strip(),
        )
    return providers


def parse_config(data: dict[str, Any]) -> CalsyncConfig:
    """Build a validated CalsyncConfig from an already-parsed TOML mapping."""
    data = resolve_env_vars(data)
    return CalsyncConfig(
        logging=_parse_logging(data),
        sync=_parse_sync(data),
        rate_limit=_parse_rate_limit(data),
        server=_parse_server(data),
        providers=_parse_providers(data),
    )


def load_config(path: Path | None = None) -> CalsyncConfig:
    """Load configuration from *path*, ``$CALSYNC_CONFIG``, or ``./calsync.toml``.

    A missing default file is not an error; the environment-only defaults
    apply.  An explicitly requested file that does not exist is.

    Raises
    ------
    ConfigError
        If the file is missing (when explicit), contains invalid TOML, or
        holds invalid values.
    """
    explicit = path is not None or bool(os.environ.get(CONFIG_PATH_ENV))
    toml_path = Path(path or os.environ.get(CONFIG_PATH_ENV) or CONFIG_FILE_NAME)

    if not toml_path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {toml_path}")
        return parse_config({})

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
