"""calhub configuration loading and validation.

Reads ``calhub.toml``, resolves ``${VAR}`` environment references, and returns
a validated ``CalhubConfig`` dataclass.  Every section is optional; database
connection fields default to ``DATABASE_URL`` / ``POSTGRES_*``.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from croniter import croniter

from calhub.db import db_params_from_env
from calhub.providers import ProviderSettings
from calhub.providers.oauth import OAuthClientCredentials, TokenStore
from calhub.scheduler import DEFAULT_SYNC_CRON

CONFIG_FILE_NAME = "calhub.toml"
CONFIG_PATH_ENV = "CALHUB_CONFIG"
DEFAULT_DB_NAME = "calhub"

# Pattern matching ${VAR_NAME}, alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when calhub configuration is missing, malformed, or invalid."""


@dataclass
class DatabaseConfig:
    """Connection settings from the [database] section."""

    name: str = DEFAULT_DB_NAME
    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    ssl: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Scheduling and provider tuning from the [sync] section."""

    cron: str = DEFAULT_SYNC_CRON
    run_on_startup: bool = True
    full_sync_window_days: int = 365
    fetch_horizon_days: int = 30
    http_timeout_seconds: float = 30.0


@dataclass
class OAuthClientConfig:
    """One ``[oauth.<provider>]`` section."""

    client_id: str
    client_secret: str = field(repr=False)
    tenant: str | None = None

    def credentials(self) -> OAuthClientCredentials:
        return OAuthClientCredentials(client_id=self.client_id, client_secret=self.client_secret)


@dataclass
class CalhubConfig:
    """Parsed and validated calhub configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    google: OAuthClientConfig | None = None
    microsoft: OAuthClientConfig | None = None
    source_path: Path | None = None

    def provider_settings(self, *, token_store: TokenStore | None) -> ProviderSettings:
        return ProviderSettings(
            google_client=self.google.credentials() if self.google else None,
            microsoft_client=self.microsoft.credentials() if self.microsoft else None,
            microsoft_tenant=self.microsoft.tenant if self.microsoft else None,
            token_store=token_store,
            http_timeout_seconds=self.sync.http_timeout_seconds,
            full_sync_window_days=self.sync.full_sync_window_days,
            fetch_horizon_days=self.sync.fetch_horizon_days,
        )


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
    """Replace all ``${VAR_NAME}`` occurrences in *s*, reporting every missing name at once."""
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
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )
    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, path: str) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{path}.{key} must be a positive integer")
    return value


def _parse_database(section: dict[str, Any]) -> DatabaseConfig:
    env = db_params_from_env()
    name = str(section.get("name", DEFAULT_DB_NAME)).strip()
    if not name:
        raise ConfigError("database.name must be a non-empty string")
    port = section.get("port", env["port"])
    try:
        port = int(port)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"database.port must be an integer, got {port!r}") from exc
    ssl = section.get("ssl", env["ssl"])
    min_pool = _positive_int(section, "min_pool_size", 2, "database")
    max_pool = _positive_int(section, "max_pool_size", 10, "database")
    if min_pool > max_pool:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    return DatabaseConfig(
        name=name,
        host=str(section.get("host", env["host"])),
        port=port,
        user=str(section.get("user", env["user"])),
        password=str(section.get("password", env["password"])),
        ssl=str(ssl) if ssl else None,
        min_pool_size=min_pool,
        max_pool_size=max_pool,
    )


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Must be 'text' or 'json'.")
    log_root = section.get("log_root")
    if log_root is not None and not isinstance(log_root, str):
        raise ConfigError("logging.log_root must be a string when set")
    return LoggingConfig(level=level, format=fmt, log_root=log_root)


def _parse_sync(section: dict[str, Any]) -> SyncConfig:
    cron = section.get("cron", DEFAULT_SYNC_CRON)
    if not isinstance(cron, str) or not croniter.is_valid(cron):
        raise ConfigError(f"Invalid sync.cron expression: {cron!r}")
    run_on_startup = section.get("run_on_startup", True)
    if not isinstance(run_on_startup, bool):
        raise ConfigError("sync.run_on_startup must be a boolean")
    timeout = section.get("http_timeout_seconds", 30.0)
    if isinstance(timeout, bool) or not isinstance(timeout, int | float) or timeout <= 0:
        raise ConfigError("sync.http_timeout_seconds must be a positive number")
    return SyncConfig(
        cron=cron,
        run_on_startup=run_on_startup,
        full_sync_window_days=_positive_int(section, "full_sync_window_days", 365, "sync"),
        fetch_horizon_days=_positive_int(section, "fetch_horizon_days", 30, "sync"),
        http_timeout_seconds=float(timeout),
    )


def _parse_oauth_client(oauth: dict[str, Any], provider: str) -> OAuthClientConfig | None:
    section = oauth.get(provider)
    if section is None:
        return None
    if not isinstance(section, dict):
        raise ConfigError(f"[oauth.{provider}] must be a TOML table")
    client_id = section.get("client_id")
    client_secret = section.get("client_secret")
    for key, value in (("client_id", client_id), ("client_secret", client_secret)):
        if not isinstance(value, str) or not value.strip():
            raise ConfigError(f"oauth.{provider}.{key} must be a non-empty string")
    tenant = section.get("tenant")
    if tenant is not None and (provider != "microsoft" or not isinstance(tenant, str)):
        raise ConfigError(f"oauth.{provider}.tenant is only valid as a string for microsoft")
    return OAuthClientConfig(
        client_id=client_id.strip(),
        client_secret=client_secret.strip(),
        tenant=tenant.strip() if tenant else None,
    )


def parse_config(data: dict[str, Any], *, source_path: Path | None = None) -> CalhubConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    oauth = _section(data, "oauth")
    return CalhubConfig(
        database=_parse_database(_section(data, "database")),
        logging=_parse_logging(_section(data, "logging")),
        sync=_parse_sync(_section(data, "sync")),
        google=_parse_oauth_client(oauth, "google"),
        microsoft=_parse_oauth_client(oauth, "microsoft"),
        source_path=source_path,
    )


def load_config(path: Path | str | None = None) -> CalhubConfig:
    """Load ``calhub.toml``.

    Parameters
    ----------
    path:
        A config file, or a directory containing ``calhub.toml``.  When
        omitted, ``$CALHUB_CONFIG`` and then ``./calhub.toml`` are tried; if
        neither exists, defaults are returned.

    Raises
    ------
    ConfigError
        If an explicitly named file is missing, contains invalid TOML, or
        fails validation.
    """
    explicit = path is not None or CONFIG_PATH_ENV in os.environ
    candidate = Path(path or os.environ.get(CONFIG_PATH_ENV) or CONFIG_FILE_NAME)
    if candidate.is_dir():
        candidate = candidate / CONFIG_FILE_NAME

    if not candidate.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {candidate}")
        return parse_config({})

    try:
        data = tomllib.loads(candidate.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {candidate}: {exc}") from exc
    except UnicodeDecodeError as exc:
        raise ConfigError(f"Config file is not valid UTF-8: {candidate}") from exc
    return parse_config(data, source_path=candidate)
