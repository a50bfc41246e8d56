"""caldelta configuration loading and validation.

Reads ``caldelta.toml``, resolves ``${VAR}`` references from the environment,
parses all sections, and returns a validated ``CaldeltaConfig`` dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from caldelta.models import ProviderId, ensure_valid_timezone
from caldelta.providers.auth import OAuthCredentials

DEFAULT_CONFIG_PATH = Path("caldelta.toml")
DEFAULT_STALE_TIME_SECONDS = 60.0
DEFAULT_HTTP_TIMEOUT_SECONDS = 30.0

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when caldelta configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [caldelta.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class CacheConfig:
    """Confirmed-cache configuration from [caldelta.cache] section."""

    stale_time_seconds: float = DEFAULT_STALE_TIME_SECONDS


@dataclass
class HttpConfig:
    """Provider HTTP client configuration from [caldelta.http] section."""

    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS


@dataclass
class AccountConfig:
    """A single connected provider account from [[accounts]]."""

    id: str
    provider: ProviderId
    access_token: str | None = None
    oauth: OAuthCredentials | None = None
    provider_account_id: str | None = None


@dataclass
class CaldeltaConfig:
    """Parsed and validated caldelta configuration."""

    time_zone: str = "UTC"
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    accounts: list[AccountConfig] = field(default_factory=list)

    def account(self, account_id: str) -> AccountConfig:
        for account in self.accounts:
            if account.id == account_id:
                return account
        raise ConfigError(f"Unknown account: {account_id!r}")


def resolve_env_vars(value: Any) -> Any:
    """Substitute ``${VAR_NAME}`` references inside every string of a decoded TOML tree.

    Raises ``ConfigError`` naming every referenced variable that is unset.
    """
    if isinstance(value, dict):
        return {key: resolve_env_vars(item) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]
    if isinstance(value, str):
        return _resolve_string(value)
    return value


def _resolve_string(s: str) -> str:
    missing = [name for name in _ENV_VAR_PATTERN.findall(s) if name not in os.environ]
    if missing:
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {', '.join(missing)} "
            f"(original: {s!r})"
        )
    return _ENV_VAR_PATTERN.sub(lambda match: os.environ[match.group(1)], s)


def _parse_positive_float(section: dict, key: str, default: float, label: str) -> float:
    raw_value = section.get(key, default)
    try:
        value = float(raw_value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}: {raw_value!r}. Must be a number.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {label}: {raw_value!r}. Must be positive.")
    return value


def _parse_account(entry: Any, index: int) -> AccountConfig:
    """Parse a single [[accounts]] entry."""
    if not isinstance(entry, dict):
        raise ConfigError(f"accounts[{index}] must be a table")

    account_id = entry.get("id")
    if not isinstance(account_id, str) or not account_id.strip():
        raise ConfigError(f"accounts[{index}].id must be a non-empty string")
    account_id = account_id.strip()

    provider_raw = entry.get("provider")
    try:
        provider = ProviderId(str(provider_raw).strip().lower())
    except ValueError:
        supported = ", ".join(p.value for p in ProviderId)
        raise ConfigError(
            f"accounts[{index}].provider: unsupported provider {provider_raw!r}. "
            f"Expected one of: {supported}"
        ) from None

    access_token = entry.get("access_token")
    if access_token is not None and (not isinstance(access_token, str) or not access_token.strip()):
        raise ConfigError(f"accounts[{index}].access_token must be a non-empty string when set")

    oauth: OAuthCredentials | None = None
    oauth_section = entry.get("oauth")
    if oauth_section is not None:
        if not isinstance(oauth_section, dict):
            raise ConfigError(f"accounts[{index}].oauth must be a table")
        try:
            oauth = OAuthCredentials.model_validate(oauth_section)
        except ValidationError as exc:
            raise ConfigError(f"Invalid accounts[{index}].oauth: {exc}") from exc

    if access_token is None and oauth is None:
        raise ConfigError(
            f"Account {account_id!r} needs either access_token or an [accounts.oauth] table"
        )

    provider_account_id = entry.get("provider_account_id")
    if provider_account_id is not None and not isinstance(provider_account_id, str):
        raise ConfigError(f"accounts[{index}].provider_account_id must be a string when set")

    return AccountConfig(
        id=account_id,
        provider=provider,
        access_token=access_token.strip() if isinstance(access_token, str) else None,
        oauth=oauth,
        provider_account_id=provider_account_id,
    )


def parse_config(data: dict[str, Any]) -> CaldeltaConfig:
    """Validate an already-decoded configuration mapping."""
    data = resolve_env_vars(data)

    section = data.get("caldelta", {})
    if not isinstance(section, dict):
        raise ConfigError("[caldelta] must be a table")

    time_zone_raw = section.get("time_zone", "UTC")
    try:
        time_zone = ensure_valid_timezone(str(time_zone_raw))
    except ValueError as exc:
        raise ConfigError(f"Invalid caldelta.time_zone: {time_zone_raw!r}") from exc

    # --- [caldelta.logging] sub-section ---
    logging_section = section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid caldelta.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    # --- [caldelta.cache] / [caldelta.http] sub-sections ---
    cache_config = CacheConfig(
        stale_time_seconds=_parse_positive_float(
            section.get("cache", {}),
            "stale_time_seconds",
            DEFAULT_STALE_TIME_SECONDS,
            "caldelta.cache.stale_time_seconds",
        )
    )
    http_config = HttpConfig(
        timeout_seconds=_parse_positive_float(
            section.get("http", {}),
            "timeout_seconds",
            DEFAULT_HTTP_TIMEOUT_SECONDS,
            "caldelta.http.timeout_seconds",
        )
    )

    # --- [[accounts]] ---
    raw_accounts = data.get("accounts", [])
    if not isinstance(raw_accounts, list):
        raise ConfigError("accounts must be an array of tables ([[accounts]])")
    accounts = [_parse_account(entry, index) for index, entry in enumerate(raw_accounts)]

    seen: set[str] = set()
    for account in accounts:
        if account.id in seen:
            raise ConfigError(f"Duplicate account id: {account.id!r}")
        seen.add(account.id)

    return CaldeltaConfig(
        time_zone=time_zone,
        logging=logging_config,
        cache=cache_config,
        http=http_config,
        accounts=accounts,
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> CaldeltaConfig:
    """Load and validate a ``caldelta.toml`` file.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = Path(path)
    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
