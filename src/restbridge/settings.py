"""
Configuration: a JSON file, overridden by environment variables.

Priority:
1. Environment variables (RESTBRIDGE_*)
2. Config file ($RESTBRIDGE_CONFIG or ~/.restbridge/config.json)
3. Built-in defaults

Example config.json:

    {
      "auth": {"client_id": "...", "client_secret": "..."},
      "output": {"format": "json"},
      "api": {"timeout_seconds": 30, "max_retries": 3},
      "domains": {"drive": {"write_concurrency": 2}}
    }
"""

import json
import os
from collections.abc import Mapping
from datetime import timedelta
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError, field_validator

from restbridge.auth import DEFAULT_TOKEN_URI
from restbridge.domains import Domain, DomainProfile, resolve_profiles
from restbridge.output import OutputFormat
from restbridge.retry import RetryConfig

logger = structlog.get_logger(__name__)

CONFIG_ENV_VAR = "RESTBRIDGE_CONFIG"


class ConfigError(Exception):
    """Raised when the configuration file is unreadable or invalid."""
    pass


class AuthSettings(BaseModel):
    client_id: str | None = None
    client_secret: str | None = None
    token_uri: str = DEFAULT_TOKEN_URI
    token_file: str | None = None
    refresh_margin_seconds: int = Field(default=60, ge=0)

    @property
    def refresh_margin(self) -> timedelta:
        return timedelta(seconds=self.refresh_margin_seconds)

    @property
    def can_refresh(self) -> bool:
        return bool(self.client_id and self.client_secret)


class OutputSettings(BaseModel):
    format: OutputFormat = OutputFormat.JSON
    compact: bool = False

    @field_validator("format", mode="before")
    @classmethod
    def parse_format(cls, v: Any) -> Any:
        if isinstance(v, str):
            return OutputFormat.parse(v)
        return v


RETRY_FIELDS = frozenset({"max_retries", "base_delay", "max_delay", "jitter_fraction"})


class ApiSettings(BaseModel):
    timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    base_delay: float = Field(default=0.5, gt=0)
    max_delay: float = Field(default=30.0, gt=0)
    jitter_fraction: float = Field(default=0.5, ge=0, le=1)

    def retry_override(self) -> RetryConfig | None:
        """RetryConfig for all domains, or None to keep each domain's preset."""
        if not self.model_fields_set & RETRY_FIELDS:
            return None
        return RetryConfig(
            max_attempts=self.max_retries + 1,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            jitter_fraction=self.jitter_fraction,
        )


class DomainSettings(BaseModel):
    """Per-domain overrides of the built-in profile."""
    base_url: str | None = None
    batch_url: str | None = None
    capacity: int | None = Field(default=None, ge=1)
    refill_rate: float | None = Field(default=None, gt=0)
    write_concurrency: int | None = Field(default=None, ge=1)


class Settings(BaseModel):
    auth: AuthSettings = Field(default_factory=AuthSettings)
    output: OutputSettings = Field(default_factory=OutputSettings)
    api: ApiSettings = Field(default_factory=ApiSettings)
    domains: dict[str, DomainSettings] = Field(default_factory=dict)

    @field_validator("domains")
    @classmethod
    def known_domains(cls, v: dict[str, DomainSettings]) -> dict[str, DomainSettings]:
        valid = {d.value for d in Domain}
        unknown = sorted(set(v) - valid)
        if unknown:
            raise ValueError(f"unknown domain(s): {', '.join(unknown)}")
        return v

    def profiles(self) -> dict[Domain, DomainProfile]:
        """Built-in domain profiles with this configuration's overrides applied."""
        overrides = {
            name: domain.model_dump(exclude_none=True)
            for name, domain in self.domains.items()
        }
        return resolve_profiles(overrides, retry_override=self.api.retry_override())


# ---------------------------------------------------------------------------
# Loading / saving
# ---------------------------------------------------------------------------

# env var -> (section, key, kind)
ENV_MAPPINGS = {
    "RESTBRIDGE_CLIENT_ID": ("auth", "client_id", str),
    "RESTBRIDGE_CLIENT_SECRET": ("auth", "client_secret", str),
    "RESTBRIDGE_TOKEN_URI": ("auth", "token_uri", str),
    "RESTBRIDGE_TOKEN_FILE": ("auth", "token_file", str),
    "RESTBRIDGE_OUTPUT_FORMAT": ("output", "format", str),
    "RESTBRIDGE_OUTPUT_COMPACT": ("output", "compact", bool),
    "RESTBRIDGE_API_TIMEOUT": ("api", "timeout_seconds", float),
    "RESTBRIDGE_API_MAX_RETRIES": ("api", "max_retries", int),
}

TRUE_VALUES = ("true", "1", "yes")
FALSE_VALUES = ("false", "0", "no")


def get_config_path(environ: Mapping[str, str] | None = None) -> Path:
    """Get the configuration file path."""
    environ = os.environ if environ is None else environ
    override = environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".restbridge" / "config.json"


def _convert(value: str, kind: type) -> Any:
    if kind is bool:
        lowered = value.strip().lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
        raise ValueError(f"expected one of {TRUE_VALUES + FALSE_VALUES}")
    if kind in (int, float):
        return kind(value.strip())
    return value


def apply_env_overrides(config: dict[str, Any], environ: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Layer RESTBRIDGE_* environment variables over a raw config dict."""
    environ = os.environ if environ is None else environ
    for env_var, (section, key, kind) in ENV_MAPPINGS.items():
        raw = environ.get(env_var)
        if raw is None:
            continue
        try:
            value = _convert(raw, kind)
        except ValueError as e:
            logger.warning("Ignoring invalid environment variable", env_var=env_var, error=str(e))
            continue
        section_data = config.setdefault(section, {})
        if not isinstance(section_data, dict):
            raise ConfigError(f"Config section '{section}' must be an object")
        section_data[key] = value
    return config


def load_settings(
    path: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """
    Load configuration from file, with environment variable overrides.

    Raises:
        ConfigError: unreadable file, invalid JSON, or invalid values
    """
    config_path = Path(path) if path is not None else get_config_path(environ)
    config: dict[str, Any] = {}

    if config_path.exists():
        try:
            with open(config_path) as f:
                config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to read config {config_path}: {e}") from e
        if not isinstance(config, dict):
            raise ConfigError(f"Config {config_path} must contain a JSON object")
        logger.debug("Loaded config file", path=str(config_path))

    config = apply_env_overrides(config, environ)

    try:
        return Settings.model_validate(config)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def save_settings(settings: Settings, path: str | Path | None = None) -> Path:
    """Save configuration to file, readable by the current user only."""
    config_path = Path(path) if path is not None else get_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)

    data = settings.model_dump(mode="json", exclude_unset=True)
    fd = os.open(config_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump(data, f, indent=2)

    # Secure the file (contains the client secret)
    os.chmod(config_path, 0o600)
    logger.info("Configuration saved", path=str(config_path))
    return config_path
