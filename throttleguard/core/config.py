"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

The throttle rules themselves live in a YAML file (see
``throttleguard.core.throttle_config``); this module only carries the
process-level knobs such as where that file is and which proxies to trust.
"""

from __future__ import annotations

import ipaddress
import os
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file and not os.getenv("TESTING"):
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def parse_trusted_proxies(value: str | None) -> list[str]:
    """Parse a comma-separated list of proxy addresses or networks.

    Args:
        value: Raw value, e.g. ``"10.0.0.1, 172.16.0.0/12"``.

    Returns:
        List of normalized address/network strings, in input order.

    Raises:
        ValueError: If an entry is not a valid IP address or network.

    Examples:
        >>> parse_trusted_proxies("10.0.0.1, 172.16.0.0/12")
        ['10.0.0.1/32', '172.16.0.0/12']
        >>> parse_trusted_proxies(None)
        []
    """
    if not value:
        return []

    proxies: list[str] = []
    for raw in value.split(","):
        entry = raw.strip()
        if not entry:
            continue
        proxies.append(str(ipaddress.ip_network(entry, strict=False)))
    return proxies


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Pydantic Settings (v2) can populate values from environment variables.
    However, static type checkers often treat required fields as required
    constructor arguments, which is not how BaseSettings is intended to be used.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    """Build log settings from environment.

    See _build_app_settings() for rationale.
    """

    return LogSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    relative_url_root: str = Field(
        "",
        description="Path prefix the app is mounted under (e.g. /b); prepended to protected paths",
    )
    throttle_config: str | None = Field(
        None,
        validation_alias="THROTTLE_CONFIG",
        description="Path to a custom throttle YAML file; the packaged default is used when unset",
    )
    trusted_proxies: str | None = Field(
        None,
        validation_alias="TRUSTED_PROXIES",
        description="Comma-separated reverse proxy IPs/CIDRs whose X-Forwarded-For is honored",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
        populate_by_name=True,
    )

    @field_validator("relative_url_root")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator("trusted_proxies")
    @classmethod
    def _validate_trusted_proxies(cls, value: str | None) -> str | None:
        # Fail at startup on a malformed address rather than at first request.
        parse_trusted_proxies(value)
        return value

    @property
    def trusted_proxy_list(self) -> list[str]:
        """Trusted proxies as normalized network strings."""
        return parse_trusted_proxies(self.trusted_proxies)


class LogSettings(BaseSettings):
    """Logging configuration (format, destination, correlation header)."""

    level: str = Field(
        "INFO",
        description="Root log level",
    )
    format: str = Field(
        "json",
        description="Log format: json or plain",
    )
    output: str = Field(
        "stdout",
        description="Log destination: stdout or file",
    )
    file_path: str | None = Field(
        None,
        description="Log file path when output=file",
    )
    max_bytes: int = Field(
        10_485_760,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(
        5,
        description="Number of rotated log files to keep",
        ge=0,
    )
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
