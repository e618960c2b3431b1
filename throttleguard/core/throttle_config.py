"""Throttle configuration loaded from YAML.

The file carries a single top-level ``throttle`` mapping::

    throttle:
      enabled: true
      limit: 10
      period: 60
      protected_paths:
        - /signin                       # POST only
        - path: /password_resets
          methods: [POST, PATCH]
      discriminators:
        - name: ip
          property:
            - [ip]
      params_discriminators:
        - name: email
          property:
            - paths: [/signin]
              property: [session, email]
      trusted_ips: [127.0.0.1]
      tracks_log_level: info
      safelist_log_level: debug

By default the packaged ``throttle_default.yml`` is used; set
``THROTTLE_CONFIG`` to point at another file.
"""

from __future__ import annotations

import ipaddress
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from throttleguard.core.config import settings
from throttleguard.core.errors import ConfigurationAppError
from throttleguard.core.logging import resolve_log_level

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "throttle_default.yml"

# Methods applied to protected paths given as a bare string
DEFAULT_PROTECTED_METHODS = ["POST"]


class CacheConfig(BaseModel):
    """Storage construction settings: ``class(*params, **named_params)``."""

    class_name: str = Field(..., alias="class", min_length=1)
    params: list[Any] = Field(default_factory=list)
    named_params: dict[str, Any] = Field(default_factory=dict)

    model_config = {"populate_by_name": True}

    @field_validator("params", "named_params", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any, info) -> Any:
        if value is None:
            return [] if info.field_name == "params" else {}
        return value


class ProtectedPath(BaseModel):
    """A path and the HTTP methods that are rate limited on it."""

    path: str
    methods: list[str] = Field(default_factory=lambda: list(DEFAULT_PROTECTED_METHODS))

    @field_validator("methods")
    @classmethod
    def _upper_methods(cls, value: list[str]) -> list[str]:
        return [method.upper() for method in value]


class ConditionalProperty(BaseModel):
    """A property path that only applies to requests on the given paths."""

    paths: list[str]
    property: list[str]


PropertyCandidate = list[str] | ConditionalProperty


class DiscriminatorConfig(BaseModel):
    """Named discriminator with its ordered property candidates."""

    name: str = Field(..., min_length=1)
    property: list[PropertyCandidate]

    @field_validator("property", mode="before")
    @classmethod
    def _wrap_flat_property(cls, value: Any) -> Any:
        # `property: [ip]` is shorthand for a single unconditional path.
        if isinstance(value, str):
            return [[value]]
        if isinstance(value, list) and value and all(isinstance(v, str) for v in value):
            return [value]
        return value


class ThrottleConfig(BaseModel):
    """Typed view of the ``throttle`` mapping."""

    enabled: bool = True
    block: bool = False
    strategy: str = "fixed-window"
    cache: CacheConfig | None = None
    discriminators: list[DiscriminatorConfig] = Field(default_factory=list)
    params_discriminators: list[DiscriminatorConfig] = Field(default_factory=list)
    limit: int | None = Field(None, ge=1)
    period: int | None = Field(None, ge=1)
    protected_paths: list[str | ProtectedPath] = Field(default_factory=list)
    trusted_ips: list[str] = Field(default_factory=list)
    tracks_log_level: str | None = None
    safelist_log_level: str | None = None

    @field_validator(
        "discriminators",
        "params_discriminators",
        "protected_paths",
        "trusted_ips",
        mode="before",
    )
    @classmethod
    def _none_to_list(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("trusted_ips")
    @classmethod
    def _validate_ips(cls, value: list[str]) -> list[str]:
        for entry in value:
            ipaddress.ip_network(str(entry), strict=False)
        return [str(entry) for entry in value]

    @field_validator("tracks_log_level", "safelist_log_level")
    @classmethod
    def _validate_level(cls, value: str | None) -> str | None:
        resolve_log_level(value)
        return value

    @model_validator(mode="after")
    def _require_window(self) -> "ThrottleConfig":
        if self.discriminators or self.params_discriminators:
            if self.limit is None or self.period is None:
                raise ValueError("limit and period are required when discriminators are configured")
        return self

    @model_validator(mode="after")
    def _unique_discriminator_names(self) -> "ThrottleConfig":
        # names become rule names and counter keys
        seen: set[str] = set()
        for discriminator in [*self.discriminators, *self.params_discriminators]:
            if discriminator.name in seen:
                raise ValueError(f"duplicate discriminator name: {discriminator.name!r}")
            seen.add(discriminator.name)
        return self

    def normalized_protected_paths(self, url_root: str = "") -> list[ProtectedPath]:
        """Protected paths prefixed with the mount point, with explicit methods.

        Args:
            url_root: Relative URL root the application is served under.

        Returns:
            One ProtectedPath per configured entry; bare strings get POST.
        """
        normalized = []
        for entry in self.protected_paths:
            if isinstance(entry, str):
                normalized.append(
                    ProtectedPath(path=url_root + entry, methods=list(DEFAULT_PROTECTED_METHODS))
                )
            else:
                normalized.append(ProtectedPath(path=url_root + entry.path, methods=entry.methods))
        return normalized

    @property
    def tracks_level(self) -> int | None:
        return resolve_log_level(self.tracks_log_level)

    @property
    def safelist_level(self) -> int | None:
        return resolve_log_level(self.safelist_log_level)


def resolve_config_path(override: str | None = None) -> Path:
    """Pick the throttle YAML file.

    Args:
        override: Explicit path; falls back to THROTTLE_CONFIG then the default.

    Returns:
        Path to the YAML file to load.
    """
    custom = override or settings.app.throttle_config
    return Path(custom) if custom else DEFAULT_CONFIG_PATH


def parse_throttle_config(document: Any, source: str = "<string>") -> ThrottleConfig:
    """Validate a parsed YAML document into a ThrottleConfig.

    Raises:
        ConfigurationAppError: If the document has no valid ``throttle`` mapping.
    """
    if not isinstance(document, dict) or not isinstance(document.get("throttle"), dict):
        raise ConfigurationAppError(
            code="throttle_config_missing_section",
            message="Throttle config must contain a top-level 'throttle' mapping",
            details={"path": source},
        )

    try:
        return ThrottleConfig.model_validate(document["throttle"])
    except ValidationError as exc:
        raise ConfigurationAppError(
            code="throttle_config_invalid",
            message=f"Invalid throttle config: {exc.error_count()} error(s)",
            details={
                "path": source,
                "context": {
                    "errors": exc.errors(
                        include_url=False, include_context=False, include_input=False
                    )
                },
            },
        ) from exc


def load_throttle_config(path: str | Path | None = None) -> ThrottleConfig:
    """Read and validate the throttle YAML file.

    Args:
        path: Optional explicit path; see resolve_config_path().

    Returns:
        Validated ThrottleConfig.

    Raises:
        ConfigurationAppError: If the file is missing, unreadable or invalid.
    """
    config_path = resolve_config_path(str(path) if path else None)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise ConfigurationAppError(
            code="throttle_config_not_found",
            message=f"Throttle config file not found: {config_path}",
            details={"path": str(config_path)},
        ) from exc
    except yaml.YAMLError as exc:
        raise ConfigurationAppError(
            code="throttle_config_malformed",
            message=f"Throttle config is not valid YAML: {config_path}",
            details={"path": str(config_path)},
        ) from exc

    config = parse_throttle_config(document, source=str(config_path))
    logger.debug(
        "throttle.config_loaded",
        extra={
            "path": str(config_path),
            "enabled": config.enabled,
            "protected_paths": len(config.protected_paths),
            "rules": len(config.discriminators) + len(config.params_discriminators),
        },
    )
    return config
