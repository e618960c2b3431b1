"""Throttle rules built from the YAML configuration.

Each configured discriminator becomes a track rule named
``protected_paths/<name>``. A rule only applies to protected paths and only
when its discriminator resolves to a value; hits are counted per
(rule, value) by the rate limiter. Requests from trusted IPs skip every rule.

Rules over the limit are reported as matches and logged at
``tracks_log_level``. They are turned into 429 responses only when the
config sets ``block: true``.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import re
from dataclasses import dataclass, field, fields
from typing import Any, Iterable, Mapping, Sequence
from urllib.parse import parse_qsl

from fastapi import Request

from throttleguard.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from throttleguard.adapters.rate_limit.factory import create_cache_store, create_rate_limiter
from throttleguard.core.errors import ConfigurationAppError
from throttleguard.core.throttle_config import (
    ConditionalProperty,
    PropertyCandidate,
    ProtectedPath,
    ThrottleConfig,
)

logger = logging.getLogger(__name__)

RULE_PREFIX = "protected_paths"

# Larger (or unsized) bodies are not parsed for params discriminators
MAX_PARAMS_BODY_BYTES = 64 * 1024

_BRACKET_RE = re.compile(r"\[([^\]]*)\]")


def nest_params(pairs: Iterable[tuple[str, Any]]) -> dict[str, Any]:
    """Build nested params from bracketed form keys.

    Examples:
        >>> nest_params([("session[email]", "a@b.c"), ("remember", "1")])
        {'session': {'email': 'a@b.c'}, 'remember': '1'}
        >>> nest_params([("ids[]", "1"), ("ids[]", "2")])
        {'ids': ['1', '2']}
    """
    params: dict[str, Any] = {}
    for key, value in pairs:
        head, bracket, rest = key.partition("[")
        subkeys = _BRACKET_RE.findall(bracket + rest) if bracket else []
        if not head or not subkeys:
            params[key] = value
            continue

        parts = [head, *subkeys]
        append = parts[-1] == ""
        if append:
            parts.pop()

        target = params
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child

        last = parts[-1]
        if append:
            existing = target.get(last)
            if not isinstance(existing, list):
                existing = []
                target[last] = existing
            existing.append(value)
        else:
            target[last] = value
    return params


def dig(data: Any, path: Sequence[str]) -> Any:
    """Follow path through nested mappings/lists; None when any step is missing."""
    current = data
    for part in path:
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, list) and str(part).isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
        if current is None:
            return None
    return current


def _body_within_limit(request: Request, max_body_bytes: int) -> bool:
    raw = request.headers.get("content-length")
    if raw is None or not raw.strip().isdigit():
        return False
    return int(raw) <= max_body_bytes


@dataclass
class ThrottleRequest:
    """The parts of an inbound request that throttle rules can look at."""

    ip: str | None
    path: str
    method: str
    headers: dict[str, str] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    scheme: str = "http"
    host: str | None = None

    def __post_init__(self) -> None:
        self.method = self.method.upper()
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    @property
    def user_agent(self) -> str | None:
        return self.header("user-agent")

    @property
    def referer(self) -> str | None:
        return self.header("referer")

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @classmethod
    async def from_request(
        cls,
        request: Request,
        *,
        include_body: bool = False,
        max_body_bytes: int = MAX_PARAMS_BODY_BYTES,
    ) -> "ThrottleRequest":
        """Build a ThrottleRequest from a Starlette/FastAPI request.

        Args:
            request: Incoming request.
            include_body: Also merge url-encoded form or JSON body params.
            max_body_bytes: Bodies without a Content-Length, or declaring
                more than this, are left unread.

        Returns:
            ThrottleRequest with query (and optionally body) params nested.
        """
        pairs: list[tuple[str, Any]] = list(request.query_params.multi_items())
        json_params: dict[str, Any] = {}

        if include_body and not _body_within_limit(request, max_body_bytes):
            logger.debug(
                "throttle.body_skipped",
                extra={
                    "path": request.url.path,
                    "content_length": request.headers.get("content-length"),
                    "max_body_bytes": max_body_bytes,
                },
            )
            include_body = False

        if include_body:
            content_type = request.headers.get("content-type", "").split(";")[0].strip().lower()
            if content_type == "application/x-www-form-urlencoded":
                body = await request.body()
                pairs.extend(parse_qsl(body.decode("utf-8", errors="replace"), keep_blank_values=True))
            elif content_type == "application/json":
                body = await request.body()
                try:
                    decoded = json.loads(body) if body else None
                except ValueError:
                    decoded = None
                if isinstance(decoded, dict):
                    json_params = decoded

        params = nest_params(pairs)
        params.update(json_params)

        return cls(
            ip=request.client.host if request.client else None,
            path=request.url.path,
            method=request.method,
            headers=dict(request.headers),
            params=params,
            scheme=request.url.scheme,
            host=request.url.hostname,
        )


# Names a discriminator `property` may start with.
REQUEST_ATTRIBUTES = frozenset(
    {f.name for f in fields(ThrottleRequest)} | {"user_agent", "referer", "header"}
)


@dataclass(frozen=True)
class ThrottleRule:
    """A track rule counting hits per discriminator value."""

    name: str
    property: list[PropertyCandidate]
    params: bool = False


@dataclass(frozen=True)
class RuleMatch:
    """A rule whose discriminator went over the limit."""

    rule: str
    discriminator: str
    result: RateLimitResult


@dataclass
class ThrottleDecision:
    """Outcome of evaluating the throttle rules for one request."""

    protected: bool = False
    safelisted: bool = False
    blocked: bool = False
    matches: list[RuleMatch] = field(default_factory=list)

    @property
    def retry_after(self) -> int | None:
        waits = [
            m.result.retry_after_seconds
            for m in self.matches
            if m.result.retry_after_seconds is not None
        ]
        return max(waits) if waits else None


class Throttle:
    """Evaluates safelist and track rules against requests."""

    def __init__(
        self,
        config: ThrottleConfig,
        limiter: AbstractRateLimiter | None,
        *,
        url_root: str = "",
    ) -> None:
        self.config = config
        self.url_root = url_root
        self._limiter = limiter
        self._protected_paths: list[ProtectedPath] = config.normalized_protected_paths(url_root)
        self._trusted_networks = [
            ipaddress.ip_network(entry, strict=False) for entry in config.trusted_ips
        ]
        self._tracks_level = config.tracks_level
        self._safelist_level = config.safelist_level
        self.rules = self._build_rules(config)

        if self.rules and limiter is None:
            raise ConfigurationAppError(
                code="throttle_limiter_missing",
                message="Throttle rules are configured but no rate limiter is available",
            )

    @classmethod
    def from_config(cls, config: ThrottleConfig, *, url_root: str = "") -> "Throttle":
        """Create storage and limiter from config and wrap them in a Throttle."""
        storage = create_cache_store(config.cache)
        limiter = create_rate_limiter(config, storage)
        throttle = cls(config, limiter, url_root=url_root)
        logger.info(
            "throttle.configured",
            extra={
                "enabled": config.enabled,
                "block": config.block,
                "rules": [rule.name for rule in throttle.rules],
                "protected_paths": [p.path for p in throttle.protected_paths],
                "trusted_ip_count": len(config.trusted_ips),
                "limit": config.limit,
                "period": config.period,
            },
        )
        return throttle

    @staticmethod
    def _build_rules(config: ThrottleConfig) -> list[ThrottleRule]:
        rules = []
        for discriminator in config.discriminators:
            for candidate in discriminator.property:
                attribute_path = candidate.property if isinstance(candidate, ConditionalProperty) else candidate
                if not attribute_path or attribute_path[0] not in REQUEST_ATTRIBUTES:
                    raise ConfigurationAppError(
                        code="throttle_unknown_attribute",
                        message=(
                            f"Discriminator '{discriminator.name}' uses unknown request "
                            f"attribute {attribute_path!r}"
                        ),
                        details={"rule": discriminator.name},
                    )
            rules.append(
                ThrottleRule(name=f"{RULE_PREFIX}/{discriminator.name}", property=discriminator.property)
            )
        for discriminator in config.params_discriminators:
            rules.append(
                ThrottleRule(
                    name=f"{RULE_PREFIX}/{discriminator.name}",
                    property=discriminator.property,
                    params=True,
                )
            )
        return rules

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    @property
    def protected_paths(self) -> list[ProtectedPath]:
        return list(self._protected_paths)

    @property
    def needs_params(self) -> bool:
        return any(rule.params for rule in self.rules)

    def is_protected_path(self, request: ThrottleRequest) -> bool:
        """True when the request path and method match a protected path."""
        return any(
            request.path == protected.path and request.method in protected.methods
            for protected in self._protected_paths
        )

    def is_safelisted(self, request: ThrottleRequest) -> bool:
        """True when the request IP is inside one of the trusted networks."""
        if not request.ip or not self._trusted_networks:
            return False
        try:
            address = ipaddress.ip_address(request.ip)
        except ValueError:
            return False
        return any(address in network for network in self._trusted_networks)

    def path_discriminator(
        self,
        request: ThrottleRequest,
        property: Sequence[PropertyCandidate],
        *,
        params: bool = False,
    ) -> Any:
        """Resolve a discriminator value for the request.

        The first candidate that is unconditional, or whose ``paths`` contain
        the request path, is used. With ``params`` the property path is dug
        out of the request params; otherwise its first element names a
        request attribute (called with the remaining elements if callable).

        Returns:
            The resolved value, or None when nothing applies or it is missing.
        """
        chosen: Sequence[str] | None = None
        for candidate in property:
            if isinstance(candidate, ConditionalProperty):
                if any(self.url_root + path == request.path for path in candidate.paths):
                    chosen = candidate.property
                    break
            else:
                chosen = candidate
                break

        if not chosen:
            return None
        if params:
            return dig(request.params, chosen)

        name, *args = chosen
        if name not in REQUEST_ATTRIBUTES:
            return None
        if name == "headers" and args:
            # header keys are stored lowercased
            args = [args[0].lower(), *args[1:]]
        value = getattr(request, name, None)
        if callable(value):
            return value(*args)
        return dig(value, args) if args else value

    def check(self, request: ThrottleRequest) -> ThrottleDecision:
        """Apply safelist and track rules to one request.

        Counts a hit for every applicable rule, so call once per request.
        """
        if not self.enabled:
            return ThrottleDecision()

        protected = self.is_protected_path(request)

        if self.is_safelisted(request):
            if protected:
                self._log_safelisted(request)
            return ThrottleDecision(protected=protected, safelisted=True)

        if not protected or self._limiter is None:
            return ThrottleDecision(protected=protected)

        matches = []
        for rule in self.rules:
            value = self.path_discriminator(request, rule.property, params=rule.params)
            if value is None:
                continue
            discriminator = str(value)
            result = self._limiter.consume(f"{rule.name}:{discriminator}")
            if not result.allowed:
                match = RuleMatch(rule=rule.name, discriminator=discriminator, result=result)
                matches.append(match)
                self._log_matched(request, match)

        return ThrottleDecision(
            protected=True,
            blocked=self.config.block and bool(matches),
            matches=matches,
        )

    def reset(self) -> None:
        """Clear all counters."""
        if self._limiter is not None:
            self._limiter.reset()

    def _log_safelisted(self, request: ThrottleRequest) -> None:
        if self._safelist_level is None:
            return
        logger.log(
            self._safelist_level,
            "throttle.safelisted",
            extra={"ip": request.ip, "path": request.path, "method": request.method},
        )

    def _log_matched(self, request: ThrottleRequest, match: RuleMatch) -> None:
        if self._tracks_level is None:
            return
        logger.log(
            self._tracks_level,
            "throttle.matched",
            extra={
                "rule": match.rule,
                "discriminator": match.discriminator,
                "ip": request.ip,
                "path": request.path,
                "limit": match.result.limit,
                "period": self.config.period,
            },
        )
