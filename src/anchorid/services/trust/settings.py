"""Configuration loading for the trust control plane.

Settings come from a YAML document (JSON works too, it is a YAML subset).  The
bundled ``config.yaml`` next to this module holds the defaults; deployments
point ``ANCHORID_CONFIG`` or ``config_path`` at their own file.  Secrets may be
supplied through ``ANCHORID_PIN_HMAC_KEY`` and ``ANCHORID_AUDIT_KEY`` instead of
the file.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

__all__ = [
    "AdminSettings",
    "ConfigError",
    "LinkSettings",
    "LoggingSettings",
    "SuspicionSettings",
    "TrustSettings",
    "load_settings",
]

CONFIG_ENV = "ANCHORID_CONFIG"
PIN_KEY_ENV = "ANCHORID_PIN_HMAC_KEY"
AUDIT_KEY_ENV = "ANCHORID_AUDIT_KEY"

MIN_PIN_LENGTH = 6
MAX_PIN_LENGTH = 12
MAX_PIN_TTL_SECONDS = 1800


class ConfigError(ValueError):
    """Raised when the configuration document is malformed."""


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"'{name}' must be a mapping")
    return value


@dataclass(slots=True, frozen=True)
class AdminSettings:
    capacity: int = 2

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "AdminSettings":
        capacity = int(data.get("capacity", 2))
        if capacity < 1:
            raise ConfigError("admin.capacity must be at least 1")
        return cls(capacity=capacity)


@dataclass(slots=True, frozen=True)
class LinkSettings:
    pin_length: int = 6
    pin_ttl_seconds: int = 600
    purge_after_seconds: int = 3600

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LinkSettings":
        length = int(data.get("pin_length", 6))
        ttl = int(data.get("pin_ttl_seconds", 600))
        purge = int(data.get("purge_after_seconds", 3600))
        if not MIN_PIN_LENGTH <= length <= MAX_PIN_LENGTH:
            raise ConfigError(f"link.pin_length must be between {MIN_PIN_LENGTH} and {MAX_PIN_LENGTH}")
        if not 1 <= ttl <= MAX_PIN_TTL_SECONDS:
            raise ConfigError(f"link.pin_ttl_seconds must be between 1 and {MAX_PIN_TTL_SECONDS}")
        if purge < 0:
            raise ConfigError("link.purge_after_seconds must not be negative")
        return cls(pin_length=length, pin_ttl_seconds=ttl, purge_after_seconds=purge)


@dataclass(slots=True, frozen=True)
class SuspicionSettings:
    failure_threshold: int = 10
    window_seconds: int = 3600
    request_threshold: int = 1000

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SuspicionSettings":
        threshold = int(data.get("failure_threshold", 10))
        window = int(data.get("window_seconds", 3600))
        requests = int(data.get("request_threshold", 1000))
        if threshold < 1:
            raise ConfigError("suspicion.failure_threshold must be at least 1")
        if window < 1:
            raise ConfigError("suspicion.window_seconds must be at least 1")
        if requests < 0:
            raise ConfigError("suspicion.request_threshold must not be negative")
        return cls(failure_threshold=threshold, window_seconds=window, request_threshold=requests)


@dataclass(slots=True, frozen=True)
class LoggingSettings:
    level: str = "INFO"
    file: str | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LoggingSettings":
        level = str(data.get("level", "INFO")).upper()
        log_file = data.get("file")
        return cls(level=level, file=str(log_file) if log_file else None)


@dataclass(slots=True, frozen=True)
class TrustSettings:
    database_path: str = "anchorid.sqlite"
    pin_hmac_key: bytes = b""
    hmac_audit_key: bytes = b""
    admin: AdminSettings = field(default_factory=AdminSettings)
    link: LinkSettings = field(default_factory=LinkSettings)
    suspicion: SuspicionSettings = field(default_factory=SuspicionSettings)
    rate_limit_window: int = 60
    rate_limits: Mapping[str, int] = field(default_factory=dict)
    max_token_length: int = 128
    moderation_high_confidence: float = 0.85
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "TrustSettings":
        data = data or {}
        if not isinstance(data, Mapping):
            raise ConfigError("configuration root must be a mapping")
        pin_key = os.environ.get(PIN_KEY_ENV) or data.get("pin_hmac_key") or ""
        audit_key = os.environ.get(AUDIT_KEY_ENV) or data.get("hmac_audit_key") or ""
        if not pin_key:
            raise ConfigError("pin_hmac_key is required")
        if not audit_key:
            raise ConfigError("hmac_audit_key is required")
        limits = {str(name): int(value) for name, value in _section(data, "rate_limits").items()}
        if any(value < 0 for value in limits.values()):
            raise ConfigError("rate_limits values must not be negative")
        window = int(data.get("rate_limit_window", 60))
        if window < 1:
            raise ConfigError("rate_limit_window must be at least 1")
        registry = _section(data, "registry")
        max_token_length = int(registry.get("max_token_length", 128))
        if max_token_length < 1:
            raise ConfigError("registry.max_token_length must be at least 1")
        high_confidence = float(_section(data, "moderation").get("high_confidence", 0.85))
        if not 0.0 <= high_confidence <= 1.0:
            raise ConfigError("moderation.high_confidence must lie within [0, 1]")
        return cls(
            database_path=str(data.get("database_path", "anchorid.sqlite")),
            pin_hmac_key=str(pin_key).encode("utf-8"),
            hmac_audit_key=str(audit_key).encode("utf-8"),
            admin=AdminSettings.from_mapping(_section(data, "admin")),
            link=LinkSettings.from_mapping(_section(data, "link")),
            suspicion=SuspicionSettings.from_mapping(_section(data, "suspicion")),
            rate_limit_window=window,
            rate_limits=limits,
            max_token_length=max_token_length,
            moderation_high_confidence=high_confidence,
            logging=LoggingSettings.from_mapping(_section(data, "logging")),
        )

    def rate_limit(self, category: str) -> int:
        return int(self.rate_limits.get(category, 0))


def load_settings(config_path: str | Path | None = None) -> TrustSettings:
    if config_path is None:
        config_path = os.environ.get(CONFIG_ENV) or None
    path = Path(config_path) if config_path else Path(__file__).with_name("config.yaml")
    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ConfigError(f"cannot parse {path}: {exc}") from exc
    return TrustSettings.from_mapping(data)
