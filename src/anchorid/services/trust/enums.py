"""Enumerations describing severities, event kinds and outcomes for the trust plane."""
from __future__ import annotations

from enum import Enum

__all__ = [
    "AdminRole",
    "EventKind",
    "Outcome",
    "Severity",
]


class _StrEnum(str, Enum):
    """Simple ``str``-backed enum compatible with Python 3.10."""

    def __str__(self) -> str:  # pragma: no cover - convenience for logging only
        return str(self.value)


class Severity(_StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Outcome(_StrEnum):
    SUCCESS = "success"
    AUTH_FAILURE = "auth_failure"
    POLICY_VIOLATION = "policy_violation"

    @property
    def is_failure(self) -> bool:
        return self is not Outcome.SUCCESS


class AdminRole(_StrEnum):
    ADMIN = "admin"


class EventKind(_StrEnum):
    PROFILE_BOUND = "profile_bound"
    REVOKED_DEVICE_ACCESS = "revoked_device_access"
    SUSPICIOUS_DEVICE = "suspicious_device"
    SUSPICIOUS_CLEARED = "suspicious_cleared"
    DEVICE_REVOKED = "device_revoked"
    DEVICE_RESTORED = "device_restored"
    RATE_LIMITED = "rate_limited"
    PIN_ISSUED = "pin_issued"
    PIN_REVOKED = "pin_revoked"
    PIN_REDEEM_FAILED = "pin_redeem_failed"
    DEVICE_LINKED = "device_linked"
    ADMIN_GRANTED = "admin_granted"
    ADMIN_GRANT_REFRESHED = "admin_grant_refreshed"
    ADMIN_CAPACITY_EXCEEDED = "admin_capacity_exceeded"
    ADMIN_REVOKED = "admin_revoked"
    ADMIN_ACTION_DENIED = "admin_action_denied"
    ADMIN_BOOTSTRAPPED = "admin_bootstrapped"
    ADMIN_BOOTSTRAP_REFUSED = "admin_bootstrap_refused"
    CONTENT_FLAGGED = "content_flagged"
