"""Structured errors raised by the trust control plane."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING

from .ids import generate_event_id
from .schemas import ErrorEnvelope

if TYPE_CHECKING:
    from .models import AdminGrant

__all__ = [
    "TrustError",
    "InvalidOrExpiredPin",
    "AdminCapacityExceeded",
    "AlreadyGranted",
    "DeviceRevoked",
    "StoreUnavailable",
    "NoDeviceIdentity",
    "ProfileRequired",
    "NotAuthorized",
    "DeviceAlreadyBound",
    "RateLimited",
    "UnknownDevice",
    "UnknownProfile",
    "PinAllocationFailed",
]


class TrustError(RuntimeError):
    """Exception raised when the control plane emits a structured error."""

    code = "trust_error"
    status_code = 400
    default_message = "Request could not be completed."

    def __init__(
        self,
        message: str | None = None,
        *,
        hint: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        self.envelope = ErrorEnvelope(
            code=self.code,
            message=message or self.default_message,
            hint=hint,
            retry_after=retry_after,
            event_id=generate_event_id(),
            server_time_utc=datetime.now(tz=timezone.utc),
        )
        super().__init__(self.envelope.message)


class InvalidOrExpiredPin(TrustError):
    code = "invalid_or_expired_pin"
    status_code = 400
    default_message = "The PIN is invalid or has expired."


class AdminCapacityExceeded(TrustError):
    code = "admin_capacity_exceeded"
    status_code = 409
    default_message = "The administrator capacity has been reached."


class AlreadyGranted(TrustError):
    """Idempotent success: the target already held a grant, which was refreshed."""

    code = "already_granted"
    status_code = 200
    default_message = "The profile already holds an administrator grant."

    def __init__(self, grant: "AdminGrant") -> None:
        super().__init__()
        self.grant = grant


class DeviceRevoked(TrustError):
    code = "device_revoked"
    status_code = 403
    default_message = "This device has been revoked."


class StoreUnavailable(TrustError):
    code = "store_unavailable"
    status_code = 503
    default_message = "The identity store is temporarily unavailable."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message, retry_after=1)


class NoDeviceIdentity(TrustError):
    code = "no_device_identity"
    status_code = 401
    default_message = "A device identifier is required."
    _hint = "Send the X-Device-Id header."

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message, hint=self._hint)


class ProfileRequired(TrustError):
    code = "profile_required"
    status_code = 403
    default_message = "This device is not bound to a profile."


class NotAuthorized(TrustError):
    code = "not_authorized"
    status_code = 403
    default_message = "Not authorized."


class DeviceAlreadyBound(TrustError):
    code = "device_already_bound"
    status_code = 409
    default_message = "This device is already bound to a profile."


class RateLimited(TrustError):
    code = "rate_limited"
    status_code = 429
    default_message = "Request rate exceeded."

    def __init__(self, retry_after: int) -> None:
        super().__init__(retry_after=retry_after)


class UnknownDevice(TrustError):
    code = "unknown_device"
    status_code = 404
    default_message = "Unknown device."


class UnknownProfile(TrustError):
    code = "unknown_profile"
    status_code = 404
    default_message = "Unknown profile."


class PinAllocationFailed(TrustError):
    code = "pin_allocation_failed"
    status_code = 503
    default_message = "Could not allocate a PIN, try again."
