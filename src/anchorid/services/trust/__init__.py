"""Device-anchored identity and security control plane."""
from .ids import (
    DeviceToken,
    EventId,
    PinId,
    ProfileId,
    generate_event_id,
    generate_pin_id,
    generate_profile_id,
    normalize_device_token,
    uuid7,
)
from .enums import AdminRole, EventKind, Outcome, Severity
from .errors import (
    AdminCapacityExceeded,
    AlreadyGranted,
    DeviceAlreadyBound,
    DeviceRevoked,
    InvalidOrExpiredPin,
    NoDeviceIdentity,
    NotAuthorized,
    PinAllocationFailed,
    ProfileRequired,
    RateLimited,
    StoreUnavailable,
    TrustError,
    UnknownDevice,
    UnknownProfile,
)
from .models import (
    AdminGrant,
    Device,
    IdentityContext,
    IssuedPin,
    LinkPin,
    ModerationVerdict,
    Profile,
    SecurityEvent,
    SecuritySummary,
)
from .schemas import AuditExport, ErrorEnvelope
from .settings import ConfigError, TrustSettings, load_settings
from .service import TrustControlPlane

__all__ = [
    "DeviceToken",
    "EventId",
    "PinId",
    "ProfileId",
    "generate_event_id",
    "generate_pin_id",
    "generate_profile_id",
    "normalize_device_token",
    "uuid7",
    "AdminRole",
    "EventKind",
    "Outcome",
    "Severity",
    "AdminCapacityExceeded",
    "AlreadyGranted",
    "DeviceAlreadyBound",
    "DeviceRevoked",
    "InvalidOrExpiredPin",
    "NoDeviceIdentity",
    "NotAuthorized",
    "PinAllocationFailed",
    "ProfileRequired",
    "RateLimited",
    "StoreUnavailable",
    "TrustError",
    "UnknownDevice",
    "UnknownProfile",
    "AdminGrant",
    "Device",
    "IdentityContext",
    "IssuedPin",
    "LinkPin",
    "ModerationVerdict",
    "Profile",
    "SecurityEvent",
    "SecuritySummary",
    "AuditExport",
    "ErrorEnvelope",
    "ConfigError",
    "TrustSettings",
    "load_settings",
    "TrustControlPlane",
]
