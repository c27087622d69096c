"""Dataclasses capturing the storage schema of the trust control plane."""
from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence

from .enums import AdminRole, EventKind, Severity
from .errors import DeviceRevoked, NoDeviceIdentity, NotAuthorized, ProfileRequired
from .ids import DeviceToken, EventId, PinId, ProfileId

__all__ = [
    "Device",
    "Profile",
    "AdminGrant",
    "LinkPin",
    "SecurityEvent",
    "IdentityContext",
    "IssuedPin",
    "SecuritySummary",
    "ModerationVerdict",
    "decode_time",
    "encode_time",
]


def encode_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def decode_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def _iso(moment: datetime | None) -> str | None:
    return encode_time(moment) if moment is not None else None


@dataclass(slots=True)
class Device:
    device_id: DeviceToken
    first_seen_at: datetime
    last_seen_at: datetime
    profile_id: ProfileId | None = None
    request_count: int = 1
    failed_auth_count: int = 0
    is_suspicious: bool = False
    is_revoked: bool = False
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    last_failed_auth_at: datetime | None = None
    user_agent: str | None = None
    ip_address: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Device":
        return cls(
            device_id=DeviceToken(row["device_id"]),
            profile_id=ProfileId(row["profile_id"]) if row["profile_id"] else None,
            first_seen_at=decode_time(row["first_seen_at"]),
            last_seen_at=decode_time(row["last_seen_at"]),
            request_count=int(row["request_count"]),
            failed_auth_count=int(row["failed_auth_count"]),
            is_suspicious=bool(row["is_suspicious"]),
            is_revoked=bool(row["is_revoked"]),
            revoked_at=decode_time(row["revoked_at"]),
            revoked_reason=row["revoked_reason"],
            last_failed_auth_at=decode_time(row["last_failed_auth_at"]),
            user_agent=row["user_agent"],
            ip_address=row["ip_address"],
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "profile_id": self.profile_id,
            "first_seen_at": _iso(self.first_seen_at),
            "last_seen_at": _iso(self.last_seen_at),
            "request_count": self.request_count,
            "failed_auth_count": self.failed_auth_count,
            "is_suspicious": self.is_suspicious,
            "is_revoked": self.is_revoked,
            "revoked_at": _iso(self.revoked_at),
            "revoked_reason": self.revoked_reason,
            "last_failed_auth_at": _iso(self.last_failed_auth_at),
        }


@dataclass(slots=True)
class Profile:
    id: ProfileId
    handle: str
    created_at: datetime
    avatar: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Profile":
        return cls(
            id=ProfileId(row["id"]),
            handle=row["handle"],
            avatar=row["avatar"],
            created_at=decode_time(row["created_at"]),
        )

    def as_dict(self) -> dict[str, Any]:
        return {"id": self.id, "handle": self.handle, "avatar": self.avatar, "created_at": _iso(self.created_at)}


@dataclass(slots=True)
class AdminGrant:
    profile_id: ProfileId
    created_at: datetime
    role: AdminRole = AdminRole.ADMIN
    granted_by_profile_id: ProfileId | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "AdminGrant":
        granted_by = row["granted_by_profile_id"]
        return cls(
            profile_id=ProfileId(row["profile_id"]),
            role=AdminRole(row["role"]),
            created_at=decode_time(row["created_at"]),
            granted_by_profile_id=ProfileId(granted_by) if granted_by else None,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "profile_id": self.profile_id,
            "role": self.role.value,
            "created_at": _iso(self.created_at),
            "granted_by_profile_id": self.granted_by_profile_id,
        }


@dataclass(slots=True)
class LinkPin:
    id: PinId
    created_by_device_id: DeviceToken
    created_by_profile_id: ProfileId
    created_at: datetime
    expires_at: datetime
    redeemed_at: datetime | None = None
    redeemed_by_device_id: DeviceToken | None = None
    is_active: bool = True
    revoked_at: datetime | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "LinkPin":
        redeemer = row["redeemed_by_device_id"]
        return cls(
            id=PinId(row["id"]),
            created_by_device_id=DeviceToken(row["created_by_device_id"]),
            created_by_profile_id=ProfileId(row["created_by_profile_id"]),
            created_at=decode_time(row["created_at"]),
            expires_at=decode_time(row["expires_at"]),
            redeemed_at=decode_time(row["redeemed_at"]),
            redeemed_by_device_id=DeviceToken(redeemer) if redeemer else None,
            is_active=bool(row["is_active"]),
            revoked_at=decode_time(row["revoked_at"]),
        )

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.redeemed_at is None and now < self.expires_at

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": _iso(self.created_at),
            "expires_at": _iso(self.expires_at),
            "redeemed_at": _iso(self.redeemed_at),
            "is_active": self.is_active,
        }


@dataclass(slots=True)
class SecurityEvent:
    id: EventId
    severity: Severity
    kind: EventKind
    created_at: datetime
    device_id: DeviceToken | None = None
    profile_id: ProfileId | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "severity": self.severity.value,
            "kind": self.kind.value,
            "device_id": self.device_id,
            "profile_id": self.profile_id,
            "created_at": _iso(self.created_at),
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True, frozen=True)
class IdentityContext:
    """The only trusted identity for the remainder of a request.

    Built once per request from the resolved device; authorization rules read
    ``is_admin`` from here instead of consulting the admin table again.
    """

    device: Device | None = None
    profile_id: ProfileId | None = None
    is_admin: bool = False

    @classmethod
    def anonymous(cls) -> "IdentityContext":
        return cls()

    @property
    def is_anonymous(self) -> bool:
        return self.device is None

    @property
    def device_id(self) -> DeviceToken | None:
        return self.device.device_id if self.device is not None else None

    @property
    def is_revoked(self) -> bool:
        return self.device is not None and self.device.is_revoked

    @property
    def is_suspicious(self) -> bool:
        return self.device is not None and self.device.is_suspicious

    def require_device(self) -> Device:
        if self.device is None:
            raise NoDeviceIdentity()
        if self.device.is_revoked:
            raise DeviceRevoked()
        return self.device

    def require_profile(self) -> ProfileId:
        self.require_device()
        if self.profile_id is None:
            raise ProfileRequired()
        return self.profile_id

    def require_admin(self) -> ProfileId:
        profile_id = self.require_profile()
        if not self.is_admin:
            raise NotAuthorized()
        return profile_id


@dataclass(slots=True)
class IssuedPin:
    pin_id: PinId
    expires_at: datetime
    pin: str = field(repr=False)

    def as_dict(self) -> dict[str, Any]:
        return {"pin_id": self.pin_id, "pin": self.pin, "expires_at": _iso(self.expires_at)}


@dataclass(slots=True)
class SecuritySummary:
    window_start: datetime
    window_end: datetime
    total: int = 0
    by_severity: dict[str, int] = field(default_factory=dict)
    by_kind: dict[str, int] = field(default_factory=dict)
    suspicious_devices: int = 0
    revoked_devices: int = 0
    dropped_events: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "window_start": _iso(self.window_start),
            "window_end": _iso(self.window_end),
            "total": self.total,
            "by_severity": dict(self.by_severity),
            "by_kind": dict(self.by_kind),
            "suspicious_devices": self.suspicious_devices,
            "revoked_devices": self.revoked_devices,
            "dropped_events": self.dropped_events,
        }


@dataclass(slots=True, frozen=True)
class ModerationVerdict:
    is_flagged: bool
    confidence: float
    issue_kinds: Sequence[str] = ()

    def __post_init__(self) -> None:
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValueError("confidence must lie within [0, 1]")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ModerationVerdict":
        return cls(
            is_flagged=bool(data.get("is_flagged", False)),
            confidence=float(data.get("confidence", 0.0)),
            issue_kinds=tuple(str(kind) for kind in data.get("issue_kinds") or ()),
        )
