"""Identifier helpers for the trust control plane.

Security events and link PINs need orderable identifiers so that the audit
stream can be paged chronologically without a secondary sort key.  Python does
not ship a UUID version 7 generator, so a minimal one is implemented following
draft-ietf-uuidrev-rfc4122bis section 5.2: a 48-bit millisecond timestamp
followed by cryptographically secure random bits.
"""
from __future__ import annotations

import secrets
import time
import uuid
from typing import NewType

__all__ = [
    "DeviceToken",
    "ProfileId",
    "EventId",
    "PinId",
    "generate_event_id",
    "generate_pin_id",
    "generate_profile_id",
    "normalize_device_token",
    "uuid7",
]

DeviceToken = NewType("DeviceToken", str)
ProfileId = NewType("ProfileId", str)
EventId = NewType("EventId", str)
PinId = NewType("PinId", str)


_UUID7_MASK_48 = (1 << 48) - 1
_UUID7_VERSION_BITS = 0x7
_UUID7_VARIANT_BITS = 0b10


def uuid7(ts: float | None = None) -> uuid.UUID:
    """Return a UUID version 7 value.

    Args:
        ts: Optional timestamp (seconds). When omitted the current time is used.
            Supplying the timestamp is primarily intended for testing.
    """

    if ts is None:
        ts = time.time()

    unix_ts_ms = int(ts * 1000)
    if unix_ts_ms < 0 or unix_ts_ms > _UUID7_MASK_48:
        raise ValueError("timestamp out of range for UUIDv7")

    rand_a = secrets.randbits(12)
    rand_b = secrets.randbits(62)

    value = (unix_ts_ms & _UUID7_MASK_48) << 80
    value |= _UUID7_VERSION_BITS << 76
    value |= rand_a << 64
    value |= _UUID7_VARIANT_BITS << 62
    value |= rand_b

    return uuid.UUID(int=value)


def generate_event_id() -> EventId:
    return EventId(str(uuid7()))


def generate_pin_id() -> PinId:
    return PinId(str(uuid7()))


def generate_profile_id() -> ProfileId:
    return ProfileId(str(uuid.uuid4()))


def normalize_device_token(value: str | None, *, max_length: int) -> DeviceToken | None:
    """Return the cleaned device token or ``None`` when the caller is anonymous.

    Blank tokens and tokens longer than ``max_length`` never identify a device.
    """

    if value is None:
        return None
    token = str(value).strip()
    if not token or len(token) > max_length:
        return None
    return DeviceToken(token)
