"""Device registry: turns an untrusted client token into a persisted device.

The token a client sends is only a lookup key.  Whatever profile the database
already holds for that device wins over anything the caller proposes, and the
binding, once written, is never replaced.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from .audit import SecurityAuditLog
from .enums import EventKind, Severity
from .errors import DeviceAlreadyBound, DeviceRevoked, UnknownDevice, UnknownProfile
from .ids import normalize_device_token
from .models import Device, Profile, encode_time
from .persistence.sqlite import SQLitePersistence
from .profiles import ProfileStore
from .settings import TrustSettings
from .suspicion import SuspicionScorer

__all__ = ["DeviceRegistry"]

_log = logging.getLogger("anchorid.trust.registry")

_ADVISORY_MAX = 512

_UPSERT = """
INSERT INTO devices(device_id, profile_id, first_seen_at, last_seen_at, request_count, user_agent, ip_address)
VALUES(?, ?, ?, ?, 1, ?, ?)
ON CONFLICT(device_id) DO UPDATE SET
    last_seen_at = MAX(devices.last_seen_at, excluded.last_seen_at),
    request_count = devices.request_count + 1,
    profile_id = CASE
        WHEN devices.is_revoked THEN devices.profile_id
        ELSE COALESCE(devices.profile_id, excluded.profile_id)
    END,
    user_agent = COALESCE(excluded.user_agent, devices.user_agent),
    ip_address = COALESCE(excluded.ip_address, devices.ip_address)
RETURNING *
"""


def _advisory(value: str | None) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value[:_ADVISORY_MAX] or None


class DeviceRegistry:
    def __init__(
        self,
        store: SQLitePersistence,
        settings: TrustSettings,
        audit: SecurityAuditLog,
        profiles: ProfileStore,
        scorer: SuspicionScorer,
        *,
        clock: Callable[[], datetime],
    ) -> None:
        self._store = store
        self._settings = settings
        self._audit = audit
        self._profiles = profiles
        self._scorer = scorer
        self._clock = clock

    def resolve(
        self,
        device_token: str | None,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
        profile_hint: str | None = None,
    ) -> Device | None:
        """Resolve-or-create the device behind ``device_token``.

        Returns ``None`` for a missing, blank or oversized token.  ``profile_hint``
        is a server-side candidate (for example from onboarding); it only lands
        when the device has no binding yet and the profile exists.
        """

        token = normalize_device_token(device_token, max_length=self._settings.max_token_length)
        if token is None:
            return None
        if profile_hint is not None and self._profiles.get(profile_hint) is None:
            _log.info("ignoring unknown profile hint for device %s", token)
            profile_hint = None
        moment = self._clock()
        now = encode_time(moment)
        with self._store.transaction() as conn:
            prior = conn.execute("SELECT profile_id FROM devices WHERE device_id = ?", (token,)).fetchone()
            row = conn.execute(
                _UPSERT,
                (token, profile_hint, now, now, _advisory(user_agent), _advisory(ip_address)),
            ).fetchall()[0]
            burst = self._scorer.count_request(conn, row, moment)
            row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (token,)).fetchone()
        device = Device.from_row(row)
        if burst is not None:
            self._audit.append(
                Severity.WARNING,
                EventKind.SUSPICIOUS_DEVICE,
                device_id=device.device_id,
                profile_id=device.profile_id,
                metadata={
                    "requests_in_window": burst,
                    "window_seconds": self._settings.suspicion.window_seconds,
                },
            )
        if device.is_revoked:
            self._audit.append(
                Severity.WARNING,
                EventKind.REVOKED_DEVICE_ACCESS,
                device_id=device.device_id,
                profile_id=device.profile_id,
                metadata={"ip_address": device.ip_address, "user_agent": device.user_agent},
            )
        elif device.profile_id is not None and (prior is None or prior["profile_id"] is None):
            self._audit.append(
                Severity.INFO,
                EventKind.PROFILE_BOUND,
                device_id=device.device_id,
                profile_id=device.profile_id,
                metadata={"source": "resolve"},
            )
        return device

    def get(self, device_id: str) -> Device | None:
        row = self._store.read_one("SELECT * FROM devices WHERE device_id = ?", (device_id,))
        return Device.from_row(row) if row is not None else None

    def bind_profile(self, device_id: str, profile_id: str) -> Device:
        """Bind ``profile_id`` to the device; the first writer wins."""

        if self._profiles.get(profile_id) is None:
            raise UnknownProfile()
        with self._store.transaction() as conn:
            device, changed = self._bind(conn, device_id, profile_id)
        if changed:
            self._bound(device, "bind")
        return device

    def onboard(self, device_id: str, create_profile: Callable[[], Profile]) -> Profile:
        """Create a profile and bind it to ``device_id`` as one unit of work.

        A device that lost the binding race keeps no orphaned profile behind.
        """

        with self._store.transaction() as conn:
            profile = create_profile()
            device, _ = self._bind(conn, device_id, profile.id)
        self._bound(device, "onboard")
        return profile

    def _bind(self, conn, device_id: str, profile_id: str) -> tuple[Device, bool]:
        row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        if row is None:
            raise UnknownDevice()
        if row["is_revoked"]:
            raise DeviceRevoked()
        if row["profile_id"] == profile_id:
            return Device.from_row(row), False
        if row["profile_id"] is not None:
            raise DeviceAlreadyBound()
        conn.execute(
            "UPDATE devices SET profile_id = ? WHERE device_id = ? AND profile_id IS NULL",
            (profile_id, device_id),
        )
        updated = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        return Device.from_row(updated), True

    def _bound(self, device: Device, source: str) -> None:
        self._audit.append(
            Severity.INFO,
            EventKind.PROFILE_BOUND,
            device_id=device.device_id,
            profile_id=device.profile_id,
            metadata={"source": source},
        )

    def profile_for(self, device: Device | None) -> Profile | None:
        if device is None or device.profile_id is None:
            return None
        return self._profiles.get(device.profile_id)

    def devices_for_profile(self, profile_id: str) -> list[Device]:
        rows = self._store.read(
            "SELECT * FROM devices WHERE profile_id = ? ORDER BY first_seen_at ASC",
            (profile_id,),
        )
        return [Device.from_row(row) for row in rows]
