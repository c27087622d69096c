"""Failure scoring, device state transitions and fixed-window rate limiting."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from .audit import SecurityAuditLog
from .enums import EventKind, Outcome, Severity
from .errors import DeviceRevoked, NotAuthorized, RateLimited, UnknownDevice
from .models import Device, IdentityContext, decode_time, encode_time
from .persistence.sqlite import SQLitePersistence
from .settings import TrustSettings

__all__ = ["RateLimiter", "SuspicionScorer", "recheck_actor"]

_log = logging.getLogger("anchorid.trust.suspicion")


def recheck_actor(conn, context: IdentityContext, *, admin: bool = True) -> None:
    """Re-read the acting device (and its grant) inside the caller's transaction.

    The context may have been built before a concurrent revocation committed.
    """

    row = conn.execute("SELECT is_revoked FROM devices WHERE device_id = ?", (context.device_id,)).fetchone()
    if row is None or row["is_revoked"]:
        raise DeviceRevoked()
    if admin:
        grant = conn.execute("SELECT 1 FROM admin_grants WHERE profile_id = ?", (context.profile_id,)).fetchone()
        if grant is None:
            raise NotAuthorized()


class RateLimiter:
    """Fixed-window request counters kept in the ``rate_counters`` table.

    A limit of ``0`` disables the category.  Suspicious callers are held to the
    ``<category>_suspicious`` limit when one is configured; both share a bucket
    so switching state does not reset the count.
    """

    def __init__(
        self,
        store: SQLitePersistence,
        settings: TrustSettings,
        *,
        clock: Callable[[], datetime],
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    def limit_for(self, category: str, *, suspicious: bool = False) -> int:
        limit = self._settings.rate_limit(category)
        if suspicious:
            tighter = self._settings.rate_limit(f"{category}_suspicious")
            if tighter > 0:
                limit = tighter if limit <= 0 else min(limit, tighter)
        return limit

    def check(self, category: str, key: str, *, suspicious: bool = False) -> None:
        limit = self.limit_for(category, suspicious=suspicious)
        if limit <= 0:
            return
        now = self._clock()
        window = timedelta(seconds=self._settings.rate_limit_window)
        bucket = f"{category}:{key}"
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT count, window_start FROM rate_counters WHERE bucket = ?",
                (bucket,),
            ).fetchone()
            if row is None:
                conn.execute(
                    "INSERT OR REPLACE INTO rate_counters(bucket, count, window_start) VALUES(?, ?, ?)",
                    (bucket, 1, encode_time(now)),
                )
                return
            current_start = decode_time(row["window_start"])
            if current_start + window <= now:
                conn.execute(
                    "UPDATE rate_counters SET count = ?, window_start = ? WHERE bucket = ?",
                    (1, encode_time(now), bucket),
                )
                return
            if int(row["count"]) >= limit:
                retry = max(1, int((current_start + window - now).total_seconds()))
                raise RateLimited(retry_after=retry)
            conn.execute("UPDATE rate_counters SET count = count + 1 WHERE bucket = ?", (bucket,))

    def purge_stale(self) -> int:
        """Drop buckets whose window has closed; the next check starts a fresh one anyway."""

        cutoff = self._clock() - timedelta(seconds=self._settings.rate_limit_window)
        with self._store.transaction() as conn:
            cursor = conn.execute("DELETE FROM rate_counters WHERE window_start <= ?", (encode_time(cutoff),))
            purged = cursor.rowcount
        if purged:
            _log.info("purged %d rate counters", purged)
        return purged


class SuspicionScorer:
    """Turns recorded outcomes into the soft ``is_suspicious`` signal.

    Revocation is the hard stop and is only ever set or cleared by an admin;
    nothing recorded here touches it.
    """

    def __init__(
        self,
        store: SQLitePersistence,
        settings: TrustSettings,
        audit: SecurityAuditLog,
        *,
        clock: Callable[[], datetime],
    ) -> None:
        self._store = store
        self._settings = settings
        self._audit = audit
        self._clock = clock

    def record_outcome(self, device_id: str | None, outcome: Outcome | str) -> Device | None:
        outcome = Outcome(outcome)
        if not device_id or not outcome.is_failure:
            return None
        now = self._clock()
        window = timedelta(seconds=self._settings.suspicion.window_seconds)
        threshold = self._settings.suspicion.failure_threshold
        crossed = False
        with self._store.transaction() as conn:
            row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
            if row is None:
                return None
            started = decode_time(row["window_started_at"])
            if started is None or started + window <= now:
                failures, started = 1, now
            else:
                failures = int(row["window_failures"]) + 1
            flag = bool(row["is_suspicious"])
            if failures >= threshold and not flag:
                flag = crossed = True
            conn.execute(
                "UPDATE devices SET failed_auth_count = failed_auth_count + 1, last_failed_auth_at = ?, "
                "window_failures = ?, window_started_at = ?, is_suspicious = ? WHERE device_id = ?",
                (encode_time(now), failures, encode_time(started), int(flag), device_id),
            )
            updated = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        device = Device.from_row(updated)
        if crossed:
            _log.warning("device %s marked suspicious after %d failures", device_id, failures)
            self._audit.append(
                Severity.WARNING,
                EventKind.SUSPICIOUS_DEVICE,
                device_id=device_id,
                profile_id=device.profile_id,
                metadata={
                    "failures_in_window": failures,
                    "window_seconds": self._settings.suspicion.window_seconds,
                    "last_outcome": outcome.value,
                },
            )
        return device

    def count_request(self, conn, row, now: datetime) -> int | None:
        """Count one request in the device's window from inside the caller's transaction.

        Returns the window count when this request crossed
        ``suspicion.request_threshold``, else ``None``.  The caller appends the
        event once its transaction has committed.
        """

        threshold = self._settings.suspicion.request_threshold
        if threshold <= 0 or row["is_revoked"]:
            return None
        window = timedelta(seconds=self._settings.suspicion.window_seconds)
        started = decode_time(row["request_window_started_at"])
        if started is None or started + window <= now:
            requests, started = 1, now
        else:
            requests = int(row["window_requests"]) + 1
        crossed = requests >= threshold and not row["is_suspicious"]
        conn.execute(
            "UPDATE devices SET window_requests = ?, request_window_started_at = ?, "
            "is_suspicious = MAX(is_suspicious, ?) WHERE device_id = ?",
            (requests, encode_time(started), int(crossed), row["device_id"]),
        )
        if crossed:
            _log.warning("device %s marked suspicious after %d requests", row["device_id"], requests)
            return requests
        return None

    def revoke_device(self, context: IdentityContext, device_id: str, reason: str) -> Device:
        actor = context.require_admin()
        now = self._clock()
        with self._store.transaction() as conn:
            recheck_actor(conn, context)
            row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
            if row is None:
                raise UnknownDevice()
            if row["is_revoked"]:
                return Device.from_row(row)
            conn.execute(
                "UPDATE devices SET is_revoked = 1, revoked_at = ?, revoked_reason = ? WHERE device_id = ?",
                (encode_time(now), reason, device_id),
            )
            cursor = conn.execute(
                "UPDATE link_pins SET is_active = 0, revoked_at = ? "
                "WHERE created_by_device_id = ? AND is_active = 1 AND redeemed_at IS NULL",
                (encode_time(now), device_id),
            )
            pins_deactivated = cursor.rowcount
            updated = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        device = Device.from_row(updated)
        _log.warning("device %s revoked by %s", device_id, actor)
        self._audit.append(
            Severity.CRITICAL,
            EventKind.DEVICE_REVOKED,
            device_id=device_id,
            profile_id=device.profile_id,
            metadata={"reason": reason, "actor_profile_id": actor, "pins_deactivated": pins_deactivated},
        )
        return device

    def restore_device(self, context: IdentityContext, device_id: str) -> Device:
        actor = context.require_admin()
        with self._store.transaction() as conn:
            recheck_actor(conn, context)
            row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
            if row is None:
                raise UnknownDevice()
            if not row["is_revoked"]:
                return Device.from_row(row)
            conn.execute(
                "UPDATE devices SET is_revoked = 0, revoked_at = NULL, revoked_reason = NULL WHERE device_id = ?",
                (device_id,),
            )
            updated = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        device = Device.from_row(updated)
        self._audit.append(
            Severity.WARNING,
            EventKind.DEVICE_RESTORED,
            device_id=device_id,
            profile_id=device.profile_id,
            metadata={"actor_profile_id": actor, "previous_reason": row["revoked_reason"]},
        )
        return device

    def clear_suspicious(self, context: IdentityContext, device_id: str) -> Device:
        actor = context.require_admin()
        with self._store.transaction() as conn:
            recheck_actor(conn, context)
            row = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
            if row is None:
                raise UnknownDevice()
            conn.execute(
                "UPDATE devices SET is_suspicious = 0, window_failures = 0, window_started_at = NULL, "
                "window_requests = 0, request_window_started_at = NULL WHERE device_id = ?",
                (device_id,),
            )
            updated = conn.execute("SELECT * FROM devices WHERE device_id = ?", (device_id,)).fetchone()
        device = Device.from_row(updated)
        if row["is_suspicious"]:
            self._audit.append(
                Severity.INFO,
                EventKind.SUSPICIOUS_CLEARED,
                device_id=device_id,
                profile_id=device.profile_id,
                metadata={"actor_profile_id": actor},
            )
        return device
