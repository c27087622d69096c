"""Cross-device linking with short-lived numeric PINs.

A bound device issues a PIN; a second, unbound device redeems it and inherits
the creator's profile.  Only a keyed HMAC of each PIN is stored.  Every failed
redemption looks identical to the caller, while the audit log records the real
reason.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import string
from datetime import datetime, timedelta
from typing import Callable

from .audit import SecurityAuditLog
from .enums import EventKind, Outcome, Severity
from .errors import (
    DeviceAlreadyBound,
    InvalidOrExpiredPin,
    PinAllocationFailed,
    RateLimited,
)
from .ids import generate_pin_id
from .models import IdentityContext, IssuedPin, LinkPin, Profile, decode_time, encode_time
from .persistence.sqlite import SQLitePersistence
from .profiles import ProfileStore
from .settings import TrustSettings
from .suspicion import RateLimiter, SuspicionScorer, recheck_actor

__all__ = ["LinkPinService"]

_log = logging.getLogger("anchorid.trust.link")

_MAX_DRAWS = 16


class _RedeemerBound(Exception):
    """Internal signal that rolls back a claim whose binding step lost."""


class LinkPinService:
    def __init__(
        self,
        store: SQLitePersistence,
        settings: TrustSettings,
        audit: SecurityAuditLog,
        profiles: ProfileStore,
        limiter: RateLimiter,
        scorer: SuspicionScorer,
        *,
        clock: Callable[[], datetime],
    ) -> None:
        self._store = store
        self._settings = settings
        self._audit = audit
        self._profiles = profiles
        self._limiter = limiter
        self._scorer = scorer
        self._clock = clock

    def _hash(self, pin: str) -> str:
        return hmac.new(self._settings.pin_hmac_key, pin.encode("utf-8"), hashlib.sha256).hexdigest()

    def _draw(self) -> str:
        return "".join(secrets.choice(string.digits) for _ in range(self._settings.link.pin_length))

    def issue_pin(self, context: IdentityContext) -> IssuedPin:
        device = context.require_device()
        profile_id = context.require_profile()
        self._limiter.check("pin_issue", device.device_id, suspicious=context.is_suspicious)
        now = self._clock()
        expires_at = now + timedelta(seconds=self._settings.link.pin_ttl_seconds)
        pin_id = generate_pin_id()
        with self._store.transaction() as conn:
            recheck_actor(conn, context, admin=False)
            live = [
                r["pin_hash"]
                for r in conn.execute(
                    "SELECT pin_hash FROM link_pins WHERE is_active = 1 AND redeemed_at IS NULL AND expires_at > ?",
                    (encode_time(now),),
                )
            ]
            for _ in range(_MAX_DRAWS):
                pin = self._draw()
                digest = self._hash(pin)
                collision = False
                for existing in live:
                    collision |= hmac.compare_digest(existing, digest)
                if not collision:
                    break
            else:
                raise PinAllocationFailed()
            conn.execute(
                "INSERT INTO link_pins(id, pin_hash, created_by_device_id, created_by_profile_id, created_at, expires_at) "
                "VALUES(?, ?, ?, ?, ?, ?)",
                (pin_id, digest, device.device_id, profile_id, encode_time(now), encode_time(expires_at)),
            )
        self._audit.append(
            Severity.INFO,
            EventKind.PIN_ISSUED,
            device_id=device.device_id,
            profile_id=profile_id,
            metadata={"pin_id": pin_id, "expires_at": encode_time(expires_at)},
        )
        return IssuedPin(pin_id=pin_id, expires_at=expires_at, pin=pin)

    def redeem(self, context: IdentityContext, submitted_pin: str) -> Profile:
        device = context.require_device()
        if context.profile_id is not None:
            raise DeviceAlreadyBound()
        try:
            self._limiter.check("pin_redeem", device.device_id, suspicious=context.is_suspicious)
        except RateLimited as exc:
            self._audit.append(
                Severity.WARNING,
                EventKind.RATE_LIMITED,
                device_id=device.device_id,
                metadata={"category": "pin_redeem", "retry_after": exc.envelope.retry_after},
            )
            self._scorer.record_outcome(device.device_id, Outcome.POLICY_VIOLATION)
            raise

        digest = self._hash(str(submitted_pin or "").strip())
        now = self._clock()
        try:
            with self._store.transaction() as conn:
                reason, pin_row = self._claim(conn, device.device_id, digest, now)
        except _RedeemerBound:
            reason, pin_row = "redeemer_bound", None

        if reason is not None:
            _log.info("pin redemption failed for %s: %s", device.device_id, reason)
            self._audit.append(
                Severity.WARNING,
                EventKind.PIN_REDEEM_FAILED,
                device_id=device.device_id,
                metadata={"reason": reason, "pin_id": pin_row["id"] if pin_row is not None else None},
            )
            self._scorer.record_outcome(device.device_id, Outcome.AUTH_FAILURE)
            raise InvalidOrExpiredPin()

        profile = self._profiles.get(pin_row["created_by_profile_id"])
        self._audit.append(
            Severity.INFO,
            EventKind.DEVICE_LINKED,
            device_id=device.device_id,
            profile_id=pin_row["created_by_profile_id"],
            metadata={"pin_id": pin_row["id"], "source_device_id": pin_row["created_by_device_id"]},
        )
        return profile

    def _claim(self, conn, redeemer_id: str, digest: str, now: datetime):
        stamp = encode_time(now)
        candidates = conn.execute(
            "SELECT * FROM link_pins WHERE is_active = 1 AND redeemed_at IS NULL"
        ).fetchall()
        live = stale = None
        for row in candidates:
            hit = hmac.compare_digest(row["pin_hash"], digest)
            if decode_time(row["expires_at"]) > now:
                if hit and live is None:
                    live = row
            elif hit and stale is None:
                stale = row
        # expired rows never match again; retire them while the write lock is held
        conn.execute(
            "UPDATE link_pins SET is_active = 0 WHERE is_active = 1 AND redeemed_at IS NULL AND expires_at <= ?",
            (stamp,),
        )
        if live is None:
            if stale is not None:
                return "expired", stale
            return "no_match", None
        matched = live
        creator = conn.execute(
            "SELECT is_revoked FROM devices WHERE device_id = ?",
            (matched["created_by_device_id"],),
        ).fetchone()
        if creator is None or creator["is_revoked"]:
            return "creator_revoked", matched
        if self._profiles.get(matched["created_by_profile_id"]) is None:
            return "profile_missing", matched
        claimed = conn.execute(
            "UPDATE link_pins SET redeemed_at = ?, redeemed_by_device_id = ?, is_active = 0 "
            "WHERE id = ? AND redeemed_at IS NULL AND is_active = 1 AND expires_at > ?",
            (stamp, redeemer_id, matched["id"], stamp),
        )
        if claimed.rowcount != 1:
            return "lost_race", matched
        bound = conn.execute(
            "UPDATE devices SET profile_id = ? WHERE device_id = ? AND profile_id IS NULL AND is_revoked = 0",
            (matched["created_by_profile_id"], redeemer_id),
        )
        if bound.rowcount != 1:
            raise _RedeemerBound()
        return None, matched

    def revoke_pin(self, context: IdentityContext, pin_id: str) -> bool:
        device = context.require_device()
        profile_id = context.require_profile()
        now = self._clock()
        with self._store.transaction() as conn:
            cursor = conn.execute(
                "UPDATE link_pins SET is_active = 0, revoked_at = ? "
                "WHERE id = ? AND created_by_profile_id = ? AND is_active = 1 AND redeemed_at IS NULL",
                (encode_time(now), pin_id, profile_id),
            )
            revoked = cursor.rowcount > 0
        if revoked:
            self._audit.append(
                Severity.INFO,
                EventKind.PIN_REVOKED,
                device_id=device.device_id,
                profile_id=profile_id,
                metadata={"pin_id": pin_id},
            )
        return revoked

    def active_pins(self, context: IdentityContext) -> list[LinkPin]:
        profile_id = context.require_profile()
        rows = self._store.read(
            "SELECT * FROM link_pins WHERE created_by_profile_id = ? AND is_active = 1 "
            "AND redeemed_at IS NULL AND expires_at > ? ORDER BY created_at ASC",
            (profile_id, encode_time(self._clock())),
        )
        return [LinkPin.from_row(row) for row in rows]

    def purge_expired(self, older_than: timedelta | None = None) -> int:
        """Delete PINs that expired or were redeemed more than ``older_than`` ago."""

        if older_than is None:
            older_than = timedelta(seconds=self._settings.link.purge_after_seconds)
        cutoff = encode_time(self._clock() - older_than)
        with self._store.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM link_pins WHERE expires_at < ? OR redeemed_at < ? OR revoked_at < ?",
                (cutoff, cutoff, cutoff),
            )
            purged = cursor.rowcount
        if purged:
            _log.info("purged %d link pins", purged)
        return purged
