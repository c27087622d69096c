"""Capped administrative privilege.

Authorization decisions read ``IdentityContext.is_admin``, which is computed
once when the context is built.  Nothing here asks the grants table whether the
caller may read the grants table.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Iterator

from .audit import SecurityAuditLog
from .enums import AdminRole, EventKind, Outcome, Severity
from .errors import (
    AdminCapacityExceeded,
    AlreadyGranted,
    NoDeviceIdentity,
    NotAuthorized,
    ProfileRequired,
    TrustError,
    UnknownProfile,
)
from .models import AdminGrant, IdentityContext, encode_time
from .persistence.sqlite import SQLitePersistence
from .profiles import ProfileStore
from .settings import TrustSettings
from .suspicion import RateLimiter, SuspicionScorer, recheck_actor

__all__ = ["AdminGate"]

_log = logging.getLogger("anchorid.trust.admin")


class AdminGate:
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

    @property
    def capacity(self) -> int:
        return self._settings.admin.capacity

    def has_grant(self, profile_id: str | None) -> bool:
        """Raw table lookup, used only while building an identity context."""

        if not profile_id:
            return False
        row = self._store.read_one("SELECT 1 FROM admin_grants WHERE profile_id = ?", (profile_id,))
        return row is not None

    def is_admin(self, context: IdentityContext) -> bool:
        return context.is_admin and not context.is_anonymous and not context.is_revoked

    def list_grants(self) -> list[AdminGrant]:
        rows = self._store.read("SELECT * FROM admin_grants ORDER BY created_at ASC")
        return [AdminGrant.from_row(row) for row in rows]

    def remaining_capacity(self) -> int:
        row = self._store.read_one("SELECT COUNT(*) AS n FROM admin_grants")
        return max(0, self.capacity - int(row["n"]))

    def _require_admin(self, context: IdentityContext, action: str) -> str:
        try:
            return context.require_admin()
        except NoDeviceIdentity:
            raise
        except ProfileRequired:
            self._deny(context, action, NotAuthorized.code)
            raise NotAuthorized() from None
        except TrustError as exc:
            self._deny(context, action, exc.envelope.code)
            raise

    def _deny(self, context: IdentityContext, action: str, reason: str) -> None:
        self._audit.append(
            Severity.WARNING,
            EventKind.ADMIN_ACTION_DENIED,
            device_id=context.device_id,
            profile_id=context.profile_id,
            metadata={"action": action, "reason": reason},
        )
        self._scorer.record_outcome(context.device_id, Outcome.POLICY_VIOLATION)

    @contextmanager
    def _actor_transaction(self, context: IdentityContext, action: str, *, admin: bool = True) -> Iterator:
        # the context predates the write lock; the actor may have lost its device or grant since
        checked = False
        try:
            with self._store.transaction() as conn:
                recheck_actor(conn, context, admin=admin)
                checked = True
                yield conn
        except TrustError as exc:
            if not checked:
                self._deny(context, action, exc.envelope.code)
            raise

    def grant(self, context: IdentityContext, target_profile_id: str) -> AdminGrant:
        actor = self._require_admin(context, "grant")
        self._limiter.check("admin_grant", str(context.device_id))
        if self._profiles.get(target_profile_id) is None:
            raise UnknownProfile()
        now = self._clock()
        refreshed: AdminGrant | None = None
        full = False
        with self._actor_transaction(context, "grant") as conn:
            row = conn.execute("SELECT * FROM admin_grants WHERE profile_id = ?", (target_profile_id,)).fetchone()
            if row is not None:
                conn.execute(
                    "UPDATE admin_grants SET created_at = ? WHERE profile_id = ?",
                    (encode_time(now), target_profile_id),
                )
                refreshed = AdminGrant.from_row(
                    conn.execute("SELECT * FROM admin_grants WHERE profile_id = ?", (target_profile_id,)).fetchone()
                )
            else:
                count = int(conn.execute("SELECT COUNT(*) AS n FROM admin_grants").fetchone()["n"])
                if count >= self.capacity:
                    full = True
                else:
                    conn.execute(
                        "INSERT INTO admin_grants(profile_id, role, created_at, granted_by_profile_id) "
                        "VALUES(?, ?, ?, ?)",
                        (target_profile_id, AdminRole.ADMIN.value, encode_time(now), actor),
                    )
        if full:
            self._audit.append(
                Severity.ERROR,
                EventKind.ADMIN_CAPACITY_EXCEEDED,
                device_id=context.device_id,
                profile_id=actor,
                metadata={"target_profile_id": target_profile_id, "capacity": self.capacity},
            )
            raise AdminCapacityExceeded()
        if refreshed is not None:
            self._audit.append(
                Severity.INFO,
                EventKind.ADMIN_GRANT_REFRESHED,
                device_id=context.device_id,
                profile_id=actor,
                metadata={"target_profile_id": target_profile_id},
            )
            raise AlreadyGranted(refreshed)
        grant = AdminGrant(
            profile_id=target_profile_id,
            role=AdminRole.ADMIN,
            created_at=now,
            granted_by_profile_id=actor,
        )
        _log.info("admin grant %s issued by %s", target_profile_id, actor)
        self._audit.append(
            Severity.WARNING,
            EventKind.ADMIN_GRANTED,
            device_id=context.device_id,
            profile_id=actor,
            metadata={"target_profile_id": target_profile_id},
        )
        return grant

    def revoke(self, context: IdentityContext, target_profile_id: str) -> bool:
        actor = self._require_admin(context, "revoke")
        with self._actor_transaction(context, "revoke") as conn:
            cursor = conn.execute("DELETE FROM admin_grants WHERE profile_id = ?", (target_profile_id,))
            removed = cursor.rowcount > 0
        if removed:
            _log.info("admin grant %s revoked by %s", target_profile_id, actor)
            self._audit.append(
                Severity.WARNING,
                EventKind.ADMIN_REVOKED,
                device_id=context.device_id,
                profile_id=actor,
                metadata={"target_profile_id": target_profile_id},
            )
        return removed

    def bootstrap(self, context: IdentityContext) -> AdminGrant:
        """Grant the very first admin to the caller's own profile.

        Only succeeds while no grant exists at all; every attempt is audited.
        """

        profile_id = context.require_profile()
        now = self._clock()
        with self._actor_transaction(context, "bootstrap", admin=False) as conn:
            count = int(conn.execute("SELECT COUNT(*) AS n FROM admin_grants").fetchone()["n"])
            if count == 0:
                conn.execute(
                    "INSERT INTO admin_grants(profile_id, role, created_at, granted_by_profile_id) VALUES(?, ?, ?, NULL)",
                    (profile_id, AdminRole.ADMIN.value, encode_time(now)),
                )
        if count:
            self._audit.append(
                Severity.ERROR,
                EventKind.ADMIN_BOOTSTRAP_REFUSED,
                device_id=context.device_id,
                profile_id=profile_id,
                metadata={"existing_grants": count},
            )
            self._scorer.record_outcome(context.device_id, Outcome.POLICY_VIOLATION)
            raise NotAuthorized()
        _log.warning("admin bootstrapped for profile %s from device %s", profile_id, context.device_id)
        self._audit.append(
            Severity.CRITICAL,
            EventKind.ADMIN_BOOTSTRAPPED,
            device_id=context.device_id,
            profile_id=profile_id,
            metadata={"capacity": self.capacity},
        )
        return AdminGrant(profile_id=profile_id, role=AdminRole.ADMIN, created_at=now)
