"""Facade wiring the trust components around one SQLite store."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable

from .admin_gate import AdminGate
from .audit import SecurityAuditLog
from .enums import EventKind, Outcome, Severity
from .errors import DeviceAlreadyBound, StoreUnavailable
from .link_pins import LinkPinService
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
from .moderation import ModerationHooks
from .persistence.sqlite import SQLitePersistence
from .profiles import ProfileStore, SQLiteProfileStore
from .registry import DeviceRegistry
from .schemas import AuditExport
from .settings import TrustSettings, load_settings
from .suspicion import RateLimiter, SuspicionScorer

__all__ = ["TrustControlPlane"]

_log = logging.getLogger("anchorid.trust")


class TrustControlPlane:
    """Entry point for transports: resolve a request's identity, then act on it."""

    def __init__(
        self,
        *,
        db_path: str | Path | None = None,
        config_path: str | Path | None = None,
        settings: TrustSettings | None = None,
        clock: Callable[[], datetime] | None = None,
        profiles: ProfileStore | None = None,
    ) -> None:
        self.settings = settings or load_settings(config_path)
        self._clock = clock or (lambda: datetime.now(tz=timezone.utc))
        self._persistence = SQLitePersistence(db_path or self.settings.database_path)
        now = self._now
        self.local_profiles = SQLiteProfileStore(self._persistence, clock=now)
        self.profiles: ProfileStore = profiles or self.local_profiles
        self.audit = SecurityAuditLog(self._persistence, key=self.settings.hmac_audit_key, clock=now)
        self.limiter = RateLimiter(self._persistence, self.settings, clock=now)
        self.scorer = SuspicionScorer(self._persistence, self.settings, self.audit, clock=now)
        self.registry = DeviceRegistry(
            self._persistence, self.settings, self.audit, self.profiles, self.scorer, clock=now
        )
        self.admins = AdminGate(
            self._persistence, self.settings, self.audit, self.profiles, self.limiter, self.scorer, clock=now
        )
        self.links = LinkPinService(
            self._persistence, self.settings, self.audit, self.profiles, self.limiter, self.scorer, clock=now
        )
        self.moderation = ModerationHooks(self.settings, self.audit)

    # ------------------------------------------------------------------
    # lifecycle helpers
    # ------------------------------------------------------------------
    def close(self) -> None:
        self._persistence.close()

    @property
    def audit_key(self) -> bytes:
        return self.settings.hmac_audit_key

    def _now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # identity
    # ------------------------------------------------------------------
    def resolve(
        self,
        device_token: str | None,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
        profile_hint: str | None = None,
    ) -> Device | None:
        return self.registry.resolve(
            device_token, user_agent=user_agent, ip_address=ip_address, profile_hint=profile_hint
        )

    def context_for(self, device: Device | None) -> IdentityContext:
        if device is None:
            return IdentityContext.anonymous()
        is_admin = not device.is_revoked and self.admins.has_grant(device.profile_id)
        return IdentityContext(device=device, profile_id=device.profile_id, is_admin=is_admin)

    def resolve_context(
        self,
        device_token: str | None,
        *,
        user_agent: str | None = None,
        ip_address: str | None = None,
    ) -> IdentityContext:
        """Build the request's identity; store trouble degrades to anonymous."""

        try:
            device = self.resolve(device_token, user_agent=user_agent, ip_address=ip_address)
            return self.context_for(device)
        except StoreUnavailable:
            _log.warning("identity resolution degraded to anonymous", exc_info=True)
            return IdentityContext.anonymous()

    def get_device(self, device_id: str) -> Device | None:
        return self.registry.get(device_id)

    def devices_for_profile(self, profile_id: str) -> list[Device]:
        return self.registry.devices_for_profile(profile_id)

    def my_devices(self, context: IdentityContext) -> list[Device]:
        """Devices linked to the caller's own profile."""

        return self.registry.devices_for_profile(context.require_profile())

    def bind_profile(self, device_id: str, profile_id: str) -> Device:
        return self.registry.bind_profile(device_id, profile_id)

    def profile_for(self, context: IdentityContext) -> Profile | None:
        return self.registry.profile_for(context.device)

    def onboard(self, context: IdentityContext, handle: str, *, avatar: str | None = None) -> Profile:
        """Create a profile for an unbound device and bind it."""

        device = context.require_device()
        if device.profile_id is not None:
            raise DeviceAlreadyBound()
        create = getattr(self.profiles, "create", None)
        if create is None:
            raise TypeError("the configured profile store does not create profiles")
        return self.registry.onboard(device.device_id, lambda: create(handle, avatar=avatar))

    # ------------------------------------------------------------------
    # admin gate
    # ------------------------------------------------------------------
    def is_admin(self, context: IdentityContext) -> bool:
        return self.admins.is_admin(context)

    def grant_admin(self, context: IdentityContext, target_profile_id: str) -> AdminGrant:
        return self.admins.grant(context, target_profile_id)

    def revoke_admin(self, context: IdentityContext, target_profile_id: str) -> bool:
        return self.admins.revoke(context, target_profile_id)

    def bootstrap_admin(self, context: IdentityContext) -> AdminGrant:
        return self.admins.bootstrap(context)

    def list_admins(self) -> list[AdminGrant]:
        return self.admins.list_grants()

    # ------------------------------------------------------------------
    # link protocol
    # ------------------------------------------------------------------
    def issue_pin(self, context: IdentityContext) -> IssuedPin:
        return self.links.issue_pin(context)

    def redeem_pin(self, context: IdentityContext, submitted_pin: str) -> Profile:
        return self.links.redeem(context, submitted_pin)

    def revoke_pin(self, context: IdentityContext, pin_id: str) -> bool:
        return self.links.revoke_pin(context, pin_id)

    def active_pins(self, context: IdentityContext) -> list[LinkPin]:
        return self.links.active_pins(context)

    def purge_expired_pins(self, older_than: timedelta | None = None) -> int:
        return self.links.purge_expired(older_than)

    def purge_rate_counters(self) -> int:
        return self.limiter.purge_stale()

    # ------------------------------------------------------------------
    # suspicion
    # ------------------------------------------------------------------
    def record_outcome(self, device_id: str | None, outcome: Outcome | str) -> Device | None:
        return self.scorer.record_outcome(device_id, outcome)

    def revoke_device(self, context: IdentityContext, device_id: str, reason: str) -> Device:
        return self.scorer.revoke_device(context, device_id, reason)

    def restore_device(self, context: IdentityContext, device_id: str) -> Device:
        return self.scorer.restore_device(context, device_id)

    def clear_suspicious(self, context: IdentityContext, device_id: str) -> Device:
        return self.scorer.clear_suspicious(context, device_id)

    # ------------------------------------------------------------------
    # audit and moderation
    # ------------------------------------------------------------------
    def summarize(self, window: timedelta = timedelta(hours=24)) -> SecuritySummary:
        return self.audit.summarize(window)

    def recent_events(
        self,
        limit: int = 50,
        *,
        severity: Severity | str | None = None,
        kind: EventKind | str | None = None,
        device_id: str | None = None,
    ) -> list[SecurityEvent]:
        return self.audit.recent(limit, severity=severity, kind=kind, device_id=device_id)

    def export_events(self, since: datetime | None = None) -> AuditExport:
        return self.audit.export(since)

    def record_moderation_verdict(
        self,
        context: IdentityContext,
        content_id: str,
        verdict: ModerationVerdict,
    ) -> SecurityEvent | None:
        return self.moderation.record_verdict(context, content_id, verdict)

    def authorize_review(self, context: IdentityContext) -> None:
        self.moderation.authorize_review(context)
