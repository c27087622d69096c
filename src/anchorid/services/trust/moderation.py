"""Hooks consuming content-moderation verdicts."""
from __future__ import annotations

from .audit import SecurityAuditLog
from .enums import EventKind, Severity
from .errors import NotAuthorized
from .models import IdentityContext, ModerationVerdict, SecurityEvent
from .settings import TrustSettings

__all__ = ["ModerationHooks"]


class ModerationHooks:
    def __init__(self, settings: TrustSettings, audit: SecurityAuditLog) -> None:
        self._settings = settings
        self._audit = audit

    def record_verdict(
        self,
        context: IdentityContext,
        content_id: str,
        verdict: ModerationVerdict,
    ) -> SecurityEvent | None:
        """Append a ``content_flagged`` event for flagged content, attributed to the uploader."""

        if not verdict.is_flagged:
            return None
        high = verdict.confidence >= self._settings.moderation_high_confidence
        return self._audit.append(
            Severity.ERROR if high else Severity.WARNING,
            EventKind.CONTENT_FLAGGED,
            device_id=context.device_id,
            profile_id=context.profile_id,
            metadata={
                "content_id": content_id,
                "confidence": round(float(verdict.confidence), 4),
                "issue_kinds": sorted(verdict.issue_kinds),
            },
        )

    def authorize_review(self, context: IdentityContext) -> None:
        if context.is_anonymous or context.is_revoked or not context.is_admin:
            raise NotAuthorized()
