from __future__ import annotations

import logging
import sqlite3
from datetime import timedelta

import pytest

from anchorid.services.trust import (
    AuditExport,
    EventKind,
    ModerationVerdict,
    NotAuthorized,
    Severity,
    StoreUnavailable,
)
from trust_support import first_admin, onboarded


class _BrokenStore:
    def transaction(self):
        raise StoreUnavailable()


class _Collect(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def test_recent_is_newest_first_and_filterable(plane):
    plane.audit.append(Severity.INFO, EventKind.PIN_ISSUED, device_id="a")
    plane.audit.append(Severity.WARNING, EventKind.SUSPICIOUS_DEVICE, device_id="b")
    plane.audit.append(Severity.CRITICAL, EventKind.DEVICE_REVOKED, device_id="a", metadata={"reason": "x"})

    events = plane.recent_events()
    assert [e.kind for e in events] == [EventKind.DEVICE_REVOKED, EventKind.SUSPICIOUS_DEVICE, EventKind.PIN_ISSUED]
    assert [e.kind for e in plane.recent_events(device_id="a")] == [EventKind.DEVICE_REVOKED, EventKind.PIN_ISSUED]
    assert len(plane.recent_events(severity="warning")) == 1
    assert plane.recent_events(limit=1)[0].metadata == {"reason": "x"}


def test_summarize_counts_within_window(plane, clock):
    plane.audit.append(Severity.INFO, EventKind.PIN_ISSUED, device_id="a")
    clock.advance(hours=2)
    plane.audit.append(Severity.WARNING, EventKind.SUSPICIOUS_DEVICE, device_id="b")
    plane.audit.append(Severity.WARNING, EventKind.RATE_LIMITED, device_id="b")

    summary = plane.summarize(timedelta(hours=1))
    assert summary.total == 2
    assert summary.by_severity == {"warning": 2}
    assert summary.by_kind == {"suspicious_device": 1, "rate_limited": 1}
    assert plane.summarize(timedelta(hours=3)).total == 3


def test_export_signatures_verify(plane):
    onboarded(plane, "phone", "alice")
    plane.audit.append(Severity.ERROR, EventKind.ADMIN_BOOTSTRAP_REFUSED, device_id="phone", metadata={"n": 1})
    export = plane.export_events()
    assert len(export.records) == 2
    assert export.verify(plane.audit_key)
    assert not export.verify(b"wrong-key")

    tampered = AuditExport(records=[{**export.records[-1], "severity": "info"}])
    assert not tampered.verify(plane.audit_key)
    assert export.as_ndjson().count("\n") == 1


def test_events_are_append_only(plane):
    plane.audit.append(Severity.INFO, EventKind.PIN_ISSUED, device_id="a")
    with pytest.raises(sqlite3.IntegrityError):
        with plane._persistence.transaction() as conn:
            conn.execute("UPDATE security_events SET severity = 'critical'")
    with pytest.raises(sqlite3.IntegrityError):
        with plane._persistence.transaction() as conn:
            conn.execute("DELETE FROM security_events")
    assert len(plane.recent_events()) == 1


def test_append_failure_is_swallowed_and_alarmed(plane):
    handler = _Collect()
    alarm = logging.getLogger("anchorid.trust.audit.alarm")
    alarm.addHandler(handler)
    try:
        plane.audit._store = _BrokenStore()
        assert plane.audit.append(Severity.INFO, EventKind.PIN_ISSUED, device_id="a") is None
        # the operation itself still succeeds
        ctx = onboarded(plane, "phone", "alice")
        assert ctx.profile_id is not None
    finally:
        alarm.removeHandler(handler)
    assert plane.audit.dropped_events == 2
    assert handler.records and handler.records[0].levelno == logging.ERROR


def test_moderation_verdicts(plane):
    uploader = onboarded(plane, "phone", "alice")
    assert plane.record_moderation_verdict(uploader, "clip-1", ModerationVerdict(False, 0.99)) is None
    mild = plane.record_moderation_verdict(uploader, "clip-2", ModerationVerdict(True, 0.5, ("spam",)))
    severe = plane.record_moderation_verdict(uploader, "clip-3", ModerationVerdict(True, 0.9, ("nudity",)))
    assert mild.severity is Severity.WARNING
    assert severe.severity is Severity.ERROR
    assert severe.metadata["content_id"] == "clip-3"
    assert severe.profile_id == uploader.profile_id


def test_review_access_is_admin_only(plane):
    admin = first_admin(plane)
    member = onboarded(plane, "member", "m")
    plane.authorize_review(admin)
    with pytest.raises(NotAuthorized):
        plane.authorize_review(member)
    with pytest.raises(NotAuthorized):
        plane.authorize_review(plane.resolve_context(None))
