"""Append-only security event log.

Appending is fire-and-forget: a failed write must never turn a successful
operation into a failed one, so errors are counted, raised as an alarm on the
``anchorid.trust.audit.alarm`` logger and otherwise dropped.  Callers append
after their own transaction has committed.
"""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from .enums import EventKind, Severity
from .ids import DeviceToken, EventId, ProfileId, generate_event_id
from .models import SecurityEvent, SecuritySummary, decode_time, encode_time
from .persistence.sqlite import SQLitePersistence
from .schemas import AuditExport, sign_record

__all__ = ["SecurityAuditLog"]

_log = logging.getLogger("anchorid.trust.audit")
_alarm = logging.getLogger("anchorid.trust.audit.alarm")


class SecurityAuditLog:
    def __init__(
        self,
        store: SQLitePersistence,
        *,
        key: bytes,
        clock: Callable[[], datetime],
    ) -> None:
        self._store = store
        self._key = key
        self._clock = clock
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped_events(self) -> int:
        return self._dropped

    def append(
        self,
        severity: Severity,
        kind: EventKind,
        *,
        device_id: str | None,
        profile_id: str | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> SecurityEvent | None:
        try:
            event = SecurityEvent(
                id=generate_event_id(),
                severity=Severity(severity),
                kind=EventKind(kind),
                created_at=self._clock(),
                device_id=DeviceToken(device_id) if device_id else None,
                profile_id=ProfileId(profile_id) if profile_id else None,
                metadata=dict(metadata or {}),
            )
            record = self._record(event)
            signature = sign_record(self._key, record)
            with self._store.transaction() as conn:
                conn.execute(
                    "INSERT INTO security_events(id, severity, kind, device_id, profile_id, metadata_json, signature, created_at) "
                    "VALUES(?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        event.id,
                        event.severity.value,
                        event.kind.value,
                        event.device_id,
                        event.profile_id,
                        json.dumps(event.metadata, sort_keys=True),
                        signature,
                        record["created_at"],
                    ),
                )
        except Exception:
            with self._dropped_lock:
                self._dropped += 1
            _alarm.error(
                "security event dropped kind=%s severity=%s device=%s",
                getattr(kind, "value", kind),
                getattr(severity, "value", severity),
                device_id,
                exc_info=True,
            )
            return None
        _log.debug("security event %s %s device=%s", event.severity.value, event.kind.value, event.device_id)
        return event

    def summarize(self, window: timedelta) -> SecuritySummary:
        now = self._clock()
        start = now - window
        rows = self._store.read(
            "SELECT severity, kind, COUNT(*) AS n FROM security_events WHERE created_at >= ? GROUP BY severity, kind",
            (encode_time(start),),
        )
        summary = SecuritySummary(window_start=start, window_end=now, dropped_events=self._dropped)
        for row in rows:
            count = int(row["n"])
            summary.total += count
            summary.by_severity[row["severity"]] = summary.by_severity.get(row["severity"], 0) + count
            summary.by_kind[row["kind"]] = summary.by_kind.get(row["kind"], 0) + count
        flags = self._store.read_one(
            "SELECT SUM(is_suspicious) AS suspicious, SUM(is_revoked) AS revoked FROM devices"
        )
        if flags is not None:
            summary.suspicious_devices = int(flags["suspicious"] or 0)
            summary.revoked_devices = int(flags["revoked"] or 0)
        return summary

    def recent(
        self,
        limit: int = 50,
        *,
        severity: Severity | str | None = None,
        kind: EventKind | str | None = None,
        device_id: str | None = None,
    ) -> list[SecurityEvent]:
        clauses: list[str] = []
        params: list[Any] = []
        if severity is not None:
            clauses.append("severity = ?")
            params.append(Severity(severity).value)
        if kind is not None:
            clauses.append("kind = ?")
            params.append(EventKind(kind).value)
        if device_id is not None:
            clauses.append("device_id = ?")
            params.append(device_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(max(1, min(int(limit), 1000)))
        rows = self._store.read(f"SELECT * FROM security_events {where} ORDER BY seq DESC LIMIT ?", params)
        return [self._event_from_row(row) for row in rows]

    def export(self, since: datetime | None = None) -> AuditExport:
        if since is None:
            rows = self._store.read("SELECT * FROM security_events ORDER BY seq ASC")
        else:
            rows = self._store.read(
                "SELECT * FROM security_events WHERE created_at >= ? ORDER BY seq ASC",
                (encode_time(since),),
            )
        records = []
        for row in rows:
            record = self._record(self._event_from_row(row))
            record["signature"] = row["signature"]
            records.append(record)
        return AuditExport(records=tuple(records))

    @staticmethod
    def _record(event: SecurityEvent) -> dict[str, Any]:
        return {
            "id": event.id,
            "severity": event.severity.value,
            "kind": event.kind.value,
            "device_id": event.device_id,
            "profile_id": event.profile_id,
            "metadata": event.metadata,
            "created_at": encode_time(event.created_at),
        }

    @staticmethod
    def _event_from_row(row) -> SecurityEvent:
        return SecurityEvent(
            id=EventId(row["id"]),
            severity=Severity(row["severity"]),
            kind=EventKind(row["kind"]),
            created_at=decode_time(row["created_at"]),
            device_id=DeviceToken(row["device_id"]) if row["device_id"] else None,
            profile_id=ProfileId(row["profile_id"]) if row["profile_id"] else None,
            metadata=json.loads(row["metadata_json"]),
        )
