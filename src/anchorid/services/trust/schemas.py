"""Pydantic-free schema helpers shared by the trust plane and its transports."""
from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Sequence


def _isoformat(dt: datetime) -> str:
    moment = dt.astimezone(timezone.utc)
    return moment.replace(microsecond=moment.microsecond // 1000 * 1000).isoformat().replace("+00:00", "Z")


def canonical_json(record: Mapping[str, Any]) -> bytes:
    return json.dumps(record, sort_keys=True, separators=(",", ":")).encode("utf-8")


def sign_record(secret: bytes, record: Mapping[str, Any]) -> str:
    return hmac.new(secret, canonical_json(record), hashlib.sha256).hexdigest()


@dataclass(slots=True)
class ErrorEnvelope:
    code: str
    message: str
    hint: str | None = None
    retry_after: int | None = None
    event_id: str | None = None
    server_time_utc: datetime | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if self.hint is not None:
            data["hint"] = self.hint
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        if self.event_id is not None:
            data["event_id"] = self.event_id
        if self.server_time_utc is not None:
            data["server_time_utc"] = _isoformat(self.server_time_utc)
        return data


@dataclass(slots=True)
class AuditExport:
    records: Sequence[Mapping[str, Any]] = field(default_factory=tuple)

    def as_ndjson(self) -> str:
        return "\n".join(json.dumps(record, sort_keys=True) for record in self.records)

    def verify(self, secret: bytes) -> bool:
        for record in self.records:
            payload = dict(record)
            signature = payload.pop("signature", None)
            if signature is None:
                return False
            if not hmac.compare_digest(sign_record(secret, payload), signature):
                return False
        return True
