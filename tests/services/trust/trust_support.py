"""Shared helpers for the trust control plane tests."""
from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from anchorid.services.trust import IdentityContext, TrustControlPlane


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def write_config(path: Path, **overrides: Any) -> Path:
    config = {
        "pin_hmac_key": "test-pin-pepper",
        "hmac_audit_key": "test-audit-key",
        "admin": {"capacity": 2},
        "link": {"pin_length": 6, "pin_ttl_seconds": 600},
        "suspicion": {"failure_threshold": 10, "window_seconds": 3600},
        "rate_limit_window": 60,
        "rate_limits": {"pin_issue": 0, "pin_redeem": 0, "pin_redeem_suspicious": 0, "admin_grant": 0},
        "registry": {"max_token_length": 64},
    }
    path.write_text(json.dumps(_merge(config, overrides)), encoding="utf-8")
    return path


def onboarded(plane: TrustControlPlane, token: str, handle: str) -> IdentityContext:
    """Resolve ``token``, create a profile for it and return the fresh context."""
    plane.onboard(plane.resolve_context(token), handle)
    return plane.resolve_context(token)


def first_admin(plane: TrustControlPlane, token: str = "admin-device", handle: str = "root") -> IdentityContext:
    ctx = onboarded(plane, token, handle)
    plane.bootstrap_admin(ctx)
    return plane.resolve_context(token)
