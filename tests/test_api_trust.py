from __future__ import annotations

import json
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from anchorid.apps.api.server import create_app
from anchorid.services.trust import TrustControlPlane


def _write_config(path: Path, **rate_limits: int) -> Path:
    config = {
        "pin_hmac_key": "api-pin-pepper",
        "hmac_audit_key": "api-audit-key",
        "admin": {"capacity": 2},
        "rate_limit_window": 60,
        "rate_limits": {"pin_issue": 0, "pin_redeem": 0, "pin_redeem_suspicious": 0, "admin_grant": 0, **rate_limits},
    }
    path.write_text(json.dumps(config), encoding="utf-8")
    return path


@pytest.fixture()
def plane(tmp_path: Path):
    plane = TrustControlPlane(db_path=tmp_path / "api.sqlite", config_path=_write_config(tmp_path / "config.json"))
    yield plane
    plane.close()


@pytest.fixture()
def client(plane) -> TestClient:
    return TestClient(create_app(plane))


def _as(device: str) -> dict[str, str]:
    return {"X-Device-Id": device}


def _onboard(client: TestClient, device: str, handle: str) -> dict:
    response = client.post("/v1/profiles", json={"handle": handle}, headers=_as(device))
    assert response.status_code == 200
    return response.json()["profile"]


def test_missing_header_is_anonymous(client):
    body = client.get("/v1/identity").json()
    assert body == {"anonymous": True, "device": None, "profile": None, "is_admin": False}
    response = client.post("/v1/link/pins")
    assert response.status_code == 401
    assert response.json()["code"] == "no_device_identity"


def test_link_flow_over_http(client):
    profile = _onboard(client, "phone", "alice")
    issued = client.post("/v1/link/pins", headers=_as("phone")).json()
    assert len(issued["pin"]) == 6

    listed = client.get("/v1/link/pins", headers=_as("phone")).json()["pins"]
    assert [pin["id"] for pin in listed] == [issued["pin_id"]]
    assert "pin" not in listed[0]

    redeemed = client.post("/v1/link/redeem", json={"pin": issued["pin"]}, headers=_as("laptop"))
    assert redeemed.status_code == 200
    assert redeemed.json()["profile"]["id"] == profile["id"]
    assert client.get("/v1/identity", headers=_as("laptop")).json()["profile"]["id"] == profile["id"]

    again = client.post("/v1/link/redeem", json={"pin": issued["pin"]}, headers=_as("tablet"))
    assert again.status_code == 400
    body = again.json()
    assert body["code"] == "invalid_or_expired_pin"
    assert "reason" not in body


def test_body_cannot_name_an_identity(client):
    _onboard(client, "phone", "alice")
    response = client.post(
        "/v1/link/pins",
        json={"device_id": "phone", "profile_id": "whatever"},
        headers=_as("stranger"),
    )
    assert response.status_code == 403
    assert response.json()["code"] == "profile_required"


def test_admin_surface(client):
    founder = _onboard(client, "founder", "founder")
    member = _onboard(client, "member", "member")

    assert client.get("/v1/security/summary", headers=_as("member")).status_code == 403
    assert client.post("/v1/admin/bootstrap", headers=_as("founder")).status_code == 200
    assert client.post("/v1/admin/bootstrap", headers=_as("member")).status_code == 403
    assert client.get("/v1/admin/me", headers=_as("founder")).json() == {"is_admin": True}

    granted = client.post("/v1/admin/grants", json={"profile_id": member["id"]}, headers=_as("founder"))
    assert granted.status_code == 200
    assert granted.json()["already_granted"] is False
    repeat = client.post("/v1/admin/grants", json={"profile_id": member["id"]}, headers=_as("founder"))
    assert repeat.status_code == 200
    assert repeat.json()["already_granted"] is True

    third = _onboard(client, "third", "third")
    full = client.post("/v1/admin/grants", json={"profile_id": third["id"]}, headers=_as("founder"))
    assert full.status_code == 409
    assert full.json()["code"] == "admin_capacity_exceeded"

    grants = client.get("/v1/admin/grants", headers=_as("founder")).json()
    assert {g["profile_id"] for g in grants["grants"]} == {founder["id"], member["id"]}
    assert grants["remaining"] == 0

    events = client.get("/v1/security/events", params={"kind": "admin_bootstrapped"}, headers=_as("member")).json()
    assert len(events["events"]) == 1
    summary = client.get("/v1/security/summary", headers=_as("founder")).json()
    assert summary["by_kind"]["admin_bootstrapped"] == 1


def test_revoked_device_is_refused(client):
    _onboard(client, "founder", "founder")
    client.post("/v1/admin/bootstrap", headers=_as("founder"))
    _onboard(client, "thief", "thief")
    response = client.post("/v1/admin/devices/thief/revoke", json={"reason": "abuse"}, headers=_as("founder"))
    assert response.status_code == 200
    assert response.json()["device"]["is_revoked"] is True

    refused = client.post("/v1/link/pins", headers=_as("thief"))
    assert refused.status_code == 403
    assert refused.json()["code"] == "device_revoked"

    restored = client.post("/v1/admin/devices/thief/restore", headers=_as("founder"))
    assert restored.json()["device"]["is_revoked"] is False
    assert client.post("/v1/admin/devices/ghost/clear-suspicious", headers=_as("founder")).status_code == 404


def test_moderation_access(client):
    _onboard(client, "founder", "founder")
    client.post("/v1/admin/bootstrap", headers=_as("founder"))
    assert client.get("/v1/moderation/access", headers=_as("founder")).json() == {"allowed": True}
    assert client.get("/v1/moderation/access", headers=_as("random")).status_code == 403


def test_rate_limited_response_has_retry_after(tmp_path):
    plane = TrustControlPlane(
        db_path=tmp_path / "limited.sqlite",
        config_path=_write_config(tmp_path / "limited.json", pin_redeem=1),
    )
    try:
        client = TestClient(create_app(plane))
        assert client.post("/v1/link/redeem", json={"pin": "000000"}, headers=_as("guesser")).status_code == 400
        limited = client.post("/v1/link/redeem", json={"pin": "000001"}, headers=_as("guesser"))
        assert limited.status_code == 429
        assert limited.headers["Retry-After"] == str(limited.json()["retry_after"])
    finally:
        plane.close()


def test_profile_owner_lists_linked_devices(client):
    _onboard(client, "phone", "alice")
    issued = client.post("/v1/link/pins", headers=_as("phone")).json()
    client.post("/v1/link/redeem", json={"pin": issued["pin"]}, headers=_as("laptop"))
    _onboard(client, "stranger", "bob")

    response = client.get("/v1/devices", headers=_as("laptop"))
    assert response.status_code == 200
    devices = {d["device_id"]: d for d in response.json()["devices"]}
    assert set(devices) == {"phone", "laptop"}
    assert devices["laptop"]["is_current"] and not devices["phone"]["is_current"]
    assert devices["phone"]["is_suspicious"] is False
    assert devices["phone"]["is_revoked"] is False
    for entry in devices.values():
        assert "ip_address" not in entry
        assert "user_agent" not in entry

    unbound = client.get("/v1/devices", headers=_as("fresh"))
    assert unbound.status_code == 403
    assert unbound.json()["code"] == "profile_required"
