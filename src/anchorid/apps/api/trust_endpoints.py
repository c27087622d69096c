from __future__ import annotations

from datetime import timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from anchorid.services.trust import (
    AlreadyGranted,
    EventKind,
    IdentityContext,
    NotAuthorized,
    Severity,
    TrustControlPlane,
)

router = APIRouter(prefix="/v1", tags=["trust"])


def get_control_plane(request: Request) -> TrustControlPlane:
    return request.app.state.control_plane


def identity_context(
    request: Request,
    x_device_id: Optional[str] = Header(default=None, alias="X-Device-Id"),
    user_agent: Optional[str] = Header(default=None, alias="User-Agent"),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> IdentityContext:
    """The device header is the only identity source; request bodies never name one."""

    client_ip = request.client.host if request.client else None
    return plane.resolve_context(x_device_id, user_agent=user_agent, ip_address=client_ip)


def admin_context(
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> IdentityContext:
    if not plane.is_admin(ctx):
        raise NotAuthorized()
    return ctx


class OnboardReq(BaseModel):
    handle: str = Field(min_length=1, max_length=64)
    avatar: Optional[str] = None


class RedeemReq(BaseModel):
    pin: str = Field(min_length=1, max_length=32)


class GrantReq(BaseModel):
    profile_id: str


class RevokeDeviceReq(BaseModel):
    reason: str = Field(min_length=1, max_length=500)


@router.get("/identity")
def whoami(
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    profile = plane.profile_for(ctx)
    return {
        "anonymous": ctx.is_anonymous,
        "device": ctx.device.as_dict() if ctx.device else None,
        "profile": profile.as_dict() if profile else None,
        "is_admin": plane.is_admin(ctx),
    }


@router.get("/devices")
def my_devices(
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    devices = []
    for device in plane.my_devices(ctx):
        entry = device.as_dict()
        entry["is_current"] = device.device_id == ctx.device_id
        devices.append(entry)
    return {"devices": devices}


@router.post("/profiles")
def onboard(
    body: OnboardReq,
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    profile = plane.onboard(ctx, body.handle, avatar=body.avatar)
    return {"profile": profile.as_dict()}


@router.post("/link/pins")
def issue_pin(
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return plane.issue_pin(ctx).as_dict()


@router.get("/link/pins")
def list_pins(
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return {"pins": [pin.as_dict() for pin in plane.active_pins(ctx)]}


@router.delete("/link/pins/{pin_id}")
def revoke_pin(
    pin_id: str,
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return {"revoked": plane.revoke_pin(ctx, pin_id)}


@router.post("/link/redeem")
def redeem_pin(
    body: RedeemReq,
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    profile = plane.redeem_pin(ctx, body.pin)
    return {"profile": profile.as_dict() if profile else None}


@router.get("/admin/me")
def admin_me(
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return {"is_admin": plane.is_admin(ctx)}


@router.post("/admin/bootstrap")
def admin_bootstrap(
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return {"grant": plane.bootstrap_admin(ctx).as_dict()}


@router.get("/admin/grants")
def list_grants(
    ctx: IdentityContext = Depends(admin_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    grants = plane.list_admins()
    return {
        "grants": [grant.as_dict() for grant in grants],
        "capacity": plane.admins.capacity,
        "remaining": plane.admins.remaining_capacity(),
    }


@router.post("/admin/grants")
def grant_admin(
    body: GrantReq,
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> Any:
    try:
        grant = plane.grant_admin(ctx, body.profile_id)
    except AlreadyGranted as exc:
        return JSONResponse(
            status_code=exc.status_code,
            content={"grant": exc.grant.as_dict(), "already_granted": True},
        )
    return {"grant": grant.as_dict(), "already_granted": False}


@router.delete("/admin/grants/{profile_id}")
def revoke_admin(
    profile_id: str,
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return {"revoked": plane.revoke_admin(ctx, profile_id)}


@router.post("/admin/devices/{device_id}/revoke")
def revoke_device(
    device_id: str,
    body: RevokeDeviceReq,
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return {"device": plane.revoke_device(ctx, device_id, body.reason).as_dict()}


@router.post("/admin/devices/{device_id}/restore")
def restore_device(
    device_id: str,
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return {"device": plane.restore_device(ctx, device_id).as_dict()}


@router.post("/admin/devices/{device_id}/clear-suspicious")
def clear_suspicious(
    device_id: str,
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return {"device": plane.clear_suspicious(ctx, device_id).as_dict()}


@router.get("/security/summary")
def security_summary(
    window_hours: int = Query(default=24, ge=1, le=24 * 30),
    ctx: IdentityContext = Depends(admin_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    return plane.summarize(timedelta(hours=window_hours)).as_dict()


@router.get("/security/events")
def security_events(
    limit: int = Query(default=50, ge=1, le=1000),
    severity: Optional[Severity] = None,
    kind: Optional[EventKind] = None,
    device_id: Optional[str] = None,
    ctx: IdentityContext = Depends(admin_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    events = plane.recent_events(limit, severity=severity, kind=kind, device_id=device_id)
    return {"events": [event.as_dict() for event in events]}


@router.get("/moderation/access")
def moderation_access(
    ctx: IdentityContext = Depends(identity_context),
    plane: TrustControlPlane = Depends(get_control_plane),
) -> dict[str, Any]:
    plane.authorize_review(ctx)
    return {"allowed": True}
