from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from anchorid.services.trust import (
    AdminCapacityExceeded,
    AlreadyGranted,
    DeviceRevoked,
    EventKind,
    NoDeviceIdentity,
    NotAuthorized,
    ProfileRequired,
    Severity,
    UnknownProfile,
)
from trust_support import first_admin, onboarded


def test_bootstrap_grants_first_admin_and_is_audited(plane):
    ctx = onboarded(plane, "founder-phone", "founder")
    assert not plane.is_admin(ctx)
    grant = plane.bootstrap_admin(ctx)
    assert grant.profile_id == ctx.profile_id
    assert plane.is_admin(plane.resolve_context("founder-phone"))
    events = plane.recent_events(kind=EventKind.ADMIN_BOOTSTRAPPED)
    assert len(events) == 1
    assert events[0].severity is Severity.CRITICAL


def test_bootstrap_is_refused_once_any_grant_exists(plane):
    first_admin(plane)
    late = onboarded(plane, "late-phone", "latecomer")
    with pytest.raises(NotAuthorized):
        plane.bootstrap_admin(late)
    assert late.profile_id not in {g.profile_id for g in plane.list_admins()}
    assert plane.recent_events(kind=EventKind.ADMIN_BOOTSTRAP_REFUSED)
    assert plane.get_device("late-phone").failed_auth_count == 1


def test_bootstrap_requires_bound_device(plane):
    with pytest.raises(NoDeviceIdentity):
        plane.bootstrap_admin(plane.resolve_context(None))
    with pytest.raises(ProfileRequired):
        plane.bootstrap_admin(plane.resolve_context("unbound"))
    assert plane.list_admins() == []


def test_non_admin_cannot_grant(plane):
    first_admin(plane)
    member = onboarded(plane, "member-phone", "member")
    with pytest.raises(NotAuthorized):
        plane.grant_admin(member, member.profile_id)
    denied = plane.recent_events(kind=EventKind.ADMIN_ACTION_DENIED)
    assert denied and denied[0].metadata["action"] == "grant"
    assert len(plane.list_admins()) == 1


def test_grant_rejects_unknown_profile(plane):
    admin = first_admin(plane)
    with pytest.raises(UnknownProfile):
        plane.grant_admin(admin, "nobody")


def test_capacity_is_enforced(plane):
    admin = first_admin(plane)
    second = plane.local_profiles.create("second")
    third = plane.local_profiles.create("third")
    plane.grant_admin(admin, second.id)
    with pytest.raises(AdminCapacityExceeded):
        plane.grant_admin(admin, third.id)
    assert {g.profile_id for g in plane.list_admins()} == {admin.profile_id, second.id}
    assert plane.admins.remaining_capacity() == 0
    assert plane.recent_events(kind=EventKind.ADMIN_CAPACITY_EXCEEDED)


def test_regrant_refreshes_timestamp(plane, clock):
    admin = first_admin(plane)
    second = plane.local_profiles.create("second")
    original = plane.grant_admin(admin, second.id)
    clock.advance(hours=1)
    with pytest.raises(AlreadyGranted) as excinfo:
        plane.grant_admin(admin, second.id)
    assert excinfo.value.grant.created_at == clock.now
    assert excinfo.value.grant.created_at > original.created_at
    assert len(plane.list_admins()) == 2


def test_revoke_frees_a_slot(plane):
    admin = first_admin(plane)
    second = plane.local_profiles.create("second")
    third = plane.local_profiles.create("third")
    plane.grant_admin(admin, second.id)
    assert plane.revoke_admin(admin, second.id) is True
    assert plane.revoke_admin(admin, second.id) is False
    plane.grant_admin(admin, third.id)
    assert {g.profile_id for g in plane.list_admins()} == {admin.profile_id, third.id}


def test_concurrent_grants_never_exceed_capacity(plane):
    admin = first_admin(plane)
    targets = [plane.local_profiles.create(f"candidate-{i}").id for i in range(10)]

    def attempt(target: str):
        try:
            return plane.grant_admin(admin, target)
        except AdminCapacityExceeded as exc:
            return exc

    with ThreadPoolExecutor(max_workers=10) as pool:
        results = list(pool.map(attempt, targets))

    granted = [r for r in results if not isinstance(r, AdminCapacityExceeded)]
    assert len(granted) == 1
    assert len(plane.list_admins()) == 2


def test_concurrent_grants_across_connections(make_plane):
    planes = [make_plane(), make_plane()]
    admin = first_admin(planes[0])
    targets = [planes[0].local_profiles.create(f"candidate-{i}").id for i in range(6)]

    def attempt(index: int):
        try:
            return planes[index % 2].grant_admin(admin, targets[index])
        except AdminCapacityExceeded as exc:
            return exc

    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(attempt, range(6)))

    assert sum(not isinstance(r, AdminCapacityExceeded) for r in results) == 1
    assert len(planes[1].list_admins()) == 2


def test_revoked_admin_device_loses_privilege(plane):
    founder = first_admin(plane)
    deputy = onboarded(plane, "deputy-phone", "deputy")
    plane.grant_admin(founder, deputy.profile_id)
    deputy = plane.resolve_context("deputy-phone")

    plane.revoke_device(deputy, founder.device_id, "compromised")

    stale = plane.resolve_context(founder.device_id)
    assert stale.is_revoked
    assert not stale.is_admin
    assert not plane.is_admin(stale)
    other = plane.local_profiles.create("other")
    with pytest.raises(DeviceRevoked):
        plane.grant_admin(stale, other.id)
    with pytest.raises(NotAuthorized):
        plane.authorize_review(stale)


def test_revoking_an_admin_frees_the_slot_for_another(plane):
    p1 = first_admin(plane, "dev-1", "p1")
    p2 = onboarded(plane, "dev-2", "p2")
    p3 = onboarded(plane, "dev-3", "p3")
    plane.grant_admin(p1, p2.profile_id)
    with pytest.raises(AdminCapacityExceeded):
        plane.grant_admin(p1, p3.profile_id)

    p2 = plane.resolve_context("dev-2")
    assert plane.revoke_admin(p2, p1.profile_id)
    plane.grant_admin(p2, p3.profile_id)

    assert {g.profile_id for g in plane.list_admins()} == {p2.profile_id, p3.profile_id}
    assert not plane.resolve_context("dev-1").is_admin


def test_grant_rechecks_actor_device_under_the_lock(plane):
    founder = first_admin(plane, "founder-phone", "founder")
    deputy = onboarded(plane, "deputy-phone", "deputy")
    plane.grant_admin(founder, deputy.profile_id)
    deputy = plane.resolve_context("deputy-phone")
    newcomer = onboarded(plane, "newcomer-phone", "newcomer")

    plane.revoke_device(deputy, founder.device_id, "compromised")
    plane.revoke_admin(deputy, deputy.profile_id)

    # founder still holds the context resolved before the revocation
    assert founder.is_admin and not founder.is_revoked
    with pytest.raises(DeviceRevoked):
        plane.grant_admin(founder, newcomer.profile_id)
    with pytest.raises(DeviceRevoked):
        plane.revoke_admin(founder, founder.profile_id)
    assert [g.profile_id for g in plane.list_admins()] == [founder.profile_id]
    denied = plane.recent_events(kind=EventKind.ADMIN_ACTION_DENIED)
    assert {e.metadata["action"] for e in denied} == {"grant", "revoke"}
    assert {e.metadata["reason"] for e in denied} == {"device_revoked"}


def test_grant_rechecks_actor_grant_under_the_lock(plane):
    founder = first_admin(plane, "founder-phone", "founder")
    deputy = onboarded(plane, "deputy-phone", "deputy")
    plane.grant_admin(founder, deputy.profile_id)
    deputy = plane.resolve_context("deputy-phone")
    newcomer = onboarded(plane, "newcomer-phone", "newcomer")

    plane.revoke_admin(founder, deputy.profile_id)

    with pytest.raises(NotAuthorized):
        plane.grant_admin(deputy, newcomer.profile_id)
    assert [g.profile_id for g in plane.list_admins()] == [founder.profile_id]


def test_bootstrap_refuses_a_device_revoked_after_resolution(plane):
    keeper = first_admin(plane, "keeper", "keeper")
    hopeful = onboarded(plane, "hopeful", "hopeful")
    plane.revoke_device(keeper, hopeful.device_id, "abuse")
    plane.revoke_admin(keeper, keeper.profile_id)

    with pytest.raises(DeviceRevoked):
        plane.bootstrap_admin(hopeful)
    assert plane.list_admins() == []
