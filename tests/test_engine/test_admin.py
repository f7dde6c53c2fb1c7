"""Tests for administrative mutations: validation, persistence, invalidation and auditing."""

from __future__ import annotations

from datetime import timedelta

from tenant_rbac.engine.audit import AuditLevel
from tenant_rbac.engine.types import PermissionSpec, ReasonCode


def test_assign_role_grants_immediately(ac, world):
    reviewers = world.role("reviewer", "t1", "documents:read")
    assert not ac.resolver.resolve("u2", "t1", "documents", "read").granted

    result = ac.admin.assign_role("manager", "t1", "u2", reviewers)

    assert result.ok, result
    assert result.data == {"userId": "u2", "roleId": reviewers, "tenantId": "t1"}
    assert ac.resolver.resolve("u2", "t1", "documents", "read").granted


def test_cannot_assign_role_more_capable_than_grantor(ac, world):
    admins = world.role("deleter", "t1", "documents:read", "documents:delete")

    result = ac.admin.assign_role("manager", "t1", "u2", admins)

    assert result.reason is ReasonCode.MISSING_PERMISSION
    assert not any(a.role_id == admins for a in ac.store.active_assignments("u2", "t1"))


def test_super_admin_role_can_only_be_assigned_by_super_admin(ac, world):
    super_admin = world.system_role("SuperAdmin")

    denied = ac.admin.assign_role("manager", "t1", "u1", super_admin)
    assert denied.reason is ReasonCode.SYSTEM_ROLE_PROTECTED

    allowed = ac.admin.assign_role("root", "t1", "u1", super_admin)
    assert allowed.ok
    assert ac.resolver.resolve("u1", "t1", "anything", "delete").granted


def test_role_from_another_tenant_is_not_found(ac, world):
    foreign = world.role("foreign", "t2", "documents:read")

    result = ac.admin.assign_role("manager", "t1", "u2", foreign)

    assert result.reason is ReasonCode.NOT_FOUND


def test_cross_tenant_assignment_by_super_admin(ac, world):
    world.user("u3")
    t2_role = world.role("t2-editor", "t2", "documents:read")

    result = ac.admin.assign_role("root", "t1", "u3", t2_role, target_tenant_id="t2")

    assert result.ok, result
    assert ac.resolver.resolve("u3", "t2", "documents", "read").granted
    assert not ac.resolver.resolve("u3", "t1", "documents", "read").granted


def test_duplicate_assignment_conflicts(ac, world):
    result = ac.admin.assign_role("root", "t1", "u1", "editor-t1")
    assert result.reason is ReasonCode.CONFLICT


def test_assignment_expiry_must_be_in_the_future(ac, world, clock):
    result = ac.admin.assign_role("root", "t1", "u2", "editor-t1", expires_at=clock.now() - timedelta(seconds=1))
    assert result.reason is ReasonCode.INVALID_REQUEST


def test_create_role_and_duplicate_name(ac, world):
    created = ac.admin.create_role("manager", "t1", "auditors", description="Read-only audit access")
    assert created.ok
    assert created.data["tenantId"] == "t1"
    assert created.data["isSystemRole"] is False

    duplicate = ac.admin.create_role("manager", "t1", "auditors")
    assert duplicate.reason is ReasonCode.CONFLICT


def test_create_system_role_requires_super_admin(ac, world):
    assert ac.admin.create_role("manager", "t1", "Operator", system=True).reason is ReasonCode.SYSTEM_ROLE_PROTECTED

    created = ac.admin.create_role("root", "t1", "Operator", system=True)
    assert created.ok
    assert created.data["tenantId"] is None
    assert created.data["isSystemRole"] is True


def test_removing_permission_invalidates_every_holder(ac, world):
    assert ac.resolver.resolve("u1", "t1", "documents", "write").granted

    result = ac.admin.remove_permission_from_role("root", "t1", "editor-t1", PermissionSpec("documents", "write"))

    assert result.ok, result
    assert not ac.resolver.resolve("u1", "t1", "documents", "write").granted
    assert ac.resolver.resolve("u1", "t1", "documents", "read").granted


def test_adding_permission_reaches_existing_holders(ac, world):
    assert not ac.resolver.resolve("u1", "t1", "documents", "archive").granted

    world.grant("mgr-t1", "documents:archive")
    result = ac.admin.add_permission_to_role("manager", "t1", "editor-t1", PermissionSpec("documents", "archive"))

    assert result.ok, result
    assert ac.resolver.resolve("u1", "t1", "documents", "archive").granted


def test_system_role_permissions_are_protected(ac, world):
    basic = world.system_role("BasicUser")

    result = ac.admin.add_permission_to_role("manager", "t1", basic, PermissionSpec("documents", "read"))

    assert result.reason is ReasonCode.SYSTEM_ROLE_PROTECTED


def test_elevation_requires_reason_and_bounded_duration(ac, world, policy):
    spec = PermissionSpec("documents", "read")

    no_reason = ac.admin.elevate_permissions("manager", "t1", "u2", spec, reason="  ", duration_seconds=60)
    assert no_reason.reason is ReasonCode.INVALID_REQUEST

    too_long = ac.admin.elevate_permissions(
        "manager", "t1", "u2", spec, reason="incident", duration_seconds=policy.elevation.max_duration_seconds + 1
    )
    assert too_long.reason is ReasonCode.INVALID_REQUEST

    ok = ac.admin.elevate_permissions("manager", "t1", "u2", spec, reason="incident", duration_seconds=60)
    assert ok.ok
    assert "elevationId" in ok.data


def test_elevation_is_bounded_by_grantor_permissions(ac, world):
    result = ac.admin.elevate_permissions(
        "manager", "t1", "u2", PermissionSpec("payroll", "read"), reason="incident", duration_seconds=60
    )
    assert result.reason is ReasonCode.MISSING_PERMISSION


def test_unexpected_error_is_reported_as_internal_error(ac, world, sink, monkeypatch):
    def broken(*_args, **_kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(ac.store, "create_role", broken)

    result = ac.admin.create_role("root", "t1", "anything")

    assert result.reason is ReasonCode.INTERNAL_ERROR
    event = sink.of("administration", "create_role")[-1]
    assert event.level is AuditLevel.ERROR
    assert event.trace_id == result.trace_id
    assert "boom" not in str(event.to_dict())


def test_mutations_are_audited(ac, world, sink):
    ok = ac.admin.revoke_role("manager", "t1", "u1", "editor-t1")
    rejected = ac.admin.revoke_role("plain", "t1", "u2", world.system_role("BasicUser"))

    events = sink.of("administration", "revoke_role")
    assert [(e.outcome, e.trace_id) for e in events] == [("success", ok.trace_id), ("failure", rejected.trace_id)]
    assert events[1].metadata["reason"] == "cannot_manage_permissions"


def test_boundary_checks_for_assignment_name_the_role(ac, world, sink):
    reviewers = world.role("reviewer", "t1", "documents:read")

    result = ac.admin.assign_role("manager", "t1", "u2", reviewers)

    assert result.ok, result
    checks = [e for e in sink.of("boundary") if e.trace_id == result.trace_id]
    assert checks
    assert {e.metadata["targetRoleId"] for e in checks} == {reviewers}
