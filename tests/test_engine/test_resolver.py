"""Tests for permission resolution: tenant scoping, caching, invalidation and failure handling."""

from __future__ import annotations

import threading
from datetime import timedelta

from sqlalchemy.exc import OperationalError

from tenant_rbac.engine.audit import AuditLevel
from tenant_rbac.engine.cache import InMemoryCacheClient, PermissionCache
from tenant_rbac.engine.resolver import PermissionResolver
from tenant_rbac.engine.types import Outcome, PermissionSpec, ReasonCode
from tenant_rbac.models.rbac import UserStatus


def _db_down(*_args):
    raise OperationalError("SELECT 1", {}, Exception("database is down"))


class _CacheDown(InMemoryCacheClient):
    def get(self, key):
        raise ConnectionError("cache down")


class _CacheReadOnly(InMemoryCacheClient):
    def set(self, key, value, ttl_seconds=None):
        raise ConnectionError("cache full")


def _resolver_over(ac, client):
    return PermissionResolver(ac.store, PermissionCache(client), ac.emitter, ac.policy)


def test_role_permission_granted_in_its_tenant_only(ac, world):
    in_t1 = ac.resolver.resolve("u1", "t1", "documents", "write")
    assert in_t1.granted
    assert in_t1.reason is ReasonCode.ROLE_PERMISSION
    assert in_t1.from_cache is False

    in_t2 = ac.resolver.resolve("u1", "t2", "documents", "write")
    assert in_t2.outcome is Outcome.DENIED
    assert in_t2.reason is ReasonCode.NO_MATCHING_PERMISSION


def test_repeated_check_is_served_from_cache(ac, world):
    first = ac.resolver.resolve("u1", "t1", "documents", "write")
    second = ac.resolver.resolve("u1", "t1", "documents", "write")

    assert first.granted and second.granted
    assert second.from_cache is True
    assert second.reason is ReasonCode.CACHE_HIT
    assert ac.cache.stats().hits == 1


def test_revocation_invalidates_cached_grant(ac, world):
    assert ac.resolver.resolve("u1", "t1", "documents", "write").granted

    result = ac.admin.revoke_role("root", "t1", "u1", "editor-t1")
    assert result.ok, result

    after = ac.resolver.resolve("u1", "t1", "documents", "write")
    assert after.outcome is Outcome.DENIED
    assert after.from_cache is False


def test_new_assignment_overrides_cached_denial(ac, world):
    d = world
    reports = d.role("reporter", "t1", "reports:export")
    assert not ac.resolver.resolve("u1", "t1", "reports", "export").granted

    d.assign("u1", reports, "t1")

    assert ac.resolver.resolve("u1", "t1", "reports", "export").granted


def test_unknown_subject_is_denied_and_not_cached(ac, world):
    first = ac.resolver.resolve("ghost", "t1", "documents", "read")
    second = ac.resolver.resolve("ghost", "t1", "documents", "read")
    assert first.reason is ReasonCode.UNKNOWN_SUBJECT
    assert second.reason is ReasonCode.UNKNOWN_SUBJECT
    assert second.from_cache is False

    assert ac.resolver.resolve("u1", "no-such-tenant", "documents", "read").reason is ReasonCode.UNKNOWN_SUBJECT


def test_deactivated_user_loses_cached_grants(ac, world):
    assert ac.resolver.resolve("u1", "t1", "documents", "write").granted

    for update in ac.store.set_user_status("u1", UserStatus.SUSPENDED):
        ac.cache.publish_generation(update.user_id, update.tenant_id, update.generation)

    decision = ac.resolver.resolve("u1", "t1", "documents", "write")
    assert decision.outcome is Outcome.DENIED
    assert decision.reason is ReasonCode.SUBJECT_INACTIVE


def test_super_admin_is_scoped_to_its_tenant(ac, world):
    own = ac.resolver.resolve("root", "t1", "invoices", "delete")
    assert own.granted
    assert own.reason is ReasonCode.SUPER_ADMIN

    other = ac.resolver.resolve("root", "t2", "invoices", "delete")
    assert not other.granted


def test_basic_user_gets_default_grants_only(ac, world):
    profile = ac.resolver.resolve("u2", "t1", "profile", "read")
    assert profile.granted
    assert profile.reason is ReasonCode.DEFAULT_GRANT

    assert ac.resolver.resolve("u2", "t1", "dashboard", "view").granted
    assert not ac.resolver.resolve("u2", "t1", "documents", "read").granted


def test_resource_specific_grant_matches_only_that_resource(ac, world):
    d = world
    d.assign("u2", d.role("doc1-reader", "t1", "invoices:read:inv-1"), "t1")

    exact = ac.resolver.resolve("u2", "t1", "invoices", "read", "inv-1")
    assert exact.granted
    assert exact.reason is ReasonCode.RESOURCE_PERMISSION

    assert not ac.resolver.resolve("u2", "t1", "invoices", "read", "inv-2").granted
    # Without a resource id only type-wide grants match.
    assert not ac.resolver.resolve("u2", "t1", "invoices", "read").granted


def test_type_wide_grant_covers_every_resource(ac, world):
    decision = ac.resolver.resolve("u1", "t1", "documents", "read", "doc-42")
    assert decision.granted
    assert decision.reason is ReasonCode.ROLE_PERMISSION


def test_elevation_grants_until_it_expires(ac, world, clock):
    result = ac.admin.elevate_permissions(
        "root", "t1", "u1", PermissionSpec("reports", "export"), reason="quarter close", duration_seconds=600
    )
    assert result.ok, result

    granted = ac.resolver.resolve("u1", "t1", "reports", "export")
    assert granted.granted
    assert granted.reason is ReasonCode.ELEVATION

    clock.advance(601)

    expired = ac.resolver.resolve("u1", "t1", "reports", "export")
    assert not expired.granted
    assert expired.from_cache is False


def test_expired_assignment_is_ignored(ac, world, clock):
    d = world
    d.assign("u2", d.role("temp", "t1", "billing:read"), "t1", expires_at=clock.now() + timedelta(seconds=60))
    assert ac.resolver.resolve("u2", "t1", "billing", "read").granted

    clock.advance(61)

    assert not ac.resolver.resolve("u2", "t1", "billing", "read").granted


def test_store_failure_yields_unavailable_after_one_retry(ac, world, sink, monkeypatch):
    calls = []

    def failing(*args):
        calls.append(args)
        _db_down()

    monkeypatch.setattr(ac.store, "_read_subject", failing)

    decision = ac.resolver.resolve("u2", "t1", "documents", "read")

    assert decision.outcome is Outcome.UNAVAILABLE
    assert decision.reason is ReasonCode.RESOLVER_UNAVAILABLE
    assert len(calls) == 2
    events = sink.of("authorization", "permission_check")
    assert events[-1].level is AuditLevel.ERROR
    assert events[-1].trace_id == decision.trace_id


def test_store_timeout_yields_unavailable(ac, world, monkeypatch):
    release = threading.Event()

    def slow(*_args):
        release.wait(5)
        return None

    monkeypatch.setattr(ac.store, "_timeout", 0.05)
    monkeypatch.setattr(ac.store, "_read_subject", slow)
    try:
        decision = ac.resolver.resolve("u2", "t1", "documents", "read")
    finally:
        release.set()

    assert decision.unavailable


def test_authorize_fails_closed_for_destructive_actions(ac, world, sink, monkeypatch):
    monkeypatch.setattr(ac.store, "_read_subject", _db_down)

    assert ac.resolver.authorize("u1", "t1", "documents", "delete") is False
    assert sink.of("security", "fail_open") == []

    assert ac.resolver.authorize("u1", "t1", "documents", "read") is True
    alerts = sink.of("security", "fail_open")
    assert len(alerts) == 1
    assert alerts[0].level is AuditLevel.CRITICAL


def test_authorize_returns_decision_when_available(ac, world):
    assert ac.resolver.authorize("u1", "t1", "documents", "write") is True
    assert ac.resolver.authorize("u1", "t1", "documents", "delete") is False


def test_every_check_is_audited_with_a_trace_id(ac, world, sink):
    first = ac.resolver.resolve("u1", "t1", "documents", "write")
    second = ac.resolver.resolve("u1", "t1", "documents", "write")

    events = sink.of("authorization", "permission_check")
    assert [e.trace_id for e in events[-2:]] == [first.trace_id, second.trace_id]
    assert events[-1].metadata["fromCache"] is True
    assert events[-1].to_dict()["outcome"] == "granted"


def test_resolve_many_keeps_order_and_shares_trace(ac, world):
    checks = [
        PermissionSpec("documents", "write"),
        PermissionSpec("documents", "delete"),
        PermissionSpec("documents", "read"),
    ]
    decisions = ac.resolver.resolve_many("u1", "t1", checks)

    assert [d.granted for d in decisions] == [True, False, True]
    assert len({d.trace_id for d in decisions}) == 1


def test_effective_permissions_lists_sources(ac, world):
    d = world
    d.basic_user("u1", "t1")
    ac.admin.elevate_permissions(
        "root", "t1", "u1", PermissionSpec("reports", "export"), reason="audit", duration_seconds=300
    )

    perms = ac.resolver.effective_permissions("u1", "t1")
    listed = {(p.resource_type, p.action, p.source) for p in perms}

    assert ("documents", "write", "editor") in listed
    assert ("profile", "read", "default") in listed
    assert ("reports", "export", "elevation") in listed
    assert ac.resolver.effective_permissions("u1", "t2") == []


def test_effective_permissions_for_super_admin_is_wildcard(ac, world):
    perms = ac.resolver.effective_permissions("root", "t1")
    assert [(p.resource_type, p.action, p.source) for p in perms] == [("*", "*", "SuperAdmin")]


def test_repeated_denials_raise_probe_alert_once(ac, world, sink):
    for _ in range(25):
        ac.resolver.resolve("u2", "t1", "payroll", "read")

    alerts = sink.of("security", "permission_probe")
    assert len(alerts) == 1
    assert alerts[0].level is AuditLevel.CRITICAL
    assert alerts[0].user_id == "u2"


def test_colon_in_ids_does_not_share_cached_decisions(ac, directory):
    d = directory
    d.tenant("acme:eu")
    d.tenant("eu")
    d.user("alice")
    d.user("alice:acme")
    d.assign("alice", d.role("writer", "acme:eu", "documents:write"), "acme:eu")
    d.basic_user("alice:acme", "eu")

    assert ac.resolver.resolve("alice", "acme:eu", "documents", "write").granted
    other = ac.resolver.resolve("alice:acme", "eu", "documents", "write")

    assert other.outcome is Outcome.DENIED
    assert other.from_cache is False


def test_cache_failure_yields_unavailable(ac, world, sink):
    resolver = _resolver_over(ac, _CacheDown())

    decision = resolver.resolve("u1", "t1", "documents", "write")

    assert decision.outcome is Outcome.UNAVAILABLE
    assert decision.reason is ReasonCode.RESOLVER_UNAVAILABLE
    event = sink.of("authorization", "permission_check")[-1]
    assert event.level is AuditLevel.ERROR
    assert event.trace_id == decision.trace_id


def test_failed_cache_write_still_returns_the_decision(ac, world):
    resolver = _resolver_over(ac, _CacheReadOnly())

    assert resolver.resolve("u1", "t1", "documents", "write").granted
    assert resolver.resolve("u1", "t1", "documents", "delete").outcome is Outcome.DENIED


def test_unexpected_store_error_yields_unavailable(ac, world, monkeypatch):
    def broken(*_args):
        raise RuntimeError("driver bug")

    monkeypatch.setattr(ac.store, "_read_subject", broken)

    assert ac.resolver.resolve("u2", "t1", "documents", "read").unavailable
