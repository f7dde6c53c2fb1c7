"""
Permission resolver: direct-assignment model, cached, tenant-scoped.

A user's effective permissions in a tenant are the union of the permissions
carried by the roles assigned to them *in that tenant*. There is no role
inheritance.

Algorithm (per check):
1. Look up ``perm:{user}:{tenant}:{type}:{action}[:{id}]`` under the current
   generation of (user, tenant). A hit is returned (and audited) immediately.
2. Unknown user/tenant -> denied ``unknown_subject``; non-active user ->
   denied ``subject_inactive``. Neither is cached.
3. Super-admin role assigned in this tenant -> granted.
4. Basic-user role assigned -> granted when the check is in the default table.
5. Union of role permissions: a grant for the exact resource id wins over a
   type-wide grant, but either is enough.
6. Active, unexpired elevations.
7. Cache the boolean under the generation read in step 1, with the TTL capped
   at the expiry of whatever produced the grant.
8. Emit an audit event (also for cache hits and for unavailability).

Store failures never raise out of ``resolve``: they produce an
``unavailable`` decision that callers must not treat as a denial.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable, Iterable

from tenant_rbac.models.rbac import utcnow

from .audit import AuditEmitter, AuditEvent, AuditLevel
from .cache import PermissionCache, decision_key
from .config import PolicyConfig
from .rate_limit import ProbeDetector
from .store import AssignmentRecord, PermissionStore
from .types import (
    Decision,
    EffectivePermission,
    Outcome,
    PermissionSpec,
    ReasonCode,
    StoreUnavailable,
    new_trace_id,
)

logger = logging.getLogger(__name__)

_AUDIT_LEVELS = {
    Outcome.GRANTED: AuditLevel.INFO,
    Outcome.DENIED: AuditLevel.WARNING,
    Outcome.UNAVAILABLE: AuditLevel.ERROR,
}


def _match(
    grant_type: str,
    grant_action: str,
    grant_resource_id: str | None,
    resource_type: str,
    action: str,
    resource_id: str | None,
) -> ReasonCode | None:
    if grant_type != resource_type or grant_action != action:
        return None
    if grant_resource_id is None:
        return ReasonCode.ROLE_PERMISSION
    if resource_id is not None and grant_resource_id == resource_id:
        return ReasonCode.RESOURCE_PERMISSION
    return None


def _seconds_until(expiries: Iterable[datetime | None], now: datetime) -> float | None:
    """TTL cap for a grant backed by several sources: the longest-lived one wins."""
    latest: datetime | None = None
    for expiry in expiries:
        if expiry is None:
            return None
        if latest is None or expiry > latest:
            latest = expiry
    if latest is None:
        return None
    return (latest - now).total_seconds()


class PermissionResolver:
    def __init__(
        self,
        store: PermissionStore,
        cache: PermissionCache,
        emitter: AuditEmitter,
        policy: PolicyConfig,
        *,
        probe_detector: ProbeDetector | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._emitter = emitter
        self._policy = policy
        self._probes = probe_detector
        self._clock = clock

    # ---- Main decision API ----------------------------------------------------------

    def resolve(
        self,
        user_id: str,
        tenant_id: str,
        resource_type: str,
        action: str,
        resource_id: str | None = None,
        *,
        session_id: str | None = None,
        trace_id: str | None = None,
    ) -> Decision:
        trace = trace_id or new_trace_id()
        key = decision_key(user_id, tenant_id, resource_type, action, resource_id)
        generation: int | None = None

        try:
            generation = self._cache.current_generation(user_id, tenant_id, self._store.generation)
            cached = self._cache.get(key, generation)
            if cached is not None:
                outcome = Outcome.GRANTED if cached else Outcome.DENIED
                decision = Decision(outcome, ReasonCode.CACHE_HIT, trace, from_cache=True)
            else:
                outcome, reason, ttl, cacheable = self._evaluate(
                    user_id, tenant_id, resource_type, action, resource_id
                )
                decision = Decision(outcome, reason, trace)
                if cacheable:
                    self._remember(key, user_id, tenant_id, generation, decision, ttl)
        except StoreUnavailable as exc:
            logger.warning("Resolver unavailable trace=%s error=%s", trace, exc)
            decision = Decision(Outcome.UNAVAILABLE, ReasonCode.RESOLVER_UNAVAILABLE, trace)
        except Exception:
            # Cache client failures land here; checks never raise to the caller.
            logger.exception("Permission check failed trace=%s", trace)
            decision = Decision(Outcome.UNAVAILABLE, ReasonCode.RESOLVER_UNAVAILABLE, trace)

        logger.debug(
            "RBAC: %s user=%s tenant=%s %s:%s id=%s reason=%s cached=%s",
            decision.outcome.value,
            user_id,
            tenant_id,
            resource_type,
            action,
            resource_id,
            decision.reason.value,
            decision.from_cache,
        )
        self._emitter.emit(
            AuditEvent(
                event_type="authorization",
                subtype="permission_check",
                level=_AUDIT_LEVELS[decision.outcome],
                outcome=decision.outcome.value,
                user_id=user_id,
                session_id=session_id,
                tenant_id=tenant_id,
                resource_type=resource_type,
                resource_id=resource_id,
                action=action,
                metadata={
                    "traceId": trace,
                    "reason": decision.reason.value,
                    "fromCache": decision.from_cache,
                    "generation": generation,
                },
            )
        )
        if decision.outcome is Outcome.DENIED and self._probes is not None:
            try:
                self._probes.record_denial(user_id, tenant_id, trace)
            except Exception:
                logger.exception("Probe counter unavailable trace=%s", trace)
        return decision

    def _remember(
        self,
        key: str,
        user_id: str,
        tenant_id: str,
        generation: int,
        decision: Decision,
        ttl: float | None,
    ) -> None:
        """Cache a computed decision; a failed write only costs a future miss."""
        try:
            self._cache.put(key, user_id, tenant_id, generation, decision.granted, ttl)
        except Exception:
            logger.warning("Decision cache write failed trace=%s", decision.trace_id, exc_info=True)

    def resolve_many(
        self,
        user_id: str,
        tenant_id: str,
        checks: Iterable[PermissionSpec],
        *,
        session_id: str | None = None,
    ) -> list[Decision]:
        """Resolve several checks in input order under one trace id."""
        trace = new_trace_id()
        return [
            self.resolve(
                user_id,
                tenant_id,
                check.resource_type,
                check.action,
                check.resource_id,
                session_id=session_id,
                trace_id=trace,
            )
            for check in checks
        ]

    def authorize(
        self,
        user_id: str,
        tenant_id: str,
        resource_type: str,
        action: str,
        resource_id: str | None = None,
        *,
        session_id: str | None = None,
    ) -> bool:
        """
        Boolean gate with the default unavailability policy applied.

        When the store is unavailable, destructive actions fail closed; other
        actions fail open and raise a critical alert.
        """
        decision = self.resolve(user_id, tenant_id, resource_type, action, resource_id, session_id=session_id)
        if not decision.unavailable:
            return decision.granted

        if self._policy.is_destructive(action):
            logger.warning("Failing closed for destructive action=%s trace=%s", action, decision.trace_id)
            return False

        logger.warning("Failing open for action=%s trace=%s", action, decision.trace_id)
        self._emitter.emit(
            AuditEvent(
                event_type="security",
                subtype="fail_open",
                level=AuditLevel.CRITICAL,
                outcome="allowed",
                user_id=user_id,
                session_id=session_id,
                tenant_id=tenant_id,
                resource_type=resource_type,
                resource_id=resource_id,
                action=action,
                metadata={"traceId": decision.trace_id},
            )
        )
        return True

    # ---- Evaluation -----------------------------------------------------------------

    def _evaluate(
        self,
        user_id: str,
        tenant_id: str,
        resource_type: str,
        action: str,
        resource_id: str | None,
    ) -> tuple[Outcome, ReasonCode, float | None, bool]:
        """Return (outcome, reason, ttl cap in seconds, cacheable)."""
        subject = self._store.load_subject(user_id, tenant_id)
        if subject is None:
            return Outcome.DENIED, ReasonCode.UNKNOWN_SUBJECT, None, False
        if not subject.is_active:
            return Outcome.DENIED, ReasonCode.SUBJECT_INACTIVE, None, False

        now = self._clock()
        assignments = self._store.active_assignments(user_id, tenant_id, now)

        super_admin = self._with_role(assignments, self._policy.roles.super_admin)
        if super_admin:
            return Outcome.GRANTED, ReasonCode.SUPER_ADMIN, _seconds_until(super_admin, now), True

        basic = self._with_role(assignments, self._policy.roles.basic_user)
        if basic and (resource_type, action) in self._policy.default_grant_set():
            return Outcome.GRANTED, ReasonCode.DEFAULT_GRANT, _seconds_until(basic, now), True

        expiry_by_role: dict[str, list[datetime | None]] = {}
        for a in assignments:
            expiry_by_role.setdefault(a.role_id, []).append(a.expires_at)

        best: ReasonCode | None = None
        sources: list[datetime | None] = []
        for grant in self._store.role_grants(expiry_by_role):
            reason = _match(grant.resource_type, grant.action, grant.resource_id, resource_type, action, resource_id)
            if reason is None:
                continue
            if best is None or reason is ReasonCode.RESOURCE_PERMISSION:
                best = reason
            sources.extend(expiry_by_role[grant.role_id])
        if best is not None:
            return Outcome.GRANTED, best, _seconds_until(sources, now), True

        elevations = [
            e.expires_at
            for e in self._store.active_elevations(user_id, tenant_id, now)
            if _match(e.resource_type, e.action, e.resource_id, resource_type, action, resource_id)
        ]
        if elevations:
            return Outcome.GRANTED, ReasonCode.ELEVATION, _seconds_until(elevations, now), True

        return Outcome.DENIED, ReasonCode.NO_MATCHING_PERMISSION, None, True

    def _with_role(self, assignments: list[AssignmentRecord], role_name: str) -> list[datetime | None]:
        """Expiries of assignments of the named system role (empty when not held)."""
        return [a.expires_at for a in assignments if a.is_system_role and a.role_name == role_name]

    # ---- Introspection --------------------------------------------------------------

    def holds_role(self, user_id: str, tenant_id: str, role_name: str) -> bool:
        """True when the user holds the named system role in the tenant. May raise StoreUnavailable."""
        return bool(self._with_role(self._store.active_assignments(user_id, tenant_id, self._clock()), role_name))

    def effective_permissions(self, user_id: str, tenant_id: str) -> list[EffectivePermission]:
        """
        List what the user can do in the tenant, with the source of each grant.

        Raises StoreUnavailable; unknown or inactive users get an empty list.
        """
        subject = self._store.load_subject(user_id, tenant_id)
        if subject is None or not subject.is_active:
            return []

        now = self._clock()
        assignments = self._store.active_assignments(user_id, tenant_id, now)
        super_name = self._policy.roles.super_admin
        for a in assignments:
            if a.is_system_role and a.role_name == super_name:
                return [EffectivePermission("*", "*", None, super_name, a.expires_at)]

        result: dict[tuple[str, str, str | None, str], EffectivePermission] = {}

        def add(perm: EffectivePermission) -> None:
            result.setdefault((perm.resource_type, perm.action, perm.resource_id, perm.source), perm)

        by_role = {a.role_id: a for a in assignments}
        basic = [a for a in assignments if a.is_system_role and a.role_name == self._policy.roles.basic_user]
        if basic:
            for g in self._policy.default_grants:
                add(EffectivePermission(g.resource_type, g.action, None, "default", basic[0].expires_at))
        for grant in self._store.role_grants(by_role):
            a = by_role[grant.role_id]
            add(EffectivePermission(grant.resource_type, grant.action, grant.resource_id, a.role_name, a.expires_at))
        for e in self._store.active_elevations(user_id, tenant_id, now):
            add(EffectivePermission(e.resource_type, e.action, e.resource_id, "elevation", e.expires_at))

        return sorted(result.values(), key=lambda p: (p.resource_type, p.action, p.resource_id or "", p.source))
