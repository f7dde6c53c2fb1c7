"""
Boundary validator: an actor can never grant a capability they do not hold.

``validate_grant`` rules, in order (the first failure is reported):

1. the grantor holds the permission being granted        -> missing_permission
2. the grantor holds the permission-management capability -> cannot_manage_permissions
3. a target tenant other than the grantor's own requires
   the cross-tenant capability                            -> entity_boundary_violation
4. a grant on one resource id requires ``{type}:manage``   -> cannot_manage_resource
5. a system role target requires the super-admin role     -> system_role_protected

``validate_management`` applies rules 2, 3 and 5 only; it gates operations
that cannot widen anyone's capabilities (revocations, role creation).
Every call is audited, whatever the result.
"""

from __future__ import annotations

import logging

from .audit import AuditEmitter, AuditEvent, AuditLevel
from .config import PolicyConfig
from .resolver import PermissionResolver
from .store import RoleRecord
from .types import BoundaryResult, PermissionSpec, ReasonCode, StoreUnavailable, new_trace_id

logger = logging.getLogger(__name__)


class _Rejected(Exception):
    def __init__(self, reason: ReasonCode) -> None:
        super().__init__(reason.value)
        self.reason = reason


class BoundaryValidator:
    def __init__(self, resolver: PermissionResolver, emitter: AuditEmitter, policy: PolicyConfig) -> None:
        self._resolver = resolver
        self._emitter = emitter
        self._policy = policy

    def validate_grant(
        self,
        grantor_id: str,
        tenant_id: str,
        permission: PermissionSpec,
        *,
        target_tenant_id: str | None = None,
        target_role: RoleRecord | None = None,
        target_role_id: str | None = None,
        session_id: str | None = None,
        trace_id: str | None = None,
    ) -> BoundaryResult:
        trace = trace_id or new_trace_id()

        def rules() -> None:
            self._require(grantor_id, tenant_id, permission, ReasonCode.MISSING_PERMISSION, trace, session_id)
            self._management_rules(grantor_id, tenant_id, target_tenant_id, trace, session_id)
            if permission.is_resource_specific:
                manage = PermissionSpec(permission.resource_type, "manage")
                self._require(grantor_id, tenant_id, manage, ReasonCode.CANNOT_MANAGE_RESOURCE, trace, session_id)
            self._system_role_rule(grantor_id, tenant_id, target_role)

        return self._run(
            "validate_grant",
            rules,
            grantor_id,
            tenant_id,
            permission,
            target_tenant_id,
            target_role,
            session_id,
            trace,
            target_role_id=target_role_id,
        )

    def validate_management(
        self,
        grantor_id: str,
        tenant_id: str,
        *,
        target_tenant_id: str | None = None,
        target_role: RoleRecord | None = None,
        system_scope: bool = False,
        target_role_id: str | None = None,
        session_id: str | None = None,
        trace_id: str | None = None,
    ) -> BoundaryResult:
        """
        Rules 2, 3 and 5. ``system_scope`` marks operations on the system role set itself.

        ``target_role_id`` only labels the audit event, for operations that
        hand out or take away a role without modifying it.
        """
        trace = trace_id or new_trace_id()

        def rules() -> None:
            self._management_rules(grantor_id, tenant_id, target_tenant_id, trace, session_id)
            if system_scope:
                self._require_super_admin(grantor_id, tenant_id)
            self._system_role_rule(grantor_id, tenant_id, target_role)

        return self._run(
            "validate_management",
            rules,
            grantor_id,
            tenant_id,
            None,
            target_tenant_id,
            target_role,
            session_id,
            trace,
            target_role_id=target_role_id,
        )

    # ---- Rules ----------------------------------------------------------------------

    def _require(
        self,
        grantor_id: str,
        tenant_id: str,
        permission: PermissionSpec,
        failure: ReasonCode,
        trace: str,
        session_id: str | None,
    ) -> None:
        decision = self._resolver.resolve(
            grantor_id,
            tenant_id,
            permission.resource_type,
            permission.action,
            permission.resource_id,
            session_id=session_id,
            trace_id=trace,
        )
        if decision.unavailable:
            raise _Rejected(ReasonCode.RESOLVER_UNAVAILABLE)
        if not decision.granted:
            raise _Rejected(failure)

    def _management_rules(
        self,
        grantor_id: str,
        tenant_id: str,
        target_tenant_id: str | None,
        trace: str,
        session_id: str | None,
    ) -> None:
        caps = self._policy.capabilities
        self._require(
            grantor_id, tenant_id, caps.manage_permissions.spec(), ReasonCode.CANNOT_MANAGE_PERMISSIONS, trace, session_id
        )
        if target_tenant_id is not None and target_tenant_id != tenant_id:
            self._require(
                grantor_id, tenant_id, caps.cross_tenant.spec(), ReasonCode.ENTITY_BOUNDARY_VIOLATION, trace, session_id
            )

    def _system_role_rule(self, grantor_id: str, tenant_id: str, target_role: RoleRecord | None) -> None:
        if target_role is not None and target_role.is_system_role:
            self._require_super_admin(grantor_id, tenant_id)

    def _require_super_admin(self, grantor_id: str, tenant_id: str) -> None:
        try:
            held = self._resolver.holds_role(grantor_id, tenant_id, self._policy.roles.super_admin)
        except StoreUnavailable:
            raise _Rejected(ReasonCode.RESOLVER_UNAVAILABLE) from None
        if not held:
            raise _Rejected(ReasonCode.SYSTEM_ROLE_PROTECTED)

    # ---- Audit ----------------------------------------------------------------------

    def _run(
        self,
        subtype: str,
        rules,
        grantor_id: str,
        tenant_id: str,
        permission: PermissionSpec | None,
        target_tenant_id: str | None,
        target_role: RoleRecord | None,
        session_id: str | None,
        trace: str,
        *,
        target_role_id: str | None = None,
    ) -> BoundaryResult:
        try:
            rules()
            result = BoundaryResult(ok=True, reason=ReasonCode.OK, trace_id=trace)
        except _Rejected as rejected:
            result = BoundaryResult(ok=False, reason=rejected.reason, trace_id=trace)
            logger.info("Boundary rejected grantor=%s tenant=%s reason=%s", grantor_id, tenant_id, rejected.reason.value)

        if result.ok:
            level = AuditLevel.INFO
        elif result.reason is ReasonCode.RESOLVER_UNAVAILABLE:
            level = AuditLevel.ERROR
        else:
            level = AuditLevel.WARNING
        self._emitter.emit(
            AuditEvent(
                event_type="boundary",
                subtype=subtype,
                level=level,
                outcome="allowed" if result.ok else "rejected",
                user_id=grantor_id,
                session_id=session_id,
                tenant_id=tenant_id,
                resource_type=permission.resource_type if permission else None,
                resource_id=permission.resource_id if permission else None,
                action=permission.action if permission else None,
                metadata={
                    "traceId": trace,
                    "reason": result.reason.value,
                    "grantor": grantor_id,
                    "permission": str(permission) if permission else None,
                    "targetTenantId": target_tenant_id,
                    "targetRoleId": target_role.id if target_role else target_role_id,
                },
            )
        )
        return result
