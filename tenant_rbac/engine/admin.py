"""
Administrative entry points: role creation, assignment, permission grants and elevations.

Every operation:
    * passes the boundary validator before touching the store,
    * runs its store mutation in one transaction that bumps the generation of
      every affected (user, tenant) pair,
    * publishes those generations to the cache before returning,
    * returns a ``MutationResult`` with a machine-readable reason, and
    * is audited whatever the outcome.

Unexpected errors are logged in full here and reported to the caller only as
``internal_error`` with a trace id.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from tenant_rbac.models.rbac import utcnow

from .audit import AuditEmitter, AuditEvent, AuditLevel
from .boundary import BoundaryValidator
from .cache import PermissionCache
from .config import PolicyConfig
from .store import GenerationUpdate, PermissionStore, RoleRecord
from .types import (
    BoundaryResult,
    Conflict,
    InvalidRequest,
    MutationResult,
    NotFound,
    PermissionSpec,
    ReasonCode,
    StoreUnavailable,
    new_trace_id,
)

logger = logging.getLogger(__name__)

MutationBody = Callable[[str], tuple[dict[str, Any], list[GenerationUpdate]]]


class _Denied(Exception):
    def __init__(self, result: BoundaryResult) -> None:
        super().__init__(result.reason.value)
        self.result = result


class AdminService:
    def __init__(
        self,
        store: PermissionStore,
        cache: PermissionCache,
        validator: BoundaryValidator,
        emitter: AuditEmitter,
        policy: PolicyConfig,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._cache = cache
        self._validator = validator
        self._emitter = emitter
        self._policy = policy
        self._clock = clock

    # ---- Roles ----------------------------------------------------------------------

    def create_role(
        self,
        grantor_id: str,
        tenant_id: str,
        name: str,
        *,
        target_tenant_id: str | None = None,
        system: bool = False,
        description: str | None = None,
        role_id: str | None = None,
        session_id: str | None = None,
    ) -> MutationResult:
        target = None if system else (target_tenant_id or tenant_id)

        def body(trace: str) -> tuple[dict[str, Any], list[GenerationUpdate]]:
            if not name.strip():
                raise InvalidRequest("role name is required")
            self._check(
                self._validator.validate_management(
                    grantor_id,
                    tenant_id,
                    target_tenant_id=target,
                    system_scope=system,
                    session_id=session_id,
                    trace_id=trace,
                )
            )
            role = self._store.create_role(
                name.strip(),
                target,
                is_system_role=system,
                created_by=grantor_id,
                description=description,
                role_id=role_id,
            )
            return _role_data(role), []

        return self._execute("create_role", grantor_id, tenant_id, session_id, body, {"roleName": name, "targetTenantId": target})

    def assign_role(
        self,
        grantor_id: str,
        tenant_id: str,
        user_id: str,
        role_id: str,
        *,
        target_tenant_id: str | None = None,
        expires_at: datetime | None = None,
        session_id: str | None = None,
    ) -> MutationResult:
        target = target_tenant_id or tenant_id

        def body(trace: str) -> tuple[dict[str, Any], list[GenerationUpdate]]:
            if expires_at is not None and expires_at <= self._clock():
                raise InvalidRequest("expires_at must be in the future")
            role = self._visible_role(role_id, target)
            if self._is_super_admin_role(role):
                self._check(
                    self._validator.validate_management(
                        grantor_id, tenant_id, target_tenant_id=target, system_scope=True,
                        target_role_id=role.id, session_id=session_id, trace_id=trace,
                    )
                )
            else:
                # Handing out a role hands out everything it carries.
                grants = self._store.role_grants([role.id])
                for grant in grants:
                    spec = PermissionSpec(grant.resource_type, grant.action, grant.resource_id)
                    self._check(
                        self._validator.validate_grant(
                            grantor_id, tenant_id, spec, target_tenant_id=target,
                            target_role_id=role.id, session_id=session_id, trace_id=trace,
                        )
                    )
                if not grants:
                    self._check(
                        self._validator.validate_management(
                            grantor_id, tenant_id, target_tenant_id=target, target_role_id=role.id,
                            session_id=session_id, trace_id=trace,
                        )
                    )
            updates = self._store.assign_role(
                user_id, role.id, target, assigned_by=grantor_id, expires_at=expires_at
            )
            data = {"userId": user_id, "roleId": role.id, "tenantId": target}
            if expires_at is not None:
                data["expiresAt"] = expires_at.isoformat()
            return data, updates

        return self._execute(
            "assign_role", grantor_id, tenant_id, session_id, body,
            {"targetUserId": user_id, "roleId": role_id, "targetTenantId": target},
        )

    def revoke_role(
        self,
        grantor_id: str,
        tenant_id: str,
        user_id: str,
        role_id: str,
        *,
        target_tenant_id: str | None = None,
        session_id: str | None = None,
    ) -> MutationResult:
        target = target_tenant_id or tenant_id

        def body(trace: str) -> tuple[dict[str, Any], list[GenerationUpdate]]:
            role = self._visible_role(role_id, target)
            self._check(
                self._validator.validate_management(
                    grantor_id,
                    tenant_id,
                    target_tenant_id=target,
                    system_scope=self._is_super_admin_role(role),
                    target_role_id=role.id,
                    session_id=session_id,
                    trace_id=trace,
                )
            )
            updates = self._store.revoke_role(user_id, role.id, target)
            return {"userId": user_id, "roleId": role.id, "tenantId": target}, updates

        return self._execute(
            "revoke_role", grantor_id, tenant_id, session_id, body,
            {"targetUserId": user_id, "roleId": role_id, "targetTenantId": target},
        )

    # ---- Role permissions -----------------------------------------------------------

    def add_permission_to_role(
        self,
        grantor_id: str,
        tenant_id: str,
        role_id: str,
        permission: PermissionSpec,
        *,
        session_id: str | None = None,
    ) -> MutationResult:
        def body(trace: str) -> tuple[dict[str, Any], list[GenerationUpdate]]:
            role = self._existing_role(role_id)
            self._check(
                self._validator.validate_grant(
                    grantor_id,
                    tenant_id,
                    permission,
                    target_tenant_id=role.tenant_id,
                    target_role=role,
                    session_id=session_id,
                    trace_id=trace,
                )
            )
            updates = self._store.add_permission_to_role(role.id, permission, granted_by=grantor_id)
            return {"roleId": role.id, "permission": str(permission)}, updates

        return self._execute(
            "add_permission_to_role", grantor_id, tenant_id, session_id, body,
            {"roleId": role_id, "permission": str(permission)},
        )

    def remove_permission_from_role(
        self,
        grantor_id: str,
        tenant_id: str,
        role_id: str,
        permission: PermissionSpec,
        *,
        session_id: str | None = None,
    ) -> MutationResult:
        def body(trace: str) -> tuple[dict[str, Any], list[GenerationUpdate]]:
            role = self._existing_role(role_id)
            self._check(
                self._validator.validate_management(
                    grantor_id,
                    tenant_id,
                    target_tenant_id=role.tenant_id,
                    target_role=role,
                    session_id=session_id,
                    trace_id=trace,
                )
            )
            updates = self._store.remove_permission_from_role(role.id, permission)
            return {"roleId": role.id, "permission": str(permission)}, updates

        return self._execute(
            "remove_permission_from_role", grantor_id, tenant_id, session_id, body,
            {"roleId": role_id, "permission": str(permission)},
        )

    # ---- Elevations -----------------------------------------------------------------

    def elevate_permissions(
        self,
        grantor_id: str,
        tenant_id: str,
        user_id: str,
        permission: PermissionSpec,
        *,
        reason: str,
        duration_seconds: int,
        target_tenant_id: str | None = None,
        session_id: str | None = None,
    ) -> MutationResult:
        target = target_tenant_id or tenant_id

        def body(trace: str) -> tuple[dict[str, Any], list[GenerationUpdate]]:
            if not reason or not reason.strip():
                raise InvalidRequest("an elevation requires a reason")
            max_duration = self._policy.elevation.max_duration_seconds
            if duration_seconds <= 0 or duration_seconds > max_duration:
                raise InvalidRequest(f"duration must be between 1 and {max_duration} seconds")
            self._check(
                self._validator.validate_grant(
                    grantor_id, tenant_id, permission, target_tenant_id=target,
                    session_id=session_id, trace_id=trace,
                )
            )
            expires_at = self._clock() + timedelta(seconds=duration_seconds)
            elevation, updates = self._store.create_elevation(
                user_id, target, permission, reason=reason.strip(), granted_by=grantor_id, expires_at=expires_at
            )
            data = {
                "elevationId": elevation.id,
                "userId": user_id,
                "tenantId": target,
                "permission": str(permission),
                "expiresAt": elevation.expires_at.isoformat(),
            }
            return data, updates

        return self._execute(
            "elevate_permissions", grantor_id, tenant_id, session_id, body,
            {"targetUserId": user_id, "permission": str(permission), "targetTenantId": target, "justification": reason},
        )

    # ---- Helpers --------------------------------------------------------------------

    def _check(self, result: BoundaryResult) -> None:
        if not result.ok:
            raise _Denied(result)

    def _existing_role(self, role_id: str) -> RoleRecord:
        role = self._store.get_role(role_id)
        if role is None:
            raise NotFound("role")
        return role

    def _visible_role(self, role_id: str, tenant_id: str) -> RoleRecord:
        role = self._store.get_role(role_id)
        if role is None or (role.tenant_id is not None and role.tenant_id != tenant_id):
            raise NotFound("role")
        return role

    def _is_super_admin_role(self, role: RoleRecord) -> bool:
        return role.is_system_role and role.name == self._policy.roles.super_admin

    def _execute(
        self,
        operation: str,
        grantor_id: str,
        tenant_id: str,
        session_id: str | None,
        body: MutationBody,
        details: dict[str, Any],
    ) -> MutationResult:
        trace = new_trace_id()
        level = AuditLevel.WARNING
        try:
            data, updates = body(trace)
            for update in updates:
                self._cache.publish_generation(update.user_id, update.tenant_id, update.generation)
            result = MutationResult(ok=True, reason=ReasonCode.OK, trace_id=trace, data=data)
            level = AuditLevel.INFO
        except _Denied as denied:
            reason = denied.result.reason
            if reason is ReasonCode.RESOLVER_UNAVAILABLE:
                level = AuditLevel.ERROR
            result = MutationResult(ok=False, reason=reason, trace_id=trace)
        except NotFound:
            result = MutationResult(ok=False, reason=ReasonCode.NOT_FOUND, trace_id=trace)
        except Conflict:
            result = MutationResult(ok=False, reason=ReasonCode.CONFLICT, trace_id=trace)
        except InvalidRequest as exc:
            result = MutationResult(ok=False, reason=ReasonCode.INVALID_REQUEST, trace_id=trace, data={"detail": str(exc)})
        except StoreUnavailable as exc:
            logger.warning("%s failed: store unavailable trace=%s error=%s", operation, trace, exc)
            level = AuditLevel.ERROR
            result = MutationResult(ok=False, reason=ReasonCode.RESOLVER_UNAVAILABLE, trace_id=trace)
        except Exception:
            logger.exception("%s failed unexpectedly trace=%s", operation, trace)
            level = AuditLevel.ERROR
            result = MutationResult(ok=False, reason=ReasonCode.INTERNAL_ERROR, trace_id=trace)

        if result.ok:
            logger.info("%s succeeded grantor=%s tenant=%s trace=%s", operation, grantor_id, tenant_id, trace)
        else:
            logger.info("%s rejected grantor=%s reason=%s trace=%s", operation, grantor_id, result.reason.value, trace)

        self._emitter.emit(
            AuditEvent(
                event_type="administration",
                subtype=operation,
                level=level,
                outcome="success" if result.ok else "failure",
                user_id=grantor_id,
                session_id=session_id,
                tenant_id=tenant_id,
                metadata={"traceId": trace, "reason": result.reason.value, **details},
            )
        )
        return result


def _role_data(role: RoleRecord) -> dict[str, Any]:
    return {
        "roleId": role.id,
        "name": role.name,
        "tenantId": role.tenant_id,
        "isSystemRole": role.is_system_role,
    }
