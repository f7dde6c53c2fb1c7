from __future__ import annotations

from datetime import timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status

from tenant_rbac.engine.container import AccessControl
from tenant_rbac.engine.tenant_context import TenantContext
from tenant_rbac.engine.types import MutationResult, PermissionSpec, ReasonCode
from tenant_rbac.schemas.rbac import AssignmentIn, ElevationIn, MutationOut, PermissionIn, RoleCreateIn
from tenant_rbac.security.dependencies import get_access_control, require_tenant

router = APIRouter(prefix="/admin", tags=["admin"])

_STATUS_BY_REASON = {
    ReasonCode.MISSING_PERMISSION: status.HTTP_403_FORBIDDEN,
    ReasonCode.CANNOT_MANAGE_PERMISSIONS: status.HTTP_403_FORBIDDEN,
    ReasonCode.ENTITY_BOUNDARY_VIOLATION: status.HTTP_403_FORBIDDEN,
    ReasonCode.CANNOT_MANAGE_RESOURCE: status.HTTP_403_FORBIDDEN,
    ReasonCode.SYSTEM_ROLE_PROTECTED: status.HTTP_403_FORBIDDEN,
    ReasonCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ReasonCode.CONFLICT: status.HTTP_409_CONFLICT,
    ReasonCode.INVALID_REQUEST: 422,
    ReasonCode.RESOLVER_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
    ReasonCode.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


def _respond(result: MutationResult) -> MutationOut:
    if not result.ok:
        code = _STATUS_BY_REASON.get(result.reason, status.HTTP_500_INTERNAL_SERVER_ERROR)
        raise HTTPException(status_code=code, detail={"reason": result.reason.value, "trace_id": result.trace_id})
    return MutationOut(ok=True, reason=result.reason.value, trace_id=result.trace_id, data=result.data)


@router.post("/roles", response_model=MutationOut, status_code=status.HTTP_201_CREATED)
def create_role(
    body: RoleCreateIn,
    ctx: TenantContext = Depends(require_tenant),
    access_control: AccessControl = Depends(get_access_control),
) -> MutationOut:
    result = access_control.admin.create_role(
        ctx.user_id,
        ctx.tenant_id,
        body.name,
        target_tenant_id=body.tenant_id,
        system=body.system,
        description=body.description,
        session_id=ctx.session_id,
    )
    return _respond(result)


@router.post("/roles/{role_id}/permissions", response_model=MutationOut, status_code=status.HTTP_201_CREATED)
def add_role_permission(
    role_id: str,
    body: PermissionIn,
    ctx: TenantContext = Depends(require_tenant),
    access_control: AccessControl = Depends(get_access_control),
) -> MutationOut:
    result = access_control.admin.add_permission_to_role(
        ctx.user_id, ctx.tenant_id, role_id, body.spec(), session_id=ctx.session_id
    )
    return _respond(result)


@router.delete("/roles/{role_id}/permissions", response_model=MutationOut)
def remove_role_permission(
    role_id: str,
    resource_type: str = Query(min_length=1),
    action: str = Query(min_length=1),
    resource_id: str | None = Query(default=None),
    ctx: TenantContext = Depends(require_tenant),
    access_control: AccessControl = Depends(get_access_control),
) -> MutationOut:
    result = access_control.admin.remove_permission_from_role(
        ctx.user_id,
        ctx.tenant_id,
        role_id,
        PermissionSpec(resource_type, action, resource_id or None),
        session_id=ctx.session_id,
    )
    return _respond(result)


@router.post("/assignments", response_model=MutationOut, status_code=status.HTTP_201_CREATED)
def assign_role(
    body: AssignmentIn,
    ctx: TenantContext = Depends(require_tenant),
    access_control: AccessControl = Depends(get_access_control),
) -> MutationOut:
    expires_at = body.expires_at
    if expires_at is not None and expires_at.tzinfo is not None:
        # Stored as naive UTC.
        expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
    result = access_control.admin.assign_role(
        ctx.user_id,
        ctx.tenant_id,
        body.user_id,
        body.role_id,
        target_tenant_id=body.tenant_id,
        expires_at=expires_at,
        session_id=ctx.session_id,
    )
    return _respond(result)


@router.delete("/assignments", response_model=MutationOut)
def revoke_role(
    user_id: str = Query(min_length=1),
    role_id: str = Query(min_length=1),
    tenant_id: str | None = Query(default=None),
    ctx: TenantContext = Depends(require_tenant),
    access_control: AccessControl = Depends(get_access_control),
) -> MutationOut:
    result = access_control.admin.revoke_role(
        ctx.user_id, ctx.tenant_id, user_id, role_id, target_tenant_id=tenant_id, session_id=ctx.session_id
    )
    return _respond(result)


@router.post("/elevations", response_model=MutationOut, status_code=status.HTTP_201_CREATED)
def elevate_permissions(
    body: ElevationIn,
    ctx: TenantContext = Depends(require_tenant),
    access_control: AccessControl = Depends(get_access_control),
) -> MutationOut:
    result = access_control.admin.elevate_permissions(
        ctx.user_id,
        ctx.tenant_id,
        body.user_id,
        body.spec(),
        reason=body.reason,
        duration_seconds=body.duration_seconds,
        target_tenant_id=body.tenant_id,
        session_id=ctx.session_id,
    )
    return _respond(result)
