from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from tenant_rbac.engine.container import AccessControl
from tenant_rbac.engine.tenant_context import TenantContext
from tenant_rbac.engine.types import Decision, StoreUnavailable
from tenant_rbac.schemas.rbac import (
    BatchCheckIn,
    BatchCheckOut,
    EffectivePermissionOut,
    PermissionCheckOut,
    PermissionIn,
)
from tenant_rbac.security.dependencies import get_access_control, require_tenant

router = APIRouter(prefix="/permissions", tags=["permissions"])

# Denials never say why; the reason is in the audit trail under the trace id.
DENIED_REASON = "not_permitted"


def _unavailable(trace_id: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"reason": "resolver_unavailable", "trace_id": trace_id},
    )


def _to_out(decision: Decision) -> PermissionCheckOut:
    return PermissionCheckOut(
        granted=decision.granted,
        reason="ok" if decision.granted else DENIED_REASON,
        trace_id=decision.trace_id,
    )


@router.post("/check", response_model=PermissionCheckOut)
def check_permission(
    body: PermissionIn,
    ctx: TenantContext = Depends(require_tenant),
    access_control: AccessControl = Depends(get_access_control),
) -> PermissionCheckOut:
    decision = access_control.resolver.resolve(
        ctx.user_id,
        ctx.tenant_id,
        body.resource_type,
        body.action,
        body.resource_id or None,
        session_id=ctx.session_id,
    )
    if decision.unavailable:
        raise _unavailable(decision.trace_id)
    return _to_out(decision)


@router.post("/check-batch", response_model=BatchCheckOut)
def check_permissions_batch(
    body: BatchCheckIn,
    ctx: TenantContext = Depends(require_tenant),
    access_control: AccessControl = Depends(get_access_control),
) -> BatchCheckOut:
    decisions = access_control.resolver.resolve_many(
        ctx.user_id, ctx.tenant_id, [c.spec() for c in body.checks], session_id=ctx.session_id
    )
    unavailable = next((d for d in decisions if d.unavailable), None)
    if unavailable is not None:
        raise _unavailable(unavailable.trace_id)
    return BatchCheckOut(results=[_to_out(d) for d in decisions])


@router.get("/effective", response_model=list[EffectivePermissionOut])
def effective_permissions(
    ctx: TenantContext = Depends(require_tenant),
    access_control: AccessControl = Depends(get_access_control),
) -> list[EffectivePermissionOut]:
    try:
        perms = access_control.resolver.effective_permissions(ctx.user_id, ctx.tenant_id)
    except StoreUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail={"reason": "resolver_unavailable"}
        ) from exc
    return [EffectivePermissionOut.model_validate(p) for p in perms]
