from __future__ import annotations

from fastapi import APIRouter, Depends

from tenant_rbac.engine.container import AccessControl
from tenant_rbac.engine.tenant_context import TenantContext
from tenant_rbac.schemas.rbac import TenantContextOut
from tenant_rbac.security.dependencies import get_access_control, require_tenant

router = APIRouter(prefix="/tenants", tags=["tenants"])


@router.get("/context", response_model=TenantContextOut)
def current_context(
    ctx: TenantContext = Depends(require_tenant),
    access_control: AccessControl = Depends(get_access_control),
) -> TenantContextOut:
    return TenantContextOut(
        session_id=ctx.session_id,
        user_id=ctx.user_id,
        tenant_id=ctx.tenant_id,
        state=access_control.tenants.state(ctx.session_id).value,
        epoch=ctx.epoch,
        bound_at=ctx.bound_at,
    )
