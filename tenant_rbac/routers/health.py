from __future__ import annotations

from fastapi import APIRouter, Depends

from tenant_rbac.engine.container import AccessControl
from tenant_rbac.security.dependencies import get_access_control

router = APIRouter(tags=["health"])


@router.get("/health")
def health(access_control: AccessControl = Depends(get_access_control)) -> dict[str, object]:
    stats = access_control.cache.stats()
    return {
        "status": "ok",
        "cache": {"hits": stats.hits, "misses": stats.misses, "hit_rate": round(stats.hit_rate, 4)},
        "audit_pending": access_control.emitter.pending(),
    }
