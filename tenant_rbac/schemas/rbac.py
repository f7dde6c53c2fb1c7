from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tenant_rbac.engine.types import PermissionSpec


class PermissionIn(BaseModel):
    resource_type: str = Field(min_length=1, max_length=100)
    action: str = Field(min_length=1, max_length=50)
    resource_id: str | None = Field(default=None, max_length=255)

    def spec(self) -> PermissionSpec:
        return PermissionSpec(self.resource_type, self.action, self.resource_id or None)


class PermissionCheckOut(BaseModel):
    granted: bool
    reason: str
    """``ok`` when granted; always the generic ``not_permitted`` when denied."""
    trace_id: str


class BatchCheckIn(BaseModel):
    checks: list[PermissionIn] = Field(min_length=1, max_length=100)


class BatchCheckOut(BaseModel):
    results: list[PermissionCheckOut]


class EffectivePermissionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    resource_type: str
    action: str
    resource_id: str | None
    source: str
    expires_at: datetime | None


class RoleCreateIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    tenant_id: str | None = None
    """Tenant to create the role in; defaults to the caller's tenant."""
    system: bool = False


class AssignmentIn(BaseModel):
    user_id: str
    role_id: str
    tenant_id: str | None = None
    expires_at: datetime | None = None


class ElevationIn(PermissionIn):
    user_id: str
    reason: str = Field(min_length=1, max_length=500)
    duration_seconds: int = Field(gt=0)
    tenant_id: str | None = None


class MutationOut(BaseModel):
    ok: bool
    reason: str
    trace_id: str
    data: dict[str, Any] = Field(default_factory=dict)


class TenantContextOut(BaseModel):
    session_id: str
    user_id: str
    tenant_id: str
    state: str
    epoch: int
    bound_at: datetime
