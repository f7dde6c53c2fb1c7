from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from .types import PermissionSpec


class PolicyConfigError(ValueError):
    """Raised when the policy YAML configuration is invalid."""


class PermissionRef(BaseModel):
    resource_type: str
    action: str

    def spec(self) -> PermissionSpec:
        return PermissionSpec(self.resource_type, self.action)


class RoleNames(BaseModel):
    super_admin: str = "SuperAdmin"
    basic_user: str = "BasicUser"


class Capabilities(BaseModel):
    manage_permissions: PermissionRef = Field(
        default_factory=lambda: PermissionRef(resource_type="roles", action="manage")
    )
    cross_tenant: PermissionRef = Field(
        default_factory=lambda: PermissionRef(resource_type="tenants", action="cross_tenant_manage")
    )


class CachePolicy(BaseModel):
    ttl_seconds: int = Field(default=3600, gt=0)


class ElevationPolicy(BaseModel):
    max_duration_seconds: int = Field(default=86400, gt=0)


class WindowLimit(BaseModel):
    limit: int = Field(gt=0)
    window_seconds: int = Field(gt=0)


class AuthFailureLimit(WindowLimit):
    limit: int = Field(default=5, gt=0)
    window_seconds: int = Field(default=300, gt=0)
    lockout_seconds: int = Field(default=900, gt=0)


class ProbeLimit(WindowLimit):
    limit: int = Field(default=20, gt=0)
    window_seconds: int = Field(default=60, gt=0)


class RateLimits(BaseModel):
    auth_failures: AuthFailureLimit = Field(default_factory=AuthFailureLimit)
    permission_probes: ProbeLimit = Field(default_factory=ProbeLimit)


def _default_grants() -> list[PermissionRef]:
    return [
        PermissionRef(resource_type="profile", action="read"),
        PermissionRef(resource_type="profile", action="update"),
        PermissionRef(resource_type="dashboard", action="view"),
    ]


class PolicyConfig(BaseModel):
    """Validated policy: role names, default grants, capabilities and limits."""

    roles: RoleNames = Field(default_factory=RoleNames)
    default_grants: list[PermissionRef] = Field(default_factory=_default_grants)
    capabilities: Capabilities = Field(default_factory=Capabilities)
    destructive_actions: list[str] = Field(
        default_factory=lambda: ["create", "update", "write", "delete", "manage"]
    )
    cache: CachePolicy = Field(default_factory=CachePolicy)
    elevation: ElevationPolicy = Field(default_factory=ElevationPolicy)
    rate_limits: RateLimits = Field(default_factory=RateLimits)

    def default_grant_set(self) -> frozenset[tuple[str, str]]:
        return frozenset((g.resource_type, g.action) for g in self.default_grants)

    def is_destructive(self, action: str) -> bool:
        return action.lower() in {a.lower() for a in self.destructive_actions}


def load_policy_config(path: Path) -> PolicyConfig:
    """
    Load and validate the policy YAML from disk.

    Expected shape (all sections optional, defaults shown in PolicyConfig):

        policy:
          roles:
            super_admin: SuperAdmin
            basic_user: BasicUser
          default_grants:
            - {resource_type: profile, action: read}
          capabilities:
            manage_permissions: {resource_type: roles, action: manage}
            cross_tenant: {resource_type: tenants, action: cross_tenant_manage}
          destructive_actions: [create, update, delete, manage]
          cache: {ttl_seconds: 3600}
    """

    raw_text = path.read_text(encoding="utf-8")
    raw: dict[str, Any] = yaml.safe_load(raw_text) or {}

    if "policy" not in raw:
        raise PolicyConfigError(f"Missing top-level 'policy' key in config: {path}")

    try:
        return PolicyConfig.model_validate(raw["policy"] or {})
    except ValidationError as exc:
        raise PolicyConfigError(f"invalid policy config {path}: {exc}") from exc
