"""
Result types, reason codes and exceptions shared by the resolution engine.

Permission checks resolve to a ``Decision`` instead of raising, so callers are
forced to handle "store unavailable" separately from "denied".
"""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class Outcome(str, enum.Enum):
    GRANTED = "granted"
    DENIED = "denied"
    UNAVAILABLE = "unavailable"


class ReasonCode(str, enum.Enum):
    """Machine-readable reason codes returned by the engine."""

    OK = "ok"

    # resolver
    SUPER_ADMIN = "super_admin"
    DEFAULT_GRANT = "default_grant"
    ROLE_PERMISSION = "role_permission"
    RESOURCE_PERMISSION = "resource_permission"
    ELEVATION = "elevation"
    CACHE_HIT = "cache_hit"
    UNKNOWN_SUBJECT = "unknown_subject"
    SUBJECT_INACTIVE = "subject_inactive"
    NO_MATCHING_PERMISSION = "no_matching_permission"
    RESOLVER_UNAVAILABLE = "resolver_unavailable"

    # boundary validator
    MISSING_PERMISSION = "missing_permission"
    CANNOT_MANAGE_PERMISSIONS = "cannot_manage_permissions"
    ENTITY_BOUNDARY_VIOLATION = "entity_boundary_violation"
    CANNOT_MANAGE_RESOURCE = "cannot_manage_resource"
    SYSTEM_ROLE_PROTECTED = "system_role_protected"

    # admin / rate limiting
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    INVALID_REQUEST = "invalid_request"
    INTERNAL_ERROR = "internal_error"


def new_trace_id() -> str:
    return uuid.uuid4().hex


# ---- Value objects -------------------------------------------------------------------


@dataclass(frozen=True)
class PermissionSpec:
    """A (resource_type, action) pair, optionally narrowed to one resource."""

    resource_type: str
    action: str
    resource_id: str | None = None

    @classmethod
    def parse(cls, value: str) -> PermissionSpec:
        """Parse ``resource_type:action[:resource_id]``."""
        parts = value.split(":", 2)
        if len(parts) < 2 or not parts[0] or not parts[1]:
            raise ValueError(f"invalid permission {value!r}; expected 'resource:action[:id]'")
        resource_id = parts[2] if len(parts) == 3 and parts[2] else None
        return cls(resource_type=parts[0], action=parts[1], resource_id=resource_id)

    @property
    def is_resource_specific(self) -> bool:
        return self.resource_id is not None

    def general(self) -> PermissionSpec:
        return PermissionSpec(self.resource_type, self.action)

    def __str__(self) -> str:
        base = f"{self.resource_type}:{self.action}"
        return f"{base}:{self.resource_id}" if self.resource_id else base


@dataclass(frozen=True)
class Decision:
    """Outcome of a single permission check."""

    outcome: Outcome
    reason: ReasonCode
    trace_id: str
    from_cache: bool = False

    @property
    def granted(self) -> bool:
        return self.outcome is Outcome.GRANTED

    @property
    def unavailable(self) -> bool:
        return self.outcome is Outcome.UNAVAILABLE


@dataclass(frozen=True)
class BoundaryResult:
    ok: bool
    reason: ReasonCode
    trace_id: str


@dataclass(frozen=True)
class MutationResult:
    """Result of an administrative mutation; ``data`` holds the created record, if any."""

    ok: bool
    reason: ReasonCode
    trace_id: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class EffectivePermission:
    resource_type: str
    action: str
    resource_id: str | None
    source: str
    expires_at: datetime | None = None


# ---- Exceptions ----------------------------------------------------------------------


class StoreUnavailable(Exception):
    """The durable store failed or timed out (after one retry)."""


class NotFound(LookupError):
    """A referenced user, tenant or role does not exist in the caller's scope."""


class Conflict(Exception):
    """The mutation would duplicate an existing record."""


class InvalidRequest(ValueError):
    """The mutation request is malformed (e.g. elevation without a reason)."""


class TenantAccessDenied(Exception):
    """The user has no active role assignment in the requested tenant."""


class TenantSwitchInProgress(Exception):
    """Another switch is already running for the same session."""
