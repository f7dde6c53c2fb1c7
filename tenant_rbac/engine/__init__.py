"""
Multi-tenant permission resolution engine.

This package has no dependency on the HTTP layer (routers, security, schemas).
Use build_access_control() to wire the components and resolver.resolve() to
answer "may this user perform this action on this resource in this tenant?".
"""

from .admin import AdminService
from .audit import AuditEmitter, AuditEvent, AuditLevel, HttpAuditSink, LoggingAuditSink
from .boundary import BoundaryValidator
from .cache import InMemoryCacheClient, PermissionCache
from .config import PolicyConfig, PolicyConfigError, load_policy_config
from .container import AccessControl, build_access_control
from .rate_limit import LockoutTracker, ProbeDetector, RateLimiter, RateLimitResult
from .resolver import PermissionResolver
from .store import PermissionStore
from .tenant_context import TenantContext, TenantContextManager
from .types import (
    BoundaryResult,
    Decision,
    MutationResult,
    Outcome,
    PermissionSpec,
    ReasonCode,
    StoreUnavailable,
)

__all__ = [
    "AccessControl",
    "AdminService",
    "AuditEmitter",
    "AuditEvent",
    "AuditLevel",
    "BoundaryResult",
    "BoundaryValidator",
    "Decision",
    "HttpAuditSink",
    "InMemoryCacheClient",
    "LoggingAuditSink",
    "LockoutTracker",
    "MutationResult",
    "Outcome",
    "PermissionCache",
    "PermissionResolver",
    "PermissionSpec",
    "PermissionStore",
    "PolicyConfig",
    "PolicyConfigError",
    "ProbeDetector",
    "RateLimitResult",
    "RateLimiter",
    "ReasonCode",
    "StoreUnavailable",
    "TenantContext",
    "TenantContextManager",
    "build_access_control",
    "load_policy_config",
]
