from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from tenant_rbac.models.rbac import utcnow

from .admin import AdminService
from .audit import AuditEmitter, AuditSink, LoggingAuditSink
from .boundary import BoundaryValidator
from .cache import CacheClient, InMemoryCacheClient, PermissionCache
from .config import PolicyConfig
from .rate_limit import LockoutTracker, ProbeDetector, RateLimiter
from .resolver import PermissionResolver
from .store import PermissionStore
from .tenant_context import TenantContextManager

logger = logging.getLogger(__name__)


@dataclass
class AccessControl:
    """Every engine component, wired once per process."""

    policy: PolicyConfig
    store: PermissionStore
    cache: PermissionCache
    emitter: AuditEmitter
    limiter: RateLimiter
    lockout: LockoutTracker
    probes: ProbeDetector
    resolver: PermissionResolver
    validator: BoundaryValidator
    admin: AdminService
    tenants: TenantContextManager

    def close(self) -> None:
        self.emitter.close()
        self.store.close()


def build_access_control(
    policy: PolicyConfig,
    session_factory: sessionmaker[Session],
    *,
    sink: AuditSink | None = None,
    cache_client: CacheClient | None = None,
    store_timeout_seconds: float = 0.3,
    store_workers: int = 8,
    audit_batch_size: int = 50,
    audit_flush_interval_seconds: float = 1.0,
    audit_max_retries: int = 3,
    start_audit_worker: bool = True,
    session_idle_seconds: float = 3600,
    clock: Callable[[], datetime] = utcnow,
) -> AccessControl:
    client = cache_client if cache_client is not None else InMemoryCacheClient()
    emitter = AuditEmitter(
        sink if sink is not None else LoggingAuditSink(),
        batch_size=audit_batch_size,
        flush_interval_seconds=audit_flush_interval_seconds,
        max_retries=audit_max_retries,
        start_worker=start_audit_worker,
    )
    store = PermissionStore(session_factory, timeout_seconds=store_timeout_seconds, max_workers=store_workers)
    cache = PermissionCache(client, ttl_seconds=policy.cache.ttl_seconds)

    limiter = RateLimiter(client)
    lockout = LockoutTracker(limiter, client, emitter, policy.rate_limits.auth_failures)
    probes = ProbeDetector(limiter, emitter, policy.rate_limits.permission_probes)

    resolver = PermissionResolver(store, cache, emitter, policy, probe_detector=probes, clock=clock)
    validator = BoundaryValidator(resolver, emitter, policy)
    admin = AdminService(store, cache, validator, emitter, policy, clock=clock)
    tenants = TenantContextManager(store, emitter, clock=clock, idle_seconds=session_idle_seconds)
    logger.info("Access control ready (cache ttl=%ss, store timeout=%.3fs)", policy.cache.ttl_seconds, store_timeout_seconds)

    return AccessControl(
        policy=policy,
        store=store,
        cache=cache,
        emitter=emitter,
        limiter=limiter,
        lockout=lockout,
        probes=probes,
        resolver=resolver,
        validator=validator,
        admin=admin,
        tenants=tenants,
    )
