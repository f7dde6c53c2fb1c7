"""
Per-session tenant binding.

State machine per session::

    unbound --bind--> bound(t1) --switch--> switching --> bound(t2)
                                                |
                                                +--(denied)--> bound(t1)

A request captures the immutable ``TenantContext`` handle once and uses it
for its whole lifetime. A switch builds a new handle and swaps it in under a
lock, so a concurrent request sees either the old tenant or the new one,
never a mix. Nothing keeps per-handle state that would need discarding on a
switch: cached decisions are keyed by tenant and tagged with generations.

Handles that have not been used for ``idle_seconds`` are dropped the next
time a session is bound; a returning client is simply bound again.
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from tenant_rbac.models.rbac import utcnow

from .audit import AuditEmitter, AuditEvent, AuditLevel
from .store import PermissionStore
from .types import InvalidRequest, TenantAccessDenied, TenantSwitchInProgress, new_trace_id

logger = logging.getLogger(__name__)


class SessionState(str, enum.Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    SWITCHING = "switching"


@dataclass(frozen=True)
class TenantContext:
    session_id: str
    user_id: str
    tenant_id: str
    bound_at: datetime
    epoch: int = 1


class TenantContextManager:
    def __init__(
        self,
        store: PermissionStore,
        emitter: AuditEmitter,
        clock: Callable[[], datetime] = utcnow,
        *,
        idle_seconds: float = 3600,
        switch_wait_seconds: float = 5.0,
    ) -> None:
        self._store = store
        self._emitter = emitter
        self._clock = clock
        self._idle_seconds = idle_seconds
        self._switch_wait = switch_wait_seconds
        self._lock = threading.Lock()
        self._settled = threading.Condition(self._lock)
        self._contexts: dict[str, TenantContext] = {}
        self._last_used: dict[str, datetime] = {}
        # session id -> tenant being switched to
        self._switching: dict[str, str] = {}

    def current(self, session_id: str) -> TenantContext | None:
        with self._lock:
            return self._contexts.get(session_id)

    def state(self, session_id: str) -> SessionState:
        with self._lock:
            if session_id in self._switching:
                return SessionState.SWITCHING
            if session_id in self._contexts:
                return SessionState.BOUND
            return SessionState.UNBOUND

    def __len__(self) -> int:
        with self._lock:
            return len(self._contexts)

    def bind(self, session_id: str, user_id: str, tenant_id: str) -> TenantContext:
        """
        Bind an unbound session. Raises TenantAccessDenied when the user has no role in the tenant.

        Binding a session that is already bound to the same user and tenant
        returns the existing handle; any other existing binding is rejected.
        """
        with self._lock:
            existing = self._existing(session_id, user_id, tenant_id)
            if existing is not None:
                return existing

        self._verify_access(user_id, tenant_id)
        now = self._clock()
        ctx = TenantContext(session_id=session_id, user_id=user_id, tenant_id=tenant_id, bound_at=now)
        with self._lock:
            # Another request on the same session may have bound it meanwhile.
            existing = self._existing(session_id, user_id, tenant_id)
            if existing is not None:
                return existing
            self._expire_idle(now)
            self._contexts[session_id] = ctx
            self._last_used[session_id] = now

        self._audit("bind", ctx, None)
        return ctx

    def switch(self, session_id: str, tenant_id: str) -> TenantContext:
        with self._lock:
            if session_id in self._switching:
                raise TenantSwitchInProgress(session_id)
            old = self._contexts.get(session_id)
            if old is None:
                raise InvalidRequest(f"session {session_id!r} is not bound")
            if old.tenant_id == tenant_id:
                return old
            self._switching[session_id] = tenant_id

        try:
            self._verify_access(old.user_id, tenant_id)
        except Exception:
            with self._settled:
                self._switching.pop(session_id, None)
                self._settled.notify_all()
            logger.info("Tenant switch denied session=%s", session_id)
            raise

        now = self._clock()
        new = TenantContext(
            session_id=session_id,
            user_id=old.user_id,
            tenant_id=tenant_id,
            bound_at=now,
            epoch=old.epoch + 1,
        )
        with self._settled:
            self._contexts[session_id] = new
            self._last_used[session_id] = now
            self._switching.pop(session_id, None)
            self._settled.notify_all()

        self._audit("switch", new, old)
        return new

    def ensure_bound(self, session_id: str, user_id: str, tenant_id: str) -> TenantContext:
        """
        Return the session's handle for ``tenant_id``, binding or switching as needed.

        A request for the tenant an in-flight switch is moving to waits for
        that switch and gets its result.
        """
        with self._settled:
            if self._switching.get(session_id) == tenant_id:
                self._settled.wait_for(
                    lambda: self._switching.get(session_id) != tenant_id, timeout=self._switch_wait
                )
            ctx = self._contexts.get(session_id)
            if ctx is not None and ctx.user_id == user_id and ctx.tenant_id == tenant_id:
                self._last_used[session_id] = self._clock()
                return ctx

        if ctx is None:
            return self.bind(session_id, user_id, tenant_id)
        if ctx.user_id != user_id:
            raise InvalidRequest("session belongs to another user")
        return self.switch(session_id, tenant_id)

    def release(self, session_id: str) -> None:
        with self._settled:
            self._contexts.pop(session_id, None)
            self._last_used.pop(session_id, None)
            self._switching.pop(session_id, None)
            self._settled.notify_all()

    def _existing(self, session_id: str, user_id: str, tenant_id: str) -> TenantContext | None:
        """Caller holds the lock."""
        if session_id in self._switching:
            raise InvalidRequest(f"session {session_id!r} is already bound")
        ctx = self._contexts.get(session_id)
        if ctx is None:
            return None
        if ctx.user_id != user_id or ctx.tenant_id != tenant_id:
            raise InvalidRequest(f"session {session_id!r} is already bound")
        return ctx

    def _expire_idle(self, now: datetime) -> None:
        """Caller holds the lock."""
        idle = [
            sid
            for sid, used in self._last_used.items()
            if sid not in self._switching and (now - used).total_seconds() > self._idle_seconds
        ]
        for sid in idle:
            self._contexts.pop(sid, None)
            self._last_used.pop(sid, None)
        if idle:
            logger.debug("Released %s idle tenant sessions", len(idle))

    def _verify_access(self, user_id: str, tenant_id: str) -> None:
        subject = self._store.load_subject(user_id, tenant_id)
        if subject is None or not subject.is_active or not self._store.active_assignments(user_id, tenant_id):
            raise TenantAccessDenied(tenant_id)

    def _audit(self, subtype: str, ctx: TenantContext, previous: TenantContext | None) -> None:
        self._emitter.emit(
            AuditEvent(
                event_type="tenant_context",
                subtype=subtype,
                level=AuditLevel.INFO,
                outcome="success",
                user_id=ctx.user_id,
                session_id=ctx.session_id,
                tenant_id=ctx.tenant_id,
                metadata={
                    "traceId": new_trace_id(),
                    "epoch": ctx.epoch,
                    "previousTenantId": previous.tenant_id if previous else None,
                },
            )
        )
