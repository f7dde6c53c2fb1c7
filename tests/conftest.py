"""
Pytest fixtures for the test suite.

Engine tests run against an in-memory SQLite database shared by every thread
(``StaticPool``), because the permission store reads on worker threads. Time
is driven by ``FakeClock`` so TTLs, windows and expiries can be tested
without sleeping.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Sequence

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from tenant_rbac.db.init_db import init_db
from tenant_rbac.db.session import build_session_factory
from tenant_rbac.engine.audit import AuditEvent
from tenant_rbac.engine.config import PolicyConfig
from tenant_rbac.engine.container import AccessControl, build_access_control
from tenant_rbac.engine.types import PermissionSpec
from tenant_rbac.models.rbac import UserStatus, utcnow

TEST_DB_URL = "sqlite:///:memory:"


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self) -> None:
        self._start = utcnow()
        self._offset = 0.0

    def now(self) -> datetime:
        return self._start + timedelta(seconds=self._offset)

    def monotonic(self) -> float:
        return self._offset

    def advance(self, seconds: float) -> None:
        self._offset += seconds


class MemorySink:
    """Audit sink that keeps every event; can be told to fail the next N writes."""

    def __init__(self, failures: int = 0) -> None:
        self.events: list[AuditEvent] = []
        self.writes = 0
        self.failures = failures

    def write(self, events: Sequence[AuditEvent]) -> None:
        self.writes += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("sink down")
        self.events.extend(events)

    def of(self, event_type: str, subtype: str | None = None) -> list[AuditEvent]:
        return [e for e in self.events if e.event_type == event_type and (subtype is None or e.subtype == subtype)]


class Directory:
    """
    Test-data helper that writes straight to the store, bypassing the boundary
    validator, and publishes the resulting generations like the admin layer does.
    """

    def __init__(self, access_control: AccessControl) -> None:
        self.ac = access_control

    def _publish(self, updates) -> None:
        for update in updates:
            self.ac.cache.publish_generation(update.user_id, update.tenant_id, update.generation)

    def tenant(self, tenant_id: str) -> str:
        return self.ac.store.create_tenant(f"Tenant {tenant_id}", tenant_id=tenant_id)

    def user(self, user_id: str, status: UserStatus = UserStatus.ACTIVE) -> str:
        return self.ac.store.create_user(f"{user_id}@example.com", user_id=user_id, status=status)

    def role(self, name: str, tenant_id: str | None, *permissions: str) -> str:
        role = self.ac.store.create_role(name, tenant_id, role_id=f"{name}-{tenant_id}")
        for permission in permissions:
            self.grant(role.id, permission)
        return role.id

    def grant(self, role_id: str, permission: str) -> None:
        self._publish(self.ac.store.add_permission_to_role(role_id, PermissionSpec.parse(permission)))

    def assign(self, user_id: str, role_id: str, tenant_id: str, expires_at: datetime | None = None) -> None:
        self._publish(self.ac.store.assign_role(user_id, role_id, tenant_id, expires_at=expires_at))

    def system_role(self, name: str) -> str:
        role = self.ac.store.system_role(name)
        assert role is not None, f"system role {name} not seeded"
        return role.id

    def super_admin(self, user_id: str, tenant_id: str) -> None:
        self.assign(user_id, self.system_role(self.ac.policy.roles.super_admin), tenant_id)

    def basic_user(self, user_id: str, tenant_id: str) -> None:
        self.assign(user_id, self.system_role(self.ac.policy.roles.basic_user), tenant_id)


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite engine for each test."""
    return create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def policy() -> PolicyConfig:
    return PolicyConfig()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def ac(engine, session_factory, policy, clock, sink):
    """
    Fully wired engine over the test database.

    Audit batches hold a single event and there is no worker thread, so every
    event reaches ``sink`` before ``emit`` returns.
    """
    from tenant_rbac.engine.cache import InMemoryCacheClient

    init_db(engine, session_factory, policy)
    access_control = build_access_control(
        policy,
        session_factory,
        sink=sink,
        cache_client=InMemoryCacheClient(clock=clock.monotonic),
        store_timeout_seconds=2.0,
        store_workers=4,
        audit_batch_size=1,
        start_audit_worker=False,
        clock=clock.now,
    )
    yield access_control
    access_control.close()


@pytest.fixture
def directory(ac) -> Directory:
    return Directory(ac)


@pytest.fixture
def world(directory):
    """
    Two tenants and a few users:

    * ``root``    - SuperAdmin in t1
    * ``manager`` - role ``mgr`` in t1: roles:manage, documents:read, documents:write
    * ``plain``   - role ``writer`` in t1: documents:write (cannot manage roles)
    * ``u1``      - role ``editor`` in t1: documents:write, documents:read
    * ``u2``      - BasicUser in t1
    """
    d = directory
    d.tenant("t1")
    d.tenant("t2")
    for user_id in ("root", "manager", "plain", "u1", "u2"):
        d.user(user_id)

    d.super_admin("root", "t1")
    d.assign("manager", d.role("mgr", "t1", "roles:manage", "documents:read", "documents:write"), "t1")
    d.assign("plain", d.role("writer", "t1", "documents:write"), "t1")
    d.assign("u1", d.role("editor", "t1", "documents:write", "documents:read"), "t1")
    d.basic_user("u2", "t1")
    return d
