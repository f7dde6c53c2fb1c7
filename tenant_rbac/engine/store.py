"""
Durable permission store backed by SQLAlchemy.

Source of truth for roles, permissions, assignments, elevations and the
per-(user, tenant) generation counters.

Reads run on a small worker pool with a bounded timeout and are retried once
before failing with ``StoreUnavailable``. Mutations run in a single
transaction that also bumps the generation of every affected (user, tenant)
pair, and report those new generations to the caller so the cache can be
invalidated before the mutating call returns.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Iterable, TypeVar

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from tenant_rbac.models.rbac import (
    Permission,
    PermissionElevation,
    PermissionGeneration,
    Role,
    RolePermission,
    Tenant,
    User,
    UserRoleAssignment,
    UserStatus,
    utcnow,
)

from .types import Conflict, NotFound, PermissionSpec, StoreUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---- Records -------------------------------------------------------------------------


@dataclass(frozen=True)
class UserRecord:
    id: str
    email: str
    status: UserStatus

    @property
    def is_active(self) -> bool:
        return self.status is UserStatus.ACTIVE


@dataclass(frozen=True)
class RoleRecord:
    id: str
    name: str
    tenant_id: str | None
    is_system_role: bool

    @classmethod
    def of(cls, role: Role) -> RoleRecord:
        return cls(id=role.id, name=role.name, tenant_id=role.tenant_id, is_system_role=role.is_system_role)


@dataclass(frozen=True)
class AssignmentRecord:
    user_id: str
    role_id: str
    tenant_id: str
    role_name: str
    is_system_role: bool
    assigned_by: str | None
    assigned_at: datetime
    expires_at: datetime | None


@dataclass(frozen=True)
class GrantRecord:
    role_id: str
    resource_type: str
    action: str
    resource_id: str | None


@dataclass(frozen=True)
class ElevationRecord:
    id: int
    user_id: str
    tenant_id: str
    resource_type: str
    action: str
    resource_id: str | None
    reason: str
    granted_by: str
    expires_at: datetime


@dataclass(frozen=True)
class GenerationUpdate:
    user_id: str
    tenant_id: str
    generation: int


# ---- Store ---------------------------------------------------------------------------


class PermissionStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        timeout_seconds: float = 0.3,
        max_workers: int = 8,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="perm-store")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ---- Bounded execution ----------------------------------------------------------

    def _bounded(self, fn: Callable[..., T], *args: object) -> T:
        """Run a read on the worker pool with a timeout; retry once, then StoreUnavailable."""
        name = getattr(fn, "__name__", "read")
        last_error: str = ""
        for attempt in (1, 2):
            future = self._executor.submit(fn, *args)
            try:
                return future.result(timeout=self._timeout)
            except FutureTimeout:
                future.cancel()
                last_error = f"timeout after {self._timeout:.3f}s"
            except Exception as exc:
                last_error = type(exc).__name__
            logger.warning("Store read failed op=%s attempt=%s error=%s", name, attempt, last_error)
        raise StoreUnavailable(f"{name}: {last_error}")

    def _write(self, fn: Callable[[Session], T]) -> T:
        try:
            with self._session_factory() as db:
                with db.begin():
                    return fn(db)
        except IntegrityError as exc:
            raise Conflict("duplicate record") from exc
        except SQLAlchemyError as exc:
            logger.warning("Store write failed error=%s", type(exc).__name__)
            raise StoreUnavailable(type(exc).__name__) from exc

    # ---- Reads ----------------------------------------------------------------------

    def generation(self, user_id: str, tenant_id: str) -> int:
        return self._bounded(self._read_generation, user_id, tenant_id)

    def _read_generation(self, user_id: str, tenant_id: str) -> int:
        with self._session_factory() as db:
            row = db.get(PermissionGeneration, (user_id, tenant_id))
            return row.generation if row else 0

    def load_subject(self, user_id: str, tenant_id: str) -> UserRecord | None:
        """Return the user when both user and tenant exist, else None."""
        return self._bounded(self._read_subject, user_id, tenant_id)

    def _read_subject(self, user_id: str, tenant_id: str) -> UserRecord | None:
        with self._session_factory() as db:
            user = db.get(User, user_id)
            if user is None or db.get(Tenant, tenant_id) is None:
                return None
            return UserRecord(id=user.id, email=user.email, status=user.status)

    def active_assignments(self, user_id: str, tenant_id: str, now: datetime | None = None) -> list[AssignmentRecord]:
        return self._bounded(self._read_assignments, user_id, tenant_id, now or utcnow())

    def _read_assignments(self, user_id: str, tenant_id: str, now: datetime) -> list[AssignmentRecord]:
        stmt = (
            select(UserRoleAssignment, Role)
            .join(Role, Role.id == UserRoleAssignment.role_id)
            .where(
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.tenant_id == tenant_id,
                or_(UserRoleAssignment.expires_at.is_(None), UserRoleAssignment.expires_at > now),
                # A tenant role only counts inside its own tenant.
                or_(Role.tenant_id.is_(None), Role.tenant_id == tenant_id),
            )
            .order_by(UserRoleAssignment.id)
        )
        with self._session_factory() as db:
            return [
                AssignmentRecord(
                    user_id=a.user_id,
                    role_id=a.role_id,
                    tenant_id=a.tenant_id,
                    role_name=r.name,
                    is_system_role=r.is_system_role,
                    assigned_by=a.assigned_by,
                    assigned_at=a.assigned_at,
                    expires_at=a.expires_at,
                )
                for a, r in db.execute(stmt).all()
            ]

    def role_grants(self, role_ids: Iterable[str]) -> list[GrantRecord]:
        ids = sorted(set(role_ids))
        if not ids:
            return []
        return self._bounded(self._read_role_grants, ids)

    def _read_role_grants(self, role_ids: list[str]) -> list[GrantRecord]:
        stmt = (
            select(RolePermission.role_id, Permission)
            .join(Permission, Permission.id == RolePermission.permission_id)
            .where(RolePermission.role_id.in_(role_ids))
        )
        with self._session_factory() as db:
            return [
                GrantRecord(
                    role_id=role_id,
                    resource_type=p.resource_type,
                    action=p.action,
                    resource_id=p.resource_id,
                )
                for role_id, p in db.execute(stmt).all()
            ]

    def active_elevations(self, user_id: str, tenant_id: str, now: datetime | None = None) -> list[ElevationRecord]:
        return self._bounded(self._read_elevations, user_id, tenant_id, now or utcnow())

    def _read_elevations(self, user_id: str, tenant_id: str, now: datetime) -> list[ElevationRecord]:
        stmt = select(PermissionElevation).where(
            PermissionElevation.user_id == user_id,
            PermissionElevation.tenant_id == tenant_id,
            PermissionElevation.expires_at > now,
        )
        with self._session_factory() as db:
            return [_elevation_record(e) for e in db.scalars(stmt).all()]

    def get_role(self, role_id: str) -> RoleRecord | None:
        return self._bounded(self._read_role, role_id)

    def _read_role(self, role_id: str) -> RoleRecord | None:
        with self._session_factory() as db:
            role = db.get(Role, role_id)
            return RoleRecord.of(role) if role else None

    def system_role(self, name: str) -> RoleRecord | None:
        return self._bounded(self._read_system_role, name)

    def _read_system_role(self, name: str) -> RoleRecord | None:
        with self._session_factory() as db:
            role = _system_role(db, name)
            return RoleRecord.of(role) if role else None

    # ---- Directory (tenants / users) ------------------------------------------------

    def create_tenant(self, name: str, tenant_id: str | None = None) -> str:
        def op(db: Session) -> str:
            if tenant_id and db.get(Tenant, tenant_id) is not None:
                raise Conflict(f"tenant {tenant_id!r} exists")
            tenant = Tenant(id=tenant_id, name=name) if tenant_id else Tenant(name=name)
            db.add(tenant)
            db.flush()
            return tenant.id

        return self._write(op)

    def create_user(self, email: str, user_id: str | None = None, status: UserStatus = UserStatus.ACTIVE) -> str:
        def op(db: Session) -> str:
            if db.scalars(select(User.id).where(User.email == email)).first() is not None:
                raise Conflict(f"user {email!r} exists")
            user = User(email=email, status=status)
            if user_id:
                user.id = user_id
            db.add(user)
            db.flush()
            return user.id

        return self._write(op)

    def set_user_status(self, user_id: str, status: UserStatus) -> list[GenerationUpdate]:
        """Change a user's status; cached decisions in every tenant they belong to go stale."""

        def op(db: Session) -> list[GenerationUpdate]:
            user = db.get(User, user_id)
            if user is None:
                raise NotFound("user")
            user.status = status
            tenants = db.scalars(
                select(UserRoleAssignment.tenant_id).where(UserRoleAssignment.user_id == user_id).distinct()
            ).all()
            return [_bump(db, user_id, tenant_id) for tenant_id in tenants]

        return self._write(op)

    # ---- Mutations ------------------------------------------------------------------

    def create_role(
        self,
        name: str,
        tenant_id: str | None,
        *,
        is_system_role: bool = False,
        created_by: str | None = None,
        description: str | None = None,
        role_id: str | None = None,
    ) -> RoleRecord:
        def op(db: Session) -> RoleRecord:
            if tenant_id is not None and db.get(Tenant, tenant_id) is None:
                raise NotFound("tenant")
            scope = Role.tenant_id.is_(None) if tenant_id is None else Role.tenant_id == tenant_id
            if db.scalars(select(Role.id).where(Role.name == name, scope)).first() is not None:
                raise Conflict(f"role {name!r} exists")
            if role_id and db.get(Role, role_id) is not None:
                raise Conflict(f"role id {role_id!r} exists")
            role = Role(
                name=name,
                tenant_id=tenant_id,
                is_system_role=is_system_role,
                created_by=created_by,
                description=description,
            )
            if role_id:
                role.id = role_id
            db.add(role)
            db.flush()
            return RoleRecord.of(role)

        return self._write(op)

    def assign_role(
        self,
        user_id: str,
        role_id: str,
        tenant_id: str,
        *,
        assigned_by: str | None = None,
        expires_at: datetime | None = None,
    ) -> list[GenerationUpdate]:
        def op(db: Session) -> list[GenerationUpdate]:
            if db.get(User, user_id) is None or db.get(Tenant, tenant_id) is None:
                raise NotFound("subject")
            role = _role_in_scope(db, role_id, tenant_id)
            existing = db.scalars(
                select(UserRoleAssignment).where(
                    UserRoleAssignment.user_id == user_id,
                    UserRoleAssignment.role_id == role.id,
                    UserRoleAssignment.tenant_id == tenant_id,
                )
            ).first()
            if existing is not None:
                raise Conflict("assignment exists")
            db.add(
                UserRoleAssignment(
                    user_id=user_id,
                    role_id=role.id,
                    tenant_id=tenant_id,
                    assigned_by=assigned_by,
                    expires_at=expires_at,
                )
            )
            return [_bump(db, user_id, tenant_id)]

        return self._write(op)

    def revoke_role(self, user_id: str, role_id: str, tenant_id: str) -> list[GenerationUpdate]:
        def op(db: Session) -> list[GenerationUpdate]:
            assignment = db.scalars(
                select(UserRoleAssignment).where(
                    UserRoleAssignment.user_id == user_id,
                    UserRoleAssignment.role_id == role_id,
                    UserRoleAssignment.tenant_id == tenant_id,
                )
            ).first()
            if assignment is None:
                raise NotFound("assignment")
            db.delete(assignment)
            return [_bump(db, user_id, tenant_id)]

        return self._write(op)

    def add_permission_to_role(
        self, role_id: str, permission: PermissionSpec, *, granted_by: str | None = None
    ) -> list[GenerationUpdate]:
        def op(db: Session) -> list[GenerationUpdate]:
            if db.get(Role, role_id) is None:
                raise NotFound("role")
            perm = _ensure_permission(db, permission)
            existing = db.scalars(
                select(RolePermission.id).where(
                    RolePermission.role_id == role_id, RolePermission.permission_id == perm.id
                )
            ).first()
            if existing is not None:
                raise Conflict("role already carries permission")
            db.add(RolePermission(role_id=role_id, permission_id=perm.id, granted_by=granted_by))
            return _bump_role_holders(db, role_id)

        return self._write(op)

    def remove_permission_from_role(self, role_id: str, permission: PermissionSpec) -> list[GenerationUpdate]:
        def op(db: Session) -> list[GenerationUpdate]:
            link = db.scalars(
                select(RolePermission)
                .join(Permission, Permission.id == RolePermission.permission_id)
                .where(RolePermission.role_id == role_id, *_permission_filter(permission))
            ).first()
            if link is None:
                raise NotFound("role permission")
            db.delete(link)
            return _bump_role_holders(db, role_id)

        return self._write(op)

    def create_elevation(
        self,
        user_id: str,
        tenant_id: str,
        permission: PermissionSpec,
        *,
        reason: str,
        granted_by: str,
        expires_at: datetime,
    ) -> tuple[ElevationRecord, list[GenerationUpdate]]:
        def op(db: Session) -> tuple[ElevationRecord, list[GenerationUpdate]]:
            if db.get(User, user_id) is None or db.get(Tenant, tenant_id) is None:
                raise NotFound("subject")
            elevation = PermissionElevation(
                user_id=user_id,
                tenant_id=tenant_id,
                resource_type=permission.resource_type,
                action=permission.action,
                resource_id=permission.resource_id,
                reason=reason,
                granted_by=granted_by,
                expires_at=expires_at,
            )
            db.add(elevation)
            db.flush()
            return _elevation_record(elevation), [_bump(db, user_id, tenant_id)]

        return self._write(op)

    def ensure_member(self, user_id: str, tenant_id: str, basic_role_name: str) -> list[GenerationUpdate]:
        """Give a user the basic-user system role in ``tenant_id`` unless they already hold a role there."""

        def op(db: Session) -> list[GenerationUpdate]:
            has_any = db.scalars(
                select(UserRoleAssignment.id).where(
                    UserRoleAssignment.user_id == user_id, UserRoleAssignment.tenant_id == tenant_id
                )
            ).first()
            if has_any is not None:
                return []
            role = _system_role(db, basic_role_name)
            if role is None:
                raise NotFound("basic user role")
            db.add(UserRoleAssignment(user_id=user_id, role_id=role.id, tenant_id=tenant_id))
            return [_bump(db, user_id, tenant_id)]

        return self._write(op)


# ---- Transaction helpers ---------------------------------------------------------------


def _role_in_scope(db: Session, role_id: str, tenant_id: str) -> Role:
    role = db.get(Role, role_id)
    # A role from another tenant is reported exactly like a missing one.
    if role is None or (role.tenant_id is not None and role.tenant_id != tenant_id):
        raise NotFound("role")
    return role


def _system_role(db: Session, name: str) -> Role | None:
    return db.scalars(select(Role).where(Role.name == name, Role.tenant_id.is_(None), Role.is_system_role)).first()


def _permission_filter(permission: PermissionSpec) -> list:
    return [
        Permission.resource_type == permission.resource_type,
        Permission.action == permission.action,
        Permission.resource_id.is_(None)
        if permission.resource_id is None
        else Permission.resource_id == permission.resource_id,
    ]


def _ensure_permission(db: Session, permission: PermissionSpec) -> Permission:
    existing = db.scalars(select(Permission).where(*_permission_filter(permission))).first()
    if existing is not None:
        return existing
    perm = Permission(
        resource_type=permission.resource_type,
        action=permission.action,
        resource_id=permission.resource_id,
    )
    db.add(perm)
    db.flush()
    return perm


def _bump(db: Session, user_id: str, tenant_id: str) -> GenerationUpdate:
    row = db.get(PermissionGeneration, (user_id, tenant_id), with_for_update=True)
    if row is None:
        row = PermissionGeneration(user_id=user_id, tenant_id=tenant_id, generation=1)
        db.add(row)
    else:
        row.generation += 1
    db.flush()
    return GenerationUpdate(user_id=user_id, tenant_id=tenant_id, generation=row.generation)


def _bump_role_holders(db: Session, role_id: str) -> list[GenerationUpdate]:
    pairs = db.execute(
        select(UserRoleAssignment.user_id, UserRoleAssignment.tenant_id)
        .where(UserRoleAssignment.role_id == role_id)
        .distinct()
    ).all()
    return [_bump(db, user_id, tenant_id) for user_id, tenant_id in pairs]


def _elevation_record(e: PermissionElevation) -> ElevationRecord:
    return ElevationRecord(
        id=e.id,
        user_id=e.user_id,
        tenant_id=e.tenant_id,
        resource_type=e.resource_type,
        action=e.action,
        resource_id=e.resource_id,
        reason=e.reason,
        granted_by=e.granted_by,
        expires_at=e.expires_at,
    )
