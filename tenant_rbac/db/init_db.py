from __future__ import annotations

import logging

from sqlalchemy import Engine, select
from sqlalchemy.orm import Session, sessionmaker

from tenant_rbac.db.base import Base
from tenant_rbac.engine.config import PolicyConfig
from tenant_rbac.models.rbac import Role

logger = logging.getLogger(__name__)


def init_db(engine: Engine, session_factory: sessionmaker[Session], policy: PolicyConfig) -> None:
    """
    Create tables and make sure the platform system roles exist.

    Safe to run on every startup: existing roles are left untouched.
    """

    Base.metadata.create_all(bind=engine)

    with session_factory() as db:
        created = _seed_system_roles(db, policy)
        db.commit()
    if created:
        logger.info("Seeded system roles: %s", ", ".join(created))


def _seed_system_roles(db: Session, policy: PolicyConfig) -> list[str]:
    wanted = {
        policy.roles.super_admin: "Full access within the tenant it is assigned in",
        policy.roles.basic_user: "Default grants for every tenant member",
    }
    existing = set(
        db.scalars(select(Role.name).where(Role.tenant_id.is_(None), Role.is_system_role)).all()
    )

    created: list[str] = []
    for name, description in wanted.items():
        if name in existing:
            continue
        db.add(Role(name=name, tenant_id=None, is_system_role=True, description=description))
        created.append(name)
    db.flush()
    return created
