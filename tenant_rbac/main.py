from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tenant_rbac.db.init_db import init_db
from tenant_rbac.db.session import build_engine, build_session_factory
from tenant_rbac.engine.audit import HttpAuditSink, LoggingAuditSink
from tenant_rbac.engine.config import load_policy_config
from tenant_rbac.engine.container import build_access_control
from tenant_rbac.identity import IdentityConfig, IdentityValidator
from tenant_rbac.logging_config import configure_app_logging
from tenant_rbac.routers import admin, health, permissions, tenants
from tenant_rbac.settings import get_settings

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        configure_app_logging(settings.log_level)
        logger.info("App startup beginning")

        policy_path = settings.resolved_policy_config_path()
        policy = load_policy_config(policy_path)
        logger.info("Loaded policy config: %s", policy_path)

        engine = build_engine(settings.resolved_db_url())
        session_factory = build_session_factory(engine)
        init_db(engine, session_factory, policy)
        logger.info("Database initialized (tables ensured + system roles seeded)")

        sink = HttpAuditSink(settings.audit_sink_url) if settings.audit_sink_url else LoggingAuditSink()
        access_control = build_access_control(
            policy,
            session_factory,
            sink=sink,
            store_timeout_seconds=settings.store_timeout_seconds,
            store_workers=settings.store_workers,
            audit_batch_size=settings.audit_batch_size,
            audit_flush_interval_seconds=settings.audit_flush_interval_seconds,
            audit_max_retries=settings.audit_max_retries,
            session_idle_seconds=settings.session_idle_seconds,
        )
        app.state.access_control = access_control
        app.state.identity_validator = IdentityValidator(IdentityConfig.from_environ())

        yield

        access_control.close()
        engine.dispose()
        logger.info("App shutdown complete")

    app = FastAPI(title="tenant-rbac", lifespan=lifespan)

    app.include_router(health.router)
    app.include_router(permissions.router)
    app.include_router(admin.router)
    app.include_router(tenants.router)

    return app


app = create_app()
