from __future__ import annotations

import logging


def configure_app_logging(level: str = "INFO") -> None:
    """
    Set the level for everything under the ``tenant_rbac`` logger.

    Uvicorn installs the handlers; this only adjusts levels. Audit events go to
    ``tenant_rbac.audit`` when no HTTP sink is configured, so that logger is
    kept at INFO or lower even when the rest of the package is quieter.
    Set ``RBAC_LOG_LEVEL=DEBUG`` to see every permission decision.
    """

    normalized = level.upper()
    root = logging.getLogger("tenant_rbac")
    root.setLevel(normalized)
    root.propagate = True

    audit = logging.getLogger("tenant_rbac.audit")
    if audit.getEffectiveLevel() > logging.INFO:
        audit.setLevel(logging.INFO)
