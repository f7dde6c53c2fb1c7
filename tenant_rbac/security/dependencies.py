from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status

from tenant_rbac.engine.container import AccessControl
from tenant_rbac.engine.tenant_context import TenantContext
from tenant_rbac.engine.types import (
    InvalidRequest,
    StoreUnavailable,
    TenantAccessDenied,
    TenantSwitchInProgress,
)
from tenant_rbac.identity import IdentityContext, IdentityValidator
from tenant_rbac.security.auth import authenticate

logger = logging.getLogger(__name__)


def get_access_control(request: Request) -> AccessControl:
    access_control = getattr(request.app.state, "access_control", None)
    if access_control is None:
        raise RuntimeError("Access control not initialized. Did app startup run?")
    return access_control


def get_identity_validator(request: Request) -> IdentityValidator:
    validator = getattr(request.app.state, "identity_validator", None)
    if validator is None:
        raise RuntimeError("Identity validator not initialized. Did app startup run?")
    return validator


def require_identity(
    request: Request,
    access_control: AccessControl = Depends(get_access_control),
    validator: IdentityValidator = Depends(get_identity_validator),
) -> IdentityContext:
    identity = authenticate(request, validator, access_control.lockout)
    request.state.identity = identity
    return identity


def require_tenant(
    request: Request,
    identity: IdentityContext = Depends(require_identity),
    access_control: AccessControl = Depends(get_access_control),
) -> TenantContext:
    """
    Bind the caller's session to the tenant named in their token.

    The handle is captured once here; everything the request does runs
    against it, even if another request switches the session meanwhile.
    """

    try:
        ctx = access_control.tenants.ensure_bound(identity.session_id, identity.user_id, identity.tenant_id)
    except TenantAccessDenied as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="No access to tenant") from exc
    except TenantSwitchInProgress as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Tenant switch in progress") from exc
    except InvalidRequest as exc:
        logger.warning("Session rejected session=%s: %s", identity.session_id, exc)
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Session not valid for caller") from exc
    except StoreUnavailable as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail={"reason": "resolver_unavailable"}
        ) from exc

    request.state.tenant_context = ctx
    return ctx
