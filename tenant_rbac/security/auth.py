from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from tenant_rbac.engine.rate_limit import LockoutTracker
from tenant_rbac.identity import IdentityContext, IdentityValidator, ValidationError

logger = logging.getLogger(__name__)

AUTHORIZATION_HEADER = "Authorization"
BEARER_PREFIX = "Bearer"


def extract_bearer_token(request: Request) -> str | None:
    """
    Read ``Authorization: Bearer <token>``.

    Returns None when the header is absent; a malformed header is a 400.
    """

    raw = request.headers.get(AUTHORIZATION_HEADER)
    if not raw:
        logger.info("Missing Authorization header path=%s method=%s", request.url.path, request.method)
        return None

    prefix = f"{BEARER_PREFIX} "
    if not raw.startswith(prefix):
        logger.warning("Invalid Authorization header format path=%s method=%s", request.url.path, request.method)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {AUTHORIZATION_HEADER}. Expected '{BEARER_PREFIX} <token>'.",
        )

    token = raw[len(prefix) :].strip()
    if not token:
        logger.warning("Empty bearer token path=%s method=%s", request.url.path, request.method)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {AUTHORIZATION_HEADER}. Missing token after '{BEARER_PREFIX}'.",
        )
    return token


def client_identifier(request: Request) -> str:
    """Identifier that failed authentications are counted against."""
    return request.client.host if request.client else "unknown"


def _too_many(retry_after: int) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={"reason": "rate_limited", "retry_after_seconds": retry_after},
        headers={"Retry-After": str(retry_after)},
    )


def authenticate(request: Request, validator: IdentityValidator, lockout: LockoutTracker) -> IdentityContext:
    """
    Validate the bearer token, counting failures towards a lockout.

    A locked-out identifier gets 429 with Retry-After before its token is even
    looked at.
    """

    identifier = client_identifier(request)
    remaining = lockout.lock_remaining(identifier)
    if remaining > 0:
        logger.info("Rejected locked identifier path=%s retry_after=%s", request.url.path, remaining)
        raise _too_many(remaining)

    token = extract_bearer_token(request)
    if token is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")

    try:
        identity = validator.validate_and_extract(token)
    except ValidationError as exc:
        result = lockout.record_failure(identifier)
        if not result.allowed:
            raise _too_many(result.retry_after_seconds) from exc
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc

    # Failures are counted per client address; a valid token leaves the count for the window to clear.
    return identity
