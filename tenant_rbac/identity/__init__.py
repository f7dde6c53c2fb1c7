"""
Bearer-token validation producing the caller's (user, tenant, session).

This package has no dependency on other tenant_rbac packages.
Use validate_and_extract() with a bearer token string to get an IdentityContext.
"""

from .config import IdentityConfig
from .context import IdentityContext
from .validator import IdentityValidator, ValidationError, validate_and_extract

__all__ = [
    "IdentityConfig",
    "IdentityContext",
    "IdentityValidator",
    "ValidationError",
    "validate_and_extract",
]
