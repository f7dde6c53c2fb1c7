"""Serializable identity produced after validating a bearer token."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class IdentityContext:
    """Who is calling, in which tenant, from which session."""

    user_id: str
    """Subject (``sub`` claim)."""

    tenant_id: str
    """Tenant the session acts in (``tid`` claim)."""

    session_id: str
    """Session identifier (``sid`` claim); keys the tenant binding."""

    email: str | None = None
    """Display only; never used for authorization."""

    def to_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "tenant_id": self.tenant_id,
            "session_id": self.session_id,
            "email": self.email,
        }
