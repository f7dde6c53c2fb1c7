"""Identity token configuration from environment variables. No hardcoded secrets."""

from __future__ import annotations

import os
from dataclasses import dataclass

_HMAC_ALGORITHMS = ("HS256", "HS384", "HS512")


def _getenv(key: str, default: str | None = None) -> str | None:
    return os.environ.get(key, default)


def _getenv_int(key: str, default: int) -> int:
    raw = os.environ.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class IdentityConfig:
    """
    Settings for validating the bearer tokens that carry (user, tenant, session).

    Key material (one of):
        RBAC_IDENTITY_SECRET: shared secret for HS256/HS384/HS512.
        RBAC_IDENTITY_PUBLIC_KEY: PEM public key for RS256 and friends.

    Optional:
        RBAC_IDENTITY_ALGORITHM: signing algorithm (default HS256).
        RBAC_IDENTITY_ISSUER: expected ``iss``; not checked when unset.
        RBAC_IDENTITY_AUDIENCE: expected ``aud``; not checked when unset.
        RBAC_CLOCK_SKEW_SECONDS: tolerance for exp/nbf (default 120).
    """

    algorithm: str
    secret: str | None
    public_key: str | None
    issuer: str | None
    audience: str | None
    clock_skew_seconds: int = 120

    @property
    def is_hmac(self) -> bool:
        return self.algorithm.upper() in _HMAC_ALGORITHMS

    @property
    def verification_key(self) -> str:
        key = self.secret if self.is_hmac else self.public_key
        if not key:
            raise ValueError(f"no key material configured for {self.algorithm}")
        return key

    @classmethod
    def from_environ(cls) -> IdentityConfig:
        algorithm = (_getenv("RBAC_IDENTITY_ALGORITHM") or "HS256").strip().upper()
        secret = _strip_or_none(_getenv("RBAC_IDENTITY_SECRET"))
        public_key = _strip_or_none(_getenv("RBAC_IDENTITY_PUBLIC_KEY"))
        if algorithm in _HMAC_ALGORITHMS and not secret:
            raise ValueError(f"RBAC_IDENTITY_SECRET must be set for {algorithm}")
        if algorithm not in _HMAC_ALGORITHMS and not public_key:
            raise ValueError(f"RBAC_IDENTITY_PUBLIC_KEY must be set for {algorithm}")
        return cls(
            algorithm=algorithm,
            secret=secret,
            public_key=public_key,
            issuer=_strip_or_none(_getenv("RBAC_IDENTITY_ISSUER")),
            audience=_strip_or_none(_getenv("RBAC_IDENTITY_AUDIENCE")),
            clock_skew_seconds=_getenv_int("RBAC_CLOCK_SKEW_SECONDS", 120),
        )


def _strip_or_none(s: str | None) -> str | None:
    if s is None:
        return None
    t = s.strip()
    return t if t else None
