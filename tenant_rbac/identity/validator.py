"""
Validate the signed bearer token that carries the caller's identity.

The token is issued elsewhere (the session/token service); this module only
checks it and reads three claims:

    * ``sub`` - the user id
    * ``tid`` - the tenant the session is acting in
    * ``sid`` - the session id, which keys the tenant binding

Before any claim is read we verify the signature, ``exp``/``nbf`` (with the
configured clock skew), and ``iss``/``aud`` when they are configured.
"""

from __future__ import annotations

import logging
from typing import Any

import jwt

from .config import IdentityConfig
from .context import IdentityContext

logger = logging.getLogger(__name__)

_REQUIRED_CLAIMS = ("sub", "tid", "sid")


class ValidationError(Exception):
    """Raised when token validation fails. Do not log the token."""

    pass


def _claim(payload: dict[str, Any], name: str) -> str:
    value = payload.get(name)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(int(value))
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"Invalid token: missing {name}")
    return value.strip()


def _extract_claims(payload: dict[str, Any]) -> IdentityContext:
    user_id, tenant_id, session_id = (_claim(payload, name) for name in _REQUIRED_CLAIMS)
    email = payload.get("email")
    return IdentityContext(
        user_id=user_id,
        tenant_id=tenant_id,
        session_id=session_id,
        email=str(email) if email else None,
    )


class IdentityValidator:
    def __init__(self, config: IdentityConfig | None = None) -> None:
        self._config = config or IdentityConfig.from_environ()

    def validate_and_extract(self, token: str) -> IdentityContext:
        """Validate the bearer token and return its IdentityContext; raises ValidationError."""
        if not token or token.count(".") != 2:
            raise ValidationError("Invalid token: malformed")

        cfg = self._config
        try:
            payload = jwt.decode(
                token,
                cfg.verification_key,
                algorithms=[cfg.algorithm],
                audience=cfg.audience,
                issuer=cfg.issuer,
                leeway=cfg.clock_skew_seconds,
                options={
                    "require": ["exp"],
                    "verify_signature": True,
                    "verify_exp": True,
                    "verify_nbf": True,
                    "verify_iss": cfg.issuer is not None,
                    "verify_aud": cfg.audience is not None,
                },
            )
        except jwt.ExpiredSignatureError as e:
            logger.info("Token expired")
            raise ValidationError("Token expired") from e
        except jwt.InvalidIssuerError as e:
            logger.info("Token invalid issuer")
            raise ValidationError("Invalid token: issuer") from e
        except jwt.InvalidAudienceError as e:
            logger.info("Token invalid audience")
            raise ValidationError("Invalid token: audience") from e
        except jwt.InvalidTokenError as e:
            logger.info("Token invalid: %s", type(e).__name__)
            raise ValidationError("Invalid token") from e

        return _extract_claims(payload)


def validate_and_extract(token: str, config: IdentityConfig | None = None) -> IdentityContext:
    """One-shot helper; build an IdentityValidator to reuse one config for many tokens."""
    return IdentityValidator(config=config).validate_and_extract(token)
