"""
Fixed-window rate limiting on top of the cache client's atomic ``incr``.

Used for two things:
    * LockoutTracker: failed authentications per identifier; crossing the
      limit locks the identifier for a fixed period.
    * ProbeDetector: permission denials per user; crossing the limit raises
      a critical security alert through the audit emitter.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

from .audit import AuditEmitter, AuditEvent, AuditLevel
from .cache import CacheClient
from .config import AuthFailureLimit, ProbeLimit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after_seconds: int
    count: int = 0


def rate_key(action: str, identifier: str) -> str:
    return f"rate:{action}:{identifier}"


class RateLimiter:
    def __init__(self, client: CacheClient) -> None:
        self._client = client

    def check_and_increment(self, identifier: str, action: str, limit: int, window_seconds: int) -> RateLimitResult:
        """
        Count one request for (identifier, action) in the current window.

        The first request starts the window; requests past ``limit`` are
        denied until it expires, with ``retry_after_seconds`` set to the time
        left in the window.
        """
        count, ttl_remaining = self._client.incr(rate_key(action, identifier), window_seconds)
        if count > limit:
            retry_after = max(1, math.ceil(ttl_remaining))
            logger.debug("Rate limited action=%s count=%s retry_after=%s", action, count, retry_after)
            return RateLimitResult(allowed=False, remaining=0, retry_after_seconds=retry_after, count=count)
        return RateLimitResult(allowed=True, remaining=limit - count, retry_after_seconds=0, count=count)

    def reset(self, identifier: str, action: str) -> None:
        self._client.delete(rate_key(action, identifier))


def _normalize(identifier: str) -> str:
    return identifier.strip().lower()


class LockoutTracker:
    ACTION = "auth_failure"

    def __init__(
        self,
        limiter: RateLimiter,
        client: CacheClient,
        emitter: AuditEmitter,
        policy: AuthFailureLimit,
    ) -> None:
        self._limiter = limiter
        self._client = client
        self._emitter = emitter
        self._policy = policy

    @staticmethod
    def lock_key(identifier: str) -> str:
        return f"lock:auth:{identifier}"

    def lock_remaining(self, identifier: str) -> int:
        """Seconds until the identifier is unlocked; 0 when not locked."""
        ttl = self._client.ttl(self.lock_key(_normalize(identifier)))
        return max(0, math.ceil(ttl)) if ttl else 0

    def record_failure(self, identifier: str) -> RateLimitResult:
        ident = _normalize(identifier)
        result = self._limiter.check_and_increment(
            ident, self.ACTION, self._policy.limit, self._policy.window_seconds
        )
        if result.allowed:
            return result

        newly_locked = self._client.compare_and_set(
            self.lock_key(ident), None, "1", self._policy.lockout_seconds
        )
        if newly_locked:
            logger.warning("Identifier locked after %s failed attempts", result.count)
            self._emitter.emit(
                AuditEvent(
                    event_type="security",
                    subtype="account_locked",
                    level=AuditLevel.CRITICAL,
                    outcome="locked",
                    action="authenticate",
                    metadata={
                        "identifier": ident,
                        "failures": result.count,
                        "lockoutSeconds": self._policy.lockout_seconds,
                    },
                )
            )
        return RateLimitResult(
            allowed=False,
            remaining=0,
            retry_after_seconds=max(self.lock_remaining(ident), result.retry_after_seconds),
            count=result.count,
        )

    def record_success(self, identifier: str) -> None:
        """Clear the failure count. Only for identifiers that name one account, never a shared address."""
        self._limiter.reset(_normalize(identifier), self.ACTION)


class ProbeDetector:
    ACTION = "permission_denied"

    def __init__(self, limiter: RateLimiter, emitter: AuditEmitter, policy: ProbeLimit) -> None:
        self._limiter = limiter
        self._emitter = emitter
        self._policy = policy

    def record_denial(self, user_id: str, tenant_id: str, trace_id: str | None = None) -> RateLimitResult:
        result = self._limiter.check_and_increment(
            user_id, self.ACTION, self._policy.limit, self._policy.window_seconds
        )
        # Alert once per window, on the first denial past the limit.
        if result.count == self._policy.limit + 1:
            logger.warning("Permission probe suspected user=%s tenant=%s denials=%s", user_id, tenant_id, result.count)
            self._emitter.emit(
                AuditEvent(
                    event_type="security",
                    subtype="permission_probe",
                    level=AuditLevel.CRITICAL,
                    outcome="alert",
                    user_id=user_id,
                    tenant_id=tenant_id,
                    metadata={
                        "traceId": trace_id,
                        "denials": result.count,
                        "windowSeconds": self._policy.window_seconds,
                    },
                )
            )
        return result
