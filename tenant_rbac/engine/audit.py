"""
Audit events and the emitter that ships them to an external sink.

Delivery rules:
    * ``critical`` and ``error`` events are written to the sink synchronously,
      with retries, before ``emit`` returns (at-least-once).
    * ``info`` and ``warning`` events are buffered and written in batches by a
      background thread, or as soon as a batch fills up.

If the sink keeps failing, the undelivered events are written to this
module's logger as JSON so the trail can still be rebuilt from logs.
"""

from __future__ import annotations

import enum
import json
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

import requests

logger = logging.getLogger(__name__)

AUDIT_LOGGER_NAME = "tenant_rbac.audit"


class AuditLevel(str, enum.Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


SYNC_LEVELS = frozenset({AuditLevel.ERROR, AuditLevel.CRITICAL})


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class AuditEvent:
    """Immutable record of one decision or mutation."""

    event_type: str
    subtype: str
    level: AuditLevel
    outcome: str
    user_id: str | None = None
    session_id: str | None = None
    tenant_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    action: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    timestamp: str = field(default_factory=_iso_now)

    @property
    def trace_id(self) -> str | None:
        return self.metadata.get("traceId")

    def to_dict(self) -> dict[str, Any]:
        """Return the sink schema (exact field set, camelCase keys)."""
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "type": self.event_type,
            "subtype": self.subtype,
            "level": self.level.value,
            "userId": self.user_id,
            "sessionId": self.session_id,
            "tenantId": self.tenant_id,
            "resourceType": self.resource_type,
            "resourceId": self.resource_id,
            "action": self.action,
            "outcome": self.outcome,
            "metadata": dict(self.metadata),
        }


# ---- Sinks ---------------------------------------------------------------------------


class AuditSink(Protocol):
    def write(self, events: Sequence[AuditEvent]) -> None: ...


class LoggingAuditSink:
    """Writes one JSON line per event to the ``tenant_rbac.audit`` logger."""

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME) -> None:
        self._logger = logging.getLogger(logger_name)

    def write(self, events: Sequence[AuditEvent]) -> None:
        for event in events:
            self._logger.info(json.dumps(event.to_dict(), sort_keys=True))


class HttpAuditSink:
    """POSTs batches of events as a JSON array to an external audit endpoint."""

    def __init__(self, url: str, timeout_seconds: float = 5.0) -> None:
        self._url = url
        self._timeout = timeout_seconds

    def write(self, events: Sequence[AuditEvent]) -> None:
        resp = requests.post(self._url, json=[e.to_dict() for e in events], timeout=self._timeout)
        resp.raise_for_status()


# ---- Emitter -------------------------------------------------------------------------


class AuditEmitter:
    def __init__(
        self,
        sink: AuditSink,
        *,
        batch_size: int = 50,
        flush_interval_seconds: float = 1.0,
        max_retries: int = 3,
        start_worker: bool = True,
    ) -> None:
        self._sink = sink
        self._batch_size = max(batch_size, 1)
        self._flush_interval = flush_interval_seconds
        self._max_retries = max(max_retries, 1)

        self._lock = threading.Lock()
        self._buffer: list[AuditEvent] = []
        self._wake = threading.Event()
        self._stopped = threading.Event()
        self._worker: threading.Thread | None = None
        if start_worker:
            self._worker = threading.Thread(target=self._run, name="audit-emitter", daemon=True)
            self._worker.start()

    def emit(self, event: AuditEvent) -> None:
        if event.level in SYNC_LEVELS:
            self._deliver([event])
            return

        with self._lock:
            self._buffer.append(event)
            full = len(self._buffer) >= self._batch_size
        if not full:
            return
        if self._worker is not None:
            self._wake.set()
        else:
            self.flush()

    def pending(self) -> int:
        with self._lock:
            return len(self._buffer)

    def flush(self) -> None:
        """Deliver everything buffered so far."""
        while True:
            with self._lock:
                batch = self._buffer[: self._batch_size]
                del self._buffer[: self._batch_size]
            if not batch:
                return
            self._deliver(batch)

    def close(self) -> None:
        self._stopped.set()
        self._wake.set()
        if self._worker is not None:
            self._worker.join(timeout=5)
            self._worker = None
        self.flush()

    def _run(self) -> None:
        while not self._stopped.is_set():
            self._wake.wait(self._flush_interval)
            self._wake.clear()
            self.flush()

    def _deliver(self, events: list[AuditEvent]) -> bool:
        for attempt in range(1, self._max_retries + 1):
            try:
                self._sink.write(events)
                return True
            except Exception as exc:  # sink is an external collaborator
                logger.warning(
                    "Audit sink write failed attempt=%s/%s events=%s error=%s",
                    attempt,
                    self._max_retries,
                    len(events),
                    type(exc).__name__,
                )
        for event in events:
            logger.error("Undelivered audit event %s", json.dumps(event.to_dict(), sort_keys=True))
        return False
