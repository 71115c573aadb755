from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from kitchguard.logging import get_client_ip, get_logger
from kitchguard.storage.models import utcnow

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class AuditEvent:
    action: str
    actor_id: str
    detail: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


class AuditSink(Protocol):
    def write(self, event: AuditEvent) -> None: ...


class StructlogAuditSink:
    """Writes audit events to the ``kitchguard.audit`` structured log stream."""

    def __init__(self) -> None:
        self.logger = get_logger("kitchguard.audit")

    def write(self, event: AuditEvent) -> None:
        self.logger.info(
            "audit_event",
            action=event.action,
            actor_id=event.actor_id,
            occurred_at=event.created_at.isoformat(),
            detail=event.detail,
        )


class MemoryAuditSink:
    """Keeps events in process; used by tests and the memory runtime."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[AuditEvent] = []

    def write(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)

    def actions(self) -> List[str]:
        return [event.action for event in self.events]


class AuditLog:
    """Append-only emitter for authentication and authorization decisions.

    Callers pass structured detail only; secrets must be fingerprinted with
    ``hash_for_logging`` before they reach this point.
    """

    def __init__(self, *sinks: AuditSink) -> None:
        self._sinks = sinks or (StructlogAuditSink(),)

    def record(self, action: str, *, actor_id: Optional[str] = None, **detail: Any) -> AuditEvent:
        fields = {key: value for key, value in detail.items() if value is not None}
        # Request-bound address, unless the caller supplied one
        fields.setdefault("client_ip", get_client_ip())
        if fields["client_ip"] is None:
            del fields["client_ip"]
        event = AuditEvent(action=action, actor_id=actor_id or SYSTEM_ACTOR, detail=fields)
        for sink in self._sinks:
            sink.write(event)
        return event
