"""Observability events attached to records.

Events are the user-facing breadcrumb trail of a controller ("AppNotFound",
"TaskWorkloadCreated", ...). The recorder logs every event as a structured
line and keeps a bounded in-memory history for inspection.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Protocol

from .models import Resource

logger = logging.getLogger(__name__)

MAX_EVENT_HISTORY = 1000


class EventType(str, Enum):
    """Event severities."""

    NORMAL = "Normal"
    WARNING = "Warning"


@dataclass(frozen=True)
class Event:
    """A single recorded event."""

    kind: str
    namespace: str | None
    name: str
    event_type: EventType
    reason: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "namespace": self.namespace,
            "name": self.name,
            "type": self.event_type.value,
            "reason": self.reason,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class EventRecorder(Protocol):
    """Records events against a record."""

    def event(self, obj: Resource, event_type: EventType, reason: str, message: str) -> None: ...


class LoggingEventRecorder:
    """Event recorder backed by the structured logger."""

    def __init__(
        self,
        component: str,
        max_history: int = MAX_EVENT_HISTORY,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._component = component
        self._events: deque[Event] = deque(maxlen=max_history)
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def events(self) -> list[Event]:
        return list(self._events)

    def reasons(self) -> list[str]:
        return [e.reason for e in self._events]

    def event(self, obj: Resource, event_type: EventType, reason: str, message: str) -> None:
        recorded = Event(
            kind=obj.KIND,
            namespace=obj.namespace,
            name=obj.name,
            event_type=event_type,
            reason=reason,
            message=message,
            timestamp=self._clock(),
        )
        self._events.append(recorded)

        level = logging.WARNING if event_type == EventType.WARNING else logging.INFO
        logger.log(
            level,
            f"Event: {reason}",
            extra={
                "event": True,
                "component": self._component,
                "involved_kind": recorded.kind,
                "involved_namespace": recorded.namespace,
                "involved_name": recorded.name,
                "event_type": event_type.value,
                "reason": reason,
                "event_message": message,
            },
        )
