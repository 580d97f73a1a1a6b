"""
Outbound incident events.

The core only decides whether and what to publish; transport is whatever
EventPublisher the process is wired with.  InMemoryEventBus is the default
and what the tests inspect.
"""

import logging
from threading import Lock
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

INCIDENT_CREATED = "incident-created"
INCIDENT_UPDATED = "incident-updated"
LINE_INCIDENT_UPDATES = "line-incidents"
USER_NOTIFICATION = "user-notification"


def line_channel(line_id: str) -> str:
    return f"{LINE_INCIDENT_UPDATES}:{line_id}"


class EventPublisher(Protocol):
    def publish(self, channel: str, payload: dict[str, Any]) -> None: ...


class InMemoryEventBus:
    """Records every published event in order; safe to share across threads."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._events: list[tuple[str, dict[str, Any]]] = []

    def publish(self, channel: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._events.append((channel, payload))
        logger.debug("Published event on %s.", channel)

    def events(self, channel: Optional[str] = None) -> list[tuple[str, dict[str, Any]]]:
        with self._lock:
            if channel is None:
                return list(self._events)
            return [e for e in self._events if e[0] == channel]

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


def incident_payload(incident) -> dict[str, Any]:
    return {
        "id": incident.id,
        "title": incident.title,
        "kind": _value(incident.kind),
        "status": _value(incident.status),
        "line_ids": list(incident.line_ids or []),
        "delay_minutes": incident.delay_minutes,
        "source": _value(incident.source),
        "created_at": incident.created_at.isoformat() if incident.created_at else None,
        "resolved_at": incident.resolved_at.isoformat() if incident.resolved_at else None,
    }


def announce_incident(publisher: EventPublisher, incident, channel: str = INCIDENT_CREATED) -> None:
    """Publish on the global channel and on each affected line's channel."""
    payload = incident_payload(incident)
    publisher.publish(channel, payload)
    for line_id in incident.line_ids or []:
        if line_id:
            publisher.publish(line_channel(line_id), payload)


def _value(v):
    return getattr(v, "value", v)
