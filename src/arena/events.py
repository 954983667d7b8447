"""Operational event log persisted alongside the arena data."""

import logging
from typing import Any

from sqlalchemy.orm import Session

from .models import EventSeverity
from .schema import SystemEvent, utcnow

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    EventSeverity.INFO: logging.INFO,
    EventSeverity.WARNING: logging.WARNING,
    EventSeverity.ERROR: logging.ERROR,
}


def log_system_event(
    session: Session,
    event_type: str,
    data: dict[str, Any] | None = None,
    severity: EventSeverity = EventSeverity.INFO,
) -> SystemEvent:
    """Record an event row and mirror it to the application log.

    Args:
        session: Active transaction the event should commit with
        event_type: Short machine-readable type (e.g. cohort_started)
        data: JSON-serializable payload
        severity: info, warning or error
    """
    event = SystemEvent(
        event_type=event_type,
        severity=severity,
        event_data=data,
        created_at=utcnow(),
    )
    session.add(event)
    logger.log(_LOG_LEVELS[severity], f"System event: {event_type}", extra={"event_data": data})
    return event
