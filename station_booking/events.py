from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

logger = logging.getLogger(__name__)

RESERVATION_REQUESTED = "RESERVATION_REQUESTED"
RESERVATION_REJECTED = "RESERVATION_REJECTED"
RESERVATION_COMMITTED = "RESERVATION_COMMITTED"
RESERVATION_CONFIRMED = "RESERVATION_CONFIRMED"
PAYMENT_FAILED = "PAYMENT_FAILED"
RESERVATION_COMPLETED = "RESERVATION_COMPLETED"
RESERVATION_CANCELLED = "RESERVATION_CANCELLED"

_WARNING_EVENTS = {RESERVATION_REJECTED, PAYMENT_FAILED}
_DEBUG_EVENTS = {RESERVATION_REQUESTED}


class EventRecorder(Protocol):
    def record(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None: ...


class LoggingEventRecorder:
    """Emits each event as one log line with the payload attached as ``extra``."""

    def __init__(self, target: logging.Logger | None = None) -> None:
        self.logger = target or logger

    def record(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        if event_type in _WARNING_EVENTS:
            level = logging.WARNING
        elif event_type in _DEBUG_EVENTS:
            level = logging.DEBUG
        else:
            level = logging.INFO
        self.logger.log(
            level,
            "%s %s",
            event_type,
            " ".join(f"{key}={value}" for key, value in payload.items()),
            extra={"event_type": event_type, "event_payload": payload},
        )


class CompositeEventRecorder:
    def __init__(self, *recorders: EventRecorder) -> None:
        self.recorders = recorders

    def record(self, event_type: str, payload: dict[str, Any], event_time: datetime | None = None) -> None:
        for recorder in self.recorders:
            recorder.record(event_type, payload, event_time)
