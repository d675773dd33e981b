from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

logger = logging.getLogger(__name__)

MOTION = "motion"
RECORDING_STARTED = "recordingStarted"
RECORDING_COMPLETE = "recordingComplete"
RECORDING_ERROR = "recordingError"
RECORDING_READY = "recordingReady"
ALARM_TRIGGERED = "alarmTriggered"
ALARM_STOPPED = "alarmStopped"
ALARM_ARMED = "alarmArmed"
ALARM_DISARMED = "alarmDisarmed"
STORAGE_WARNING = "storageWarning"
STORAGE_CRITICAL = "storageCritical"
CLEANUP_COMPLETE = "cleanupComplete"
RECORDING_ADDED = "recordingAdded"
RECORDING_DELETED = "recordingDeleted"


@dataclass(frozen=True)
class Event:
    name: str
    camera_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


Handler = Callable[[Event], None]


class EventChannel:
    """Synchronous fan-out of events to subscribed handlers.

    A handler that raises is logged and skipped; delivery continues to the
    remaining handlers.
    """

    def __init__(self, history_size: int = 200) -> None:
        self._handlers: list[Handler] = []
        self._history: deque[Event] = deque(maxlen=history_size)

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, name: str, camera_id: str | None = None, **payload: Any) -> Event:
        event = Event(name=name, camera_id=camera_id, payload=payload)
        self._history.append(event)
        for handler in list(self._handlers):
            try:
                handler(event)
            except Exception:
                logger.exception("Event handler failed for %s", name)
        return event

    @property
    def history(self) -> list[Event]:
        return list(self._history)

    def named(self, name: str) -> list[Event]:
        return [event for event in self._history if event.name == name]
