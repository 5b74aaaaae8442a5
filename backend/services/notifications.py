import logging
import threading
from typing import Any, Protocol

logger = logging.getLogger(__name__)

EVENT_ATTENDANCE_UPDATE = "attendanceUpdate"
EVENT_CHAIN_UPDATE = "chainUpdate"
EVENT_STALL_ALERT = "stallAlert"
EVENT_ROTATING_TOKEN_UPDATE = "rotatingTokenUpdate"
EVENT_SESSION_ENDED = "sessionEnded"


class NotificationSink(Protocol):
    def publish(self, session_id: str, event_type: str, payload: dict[str, Any]) -> None: ...


class MemoryNotificationSink:
    """Keeps published events in order; a real-time transport can drain it."""

    def __init__(self, max_events: int = 1000):
        self._lock = threading.Lock()
        self._events: list[dict[str, Any]] = []
        self.max_events = max_events

    def publish(self, session_id: str, event_type: str, payload: dict[str, Any]) -> None:
        with self._lock:
            self._events.append({"session_id": session_id, "event_type": event_type, "payload": payload})
            if len(self._events) > self.max_events:
                del self._events[: len(self._events) - self.max_events]

    def events(self, session_id: str | None = None, event_type: str | None = None) -> list[dict[str, Any]]:
        with self._lock:
            return [
                e
                for e in self._events
                if (session_id is None or e["session_id"] == session_id)
                and (event_type is None or e["event_type"] == event_type)
            ]


def publish_safely(sink: NotificationSink | None, session_id: str, event_type: str, payload: dict[str, Any]) -> bool:
    if sink is None:
        return False
    try:
        sink.publish(session_id, event_type, payload)
        return True
    except Exception:
        # Publishing is best-effort; the state transition already happened.
        logger.warning("publish %s for session %s failed", event_type, session_id, exc_info=True)
        return False
