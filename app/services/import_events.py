"""
Import job events for push-style progress updates.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("app.import.events")

JOB_EVENT_TYPES = ("job_created", "job_started", "job_progress", "job_completed", "job_failed", "job_cancelled")
CONFLICT_EVENT_TYPES = ("conflict_detected", "conflict_resolved")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class ImportJobEvent:
    type: str
    job_id: str
    user_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


@dataclass
class ImportConflictEvent:
    type: str
    job_id: str
    conflict_id: str
    user_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["timestamp"] = self.timestamp.isoformat()
        return payload


Subscriber = Callable[[Any], None]


class ImportEventBus:
    """In-process publisher; subscriber failures are logged and ignored."""

    def __init__(self, subscribers: Optional[List[Subscriber]] = None):
        self._subscribers: List[Subscriber] = list(subscribers or [])

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def job_event(self, event_type: str, job_id: str, user_id: str, **data) -> ImportJobEvent:
        if event_type not in JOB_EVENT_TYPES:
            raise ValueError(f"Unknown job event type: {event_type}")
        event = ImportJobEvent(type=event_type, job_id=job_id, user_id=user_id, data=data)
        self.publish(event)
        return event

    def conflict_event(self, event_type: str, job_id: str, conflict_id: str, user_id: str,
                       **data) -> ImportConflictEvent:
        if event_type not in CONFLICT_EVENT_TYPES:
            raise ValueError(f"Unknown conflict event type: {event_type}")
        event = ImportConflictEvent(type=event_type, job_id=job_id, conflict_id=conflict_id,
                                    user_id=user_id, data=data)
        self.publish(event)
        return event

    def publish(self, event: Any) -> None:
        for subscriber in self._subscribers:
            try:
                subscriber(event)
            except Exception as e:
                logger.warning(f"Event subscriber failed for {event.type}: {e}")


def log_event(event: Any) -> None:
    logger.info(f"Import event type={event.type} job_id={event.job_id} user_id={event.user_id}")


def default_event_bus() -> ImportEventBus:
    return ImportEventBus([log_event])
