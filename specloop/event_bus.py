import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel, Field


class OrchestrationEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: str
    task_name: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class EventBus:
    """A lightweight, synchronous event bus for decoupling specloop observability."""

    def __init__(self):
        self._subscribers: List[Callable[[OrchestrationEvent], None]] = []

    def subscribe(self, callback: Callable[[OrchestrationEvent], None]) -> None:
        """Register a callback to be executed when an event is emitted."""
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[OrchestrationEvent], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def emit(
        self,
        event_type: str,
        task_name: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> OrchestrationEvent:
        """Construct and broadcast an OrchestrationEvent to all subscribers."""
        event = OrchestrationEvent(
            event_type=event_type,
            task_name=task_name,
            payload=payload or {},
        )

        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                # A failing subscriber (like a bad file write) must not crash the session
                logger.exception(f"[EVENTS] Subscriber failed on {event_type}")

        return event


# Global singleton instance for easy imports across the project
bus = EventBus()
