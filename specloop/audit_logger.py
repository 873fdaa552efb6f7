import os
import threading
from typing import Any

from specloop.event_bus import OrchestrationEvent


class AuditLogger:
    """
    Audit Logger that subscribes to an Event Bus and writes events
    to an append-only JSONL file.
    """
    def __init__(self, file_path: str, event_bus: Any):
        self.file_path = file_path
        self.event_bus = event_bus
        self._lock = threading.Lock()

        # Ensure the directory exists
        os.makedirs(os.path.dirname(os.path.abspath(self.file_path)), exist_ok=True)

        self.event_bus.subscribe(self.log_event)

    def log_event(self, event: OrchestrationEvent) -> None:
        """
        Callback to handle incoming events and append them to the JSONL file.
        """
        line = event.model_dump_json() + '\n'
        with self._lock:
            with open(self.file_path, 'a', encoding='utf-8') as f:
                f.write(line)

    def close(self) -> None:
        self.event_bus.unsubscribe(self.log_event)
