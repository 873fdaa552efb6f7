import json

from specloop.audit_logger import AuditLogger
from specloop.event_bus import EventBus, OrchestrationEvent


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[OrchestrationEvent] = []

    def dummy_subscriber(event: OrchestrationEvent):
        received_events.append(event)

    # Subscribe to the bus
    test_bus.subscribe(dummy_subscriber)

    # Emit an event
    test_bus.emit(
        event_type="task_dispatched",
        task_name="parser",
        payload={"allocation": 10.0}
    )

    # Verify the event was received and formatted correctly
    assert len(received_events) == 1

    event = received_events[0]
    assert event.event_type == "task_dispatched"
    assert event.task_name == "parser"
    assert event.payload == {"allocation": 10.0}

    # Verify auto-generated fields
    assert event.event_id is not None
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


def test_failing_subscriber_does_not_stop_delivery():
    test_bus = EventBus()
    received: list[OrchestrationEvent] = []

    def broken(event):
        raise RuntimeError("disk full")

    test_bus.subscribe(broken)
    test_bus.subscribe(received.append)

    event = test_bus.emit("session_started")

    assert received == [event]
    assert event.task_name is None
    assert event.payload == {}


def test_audit_logger_writes_jsonl(tmp_path):
    test_bus = EventBus()
    path = tmp_path / "logs" / "audit.jsonl"
    auditor = AuditLogger(str(path), test_bus)

    test_bus.emit("task_finished", task_name="a", payload={"status": "COMPLETED"})
    test_bus.emit("session_finished", payload={"outcome": "SUCCESS"})
    auditor.close()
    test_bus.emit("ignored")

    lines = [json.loads(line) for line in path.read_text().splitlines()]
    assert [line["event_type"] for line in lines] == ["task_finished", "session_finished"]
    assert lines[0]["payload"] == {"status": "COMPLETED"}
