from __future__ import annotations

import threading
from typing import Iterable

import pytest

from specloop.config_loader import SpecloopConfig
from specloop.errors import ExecutorError
from specloop.event_bus import EventBus, OrchestrationEvent
from specloop.executors import ExecutorReport, TaskContext, TaskExecutor
from specloop.tasks import Task


def make_task(name: str, deps: Iterable[str] = (), complexity: str = "low", **kwargs) -> Task:
    return Task(id=name, depends_on=list(deps), complexity=complexity, **kwargs)


def report(ratio: float, artifacts: Iterable[str] = (), duration_ms: int = 100, **kwargs) -> ExecutorReport:
    return ExecutorReport(
        touched_artifacts=set(artifacts),
        completion_ratio=ratio,
        duration_ms=duration_ms,
        **kwargs,
    )


class ScriptedExecutor(TaskExecutor):
    """Plays back a fixed list of reports (or exceptions) per task."""

    name = "scripted"

    def __init__(self, scripts: dict[str, list] | None = None, default: float = 1.0):
        self.scripts = {name: list(steps) for name, steps in (scripts or {}).items()}
        self.default = default
        self.calls: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def run_iteration(self, context: TaskContext, iteration: int) -> ExecutorReport:
        with self._lock:
            self.calls.append((context.task_name, iteration))
            steps = self.scripts.get(context.task_name)
            step = steps.pop(0) if steps else report(self.default)
        if isinstance(step, Exception):
            raise step
        return step

    def calls_for(self, task_name: str) -> list[int]:
        return [i for name, i in self.calls if name == task_name]


def failing(message: str = "boom") -> ExecutorError:
    return ExecutorError(message)


@pytest.fixture
def config() -> SpecloopConfig:
    cfg = SpecloopConfig()
    # Tests drive executors in-thread unless they exercise the timeout.
    cfg.limits.iteration_timeout_s = None
    return cfg


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(event_bus: EventBus) -> list[OrchestrationEvent]:
    received: list[OrchestrationEvent] = []
    event_bus.subscribe(received.append)
    return received
