"""
specloop Task Executors

An executor performs one iteration of real work on a task and reports
back how far along the task is. specloop never does the work itself.

Executors must be safe to retry once: the controller calls
`run_iteration` a second time with the same iteration index when the
first call raises ExecutorError or times out.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from specloop.state import IterationRecord


class TaskContext(BaseModel):
    """Shared context passed to every executor invocation."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    task_name: str
    complexity: str = "medium"
    scope: list[str] = []
    dependencies: list[str] = []
    allocation: float = 0.0
    commitment_level: int = 0
    command: str | None = None
    history: list[IterationRecord] = []  # prior iterations, oldest first
    extra: dict[str, Any] = {}
    # Set when the controller gives up on an in-flight call
    cancel_event: threading.Event = Field(default_factory=threading.Event, exclude=True)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class ExecutorReport(BaseModel):
    """What an executor hands back after one iteration."""
    touched_artifacts: set[str] = Field(default_factory=set)
    completion_ratio: float = Field(ge=0.0, le=1.0)
    duration_ms: int = Field(default=0, ge=0)
    out_of_scope: bool = False
    regression_flag: bool = False

    def to_record(self, index: int) -> IterationRecord:
        return IterationRecord(
            index=index,
            touched_artifacts=frozenset(self.touched_artifacts),
            completion_ratio=self.completion_ratio,
            duration_ms=self.duration_ms,
            out_of_scope=self.out_of_scope,
            regression_flag=self.regression_flag,
        )


class TaskExecutor(ABC):
    """
    Base class for all executors.

    Subclasses implement `run_iteration`, raising ExecutorError on
    failure. Long-running executors should poll `context.cancelled`.
    """

    name: str = "executor"

    @abstractmethod
    def run_iteration(self, context: TaskContext, iteration: int) -> ExecutorReport:
        ...


from specloop.executors.command import CommandExecutor  # noqa: E402

__all__ = ["CommandExecutor", "ExecutorReport", "TaskContext", "TaskExecutor"]
