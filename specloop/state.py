"""
Orchestration state — the unit that is checkpointed and resumed.

Everything the orchestrator needs to pick a session back up lives here:
per-task status, allocation and iteration history, the remaining budget
and the commitment level.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, Field


class Complexity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    READY = "READY"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    SKIPPED = "SKIPPED"
    FAILED = "FAILED"


class SpiralSignal(str, Enum):
    NONE = "NONE"
    OSCILLATION = "OSCILLATION"
    SCOPE_CREEP = "SCOPE_CREEP"
    DIMINISHING_RETURNS = "DIMINISHING_RETURNS"
    THRASHING = "THRASHING"


class ReasonCode(str, Enum):
    """Why a task ended anywhere other than COMPLETED."""
    OSCILLATION = "OSCILLATION"
    SCOPE_CREEP = "SCOPE_CREEP"
    DIMINISHING_RETURNS = "DIMINISHING_RETURNS"
    THRASHING = "THRASHING"
    ITERATION_LIMIT = "ITERATION_LIMIT"
    BUDGET_EXHAUSTED = "BUDGET_EXHAUSTED"
    EXECUTOR_FAILURE = "EXECUTOR_FAILURE"
    DEPENDENCY_FAILED = "DEPENDENCY_FAILED"
    ESCALATED = "ESCALATED"

    @classmethod
    def from_signal(cls, signal: SpiralSignal) -> "ReasonCode":
        return cls(signal.value)


class IterationRecord(BaseModel):
    """One executor pass over a task. Never mutated after append."""
    model_config = {"frozen": True}

    index: int = Field(ge=1)
    touched_artifacts: frozenset[str] = Field(default_factory=frozenset)
    completion_ratio: float = Field(ge=0.0, le=1.0)
    duration_ms: int = Field(default=0, ge=0)
    out_of_scope: bool = False
    regression_flag: bool = False


class TaskRecord(BaseModel):
    """Runtime state of one task inside a session."""
    name: str
    dependencies: list[str] = Field(default_factory=list)
    complexity: Complexity = Complexity.MEDIUM
    scope: list[str] = Field(default_factory=list)
    allocation: float = 0.0
    status: TaskStatus = TaskStatus.PENDING
    accepted: bool = False
    reason: ReasonCode | None = None
    consumed: float = 0.0
    verdict: str | None = None
    iterations: list[IterationRecord] = Field(default_factory=list)

    @property
    def resolved(self) -> bool:
        """True when dependents may build on this task."""
        return self.status == TaskStatus.COMPLETED or (
            self.status == TaskStatus.PARTIAL and self.accepted
        )

    @property
    def last_ratio(self) -> float:
        return self.iterations[-1].completion_ratio if self.iterations else 0.0


class OrchestrationState(BaseModel):
    """
    Durable snapshot of a session.

    The dependency graph is not stored separately: each TaskRecord keeps
    its declared dependencies and the graph is rebuilt on load.
    """

    session_id: str
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    updated_at: str = ""
    tasks: dict[str, TaskRecord] = Field(default_factory=dict)
    order: list[str] = Field(default_factory=list)
    budget_total: float = 0.0
    budget_remaining: float = 0.0
    commitment_level: int = 0
    best_effort: bool = False

    def statuses(self) -> dict[str, TaskStatus]:
        return {name: rec.status for name, rec in self.tasks.items()}

    def resolved(self) -> set[str]:
        return {name for name, rec in self.tasks.items() if rec.resolved}

    def with_status(self, *statuses: TaskStatus) -> list[str]:
        wanted = set(statuses)
        return sorted(name for name, rec in self.tasks.items() if rec.status in wanted)

    def pending(self) -> list[str]:
        return self.with_status(TaskStatus.PENDING, TaskStatus.READY)

    def mark(self, names: Iterable[str], status: TaskStatus, reason: ReasonCode | None = None) -> None:
        for name in names:
            rec = self.tasks[name]
            rec.status = status
            if reason is not None:
                rec.reason = reason

    def touch(self) -> None:
        self.updated_at = datetime.now(timezone.utc).isoformat()

    def to_json(self) -> str:
        return self.model_dump_json(indent=2)
