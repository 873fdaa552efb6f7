"""
specloop Orchestrator — the top-level scheduling loop.

Pipeline: Build graph → Allocate budget → (pull ready task → Iteration
Controller → deduct consumption → unblock dependents → checkpoint)*

The orchestrator owns every write to task status, the budget and the
commitment level. With `parallel.max_workers > 1` independent ready
tasks run on a thread pool, and all of those writes go through one lock.
"""

from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from loguru import logger

from specloop.budget import BudgetLedger, allocate_from_config, consumption
from specloop.commitment import CommitmentGate
from specloop.config_loader import SpecloopConfig
from specloop.controller import IterationController, TaskOutcome
from specloop.errors import ConfigError, ResourceExhaustion, TaskDefinitionError
from specloop.event_bus import EventBus, bus as default_bus
from specloop.executors import TaskExecutor
from specloop.graph import DependencyGraph
from specloop.state import OrchestrationState, ReasonCode, TaskRecord, TaskStatus
from specloop.store import PersistenceStore

# Operator hook for ESCALATE verdicts: return True to accept the partial result.
EscalationHandler = Callable[[TaskRecord, TaskOutcome], bool]


class SessionOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    DEGRADED = "DEGRADED"
    FAILURE = "FAILURE"

    @property
    def exit_code(self) -> int:
        return 0 if self is SessionOutcome.SUCCESS else 1


@dataclass
class SessionReport:
    session_id: str
    outcome: SessionOutcome
    tasks: list[TaskRecord]
    budget_total: float
    budget_remaining: float
    commitment_level: int
    best_effort: bool = False

    @property
    def exit_code(self) -> int:
        return self.outcome.exit_code

    def by_status(self) -> dict[str, list[str]]:
        grouped: dict[str, list[str]] = {}
        for rec in self.tasks:
            grouped.setdefault(rec.status.value, []).append(rec.name)
        return grouped

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "outcome": self.outcome.value,
            "exit_code": self.exit_code,
            "budget_total": round(self.budget_total, 4),
            "budget_remaining": round(self.budget_remaining, 4),
            "commitment_level": self.commitment_level,
            "best_effort": self.best_effort,
            "tasks": [
                {
                    "name": rec.name,
                    "status": rec.status.value,
                    "reason": rec.reason.value if rec.reason else None,
                    "accepted": rec.accepted,
                    "iterations": len(rec.iterations),
                    "allocation": round(rec.allocation, 4),
                    "consumed": round(rec.consumed, 4),
                }
                for rec in self.tasks
            ],
        }


def summarize(state: OrchestrationState) -> SessionReport:
    statuses = [rec.status for rec in state.tasks.values()]
    if TaskStatus.FAILED in statuses:
        outcome = SessionOutcome.FAILURE
    elif all(s is TaskStatus.COMPLETED for s in statuses):
        outcome = SessionOutcome.SUCCESS
    else:
        outcome = SessionOutcome.DEGRADED

    order = state.order or sorted(state.tasks)
    return SessionReport(
        session_id=state.session_id,
        outcome=outcome,
        tasks=[state.tasks[name] for name in order],
        budget_total=state.budget_total,
        budget_remaining=state.budget_remaining,
        commitment_level=state.commitment_level,
        best_effort=state.best_effort,
    )


def new_session_id() -> str:
    return "session-" + datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")


class Orchestrator:
    """
    Drives a whole session.

    Build with `from_tasks` for a fresh session or `resume` to pick up a
    checkpoint; `plan` alone runs the graph and the allocator without
    executing anything.
    """

    def __init__(
        self,
        state: OrchestrationState,
        executor: TaskExecutor,
        config: SpecloopConfig,
        store: PersistenceStore | None = None,
        event_bus: EventBus | None = None,
        escalation_handler: EscalationHandler | None = None,
        commands: Mapping[str, str] | None = None,
    ):
        self.state = state
        self.config = config
        self.store = store
        self.escalation_handler = escalation_handler
        self.commands = dict(commands or {})
        self._bus = event_bus or default_bus
        self._lock = threading.RLock()

        self.graph = DependencyGraph.build(
            {name: rec.dependencies for name, rec in state.tasks.items()}
        )
        self.ledger = BudgetLedger(state, self._lock)
        self.gate = CommitmentGate(state, config.commitment, self._lock, self._bus)
        self.gate.prime(self.ledger.consumed_fraction)
        self.controller = IterationController(
            executor, config, self.gate, event_bus=self._bus, lock=self._lock
        )

    # -----------------------------------------------------------------------
    # Construction
    # -----------------------------------------------------------------------

    @staticmethod
    def plan(
        tasks: Iterable,
        config: SpecloopConfig,
        total_budget: float | None = None,
        allocations: Mapping[str, float] | None = None,
        session_id: str | None = None,
    ) -> OrchestrationState:
        """
        Build the graph, order it and allocate the budget.

        Raises StructuralError on cycles or unknown dependencies before
        anything is budgeted. `allocations` pins per-task allocations
        instead of running the allocator.
        """
        tasks = list(tasks)
        graph = DependencyGraph.from_tasks(tasks)
        order = graph.topological_order()
        total = total_budget if total_budget is not None else config.budget.total
        if total <= 0:
            raise ConfigError(f"Total budget must be positive, got {total}")

        if allocations is None:
            allocations = allocate_from_config(tasks, graph, config.budget, total)
        else:
            missing = set(graph.names) - set(allocations)
            if missing:
                raise TaskDefinitionError(f"No allocation given for: {', '.join(sorted(missing))}")
            if any(amount <= 0 for amount in allocations.values()):
                raise ConfigError("Every pinned allocation must be positive")

        records: dict[str, TaskRecord] = {}
        for task in tasks:
            record = task.to_record()
            record.allocation = float(allocations[task.name])
            records[task.name] = record

        logger.info(f"[ORCHESTRATOR] Planned {len(records)} tasks: {' → '.join(order)}")
        return OrchestrationState(
            session_id=session_id or new_session_id(),
            tasks=records,
            order=order,
            budget_total=total,
            budget_remaining=total,
        )

    @classmethod
    def from_tasks(
        cls,
        tasks: Iterable,
        executor: TaskExecutor,
        config: SpecloopConfig,
        total_budget: float | None = None,
        allocations: Mapping[str, float] | None = None,
        session_id: str | None = None,
        **kwargs,
    ) -> "Orchestrator":
        tasks = list(tasks)
        state = cls.plan(tasks, config, total_budget, allocations, session_id)
        commands = {t.name: t.command for t in tasks if getattr(t, "command", None)}
        kwargs.setdefault("commands", commands)
        return cls(state, executor, config, **kwargs)

    @classmethod
    def resume(
        cls,
        session_id: str,
        store: PersistenceStore,
        executor: TaskExecutor,
        config: SpecloopConfig,
        **kwargs,
    ) -> "Orchestrator":
        """Reload a checkpoint. Tasks caught mid-flight start over."""
        state = store.load_checkpoint(session_id)
        for record in state.tasks.values():
            if record.status is TaskStatus.IN_PROGRESS:
                logger.warning(f"[ORCHESTRATOR] {record.name} was in flight; restarting it")
                record.status = TaskStatus.PENDING
                record.iterations = []
                record.reason = None
        logger.info(
            f"[ORCHESTRATOR] Resumed {session_id}: "
            f"{len(state.pending())} pending, budget {state.budget_remaining:.2f}"
        )
        return cls(state, executor, config, store=store, **kwargs)

    # -----------------------------------------------------------------------
    # Run
    # -----------------------------------------------------------------------

    def run(self) -> SessionReport:
        session_id = self.state.session_id
        if self.store:
            self.store.acquire(session_id)

        try:
            self._bus.emit(
                "session_started",
                payload={
                    "session_id": session_id,
                    "tasks": len(self.state.tasks),
                    "budget": self.state.budget_remaining,
                    "workers": self.config.parallel.max_workers,
                },
            )
            with self._lock:
                if self.ledger.exhausted and not self.state.best_effort:
                    self._enter_best_effort()
                self._checkpoint()

            if self.config.parallel.max_workers > 1:
                self._run_parallel(self.config.parallel.max_workers)
            else:
                self._run_sequential()

            with self._lock:
                self._sweep_unreachable()
                self._checkpoint()

            report = summarize(self.state)
            logger.info(
                f"[ORCHESTRATOR] Session {session_id} finished: {report.outcome.value} "
                f"(budget {report.budget_remaining:.2f}/{report.budget_total:.2f}, "
                f"commitment {report.commitment_level})"
            )
            self._bus.emit("session_finished", payload=report.to_dict())
            return report
        finally:
            if self.store:
                self.store.release(session_id)

    def _run_sequential(self) -> None:
        while True:
            with self._lock:
                ready = self._refresh_ready()
                if not ready:
                    return
                name = min(ready)
                self._claim(name)
            outcome = self._run_task(name)
            self._finish(name, outcome)

    def _run_parallel(self, max_workers: int) -> None:
        in_flight: dict[concurrent.futures.Future, str] = {}
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="specloop-worker"
        ) as pool:
            while True:
                with self._lock:
                    # Snapshot taken under the lock; claimed tasks leave the ready set.
                    ready = sorted(self._refresh_ready())
                    busy_deps: set[str] = set()
                    for running in in_flight.values():
                        busy_deps |= self.graph.dependencies(running)
                    for name in ready:
                        if len(in_flight) >= max_workers:
                            break
                        deps = self.graph.dependencies(name)
                        if deps & busy_deps:
                            continue
                        self._claim(name)
                        busy_deps |= deps
                        in_flight[pool.submit(self._run_task, name)] = name

                if not in_flight:
                    return

                done, _ = concurrent.futures.wait(
                    in_flight, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in sorted(done, key=lambda f: in_flight[f]):
                    name = in_flight.pop(future)
                    self._finish(name, future.result())

    # -----------------------------------------------------------------------
    # Task transitions
    # -----------------------------------------------------------------------

    def _refresh_ready(self) -> set[str]:
        ready = self.graph.ready(self.state.statuses(), self.state.resolved())
        for name in ready:
            if self.state.tasks[name].status is TaskStatus.PENDING:
                self.state.tasks[name].status = TaskStatus.READY
        return ready

    def _claim(self, name: str) -> None:
        try:
            self.ledger.check()
        except ResourceExhaustion:
            if not self.state.best_effort:
                self._enter_best_effort()

        record = self.state.tasks[name]
        record.status = TaskStatus.IN_PROGRESS
        logger.info(
            f"[ORCHESTRATOR] Dispatching {name} "
            f"(allocation {record.allocation:.2f}, budget {self.ledger.remaining:.2f})"
        )
        self._bus.emit(
            "task_dispatched",
            task_name=name,
            payload={
                "allocation": record.allocation,
                "budget_remaining": self.ledger.remaining,
                "commitment_level": self.gate.level,
                "best_effort": self.state.best_effort,
            },
        )
        self._checkpoint()

    def _run_task(self, name: str) -> TaskOutcome:
        return self.controller.run(
            self.state.tasks[name],
            budget_remaining=lambda: self.ledger.remaining,
            dependents_started=lambda: self._dependents_started(name),
            command=self.commands.get(name),
        )

    def _finish(self, name: str, outcome: TaskOutcome) -> None:
        record = self.state.tasks[name]

        # Operator decisions may block; keep them outside the lock.
        if outcome.escalated and self.escalation_handler is not None:
            if self.escalation_handler(record, outcome):
                logger.info(f"[ORCHESTRATOR] Operator accepted partial result for {name}")
                outcome.accepted = True

        with self._lock:
            record.consumed = consumption(
                record.allocation, outcome.iterations_used, self.config.limits.max_iterations
            )
            self.ledger.consume(record.consumed)

            record.status = outcome.status
            record.accepted = outcome.accepted
            record.reason = outcome.reason
            record.verdict = outcome.decision.verdict.value if outcome.decision else None

            logger.info(
                f"[ORCHESTRATOR] {name}: {record.status.value}"
                f"{f' ({record.reason.value})' if record.reason else ''}, "
                f"consumed {record.consumed:.2f}"
            )
            self._bus.emit("task_finished", task_name=name, payload=outcome.to_dict())

            if not record.resolved:
                self._skip_dependents(name)

            self.gate.observe_budget(self.ledger.consumed_fraction)
            if self.ledger.exhausted and not self.state.best_effort:
                self._enter_best_effort()

            self._checkpoint()

    def _skip_dependents(self, name: str) -> None:
        for dependent in sorted(self.graph.transitive_dependents(name)):
            record = self.state.tasks[dependent]
            if record.status in (TaskStatus.PENDING, TaskStatus.READY):
                record.status = TaskStatus.SKIPPED
                record.reason = ReasonCode.DEPENDENCY_FAILED
                logger.warning(f"[ORCHESTRATOR] Skipping {dependent}: depends on {name}")
                self._bus.emit(
                    "task_skipped",
                    task_name=dependent,
                    payload={"blocked_by": name, "reason": ReasonCode.DEPENDENCY_FAILED.value},
                )

    def _sweep_unreachable(self) -> None:
        """Anything still waiting once nothing is ready can never run."""
        leftover = self.state.pending()
        if leftover:
            self.state.mark(leftover, TaskStatus.SKIPPED, ReasonCode.DEPENDENCY_FAILED)
            logger.warning(f"[ORCHESTRATOR] Unreachable tasks skipped: {', '.join(leftover)}")

    def _dependents_started(self, name: str) -> bool:
        idle = (TaskStatus.PENDING, TaskStatus.READY, TaskStatus.SKIPPED)
        with self._lock:
            return any(
                self.state.tasks[d].status not in idle for d in self.graph.dependents(name)
            )

    def _enter_best_effort(self) -> None:
        self.state.best_effort = True
        logger.warning(
            "[ORCHESTRATOR] Budget exhausted: remaining tasks run best-effort (FORCE_COMPLETE)"
        )
        self.gate.raise_to(self.config.commitment.max_level, "budget exhausted")
        self._bus.emit(
            "budget_exhausted",
            payload={
                "pending": self.state.pending(),
                "commitment_level": self.gate.level,
                "budget": self.ledger.summary(),
            },
        )

    def _checkpoint(self) -> None:
        if not self.store:
            return
        self.store.save_checkpoint(self.state.session_id, self.state)
        self._bus.emit(
            "checkpoint_saved",
            payload={"session_id": self.state.session_id, "commitment_level": self.gate.level},
        )
