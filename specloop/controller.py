"""
specloop Iteration Controller — the per-task refinement loop.

It is NOT smart. It is deterministic.

One explicit state machine per task:

    NOT_STARTED -> ITERATING -> DONE
                        |
                        v
                  LIMIT_REACHED -> Decision Panel -> (CONTINUE -> ITERATING)

Responsibilities:
  - Call the executor once per iteration (timeout, one immediate retry)
  - Append the iteration record
  - Stop on confidence, spiral + high commitment, iteration limit, or
    FORCE_COMPLETE
  - Ask the Decision Panel what to do with a task stuck at its limit

It never touches task status or the budget. It reports an outcome and
the orchestrator applies it.
"""

from __future__ import annotations

import concurrent.futures
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from loguru import logger
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt

from specloop.commitment import CommitmentGate
from specloop.config_loader import SpecloopConfig
from specloop.errors import ExecutorError, ExecutorTimeoutError
from specloop.event_bus import EventBus, bus as default_bus
from specloop.executors import TaskContext, TaskExecutor
from specloop.panel import DecisionPanel, PanelDecision, PanelSnapshot, Verdict
from specloop.spiral import SpiralDetector, SpiralDetectorConfig
from specloop.state import IterationRecord, ReasonCode, SpiralSignal, TaskRecord, TaskStatus


class LoopState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    ITERATING = "ITERATING"
    LIMIT_REACHED = "LIMIT_REACHED"
    DONE = "DONE"


@dataclass
class TaskOutcome:
    """Result of driving one task through its loop."""
    task_name: str
    status: TaskStatus = TaskStatus.IN_PROGRESS
    reason: ReasonCode | None = None
    accepted: bool = False
    escalated: bool = False
    iterations_used: int = 0
    extension_used: bool = False
    loop_state: LoopState = LoopState.NOT_STARTED
    signals: list[SpiralSignal] = field(default_factory=list)
    decision: PanelDecision | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_name": self.task_name,
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "accepted": self.accepted,
            "escalated": self.escalated,
            "iterations_used": self.iterations_used,
            "extension_used": self.extension_used,
            "signals": [s.value for s in self.signals],
            "decision": self.decision.to_dict() if self.decision else None,
            "error": self.error,
        }


class IterationController:
    def __init__(
        self,
        executor: TaskExecutor,
        config: SpecloopConfig,
        gate: CommitmentGate,
        detector: SpiralDetector | None = None,
        panel: DecisionPanel | None = None,
        event_bus: EventBus | None = None,
        lock: threading.RLock | None = None,
    ):
        self.executor = executor
        self.config = config
        self.gate = gate
        self.detector = detector or SpiralDetector(SpiralDetectorConfig.from_config(config.spiral))
        self.panel = panel or DecisionPanel(config.panel)
        self._bus = event_bus or default_bus
        self._lock = lock or threading.RLock()

    def run(
        self,
        record: TaskRecord,
        budget_remaining: Callable[[], float],
        dependents_started: Callable[[], bool] = lambda: False,
        command: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> TaskOutcome:
        """Drive `record` through its refinement loop and return the outcome."""
        outcome = TaskOutcome(task_name=record.name)
        limits = self.config.limits
        limit = limits.max_iterations
        index = len(record.iterations) + 1
        limit_reason = ReasonCode.ITERATION_LIMIT

        outcome.loop_state = LoopState.ITERATING
        logger.info(
            f"[CONTROLLER] {record.name}: starting at iteration {index} "
            f"(limit {limit}, commitment {self.gate.level})"
        )

        while outcome.loop_state is not LoopState.DONE:
            if outcome.loop_state is LoopState.ITERATING:
                # ── 1. Execute ──
                try:
                    iteration = self._execute(record, index, command, extra or {})
                except ExecutorError as e:
                    logger.error(f"[CONTROLLER] {record.name}#{index} failed after retry: {e}")
                    outcome.status = TaskStatus.FAILED
                    outcome.reason = ReasonCode.EXECUTOR_FAILURE
                    outcome.error = str(e)
                    outcome.loop_state = LoopState.DONE
                    break

                with self._lock:
                    record.iterations.append(iteration)
                outcome.iterations_used += 1
                self._bus.emit(
                    "iteration_recorded",
                    task_name=record.name,
                    payload=iteration.model_dump(mode="json"),
                )

                # ── 2. Confident enough? ──
                if iteration.completion_ratio >= limits.confidence_threshold:
                    logger.info(
                        f"[CONTROLLER] {record.name}: done at iteration {index} "
                        f"(ratio {iteration.completion_ratio:.2f})"
                    )
                    outcome.status = TaskStatus.COMPLETED
                    outcome.accepted = True
                    outcome.loop_state = LoopState.DONE
                    break

                # ── 3. Spiral check ──
                signal = self.detector.classify(record.iterations, record.scope)
                if signal is not SpiralSignal.NONE:
                    outcome.signals.append(signal)
                    limit_reason = ReasonCode.from_signal(signal)
                    logger.warning(f"[SPIRAL] {record.name}#{index}: {signal.value}")
                    self._bus.emit(
                        "spiral_detected",
                        task_name=record.name,
                        payload={"signal": signal.value, "iteration": index},
                    )
                    self.gate.raise_level(f"{signal.value} in {record.name}", record.name)
                    if self.gate.force_exit_on_spiral:
                        outcome.loop_state = LoopState.LIMIT_REACHED
                        continue

                # ── 4. Limits ──
                if self.gate.force_complete:
                    limit_reason = ReasonCode.BUDGET_EXHAUSTED
                    outcome.loop_state = LoopState.LIMIT_REACHED
                elif index >= limit:
                    outcome.loop_state = LoopState.LIMIT_REACHED
                else:
                    index += 1

            elif outcome.loop_state is LoopState.LIMIT_REACHED:
                decision = self._consult_panel(
                    record, outcome, budget_remaining(), dependents_started()
                )
                outcome.decision = decision

                if decision.verdict is Verdict.CONTINUE:
                    outcome.extension_used = True
                    limit = index + 1
                    index += 1
                    outcome.loop_state = LoopState.ITERATING
                    logger.info(f"[CONTROLLER] {record.name}: granted one extra iteration")
                    continue

                outcome.loop_state = LoopState.DONE
                if decision.verdict is Verdict.ACCEPT_PARTIAL:
                    outcome.status = TaskStatus.PARTIAL
                    outcome.accepted = True
                    outcome.reason = limit_reason
                elif decision.verdict is Verdict.ESCALATE:
                    outcome.status = TaskStatus.PARTIAL
                    outcome.escalated = True
                    outcome.reason = ReasonCode.ESCALATED
                else:
                    outcome.status = TaskStatus.SKIPPED
                    outcome.reason = ReasonCode.BUDGET_EXHAUSTED

        return outcome

    # -----------------------------------------------------------------------
    # Executor call: timeout plus one immediate retry
    # -----------------------------------------------------------------------

    def _execute(
        self, record: TaskRecord, index: int, command: str | None, extra: dict[str, Any]
    ) -> IterationRecord:
        retrying = Retrying(
            stop=stop_after_attempt(1 + self.config.limits.executor_retries),
            retry=retry_if_exception_type(ExecutorError),
            before_sleep=lambda rs: self._log_retry(record.name, index, rs),
            reraise=True,
        )
        report = retrying(self._call_executor, record, index, command, extra)
        return report.to_record(index)

    def _call_executor(
        self, record: TaskRecord, index: int, command: str | None, extra: dict[str, Any]
    ):
        context = TaskContext(
            task_name=record.name,
            complexity=record.complexity.value,
            scope=list(record.scope),
            dependencies=list(record.dependencies),
            allocation=record.allocation,
            commitment_level=self.gate.level,
            command=command,
            history=list(record.iterations),
            extra=extra,
        )
        timeout = self.config.limits.iteration_timeout_s

        try:
            if not timeout:
                return self.executor.run_iteration(context, index)

            pool = concurrent.futures.ThreadPoolExecutor(
                max_workers=1, thread_name_prefix=f"specloop-{record.name}"
            )
            future = pool.submit(self.executor.run_iteration, context, index)
            try:
                return future.result(timeout=timeout)
            except concurrent.futures.TimeoutError:
                context.cancel_event.set()
                future.cancel()
                raise ExecutorTimeoutError(
                    f"{record.name}#{index} exceeded {timeout}s and was cancelled"
                )
            finally:
                pool.shutdown(wait=False, cancel_futures=True)
        except ExecutorError:
            raise
        except Exception as e:
            raise ExecutorError(f"{record.name}#{index}: {type(e).__name__}: {e}") from e

    def _log_retry(self, task_name: str, index: int, retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(f"[CONTROLLER] {task_name}#{index}: executor error, retrying once: {error}")
        self._bus.emit(
            "executor_retry",
            task_name=task_name,
            payload={"iteration": index, "error": str(error)},
        )

    # -----------------------------------------------------------------------
    # Decision Panel
    # -----------------------------------------------------------------------

    def _consult_panel(
        self,
        record: TaskRecord,
        outcome: TaskOutcome,
        budget_remaining: float,
        dependents_started: bool,
    ) -> PanelDecision:
        last = record.iterations[-1]
        snap = PanelSnapshot(
            task_name=record.name,
            completion_ratio=last.completion_ratio,
            allocation=record.allocation,
            budget_remaining=budget_remaining,
            dependents_started=dependents_started,
            regression_flag=last.regression_flag,
            commitment_level=self.gate.level,
        )
        decision = self.panel.decide(
            snap,
            allow_continue=not outcome.extension_used,
            force_complete=self.gate.force_complete,
        )
        self._bus.emit("panel_verdict", task_name=record.name, payload=decision.to_dict())
        return decision
