"""
Commitment-level gate.

A session-wide integer between 0 and `max_level` that only ever goes up,
one step at a time. Each step narrows what the iteration controller and
the decision panel are allowed to do:

    level >= spiral_exit_level   a detected spiral ends the task's loop
    level == max_level           FORCE_COMPLETE: stop after each iteration
"""

from __future__ import annotations

import threading

from loguru import logger

from specloop.config_loader import CommitmentConfig
from specloop.event_bus import EventBus, bus as default_bus
from specloop.state import OrchestrationState


class CommitmentGate:
    def __init__(
        self,
        state: OrchestrationState,
        config: CommitmentConfig | None = None,
        lock: threading.RLock | None = None,
        event_bus: EventBus | None = None,
    ):
        self.state = state
        self.config = config or CommitmentConfig()
        self._lock = lock or threading.RLock()
        self._bus = event_bus or default_bus
        self._thresholds_crossed = 0

    @property
    def level(self) -> int:
        return self.state.commitment_level

    @property
    def force_exit_on_spiral(self) -> bool:
        return self.level >= self.config.spiral_exit_level

    @property
    def force_complete(self) -> bool:
        return self.level >= self.config.max_level

    def raise_level(self, reason: str, task_name: str | None = None) -> int:
        """Increase the level by one (capped). Returns the new level."""
        with self._lock:
            if self.state.commitment_level >= self.config.max_level:
                return self.state.commitment_level
            self.state.commitment_level += 1
            level = self.state.commitment_level

        logger.info(f"[COMMITMENT] Level {level - 1} -> {level} ({reason})")
        self._bus.emit(
            "commitment_raised",
            task_name=task_name,
            payload={"level": level, "reason": reason},
        )
        return level

    def raise_to(self, target: int, reason: str, task_name: str | None = None) -> int:
        """Step the level up to `target` one increment at a time."""
        target = min(target, self.config.max_level)
        while self.level < target:
            self.raise_level(reason, task_name)
        return self.level

    def prime(self, consumed_fraction: float) -> None:
        """Count thresholds already crossed in a resumed session without raising again."""
        self._thresholds_crossed = sum(
            1 for t in self.config.budget_thresholds if consumed_fraction >= t
        )

    def observe_budget(self, consumed_fraction: float) -> int:
        """Raise one level for every newly crossed budget-consumption threshold."""
        crossed = sum(1 for t in self.config.budget_thresholds if consumed_fraction >= t)
        while self._thresholds_crossed < crossed:
            self._thresholds_crossed += 1
            self.raise_level(f"budget {consumed_fraction:.0%} consumed")
        return self.level
