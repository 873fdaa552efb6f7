"""
Budget allocation and tracking.

Planning hands each task a share of the session budget proportional to
its complexity and how deep it sits in the dependency graph. During
execution the ledger deducts what tasks actually consumed.
"""

from __future__ import annotations

import math
import threading
from typing import Iterable, Mapping

from loguru import logger

from specloop.config_loader import BudgetConfig
from specloop.errors import ConfigError, ResourceExhaustion
from specloop.graph import DependencyGraph
from specloop.state import Complexity, OrchestrationState

DEFAULT_MULTIPLIERS = {
    Complexity.LOW.value: 1.0,
    Complexity.MEDIUM.value: 1.5,
    Complexity.HIGH.value: 2.2,
}


# ---------------------------------------------------------------------------
# Allocation
# ---------------------------------------------------------------------------

def allocate(
    tasks: Iterable,
    graph: DependencyGraph,
    total_budget: float,
    base_unit: float,
    multipliers: Mapping[str, float] | None = None,
    depth_factor: float = 0.1,
) -> dict[str, float]:
    """
    allocation(t) = base_unit * multiplier(t.complexity) * (1 + depth_factor * depth(t))

    When the raw allocations add up to more than `total_budget` they are
    scaled down proportionally, so the sum never exceeds the total and
    every task still receives a positive share.
    """
    if total_budget <= 0:
        raise ConfigError(f"Total budget must be positive, got {total_budget}")
    if base_unit <= 0:
        raise ConfigError(f"Base unit must be positive, got {base_unit}")

    multipliers = multipliers or DEFAULT_MULTIPLIERS
    raw: dict[str, float] = {}
    for task in tasks:
        complexity = Complexity(task.complexity).value
        try:
            multiplier = multipliers[complexity]
        except KeyError:
            raise ConfigError(f"No complexity multiplier configured for '{complexity}'")
        raw[task.name] = base_unit * multiplier * (1 + depth_factor * graph.depth(task.name))

    requested = sum(raw.values())
    scale = total_budget / requested if requested > total_budget else 1.0
    allocations = {name: amount * scale for name, amount in raw.items()}

    # Floating point rounding can leave the scaled sum a hair above the total.
    while allocations and sum(allocations.values()) > total_budget:
        overshoot = sum(allocations.values()) - total_budget
        biggest = max(allocations, key=lambda n: (allocations[n], n))
        allocations[biggest] = math.nextafter(allocations[biggest] - overshoot, 0.0)

    logger.info(
        f"[BUDGET] Allocated {sum(allocations.values()):.2f} of {total_budget:.2f} "
        f"across {len(allocations)} tasks (scale {scale:.3f})"
    )
    return allocations


def allocate_from_config(tasks: Iterable, graph: DependencyGraph, config: BudgetConfig,
                         total_budget: float | None = None) -> dict[str, float]:
    return allocate(
        tasks,
        graph,
        total_budget=total_budget if total_budget is not None else config.total,
        base_unit=config.base_unit,
        multipliers=config.complexity_multipliers,
        depth_factor=config.depth_factor,
    )


def consumption(allocation: float, iterations_used: int, max_iterations: int) -> float:
    """Budget actually used by a task: allocation * iterations_used / max_iterations."""
    if iterations_used <= 0:
        return 0.0
    return allocation * iterations_used / max_iterations


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

class BudgetLedger:
    """Tracks the remaining session budget on an OrchestrationState."""

    def __init__(self, state: OrchestrationState, lock: threading.RLock | None = None):
        self.state = state
        self._lock = lock or threading.RLock()

    @property
    def remaining(self) -> float:
        return self.state.budget_remaining

    @property
    def exhausted(self) -> bool:
        return self.state.budget_remaining <= 0

    @property
    def consumed_fraction(self) -> float:
        if self.state.budget_total <= 0:
            return 1.0
        return 1.0 - self.state.budget_remaining / self.state.budget_total

    def check(self) -> None:
        """Raise ResourceExhaustion when nothing is left to spend."""
        if self.exhausted:
            raise ResourceExhaustion(
                f"Budget exhausted ({self.state.budget_total:.2f} spent)"
            )

    def consume(self, amount: float) -> float:
        """Deduct `amount`, clamping at zero. Returns what was actually deducted."""
        if amount < 0:
            raise ValueError(f"Cannot consume a negative amount: {amount}")
        with self._lock:
            before = self.state.budget_remaining
            self.state.budget_remaining = max(0.0, before - amount)
            deducted = before - self.state.budget_remaining
        if amount > deducted:
            logger.warning(
                f"[BUDGET] Requested {amount:.2f} but only {deducted:.2f} remained — clamped to 0"
            )
        else:
            logger.debug(f"[BUDGET] Consumed {amount:.2f}, {self.state.budget_remaining:.2f} remaining")
        return deducted

    def summary(self) -> dict:
        return {
            "total": round(self.state.budget_total, 4),
            "remaining": round(self.state.budget_remaining, 4),
            "consumed_fraction": round(self.consumed_fraction, 4),
        }
