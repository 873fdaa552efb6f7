"""
Decision Panel — multi-criteria vote for a task stuck at its iteration limit.

Four independent perspectives look at the same snapshot and each answers
one question: is another pass justified?

  Completionist    not done yet, and a full extra pass is affordable
  Integrator       nobody downstream has started, so delay is cheap
  Shipper          progress is too thin to ship (its vote to accept is the negation)
  QualityGuardian  the last pass did not flag a regression
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from loguru import logger

from specloop.config_loader import PanelConfig


class Verdict(str, Enum):
    CONTINUE = "CONTINUE"
    ACCEPT_PARTIAL = "ACCEPT_PARTIAL"
    ESCALATE = "ESCALATE"
    SKIP = "SKIP"


@dataclass(frozen=True)
class PanelSnapshot:
    """Everything the voters are allowed to look at."""
    task_name: str
    completion_ratio: float
    allocation: float
    budget_remaining: float
    dependents_started: bool
    regression_flag: bool
    commitment_level: int = 0


@dataclass
class PanelDecision:
    verdict: Verdict
    votes: dict[str, bool] = field(default_factory=dict)
    forced: bool = False

    @property
    def continue_votes(self) -> int:
        return sum(1 for v in self.votes.values() if v)

    def to_dict(self) -> dict:
        return {
            "verdict": self.verdict.value,
            "votes": dict(self.votes),
            "continue_votes": self.continue_votes,
            "forced": self.forced,
        }


# ---------------------------------------------------------------------------
# Voters
# ---------------------------------------------------------------------------

def completionist(snap: PanelSnapshot, config: PanelConfig) -> bool:
    return (
        snap.completion_ratio < config.completionist_ratio
        and snap.budget_remaining >= snap.allocation
    )


def integrator(snap: PanelSnapshot, config: PanelConfig) -> bool:
    return not snap.dependents_started


def shipper(snap: PanelSnapshot, config: PanelConfig) -> bool:
    return snap.completion_ratio < config.shipper_ratio


def quality_guardian(snap: PanelSnapshot, config: PanelConfig) -> bool:
    return not snap.regression_flag


VOTERS: dict[str, Callable[[PanelSnapshot, PanelConfig], bool]] = {
    "completionist": completionist,
    "integrator": integrator,
    "shipper": shipper,
    "quality_guardian": quality_guardian,
}


# ---------------------------------------------------------------------------
# Panel
# ---------------------------------------------------------------------------

class DecisionPanel:
    def __init__(self, config: PanelConfig | None = None):
        self.config = config or PanelConfig()

    def decide(
        self,
        snap: PanelSnapshot,
        allow_continue: bool = True,
        force_complete: bool = False,
    ) -> PanelDecision:
        """
        Tally the votes and return a verdict.

        `allow_continue` is False once the task has already used its one
        extra iteration. `force_complete` is the budget-exhausted override:
        accept anything at or above `force_complete_ratio`, skip the rest.
        """
        votes = {name: voter(snap, self.config) for name, voter in VOTERS.items()}
        decision = PanelDecision(verdict=Verdict.ESCALATE, votes=votes)

        if force_complete:
            decision.forced = True
            if snap.completion_ratio >= self.config.force_complete_ratio:
                decision.verdict = Verdict.ACCEPT_PARTIAL
            else:
                decision.verdict = Verdict.SKIP
        elif allow_continue and decision.continue_votes >= self.config.continue_votes:
            decision.verdict = Verdict.CONTINUE
        elif snap.completion_ratio >= self.config.shipper_ratio:
            decision.verdict = Verdict.ACCEPT_PARTIAL

        logger.info(
            f"[PANEL] {snap.task_name}: {decision.verdict.value} "
            f"({decision.continue_votes}/{len(VOTERS)} for continuing"
            f"{', FORCE_COMPLETE' if decision.forced else ''})"
        )
        return decision
