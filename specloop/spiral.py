"""Spiral detection for bounded refinement loops.

Classifies the trailing window of iteration records for one task into a
single SpiralSignal. Rules are checked in priority order and the first
match wins:

1. THRASHING: the latest iteration took far longer than the ones before
   it and made no progress.
2. OSCILLATION: the same artifacts keep getting touched, iteration after
   iteration.
3. SCOPE_CREEP: the latest iteration wandered outside the task's declared
   scope.
4. DIMINISHING_RETURNS: the last two iterations each moved the completion
   ratio by less than the configured delta.

The detector never mutates anything; the same window always yields the
same signal.
"""

from __future__ import annotations

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Sequence

from loguru import logger

from specloop.config_loader import SpiralConfig
from specloop.state import IterationRecord, SpiralSignal


@dataclass(frozen=True)
class SpiralDetectorConfig:
    """Thresholds for spiral detection.

    Attributes:
        window: Number of trailing iterations the detector looks at
        thrashing_factor: Duration multiple over the prior mean that counts as thrashing
        oscillation_min_common: Artifacts shared by the last three iterations to flag oscillation
        diminishing_delta: Completion-ratio gain below which an iteration counts as stalled
    """

    window: int = 3
    thrashing_factor: float = 2.0
    oscillation_min_common: int = 3
    diminishing_delta: float = 0.10

    @classmethod
    def from_config(cls, config: SpiralConfig) -> "SpiralDetectorConfig":
        return cls(
            window=config.window,
            thrashing_factor=config.thrashing_factor,
            oscillation_min_common=config.oscillation_min_common,
            diminishing_delta=config.diminishing_delta,
        )


class SpiralDetector:
    """Detects unproductive iteration patterns for a single task."""

    def __init__(self, config: SpiralDetectorConfig | None = None):
        self.config = config or SpiralDetectorConfig()

    def classify(
        self,
        history: Sequence[IterationRecord],
        scope: Sequence[str] = (),
    ) -> SpiralSignal:
        """Classify the trailing window of `history`.

        Args:
            history: Iteration records of one task, oldest first
            scope: Declared scope baseline as glob patterns; empty means
                only the executor's own out-of-scope flag is considered

        Returns:
            Exactly one SpiralSignal
        """
        window = list(history[-self.config.window:])
        if not window:
            return SpiralSignal.NONE

        if self._is_thrashing(window):
            signal = SpiralSignal.THRASHING
        elif self._is_oscillating(window):
            signal = SpiralSignal.OSCILLATION
        elif self._is_scope_creep(window[-1], scope):
            signal = SpiralSignal.SCOPE_CREEP
        elif self._is_diminishing(window):
            signal = SpiralSignal.DIMINISHING_RETURNS
        else:
            signal = SpiralSignal.NONE

        if signal is not SpiralSignal.NONE:
            logger.debug(f"[SPIRAL] iteration {window[-1].index}: {signal.value}")
        return signal

    def _is_thrashing(self, window: list[IterationRecord]) -> bool:
        if len(window) < 2:
            return False
        current, previous = window[-1], window[-2]
        prior = window[:-1]
        mean_prior = sum(r.duration_ms for r in prior) / len(prior)
        slow = current.duration_ms > self.config.thrashing_factor * mean_prior
        return slow and current.completion_ratio <= previous.completion_ratio

    def _is_oscillating(self, window: list[IterationRecord]) -> bool:
        if len(window) < 3:
            return False
        last_three = window[-3:]
        common = set(last_three[0].touched_artifacts)
        for record in last_three[1:]:
            common &= record.touched_artifacts
        return len(common) >= self.config.oscillation_min_common

    @staticmethod
    def _is_scope_creep(current: IterationRecord, scope: Sequence[str]) -> bool:
        if current.out_of_scope:
            return True
        if not scope:
            return False
        return any(
            not any(fnmatchcase(artifact, pattern) for pattern in scope)
            for artifact in current.touched_artifacts
        )

    def _is_diminishing(self, window: list[IterationRecord]) -> bool:
        current = window[-1]
        if current.index < 2:
            return False
        deltas = _ratio_deltas(window)
        if len(deltas) < 2:
            return False
        return all(d < self.config.diminishing_delta for d in deltas[-2:])


def _ratio_deltas(window: list[IterationRecord]) -> list[float]:
    """Per-iteration completion gains. The very first iteration is measured from 0.0.

    Gains are rounded so that a step of exactly the delta (0.6 - 0.5) is not
    read as 0.0999... and flagged as stalled.
    """
    deltas: list[float] = []
    for i, record in enumerate(window):
        if i == 0:
            if record.index == 1:
                deltas.append(record.completion_ratio)
            continue
        deltas.append(round(record.completion_ratio - window[i - 1].completion_ratio, 9))
    return deltas
