"""
Configuration loader for specloop.
Merges defaults with per-project .specloop/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from specloop.errors import ConfigError


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class LimitsConfig(BaseModel):
    max_iterations: int = Field(default=3, ge=1)
    confidence_threshold: float = Field(default=0.9, gt=0.0, le=1.0)
    executor_retries: int = Field(default=1, ge=0)
    iteration_timeout_s: float | None = 600


class BudgetConfig(BaseModel):
    total: float = 100.0
    base_unit: float = 10.0
    depth_factor: float = 0.1
    complexity_multipliers: dict[str, float] = Field(
        default_factory=lambda: {"low": 1.0, "medium": 1.5, "high": 2.2}
    )

    @field_validator("total", "base_unit")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value


class SpiralConfig(BaseModel):
    window: int = Field(default=3, ge=1)
    thrashing_factor: float = 2.0
    oscillation_min_common: int = 3
    diminishing_delta: float = 0.10


class CommitmentConfig(BaseModel):
    max_level: int = 5
    spiral_exit_level: int = 3
    budget_thresholds: list[float] = Field(default_factory=lambda: [0.5, 0.75, 0.9])


class PanelConfig(BaseModel):
    continue_votes: int = Field(default=3, ge=1, le=4)
    completionist_ratio: float = 0.95
    shipper_ratio: float = 0.5
    force_complete_ratio: float = 0.3


class ParallelConfig(BaseModel):
    max_workers: int = Field(default=1, ge=1)


class WorkspaceConfig(BaseModel):
    state_dir: str = ".specloop/state"
    log_dir: str = ".specloop/logs"


class SpecloopConfig(BaseModel):
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    spiral: SpiralConfig = Field(default_factory=SpiralConfig)
    commitment: CommitmentConfig = Field(default_factory=CommitmentConfig)
    panel: PanelConfig = Field(default_factory=PanelConfig)
    parallel: ParallelConfig = Field(default_factory=ParallelConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var -> (section, key)
_ENV_OVERRIDES = {
    "SPECLOOP_TOTAL_BUDGET": ("budget", "total"),
    "SPECLOOP_MAX_ITERATIONS": ("limits", "max_iterations"),
    "SPECLOOP_CONFIDENCE_THRESHOLD": ("limits", "confidence_threshold"),
    "SPECLOOP_STATE_DIR": ("workspace", "state_dir"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides() -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def load_config(project_path: Path | None = None) -> SpecloopConfig:
    """
    Load config by merging:
      1. Built-in defaults (specloop/config.yaml)
      2. Project-level overrides (<project>/.specloop/config.yaml)
      3. Environment variable overrides (SPECLOOP_*)
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Project overrides
    if project_path:
        project_config = project_path / ".specloop" / "config.yaml"
        if project_config.exists():
            with open(project_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Environment
    base = _deep_merge(base, _env_overrides())

    try:
        return SpecloopConfig(**base)
    except ValidationError as e:
        raise ConfigError(f"Invalid specloop configuration: {e}") from e
