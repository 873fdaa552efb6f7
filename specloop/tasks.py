"""
Task definitions.

A task folder holds one YAML file per task:

    id: parser
    depends_on: [lexer]
    complexity: medium
    scope: ["src/parser/*"]
    command: "make parser"
"""

from __future__ import annotations

from pathlib import Path

import yaml
from loguru import logger
from pydantic import BaseModel, Field, ValidationError, field_validator

from specloop.errors import TaskDefinitionError
from specloop.state import Complexity, TaskRecord


class Task(BaseModel):
    """Represents a single schedulable unit of work."""
    model_config = {"populate_by_name": True}

    name: str = Field(..., alias="id", min_length=1)
    dependencies: list[str] = Field(default_factory=list, alias="depends_on")
    complexity: Complexity = Complexity.MEDIUM
    scope: list[str] = Field(default_factory=list)
    command: str | None = None
    description: str = ""
    file_path: Path | None = Field(default=None, exclude=True)

    @field_validator("dependencies", mode="before")
    @classmethod
    def _coerce_dependencies(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @classmethod
    def from_yaml(cls, path: Path) -> "Task":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise TaskDefinitionError(f"{path.name}: expected a mapping, got {type(data).__name__}")
        if "id" not in data and "name" not in data:
            data["id"] = path.stem
        data["file_path"] = path
        try:
            return cls(**data)
        except ValidationError as e:
            raise TaskDefinitionError(f"{path.name}: {e}") from e

    def to_record(self) -> TaskRecord:
        return TaskRecord(
            name=self.name,
            dependencies=sorted(set(self.dependencies)),
            complexity=self.complexity,
            scope=list(self.scope),
        )


def load_tasks(tasks_dir: Path) -> list[Task]:
    """Load every task YAML in a folder, sorted by file name."""
    if not tasks_dir.is_dir():
        raise TaskDefinitionError(f"Tasks directory not found: {tasks_dir}")

    files = sorted(tasks_dir.glob("*.yaml")) + sorted(tasks_dir.glob("*.yml"))
    tasks = [Task.from_yaml(f) for f in files]

    seen: dict[str, Path | None] = {}
    for task in tasks:
        if task.name in seen:
            raise TaskDefinitionError(
                f"Duplicate task id '{task.name}' in {seen[task.name]} and {task.file_path}"
            )
        seen[task.name] = task.file_path

    logger.debug(f"[TASKS] Loaded {len(tasks)} task definitions from {tasks_dir}")
    return tasks
