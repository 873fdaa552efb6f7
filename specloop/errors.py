"""
specloop error taxonomy.

Structural errors abort a session before any budget is spent.
Executor errors stay local to one task. Resource exhaustion is not
fatal and only degrades the remaining tasks to best-effort.
"""

from __future__ import annotations


class SpecloopError(Exception):
    """Base class for every error raised by specloop."""
    pass


class ConfigError(SpecloopError):
    pass


# ---------------------------------------------------------------------------
# Structural
# ---------------------------------------------------------------------------

class StructuralError(SpecloopError):
    """The task set cannot be scheduled at all."""
    pass


class TaskDefinitionError(StructuralError):
    pass


class UnknownDependencyError(StructuralError):
    def __init__(self, task: str, dependency: str):
        self.task = task
        self.dependency = dependency
        super().__init__(f"Task '{task}' depends on unknown task '{dependency}'")


class CyclicDependencyError(StructuralError):
    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Cyclic dependency: {' -> '.join(cycle)}")


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

class ExecutorError(SpecloopError):
    """A single executor call failed. Retried once, then the task fails."""
    pass


class ExecutorTimeoutError(ExecutorError):
    pass


class ResourceExhaustion(SpecloopError):
    """The session budget is spent."""
    pass


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class CheckpointNotFoundError(SpecloopError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"No checkpoint found for session '{session_id}'")


class SessionLockedError(SpecloopError):
    def __init__(self, session_id: str, holder_pid: int | None):
        self.session_id = session_id
        self.holder_pid = holder_pid
        super().__init__(f"Session '{session_id}' is already running (PID: {holder_pid})")
