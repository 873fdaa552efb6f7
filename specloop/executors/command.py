"""
Command executor — runs a task's shell command once per iteration.

The command learns which task and iteration it is serving from the
environment and reports back by printing a JSON object as the last
non-empty line of stdout:

    {"touched_artifacts": ["src/a.py"], "completion_ratio": 0.6,
     "out_of_scope": false, "regression_flag": false}

`duration_ms` is measured here when the command does not report it.
The command runs in its own process group, which is killed on timeout or
as soon as the iteration is cancelled.
"""

from __future__ import annotations

import json
import os
import signal
import subprocess
import time
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from specloop.errors import ExecutorError, ExecutorTimeoutError
from specloop.executors import ExecutorReport, TaskContext, TaskExecutor


class CommandExecutor(TaskExecutor):
    name = "command"

    def __init__(self, working_dir: Path, timeout_s: float | None = None, poll_interval_s: float = 0.1):
        self.working_dir = working_dir
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s

    def run_iteration(self, context: TaskContext, iteration: int) -> ExecutorReport:
        if not context.command:
            raise ExecutorError(f"Task '{context.task_name}' has no command to run")

        env = {
            **os.environ,
            "SPECLOOP_TASK": context.task_name,
            "SPECLOOP_ITERATION": str(iteration),
            "SPECLOOP_COMMITMENT_LEVEL": str(context.commitment_level),
            "SPECLOOP_SCOPE": ",".join(context.scope),
        }

        logger.debug(f"[EXEC] {context.task_name}#{iteration}: {context.command}")
        start = time.monotonic()
        deadline = start + self.timeout_s if self.timeout_s is not None else None
        process = subprocess.Popen(
            context.command,
            shell=True,
            cwd=self.working_dir,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.poll_interval_s)
                break
            except subprocess.TimeoutExpired:
                if context.cancelled:
                    _kill(process)
                    raise ExecutorError(f"{context.task_name}#{iteration} cancelled")
                if deadline is not None and time.monotonic() >= deadline:
                    _kill(process)
                    raise ExecutorTimeoutError(
                        f"{context.task_name}#{iteration} timed out after {self.timeout_s}s"
                    )
        elapsed_ms = int((time.monotonic() - start) * 1000)

        if process.returncode != 0:
            error = (stderr or stdout).strip()[-500:]
            raise ExecutorError(
                f"{context.task_name}#{iteration} exited {process.returncode}: {error}"
            )

        return self._parse_report(stdout, elapsed_ms, context.task_name)

    @staticmethod
    def _parse_report(stdout: str, elapsed_ms: int, task_name: str) -> ExecutorReport:
        lines = [line for line in stdout.strip().splitlines() if line.strip()]
        if not lines:
            raise ExecutorError(f"{task_name}: command produced no report")

        try:
            data = json.loads(lines[-1])
        except json.JSONDecodeError as e:
            raise ExecutorError(f"{task_name}: last output line is not JSON: {lines[-1][:120]}") from e
        if not isinstance(data, dict):
            raise ExecutorError(f"{task_name}: report must be a JSON object")

        data.setdefault("duration_ms", elapsed_ms)
        try:
            return ExecutorReport(**data)
        except ValidationError as e:
            raise ExecutorError(f"{task_name}: invalid report: {e}") from e


def _kill(process: subprocess.Popen) -> None:
    """Kill the command and everything it spawned, then reap it."""
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    process.communicate()
