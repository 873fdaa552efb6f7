"""Checkpoint persistence for orchestration sessions.

A store saves the OrchestrationState after every task transition and
hands it back on resume. It also provides the advisory lock that keeps a
second orchestrator off a session that is already running.
"""

from __future__ import annotations

import os
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from specloop.errors import CheckpointNotFoundError, SessionLockedError, SpecloopError
from specloop.state import OrchestrationState


class PersistenceStore(ABC):
    @abstractmethod
    def save_checkpoint(self, session_id: str, state: OrchestrationState) -> None:
        ...

    @abstractmethod
    def load_checkpoint(self, session_id: str) -> OrchestrationState:
        """Raises CheckpointNotFoundError when the session has no checkpoint."""
        ...

    @abstractmethod
    def acquire(self, session_id: str) -> None:
        """Take the advisory lock or raise SessionLockedError."""
        ...

    @abstractmethod
    def release(self, session_id: str) -> None:
        ...

    def exists(self, session_id: str) -> bool:
        try:
            self.load_checkpoint(session_id)
        except CheckpointNotFoundError:
            return False
        return True


class JsonFileStore(PersistenceStore):
    """Stores one `<session>.json` checkpoint and one `<session>.lock` per session.

    Checkpoints are written to a temporary file first and moved into
    place, so a crash mid-write never leaves a truncated checkpoint.
    The lock file holds the PID of the orchestrator that owns the
    session; locks left behind by dead processes are taken over. A live
    lock is never shared, not even with another store in the same process,
    and a store only removes locks it took itself.
    """

    def __init__(self, state_dir: Path):
        self.state_dir = state_dir
        self._write_lock = threading.Lock()
        self._held: set[str] = set()

    def _checkpoint_path(self, session_id: str) -> Path:
        return self.state_dir / f"{session_id}.json"

    def _lock_path(self, session_id: str) -> Path:
        return self.state_dir / f"{session_id}.lock"

    # -----------------------------------------------------------------------
    # Checkpoints
    # -----------------------------------------------------------------------

    def save_checkpoint(self, session_id: str, state: OrchestrationState) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        path = self._checkpoint_path(session_id)
        tmp = path.with_suffix(f".json.{os.getpid()}.tmp")

        with self._write_lock:
            state.touch()
            tmp.write_text(state.to_json())
            os.replace(tmp, path)
        logger.debug(f"[STORE] Checkpoint saved: {path}")

    def load_checkpoint(self, session_id: str) -> OrchestrationState:
        path = self._checkpoint_path(session_id)
        if not path.exists():
            raise CheckpointNotFoundError(session_id)

        try:
            state = OrchestrationState.model_validate_json(path.read_text())
        except ValidationError as e:
            raise SpecloopError(f"Corrupt checkpoint {path}: {e}") from e
        logger.debug(f"[STORE] Checkpoint loaded: {path}")
        return state

    # -----------------------------------------------------------------------
    # Advisory lock
    # -----------------------------------------------------------------------

    def acquire(self, session_id: str) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        lock_path = self._lock_path(session_id)

        if lock_path.exists():
            holder_pid = self.holder_pid(session_id)
            if holder_pid is not None and _is_process_running(holder_pid):
                raise SessionLockedError(session_id, holder_pid)
            logger.warning(f"[STORE] Taking over stale lock for session {session_id}")

        lock_path.write_text(str(os.getpid()))
        self._held.add(session_id)

    def release(self, session_id: str) -> None:
        if session_id not in self._held:
            logger.debug(f"[STORE] Not releasing {session_id}: lock not held by this store")
            return
        self._held.discard(session_id)
        self._lock_path(session_id).unlink(missing_ok=True)

    def holder_pid(self, session_id: str) -> int | None:
        lock_path = self._lock_path(session_id)
        if not lock_path.exists():
            return None
        try:
            return int(lock_path.read_text().strip())
        except ValueError:
            return None


def _is_process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks existence
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Process exists but we don't have permission to signal it
        return True
