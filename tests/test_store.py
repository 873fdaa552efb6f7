import os

import pytest

from specloop.errors import CheckpointNotFoundError, SessionLockedError, SpecloopError
from specloop.state import IterationRecord, OrchestrationState, TaskRecord, TaskStatus
from specloop.store import JsonFileStore


def sample_state() -> OrchestrationState:
    record = TaskRecord(name="a", allocation=10, status=TaskStatus.PARTIAL, accepted=True)
    record.iterations.append(
        IterationRecord(index=1, touched_artifacts=frozenset({"src/a.py"}), completion_ratio=0.6)
    )
    return OrchestrationState(
        session_id="s1",
        tasks={"a": record},
        order=["a"],
        budget_total=50,
        budget_remaining=40,
        commitment_level=2,
    )


def test_checkpoint_survives_a_reload(tmp_path):
    store = JsonFileStore(tmp_path / "state")
    store.save_checkpoint("s1", sample_state())

    loaded = store.load_checkpoint("s1")

    assert loaded.commitment_level == 2
    assert loaded.budget_remaining == 40
    assert loaded.tasks["a"].resolved
    assert loaded.tasks["a"].iterations[0].touched_artifacts == frozenset({"src/a.py"})
    assert loaded.updated_at
    assert store.exists("s1")
    # No temporary files left behind
    assert [p.name for p in (tmp_path / "state").iterdir()] == ["s1.json"]


def test_missing_checkpoint(tmp_path):
    store = JsonFileStore(tmp_path)
    with pytest.raises(CheckpointNotFoundError):
        store.load_checkpoint("nope")
    assert not store.exists("nope")


def test_corrupt_checkpoint(tmp_path):
    (tmp_path / "bad.json").write_text("{not json")
    with pytest.raises(SpecloopError):
        JsonFileStore(tmp_path).load_checkpoint("bad")


def test_lock_round_trip(tmp_path):
    store = JsonFileStore(tmp_path)
    store.acquire("s1")
    assert store.holder_pid("s1") == os.getpid()
    with pytest.raises(SessionLockedError):
        store.acquire("s1")
    store.release("s1")
    assert store.holder_pid("s1") is None


def test_second_store_in_the_same_process_is_locked_out(tmp_path):
    first, second = JsonFileStore(tmp_path), JsonFileStore(tmp_path)
    first.acquire("s1")

    with pytest.raises(SessionLockedError) as exc:
        second.acquire("s1")
    assert exc.value.holder_pid == os.getpid()

    # Only the owner can remove the lock
    second.release("s1")
    assert first.holder_pid("s1") == os.getpid()
    first.release("s1")
    assert first.holder_pid("s1") is None


def test_live_foreign_lock_blocks(tmp_path):
    store = JsonFileStore(tmp_path)
    (tmp_path / "s1.lock").write_text(str(os.getppid()))
    with pytest.raises(SessionLockedError) as exc:
        store.acquire("s1")
    assert exc.value.holder_pid == os.getppid()


def test_stale_lock_is_taken_over(tmp_path):
    store = JsonFileStore(tmp_path)
    (tmp_path / "s1.lock").write_text("999999999")
    store.acquire("s1")
    assert store.holder_pid("s1") == os.getpid()
