import random

import pytest

from specloop.commitment import CommitmentGate
from specloop.config_loader import CommitmentConfig
from specloop.state import OrchestrationState


@pytest.fixture
def gate(event_bus):
    return CommitmentGate(OrchestrationState(session_id="s"), CommitmentConfig(), event_bus=event_bus)


def test_starts_at_zero_with_no_restrictions(gate):
    assert gate.level == 0
    assert not gate.force_exit_on_spiral
    assert not gate.force_complete


def test_raises_one_step_and_caps(gate, events):
    for expected in range(1, 6):
        assert gate.raise_level("test") == expected
    assert gate.raise_level("test") == 5
    assert gate.force_complete

    raised = [e for e in events if e.event_type == "commitment_raised"]
    assert [e.payload["level"] for e in raised] == [1, 2, 3, 4, 5]


def test_narrowing_follows_the_level(gate):
    gate.raise_to(3, "test")
    assert gate.force_exit_on_spiral and not gate.force_complete
    gate.raise_level("test")
    assert not gate.force_complete
    gate.raise_level("test")
    assert gate.force_complete


def test_raise_to_steps_through_every_level(gate, events):
    gate.raise_level("first")
    gate.raise_to(5, "budget exhausted")
    levels = [e.payload["level"] for e in events if e.event_type == "commitment_raised"]
    assert levels == [1, 2, 3, 4, 5]


def test_budget_thresholds_raise_once_each(gate):
    assert gate.observe_budget(0.4) == 0
    assert gate.observe_budget(0.5) == 1
    assert gate.observe_budget(0.6) == 1
    assert gate.observe_budget(0.95) == 3
    assert gate.observe_budget(1.0) == 3


def test_primed_gate_does_not_recount_thresholds(event_bus):
    state = OrchestrationState(session_id="s", commitment_level=2)
    gate = CommitmentGate(state, CommitmentConfig(), event_bus=event_bus)
    gate.prime(0.8)
    assert gate.observe_budget(0.8) == 2
    assert gate.observe_budget(0.9) == 3


@pytest.mark.parametrize("seed", range(20))
def test_level_never_decreases(seed, event_bus):
    rng = random.Random(seed)
    gate = CommitmentGate(OrchestrationState(session_id="s"), CommitmentConfig(), event_bus=event_bus)
    fraction = 0.0
    previous = gate.level
    for _ in range(30):
        action = rng.choice(["raise", "raise_to", "budget"])
        if action == "raise":
            gate.raise_level("spiral")
        elif action == "raise_to":
            gate.raise_to(rng.randint(0, 6), "jump")
        else:
            fraction = min(1.0, fraction + rng.uniform(0, 0.3))
            gate.observe_budget(fraction)
        assert previous <= gate.level <= 5
        previous = gate.level
