import random

import pytest

from specloop.errors import CyclicDependencyError, StructuralError, UnknownDependencyError
from specloop.graph import DependencyGraph
from specloop.state import TaskStatus

from tests.conftest import make_task


def _random_dag(rng: random.Random, size: int) -> dict[str, list[str]]:
    names = [f"t{i:02d}" for i in range(size)]
    rng.shuffle(names)
    # Edges only point "backwards" in the shuffled list, so no cycles
    return {
        name: rng.sample(names[:i], k=rng.randint(0, min(i, 3)))
        for i, name in enumerate(names)
    }


@pytest.mark.parametrize("seed", range(25))
def test_topological_order_respects_every_edge(seed):
    rng = random.Random(seed)
    declared = _random_dag(rng, rng.randint(1, 20))
    graph = DependencyGraph.build(declared)
    order = graph.topological_order()

    assert sorted(order) == sorted(declared)
    position = {name: i for i, name in enumerate(order)}
    for name, deps in declared.items():
        for dep in deps:
            assert position[dep] < position[name]


def test_build_twice_gives_identical_order():
    declared = {"c": ["a"], "b": ["a"], "a": [], "d": ["b", "c"], "e": []}
    first = DependencyGraph.build(declared).topological_order()
    second = DependencyGraph.build(dict(reversed(list(declared.items())))).topological_order()
    assert first == second == ["a", "b", "c", "d", "e"]


def test_cycle_reports_the_path():
    with pytest.raises(CyclicDependencyError) as exc:
        DependencyGraph.build({"a": ["b"], "b": ["c"], "c": ["a"], "d": []})
    assert exc.value.cycle == ["a", "b", "c", "a"]
    assert isinstance(exc.value, StructuralError)


def test_self_dependency_is_a_cycle():
    with pytest.raises(CyclicDependencyError) as exc:
        DependencyGraph.build({"a": ["a"]})
    assert exc.value.cycle == ["a", "a"]


def test_unknown_dependency():
    with pytest.raises(UnknownDependencyError) as exc:
        DependencyGraph.build({"a": ["ghost"]})
    assert exc.value.task == "a"
    assert exc.value.dependency == "ghost"


def test_from_tasks_and_depth():
    graph = DependencyGraph.from_tasks([
        make_task("lexer"),
        make_task("parser", ["lexer"]),
        make_task("checker", ["parser"]),
        make_task("docs", ["lexer"]),
    ])
    assert graph.depth("lexer") == 0
    assert graph.depth("parser") == 1
    assert graph.depth("checker") == 2
    assert graph.dependents("lexer") == {"parser", "docs"}
    assert graph.transitive_dependents("lexer") == {"parser", "checker", "docs"}
    assert graph.edge_count == 3


def test_ready_requires_resolved_dependencies():
    graph = DependencyGraph.build({"a": [], "b": ["a"], "c": ["a", "b"]})
    statuses = {"a": TaskStatus.PENDING, "b": TaskStatus.PENDING, "c": TaskStatus.PENDING}
    assert graph.ready(statuses, resolved=set()) == {"a"}

    statuses["a"] = TaskStatus.COMPLETED
    assert graph.ready(statuses, resolved={"a"}) == {"b"}

    # An unaccepted partial result does not unblock anything
    statuses["b"] = TaskStatus.PARTIAL
    assert graph.ready(statuses, resolved={"a"}) == set()
    assert graph.ready(statuses, resolved={"a", "b"}) == {"c"}
