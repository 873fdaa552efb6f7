import pytest

from specloop.errors import TaskDefinitionError
from specloop.state import Complexity
from specloop.tasks import Task, load_tasks


def test_load_tasks_from_folder(tmp_path):
    (tmp_path / "lexer.yaml").write_text("complexity: low\nscope: ['src/lexer/*']\n")
    (tmp_path / "parser.yml").write_text(
        "id: parser\ndepends_on: lexer\ncomplexity: high\ncommand: make parser\n"
    )
    (tmp_path / "notes.txt").write_text("ignored")

    tasks = {t.name: t for t in load_tasks(tmp_path)}

    assert set(tasks) == {"lexer", "parser"}
    assert tasks["lexer"].dependencies == []
    assert tasks["lexer"].scope == ["src/lexer/*"]
    assert tasks["parser"].dependencies == ["lexer"]
    assert tasks["parser"].complexity is Complexity.HIGH
    assert tasks["parser"].command == "make parser"


def test_duplicate_ids_are_rejected(tmp_path):
    (tmp_path / "a.yaml").write_text("id: same\n")
    (tmp_path / "b.yaml").write_text("id: same\n")
    with pytest.raises(TaskDefinitionError, match="Duplicate"):
        load_tasks(tmp_path)


def test_bad_definitions(tmp_path):
    (tmp_path / "list.yaml").write_text("- not\n- a mapping\n")
    with pytest.raises(TaskDefinitionError):
        Task.from_yaml(tmp_path / "list.yaml")

    (tmp_path / "odd.yaml").write_text("complexity: extreme\n")
    with pytest.raises(TaskDefinitionError):
        Task.from_yaml(tmp_path / "odd.yaml")


def test_missing_folder(tmp_path):
    with pytest.raises(TaskDefinitionError):
        load_tasks(tmp_path / "missing")


def test_to_record_deduplicates_dependencies():
    record = Task(id="c", depends_on=["b", "a", "b"]).to_record()
    assert record.dependencies == ["a", "b"]
    assert record.complexity is Complexity.MEDIUM
