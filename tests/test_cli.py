import json
import sys

import yaml
from typer.testing import CliRunner

from specloop import __version__
from specloop.cli import app

runner = CliRunner()

REPORTER = """\
import json, sys
ratio = float(sys.argv[1])
if ratio < 0:
    sys.exit("executor crashed")
print(json.dumps({"touched_artifacts": [], "completion_ratio": ratio}))
"""


def write_tasks(root, tasks):
    root.mkdir(parents=True, exist_ok=True)
    (root / "report.py").write_text(REPORTER)
    for name, fields in tasks.items():
        body = {"id": name, **fields}
        if "ratio" in body:
            body["command"] = f'"{sys.executable}" report.py {body.pop("ratio")}'
        (root / f"{name}.yaml").write_text(yaml.safe_dump(body))
    return root


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert f"SPECLOOP v{__version__}" in result.stdout


def test_plan_only_executes_nothing(tmp_path):
    tasks = write_tasks(tmp_path / "proj", {
        "a": {"ratio": 1.0},
        "b": {"ratio": 1.0, "depends_on": ["a"]},
    })
    state_dir = tmp_path / "state"

    result = runner.invoke(app, ["run", str(tasks), "--plan-only", "--state-dir", str(state_dir)])

    assert result.exit_code == 0
    assert "Plan only" in result.stdout
    assert not state_dir.exists()


def test_cycle_exits_with_2(tmp_path):
    tasks = write_tasks(tmp_path / "proj", {
        "a": {"ratio": 1.0, "depends_on": ["b"]},
        "b": {"ratio": 1.0, "depends_on": ["a"]},
    })

    result = runner.invoke(app, ["run", str(tasks)])

    assert result.exit_code == 2
    assert "Cyclic dependency" in result.stdout


def test_unknown_dependency_exits_with_2(tmp_path):
    tasks = write_tasks(tmp_path / "proj", {"a": {"ratio": 1.0, "depends_on": ["ghost"]}})
    result = runner.invoke(app, ["plan", str(tasks)])
    assert result.exit_code == 2


def test_run_success_then_status(tmp_path):
    tasks = write_tasks(tmp_path / "proj", {
        "lexer": {"ratio": 1.0},
        "parser": {"ratio": 0.95, "depends_on": ["lexer"]},
    })
    state_dir = tmp_path / "state"
    audit = tmp_path / "audit.jsonl"

    result = runner.invoke(app, [
        "run", str(tasks), "--budget", "50", "--session", "demo",
        "--state-dir", str(state_dir), "--audit-log", str(audit), "-y",
    ])

    assert result.exit_code == 0, result.stdout
    assert (state_dir / "demo.json").exists()
    assert (tasks / ".specloop" / "logs" / "demo.log").exists()
    events = [json.loads(line)["event_type"] for line in audit.read_text().splitlines()]
    assert events[0] == "session_started"
    assert events[-1] == "session_finished"

    status = runner.invoke(app, ["status", "--session", "demo", "--state-dir", str(state_dir)])
    assert status.exit_code == 0
    assert "lexer" in status.stdout
    assert "SUCCESS" in status.stdout


def test_failing_task_exits_with_1(tmp_path):
    tasks = write_tasks(tmp_path / "proj", {
        "y": {"ratio": -1},
        "x": {"ratio": 1.0, "depends_on": ["y"]},
    })

    result = runner.invoke(app, ["run", str(tasks), "--state-dir", str(tmp_path / "state"), "-y"])

    assert result.exit_code == 1
    assert "FAILED" in result.stdout
    assert "SKIPPED" in result.stdout


def test_status_without_checkpoint(tmp_path):
    result = runner.invoke(app, ["status", "--session", "nope", "--state-dir", str(tmp_path)])
    assert result.exit_code == 2


def test_init_bootstraps_a_project(tmp_path):
    result = runner.invoke(app, ["init", str(tmp_path)])
    assert result.exit_code == 0
    assert (tmp_path / ".specloop" / "config.yaml").exists()
    assert (tmp_path / "example.yaml").exists()

    plan = runner.invoke(app, ["plan", str(tmp_path)])
    assert plan.exit_code == 0
    assert "example" in plan.stdout


def test_status_finds_the_checkpoint_of_a_default_run(tmp_path):
    tasks = write_tasks(tmp_path / "proj", {"lexer": {"ratio": 1.0}})

    first = runner.invoke(app, ["run", str(tasks), "-y"])
    assert first.exit_code == 0, first.stdout
    assert (tasks / ".specloop" / "state" / "proj.json").exists()
    assert "Replacing checkpoint" not in first.stdout

    status = runner.invoke(app, ["status", str(tasks)])
    assert status.exit_code == 0, status.stdout
    assert "lexer" in status.stdout

    second = runner.invoke(app, ["run", str(tasks), "-y"])
    assert second.exit_code == 0
    assert "Replacing checkpoint" in second.stdout


def test_status_needs_a_session(tmp_path):
    result = runner.invoke(app, ["status", "--state-dir", str(tmp_path)])
    assert result.exit_code == 2
