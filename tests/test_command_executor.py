import json
import sys
import threading
import time

import pytest

from specloop.errors import ExecutorError, ExecutorTimeoutError
from specloop.executors import CommandExecutor, TaskContext


def python_command(code: str) -> str:
    return f'"{sys.executable}" -c "{code}"'


def context(command, **kwargs):
    return TaskContext(task_name="lexer", command=command, scope=["src/*"], **kwargs)


def test_parses_last_line_as_report(tmp_path):
    (tmp_path / "emit.py").write_text(
        "import json, os\n"
        "print('working...')\n"
        "print(json.dumps({\n"
        "    'touched_artifacts': ['src/' + os.environ['SPECLOOP_TASK'] + '.py'],\n"
        "    'completion_ratio': int(os.environ['SPECLOOP_ITERATION']) / 4,\n"
        "    'regression_flag': os.environ['SPECLOOP_SCOPE'] == 'src/*',\n"
        "}))\n"
    )
    executor = CommandExecutor(tmp_path, timeout_s=30)

    result = executor.run_iteration(context(f'"{sys.executable}" emit.py'), 2)

    assert result.touched_artifacts == {"src/lexer.py"}
    assert result.completion_ratio == 0.5
    assert result.regression_flag
    assert result.duration_ms >= 0


def test_reported_duration_is_kept(tmp_path):
    payload = json.dumps({"completion_ratio": 1.0, "duration_ms": 1234}).replace('"', '\\"')
    executor = CommandExecutor(tmp_path)
    result = executor.run_iteration(context(python_command(f"print('{payload}')")), 1)
    assert result.duration_ms == 1234


@pytest.mark.parametrize("code", [
    "import sys; sys.exit(3)",
    "print('no json here')",
    "print('[1, 2]')",
    "pass",
])
def test_bad_commands_raise_executor_error(tmp_path, code):
    with pytest.raises(ExecutorError):
        CommandExecutor(tmp_path).run_iteration(context(python_command(code)), 1)


def test_missing_command(tmp_path):
    with pytest.raises(ExecutorError, match="no command"):
        CommandExecutor(tmp_path).run_iteration(context(None), 1)


def test_timeout(tmp_path):
    executor = CommandExecutor(tmp_path, timeout_s=0.2)
    with pytest.raises(ExecutorTimeoutError):
        executor.run_iteration(context(python_command("import time; time.sleep(2)")), 1)


def test_cancellation_kills_the_command(tmp_path):
    ctx = context(python_command("import time; time.sleep(5)"))
    timer = threading.Timer(0.2, ctx.cancel_event.set)
    executor = CommandExecutor(tmp_path, timeout_s=30)

    start = time.monotonic()
    timer.start()
    try:
        with pytest.raises(ExecutorError, match="cancelled"):
            executor.run_iteration(ctx, 1)
    finally:
        timer.cancel()
    assert time.monotonic() - start < 3
