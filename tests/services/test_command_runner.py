import sys

import pytest

from clusterup.errors import CommandError, CommandTimeout, ToolMissing
from clusterup.services.command_runner import CommandRunner


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


def test_command_runner_raises_with_stderr():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(CommandError, match="boom") as error:
        runner.run(
            [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"],
            check=True,
            capture_output=True,
        )

    assert error.value.returncode == 3
    assert error.value.output == "boom"


def test_command_runner_returns_when_check_disabled():
    runner = CommandRunner(logger=DummyLogger())

    result = runner.run(
        [sys.executable, "-c", "import sys; sys.exit(1)"],
        check=False,
        capture_output=True,
    )

    assert result.returncode == 1


def test_command_runner_feeds_input_on_stdin():
    runner = CommandRunner(logger=DummyLogger())

    result = runner.run(
        [sys.executable, "-c", "import sys; print(sys.stdin.read().upper())"],
        capture_output=True,
        input_text="set -euo pipefail",
    )

    assert result.stdout.strip() == "SET -EUO PIPEFAIL"


def test_command_runner_retries_before_success(tmp_path, monkeypatch):
    runner = CommandRunner(logger=DummyLogger())
    monkeypatch.chdir(tmp_path)

    command = [
        sys.executable,
        "-c",
        (
            "from pathlib import Path;"
            "p=Path('retry-counter.txt');"
            "n=int(p.read_text()) if p.exists() else 0;"
            "p.write_text(str(n+1));"
            "import sys; sys.exit(1 if n == 0 else 0)"
        ),
    ]

    result = runner.run(
        command,
        check=True,
        capture_output=True,
        retry_count=1,
        retry_backoff_seconds=0.0,
    )

    assert result.returncode == 0


def test_command_runner_timeout_raises_command_timeout():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(CommandTimeout, match="timed out"):
        runner.run(
            [sys.executable, "-c", "import time; time.sleep(2)"],
            check=True,
            capture_output=True,
            timeout=0.1,
        )


def test_command_runner_reports_missing_tool():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(ToolMissing) as error:
        runner.run(["clusterup-no-such-binary", "--version"], capture_output=True)

    assert error.value.tool == "clusterup-no-such-binary"


def test_command_runner_prepends_search_path(tmp_path):
    runner = CommandRunner(logger=DummyLogger())
    runner.add_search_path(str(tmp_path))
    runner.add_search_path(str(tmp_path))

    assert runner.extra_paths == [str(tmp_path)]
    assert runner.search_path().startswith(str(tmp_path))

    result = runner.run(
        [sys.executable, "-c", "import os; print(os.environ['PATH'])"],
        capture_output=True,
    )
    assert result.stdout.startswith(str(tmp_path))
