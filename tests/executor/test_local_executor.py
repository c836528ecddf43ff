# tests/executor/test_local_executor.py
from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from seadeploy.errors import CommandFailedError, ExecutorTimeoutError, OperationCancelled
from seadeploy.executor.local import LocalExecutor
from seadeploy.utils.execution import ExecutionContext


def test_echo_returns_stdout():
    ex = LocalExecutor()
    assert ex.execute("ignored", "echo hello") == "hello\n"


def test_stderr_is_combined_into_output():
    ex = LocalExecutor()
    out = ex.execute("ignored", "echo out; echo err 1>&2")
    assert "out" in out and "err" in out


def test_nonzero_exit_is_a_command_failure_not_a_timeout():
    ex = LocalExecutor()
    with pytest.raises(CommandFailedError) as ei:
        ex.execute("localhost", "echo diag; exit 7")
    assert ei.value.exit_status == 7
    assert ei.value.output == "diag\n"


def test_timeout_kills_the_command():
    ex = LocalExecutor(poll_interval=0.05)
    start = time.monotonic()
    with pytest.raises(ExecutorTimeoutError):
        ex.execute_with_timeout("localhost", "sleep 30", 0.3)
    assert time.monotonic() - start < 5


def test_cancellation_interrupts_a_running_command():
    ex = LocalExecutor(poll_interval=0.05)
    ctx = ExecutionContext()
    threading.Timer(0.2, ctx.cancel).start()
    start = time.monotonic()
    with pytest.raises(OperationCancelled):
        ex.execute_with_timeout("localhost", "sleep 30", 20, ctx=ctx)
    assert time.monotonic() - start < 5


def test_already_cancelled_context_runs_nothing(tmp_path: Path):
    marker = tmp_path / "ran"
    ctx = ExecutionContext()
    ctx.cancel()
    with pytest.raises(OperationCancelled):
        LocalExecutor().execute("localhost", f"touch {marker}", ctx=ctx)
    assert not marker.exists()


def test_put_text_installs_file_with_mode(tmp_path: Path, monkeypatch):
    ex = LocalExecutor()
    seen = []
    # no sudo in test environments: swap the install step for a plain copy
    monkeypatch.setattr(
        ex, "_install",
        lambda host, tmp, dest, mode, ctx: seen.append(ex.execute(host, f"install -m {mode} {tmp} {dest} && rm -f {tmp} && stat -c %a {dest}")),
    )
    dest = tmp_path / "etc" / "master.options"
    dest.parent.mkdir()
    ex.put_text("localhost", "port=9333\n", str(dest), mode="0640")
    assert dest.read_text() == "port=9333\n"
    assert seen == ["640\n"]
