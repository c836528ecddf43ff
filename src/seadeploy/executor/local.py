# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/executor/local.py

from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import time
from pathlib import Path
from typing import Optional

from seadeploy.errors import CommandFailedError, ExecutorTimeoutError, OperationCancelled
from seadeploy.utils.execution import ExecutionContext
from .base import DEFAULT_TIMEOUT, Executor

log = logging.getLogger(__name__)


class LocalExecutor(Executor):
    """
    Runs commands through the local shell. ``host`` is accepted for a uniform
    interface and otherwise ignored.
    """

    def __init__(self, *, default_timeout: float = DEFAULT_TIMEOUT, poll_interval: float = 0.2, shell: str = "/bin/sh"):
        self.default_timeout = default_timeout
        self.poll_interval = poll_interval
        self.shell = shell

    def execute_with_timeout(
        self,
        host: str,
        command: str,
        timeout: float,
        *,
        ctx: Optional[ExecutionContext] = None,
    ) -> str:
        if ctx is not None:
            ctx.check()

        log.debug("(local) $ %s", command)
        proc = subprocess.Popen(
            [self.shell, "-c", command],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            start_new_session=True,
        )

        deadline = time.monotonic() + timeout
        while True:
            remaining = deadline - time.monotonic()
            try:
                out, _ = proc.communicate(timeout=max(0.0, min(self.poll_interval, remaining)))
                break
            except subprocess.TimeoutExpired:
                if ctx is not None and ctx.cancelled:
                    self._kill(proc)
                    raise OperationCancelled(f"cancelled while running: {command}")
                if time.monotonic() >= deadline:
                    self._kill(proc)
                    raise ExecutorTimeoutError(host, command, timeout)

        output = out.decode("utf-8", "replace")
        log.debug("(local) [exit %s] %s", proc.returncode, output.strip())
        if proc.returncode != 0:
            raise CommandFailedError(host, command, proc.returncode, output)
        return output

    def _kill(self, proc: subprocess.Popen) -> None:
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        proc.communicate()

    def _stage_text(self, host: str, content: str, path: str) -> None:
        Path(path).write_text(content)

    def _stage_file(self, host: str, local_path: Path, path: str) -> None:
        shutil.copyfile(local_path, path)
