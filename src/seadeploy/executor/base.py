# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/executor/base.py

from __future__ import annotations

import abc
import logging
import uuid
from pathlib import Path
from typing import Optional

from seadeploy.utils.execution import ExecutionContext

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


def shq(s: str) -> str:
    """Shell-quote helper."""
    return "'" + str(s).replace("'", "'\\''") + "'"


class Executor(abc.ABC):
    """
    Runs shell commands on a named host and returns combined stdout/stderr.

    Raises ``ExecutorTimeoutError`` or ``ExecutorConnectionError`` for
    transport failures and ``CommandFailedError`` (carrying the output) for a
    non-zero exit.
    """

    default_timeout: float = DEFAULT_TIMEOUT

    def execute(self, host: str, command: str, *, ctx: Optional[ExecutionContext] = None) -> str:
        return self.execute_with_timeout(host, command, self.default_timeout, ctx=ctx)

    @abc.abstractmethod
    def execute_with_timeout(
        self,
        host: str,
        command: str,
        timeout: float,
        *,
        ctx: Optional[ExecutionContext] = None,
    ) -> str:
        ...

    @abc.abstractmethod
    def _stage_text(self, host: str, content: str, path: str) -> None:
        ...

    @abc.abstractmethod
    def _stage_file(self, host: str, local_path: Path, path: str) -> None:
        ...

    def put_text(
        self,
        host: str,
        content: str,
        remote_path: str,
        *,
        mode: str = "0644",
        ctx: Optional[ExecutionContext] = None,
    ) -> None:
        tmp = f"/tmp/.seadeploy.{uuid.uuid4().hex[:12]}"
        self._stage_text(host, content, tmp)
        self._install(host, tmp, remote_path, mode, ctx)

    def put_file(
        self,
        host: str,
        local_path: str | Path,
        remote_path: str,
        *,
        mode: str = "0755",
        ctx: Optional[ExecutionContext] = None,
    ) -> None:
        tmp = f"/tmp/.seadeploy.upload.{uuid.uuid4().hex[:12]}"
        self._stage_file(host, Path(local_path), tmp)
        self._install(host, tmp, remote_path, mode, ctx)

    def _install(self, host: str, tmp: str, dest: str, mode: str, ctx: Optional[ExecutionContext]) -> None:
        log.debug("(%s) install %s -> %s (%s)", host, tmp, dest, mode)
        self.execute(
            host,
            f"sudo install -D -m {mode} {tmp} {shq(dest)} && rm -f {tmp}",
            ctx=ctx,
        )

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()
