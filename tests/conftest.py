# tests/conftest.py
from __future__ import annotations

import threading
from pathlib import Path

import pytest

from seadeploy.executor.base import Executor
from seadeploy.registry import ComponentRegistry


class FakeExecutor(Executor):
    """
    Records every command. Output is picked from ``responses`` by the first
    key contained in the command; ``errors`` works the same way and wins.
    A value may be a callable ``(host, command) -> str | exception``.
    """

    def __init__(self, responses=None, errors=None):
        self.responses = {"systemctl is-active": "active\n"}
        self.responses.update(responses or {})
        self.errors = dict(errors or {})
        self.calls = []
        self.uploads = []
        self._lock = threading.Lock()

    def execute_with_timeout(self, host, command, timeout, *, ctx=None):
        if ctx is not None:
            ctx.check()
        with self._lock:
            self.calls.append((host, command))
        for key, err in self.errors.items():
            if key in command:
                if callable(err) and not isinstance(err, BaseException):
                    err = err(host, command)
                if err is not None:
                    raise err
        for key, out in self.responses.items():
            if key in command:
                return out(host, command) if callable(out) else out
        return ""

    def put_text(self, host, content, remote_path, *, mode="0644", ctx=None):
        with self._lock:
            self.uploads.append((host, remote_path, content, mode))

    def put_file(self, host, local_path, remote_path, *, mode="0755", ctx=None):
        with self._lock:
            self.uploads.append((host, remote_path, Path(local_path), mode))

    def _stage_text(self, host, content, path):
        pass

    def _stage_file(self, host, local_path, path):
        pass

    def commands(self, host=None):
        return [c for h, c in self.calls if host is None or h == host]


def install_binary(root: Path, name: str, version: str) -> Path:
    path = root / name / version / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\necho fake\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def registry(tmp_path: Path) -> ComponentRegistry:
    root = tmp_path / "components"
    install_binary(root, "weed", "3.68")
    install_binary(root, "weed", "3.69")
    return ComponentRegistry(root)
