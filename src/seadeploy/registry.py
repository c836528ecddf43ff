# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/registry.py

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import List

from seadeploy.errors import ComponentNotInstalledError

log = logging.getLogger(__name__)

_NUM = re.compile(r"\d+")


def _version_key(version: str):
    return [int(n) for n in _NUM.findall(version)], version


class ComponentRegistry:
    """
    Local store of downloaded binaries laid out as ``<root>/<name>/<version>/<name>``.

    Downloading is somebody else's job; this only answers where an installed
    binary lives.
    """

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root) if root else Path.home() / ".seadeploy" / "components"

    def get_binary_path(self, name: str, version: str, binary: str | None = None) -> Path:
        path = self.root / name / version / (binary or name)
        if not path.is_file() or not os.access(path, os.X_OK):
            raise ComponentNotInstalledError(name, version)
        return path

    def is_installed(self, name: str, version: str, binary: str | None = None) -> bool:
        try:
            self.get_binary_path(name, version, binary)
        except ComponentNotInstalledError:
            return False
        return True

    def list_versions(self, name: str) -> List[str]:
        base = self.root / name
        if not base.is_dir():
            return []
        return sorted((p.name for p in base.iterdir() if p.is_dir()), key=_version_key)

    def latest_version(self, name: str) -> str | None:
        versions = self.list_versions(name)
        return versions[-1] if versions else None
