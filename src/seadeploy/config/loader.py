# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/config/loader.py

import logging
import os
from pathlib import Path
from typing import Dict, List, Mapping, Sequence

import yaml
from pydantic import ValidationError

from seadeploy.errors import ConfigurationError
from .models import FolderSpec, Specification

log = logging.getLogger(__name__)


def _load_yaml(path: Path) -> dict:
    """Load a YAML file, expanding ${ENV_VAR} references."""
    raw = path.read_text()
    expanded = os.path.expandvars(raw)
    data = yaml.safe_load(expanded) or {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path}: top level must be a mapping")
    return data


def load_specification(path: str | Path) -> Specification:
    """
    Load and validate a cluster topology YAML.

    ``${ENV_VAR}`` placeholders are resolved with ``os.path.expandvars``
    before parsing. Missing files, YAML syntax errors and schema violations
    all surface as ``ConfigurationError``.
    """
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"topology file not found: {path}")

    try:
        data = _load_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{path}: invalid YAML", cause=e) from e

    try:
        spec = Specification.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"{path}: invalid topology", cause=e) from e

    log.debug(
        "loaded topology %s: %d masters, %d volumes, %d filers, %d envoys",
        spec.name, len(spec.master_servers), len(spec.volume_servers),
        len(spec.filer_servers), len(spec.envoy_servers),
    )
    return spec


def load_dynamic_folders(path: str | Path) -> Dict[str, List[FolderSpec]]:
    """
    Load the dynamic folders file: a mapping of volume host to the folders
    provisioned on it by earlier runs. A missing file means nothing was
    provisioned yet.
    """
    path = Path(path)
    if not path.exists():
        log.debug("dynamic folders file %s does not exist yet", path)
        return {}

    try:
        data = _load_yaml(path)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"{path}: invalid YAML", cause=e) from e

    folders: Dict[str, List[FolderSpec]] = {}
    for host, items in data.items():
        if not isinstance(items, list):
            raise ConfigurationError(f"{path}: folders of {host} must be a list")
        try:
            folders[str(host)] = [FolderSpec.model_validate(item) for item in items]
        except ValidationError as e:
            raise ConfigurationError(f"{path}: invalid folder for {host}", cause=e) from e
    return folders


def save_dynamic_folders(path: str | Path, folders: Mapping[str, Sequence[FolderSpec]]) -> None:
    """Write the dynamic folders file, replacing it in one step."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {host: [f.model_dump() for f in items] for host, items in folders.items()}
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(yaml.safe_dump(data, sort_keys=False))
    tmp.replace(path)
    log.info("saved dynamic folders for %d host(s) to %s", len(data), path)
