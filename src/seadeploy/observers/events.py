# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single invocation
    cluster: str      # cluster name from the topology
    operation: str    # deploy/upgrade/scale-out/status

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(cluster: str, operation: str, run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "cluster": cluster,
        "operation": operation,
    }


# ---------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PlanComputed(BaseEvent):
    phases: List[str]
    dry_run: bool = False


# ---------------------------------------------------------------------
# Phase (task group) lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PhaseStarted(BaseEvent):
    phase: str
    tasks: int
    parallel: bool

@dataclass(frozen=True)
class PhaseCompleted(BaseEvent):
    phase: str
    successful: int
    failed: int
    duration_ms: int

@dataclass(frozen=True)
class PhaseFailed(BaseEvent):
    phase: str
    error: str


# ---------------------------------------------------------------------
# Task lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class TaskStarted(BaseEvent):
    task_id: str
    description: str

@dataclass(frozen=True)
class TaskAttemptFailed(BaseEvent):
    task_id: str
    attempt: int
    error: str

@dataclass(frozen=True)
class TaskSucceeded(BaseEvent):
    task_id: str
    attempts: int
    duration_ms: int

@dataclass(frozen=True)
class TaskFailed(BaseEvent):
    task_id: str
    attempts: int
    error: str


# ---------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class RollbackStarted(BaseEvent):
    phase: str
    task_id: str

@dataclass(frozen=True)
class RollbackResult(BaseEvent):
    phase: str
    task_id: str
    status: str       # "ROLLED_BACK" | "FAILED"
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Disk provisioning
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class DiskProvisioned(BaseEvent):
    host: str
    device: str
    folder: str
    uuid: str
    max_volumes: int


# ---------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class OperationSummary(BaseEvent):
    ok: int
    failed: int
    rolled_back: int
    error: Optional[str] = None
