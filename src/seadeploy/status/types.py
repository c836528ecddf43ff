# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/status/types.py

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class ClusterState(str, Enum):
    RUNNING = "Running"
    STOPPED = "Stopped"
    DEGRADED = "Degraded"
    ERROR = "Error"
    UNKNOWN = "Unknown"


# ComponentStatus.status values
STATUS_RUNNING = "running"
STATUS_HEALTHY = "healthy"
STATUS_STOPPED = "stopped"
STATUS_UNREACHABLE = "unreachable"

# HealthStatus.status values
HEALTHY = "healthy"
UNHEALTHY = "unhealthy"


@dataclass
class HealthStatus:
    status: str = UNHEALTHY
    latency: float = 0.0              # seconds
    error: Optional[str] = None
    last_check: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


@dataclass
class ComponentStatus:
    name: str
    type: str                          # master / volume / filer
    host: str
    port: int
    pid: int = 0
    status: str = STATUS_STOPPED
    version: str = ""
    start_time: Optional[datetime] = None
    uptime: float = 0.0                # seconds
    memory_usage: int = 0              # bytes
    cpu_usage: float = 0.0             # percent, averaged over process lifetime
    disk_usage: int = 0                # bytes
    health_check: HealthStatus = field(default_factory=HealthStatus)
    last_seen: Optional[datetime] = None

    @property
    def is_running(self) -> bool:
        return self.status in (STATUS_RUNNING, STATUS_HEALTHY)

    @property
    def is_healthy(self) -> bool:
        return self.health_check.status == HEALTHY


@dataclass
class ClusterStatus:
    name: str
    state: ClusterState
    components: List[ComponentStatus] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    updated_at: Optional[datetime] = None
    version: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["state"] = self.state.value
        return d


@dataclass(frozen=True)
class StatusCollectionOptions:
    timeout: float = 10.0              # HTTP health check timeout
    include_metrics: bool = False
    health_check: bool = True
    verbose: bool = False


@dataclass
class StatusSummary:
    total_components: int = 0
    running_components: int = 0
    healthy_components: int = 0
    components_by_type: Dict[str, int] = field(default_factory=dict)
    components_by_status: Dict[str, int] = field(default_factory=dict)
    total_memory_usage: int = 0
    total_cpu_usage: float = 0.0
    total_disk_usage: int = 0
    average_response_time: float = 0.0
    cluster_version: str = ""
    last_updated: Optional[datetime] = None
