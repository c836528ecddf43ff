# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/status/collector.py

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

import requests

from seadeploy.config.models import ComponentSpec, Specification, VolumeServerSpec
from seadeploy.errors import CommandFailedError, SeaDeployError
from seadeploy.executor.base import Executor, shq
from seadeploy.utils.execution import ExecutionContext
from .types import (
    HEALTHY,
    STATUS_HEALTHY,
    STATUS_RUNNING,
    STATUS_STOPPED,
    STATUS_UNREACHABLE,
    UNHEALTHY,
    ClusterState,
    ClusterStatus,
    ComponentStatus,
    HealthStatus,
    StatusCollectionOptions,
    StatusSummary,
)

log = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 32

# role -> (path, status codes counted healthy)
HEALTH_ENDPOINTS = {
    "master": ("/dir/status", (200,)),
    "volume": ("/status", (200,)),
    "filer": ("/", (200, 403)),
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def determine_cluster_state(components: Sequence[ComponentStatus]) -> ClusterState:
    if not components:
        return ClusterState.UNKNOWN
    healthy = sum(1 for c in components if c.is_healthy)
    running = sum(1 for c in components if c.is_running)
    if healthy == len(components):
        return ClusterState.RUNNING
    if running == 0:
        return ClusterState.STOPPED
    if running > 0:
        return ClusterState.DEGRADED
    return ClusterState.ERROR


def generate_summary(status: ClusterStatus) -> StatusSummary:
    summary = StatusSummary(
        total_components=len(status.components),
        cluster_version=status.version,
        last_updated=status.updated_at,
    )
    latencies = []
    for comp in status.components:
        summary.components_by_type[comp.type] = summary.components_by_type.get(comp.type, 0) + 1
        summary.components_by_status[comp.status] = summary.components_by_status.get(comp.status, 0) + 1
        if comp.is_running:
            summary.running_components += 1
        if comp.is_healthy:
            summary.healthy_components += 1
            if comp.health_check.latency > 0:
                latencies.append(comp.health_check.latency)
        summary.total_memory_usage += comp.memory_usage
        summary.total_cpu_usage += comp.cpu_usage
        summary.total_disk_usage += comp.disk_usage
    if latencies:
        summary.average_response_time = sum(latencies) / len(latencies)
    return summary


def parse_proc_metrics(output: str) -> Tuple[float, float, int]:
    """
    Parse ``/proc/<pid>/stat``, ``/proc/uptime``, ``getconf CLK_TCK`` and
    ``/proc/<pid>/status`` concatenated in that order.

    Returns (uptime seconds, lifetime cpu percent, rss bytes).
    """
    lines = output.splitlines()
    if len(lines) < 3:
        raise ValueError("truncated /proc output")
    # comm may contain spaces; fields resume after the last ')'
    stat = lines[0].rsplit(")", 1)[-1].split()
    if len(stat) < 20:
        raise ValueError("invalid stat data")
    utime, stime, starttime = int(stat[11]), int(stat[12]), int(stat[19])
    system_uptime = float(lines[1].split()[0])
    ticks = int(lines[2].strip())

    uptime = max(0.0, system_uptime - starttime / ticks)
    cpu = ((utime + stime) / ticks) / uptime * 100.0 if uptime > 0 else 0.0

    rss = 0
    for line in lines[3:]:
        if line.startswith("VmRSS:"):
            fields = line.split()
            if len(fields) >= 2:
                rss = int(fields[1]) * 1024
    return uptime, cpu, rss


class StatusCollector:
    """
    Checks every declared instance concurrently on a bounded pool and folds
    the results into a ``ClusterStatus``. Blocks until every check reports.
    """

    def __init__(
        self,
        executor: Executor,
        *,
        session: Optional[requests.Session] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.executor = executor
        self.session = session or requests.Session()
        self.max_workers = max_workers

    def collect(
        self,
        spec: Specification,
        options: Optional[StatusCollectionOptions] = None,
        ctx: Optional[ExecutionContext] = None,
    ) -> ClusterStatus:
        return self.collect_components(spec.name, list(spec.components()), options, ctx)

    def collect_components(
        self,
        name: str,
        components: Iterable[ComponentSpec],
        options: Optional[StatusCollectionOptions] = None,
        ctx: Optional[ExecutionContext] = None,
    ) -> ClusterStatus:
        options = options or StatusCollectionOptions()
        ctx = ctx or ExecutionContext()
        components = list(components)
        results: List[ComponentStatus] = []
        errors: List[str] = []

        if components:
            workers = max(1, min(self.max_workers, len(components)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="status") as pool:
                futures = {pool.submit(self._check, c, options, ctx): c for c in components}
                for fut in as_completed(futures):
                    comp = futures[fut]
                    try:
                        status, error = fut.result()
                    except Exception as e:
                        log.warning("status check for %s %s crashed: %s", comp.role, comp.address, e)
                        errors.append(f"{comp.role}@{comp.address}: {e}")
                        continue
                    results.append(status)
                    if error:
                        errors.append(error)

        version = next((c.version for c in results if c.version), "")
        return ClusterStatus(
            name=name,
            state=determine_cluster_state(results),
            components=results,
            errors=errors,
            updated_at=_now(),
            version=version,
        )

    def _check(
        self,
        comp: ComponentSpec,
        options: StatusCollectionOptions,
        ctx: ExecutionContext,
    ) -> Tuple[ComponentStatus, Optional[str]]:
        status = ComponentStatus(
            name=comp.instance_name,
            type=comp.role,
            host=comp.host,
            port=comp.port,
            last_seen=_now(),
        )

        try:
            pid = self.find_pid(comp, ctx)
        except SeaDeployError as e:
            status.status = STATUS_UNREACHABLE
            status.health_check = HealthStatus(status=UNHEALTHY, error=str(e), last_check=_now())
            return status, f"{comp.role}@{comp.address}: {e}"

        if pid is None:
            status.status = STATUS_STOPPED
            status.health_check = HealthStatus(status=UNHEALTHY, error="process not found", last_check=_now())
            return status, None

        status.pid = pid
        status.status = STATUS_RUNNING

        if options.include_metrics:
            try:
                self._collect_metrics(comp, status, ctx)
            except (SeaDeployError, ValueError) as e:
                log.debug("metrics for %s %s unavailable: %s", comp.role, comp.address, e)

        if options.health_check:
            status.health_check = self.check_health(comp, options.timeout)
            if status.health_check.status == HEALTHY:
                status.status = STATUS_HEALTHY
                meta = status.health_check.metadata or {}
                status.version = str(meta.get("Version", "")) if isinstance(meta, dict) else ""

        return status, None

    def find_pid(self, comp: ComponentSpec, ctx: ExecutionContext) -> Optional[int]:
        # bracketed first letter keeps the probing shell out of the match
        b = comp.binary
        pattern = f"[{b[0]}]{b[1:]}.*{comp.role}-{comp.port}"
        try:
            out = self.executor.execute(comp.host, f"pgrep -f {shq(pattern)} | head -1", ctx=ctx).strip()
        except CommandFailedError:
            return None
        if not out:
            return None
        try:
            return int(out.splitlines()[0])
        except ValueError:
            return None

    def _collect_metrics(self, comp: ComponentSpec, status: ComponentStatus, ctx: ExecutionContext) -> None:
        pid = status.pid
        out = self.executor.execute(
            comp.host,
            f"cat /proc/{pid}/stat /proc/uptime && getconf CLK_TCK && cat /proc/{pid}/status",
            ctx=ctx,
        )
        uptime, cpu, rss = parse_proc_metrics(out)
        status.uptime = uptime
        status.cpu_usage = cpu
        status.memory_usage = rss
        status.start_time = _now() - timedelta(seconds=uptime)

        dirs = [comp.data_dir] if comp.data_dir else []
        if isinstance(comp, VolumeServerSpec):
            dirs += [f.folder for f in comp.folders]
        if dirs:
            du = self.executor.execute(
                comp.host,
                "(du -sbc " + " ".join(shq(d) for d in dirs) + " 2>/dev/null || true) | tail -n 1",
                ctx=ctx,
            ).split()
            if du and du[0].isdigit():
                status.disk_usage = int(du[0])

    def check_health(self, comp: ComponentSpec, timeout: float) -> HealthStatus:
        path, ok_codes = HEALTH_ENDPOINTS.get(comp.role, ("/", (200,)))
        url = f"http://{comp.host}:{comp.port}{path}"
        start = time.monotonic()
        try:
            resp = self.session.get(url, timeout=timeout)
        except requests.RequestException as e:
            return HealthStatus(
                status=UNHEALTHY, error=str(e), latency=time.monotonic() - start, last_check=_now()
            )
        latency = time.monotonic() - start

        if resp.status_code not in ok_codes:
            return HealthStatus(
                status=UNHEALTHY, error=f"HTTP {resp.status_code}", latency=latency, last_check=_now()
            )

        metadata = None
        if comp.role == "master":
            try:
                metadata = resp.json()
            except ValueError:
                metadata = None
        return HealthStatus(status=HEALTHY, latency=latency, last_check=_now(), metadata=metadata)
