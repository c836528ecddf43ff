# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/operation/manager.py

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from seadeploy.config.loader import load_dynamic_folders, save_dynamic_folders
from seadeploy.config.models import (
    ComponentSpec,
    FilerServerSpec,
    Specification,
    VolumeServerSpec,
)
from seadeploy.disks import DEFAULT_PREFIXES, DiskProvisioner, DynamicFolders
from seadeploy.errors import (
    ComponentNotInstalledError,
    ConfigurationError,
    PhaseFailedError,
    PortConflictError,
    PreconditionError,
    UnhealthyClusterError,
)
from seadeploy.executor.base import Executor
from seadeploy.observers.dispatcher import EventBus
from seadeploy.observers.events import OperationSummary, PlanComputed, new_ctx
from seadeploy.registry import ComponentRegistry
from seadeploy.render import TemplateRenderer
from seadeploy.status.collector import StatusCollector
from seadeploy.status.types import ClusterState, ClusterStatus, StatusCollectionOptions
from seadeploy.tasks.component import (
    BACKUP_ROOT,
    DeployComponentTask,
    DestroyComponentTask,
    ProvisionDisksTask,
    ResetComponentTask,
    ScaleOutTask,
    StartComponentTask,
    StopComponentTask,
    UpgradeComponentTask,
)
from seadeploy.tasks.task import GroupState, TaskGroup, TaskOrchestrator, TaskResult
from seadeploy.utils.execution import ExecutionContext

log = logging.getLogger(__name__)

WEED = "weed"


@dataclass
class DeployOptions:
    max_retries: int = 3
    retry_delay: float = 5.0
    max_workers: int = 16
    health_timeout: float = 60.0
    poll_interval: float = 5.0
    auto_provision_disks: bool = False
    disk_prefixes: Tuple[str, ...] = DEFAULT_PREFIXES
    dynamic_file: Optional[Path] = None
    settle_seconds: float = 2.0
    envoy_version: str = ""
    backup_root: str = BACKUP_ROOT
    rollback_completed_phases: bool = False
    verify: bool = True
    status_timeout: float = 30.0


@dataclass
class ScaleOutConfig:
    version: str = ""
    new_volume_servers: List[VolumeServerSpec] = field(default_factory=list)
    new_filer_servers: List[FilerServerSpec] = field(default_factory=list)

    def components(self) -> List[ComponentSpec]:
        return [*self.new_volume_servers, *self.new_filer_servers]


@dataclass
class OperationReport:
    operation: str
    cluster: str
    plan: List[str] = field(default_factory=list)
    dry_run: bool = False
    results: List[TaskResult] = field(default_factory=list)
    rolled_back: int = 0
    duration: float = 0.0
    error: Optional[PhaseFailedError] = None
    verification: Optional[ClusterStatus] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def summary(self) -> str:
        ok = sum(1 for r in self.results if r.success)
        failed = sum(1 for r in self.results if not r.success)
        return f"OK={ok} FAILED={failed} ROLLED_BACK={self.rolled_back}"


def describe_plan(orchestrator: TaskOrchestrator) -> List[str]:
    lines = []
    for group in orchestrator.groups:
        mode = "parallel" if group.parallel else "sequential"
        lines.append(f"{group.name} ({mode})")
        lines.extend(f"  - {t.description}" for t in group.tasks)
    return lines


class ClusterOperationManager:
    """
    Deploy, upgrade, scale-out, clean and destroy for a whole cluster.

    Each operation assembles phase-ordered task groups, runs them through a
    ``TaskOrchestrator`` and raises ``PhaseFailedError`` on failure. The
    report of the last run stays on ``last_report`` either way.

    Folders provisioned on volume hosts live in ``folders``. With
    ``DeployOptions.dynamic_file`` set they are loaded from that file before
    an operation and written back after a deploy that provisioned new ones.
    """

    def __init__(
        self,
        executor: Executor,
        registry: ComponentRegistry,
        *,
        collector: Optional[StatusCollector] = None,
        renderer: Optional[TemplateRenderer] = None,
        options: Optional[DeployOptions] = None,
        observers: Optional[list] = None,
        run_id: Optional[str] = None,
    ):
        self.executor = executor
        self.registry = registry
        self.collector = collector or StatusCollector(executor)
        self.renderer = renderer or TemplateRenderer()
        self.options = options or DeployOptions()
        self.bus = EventBus(observers or [])
        self.run_id = run_id
        self.folders = DynamicFolders()
        self.last_report: Optional[OperationReport] = None

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------
    def _group(self, name: str, *, parallel: bool, run_ctx: dict) -> TaskGroup:
        o = self.options
        return TaskGroup(
            name,
            parallel=parallel,
            max_retries=o.max_retries,
            retry_delay=o.retry_delay,
            max_workers=o.max_workers,
            bus=self.bus,
            run_ctx=run_ctx,
        )

    def _orchestrator(self, run_ctx: dict) -> TaskOrchestrator:
        return TaskOrchestrator(
            rollback_completed_phases=self.options.rollback_completed_phases,
            bus=self.bus,
            run_ctx=run_ctx,
        )

    def _status_options(self) -> StatusCollectionOptions:
        return StatusCollectionOptions(timeout=self.options.status_timeout, health_check=True)

    def _run(
        self,
        operation: str,
        spec: Specification,
        orchestrator: TaskOrchestrator,
        run_ctx: dict,
        ctx: ExecutionContext,
        dry_run: bool,
    ) -> OperationReport:
        report = OperationReport(operation=operation, cluster=spec.name, plan=describe_plan(orchestrator), dry_run=dry_run)
        self.last_report = report
        self.bus.emit(PlanComputed(phases=[g.name for g in orchestrator.groups], dry_run=dry_run, **run_ctx))
        for line in report.plan:
            log.info("plan: %s", line)
        if dry_run:
            log.info("dry run: no changes made")
            return report

        start = time.monotonic()
        try:
            orchestrator.execute(ctx)
        except PhaseFailedError as e:
            report.error = e
            raise
        finally:
            report.duration = time.monotonic() - start
            report.results = orchestrator.results
            report.rolled_back = sum(
                1
                for g in orchestrator.groups
                if g.state is GroupState.ROLLED_BACK
                for r in g.results
                if r.success
            )
            self.bus.emit(OperationSummary(
                ok=sum(1 for r in report.results if r.success),
                failed=sum(1 for r in report.results if not r.success),
                rolled_back=report.rolled_back,
                error=str(report.error) if report.error else None,
                **run_ctx,
            ))
        log.info("%s of %s completed in %.1fs (%s)", operation, spec.name, report.duration, report.summary())
        return report

    def _require_installed(self, version: str) -> None:
        if not self.registry.is_installed(WEED, version):
            raise ComponentNotInstalledError(WEED, version)

    def _component_kw(self, spec: Specification) -> dict:
        return dict(
            executor=self.executor,
            registry=self.registry,
            global_options=spec.global_options,
            health_timeout=self.options.health_timeout,
            poll_interval=self.options.poll_interval,
        )

    def _load_folders(self) -> None:
        path = self.options.dynamic_file
        if path is None:
            return
        self.folders = DynamicFolders(load_dynamic_folders(path))
        log.debug("loaded dynamic folders from %s", path)

    def _save_folders(self) -> None:
        path = self.options.dynamic_file
        if path is None or not self.folders.changed:
            return
        save_dynamic_folders(path, self.folders.snapshot())
        self.folders.changed = False

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------
    def _deploy_task(self, spec: Specification, comp: ComponentSpec, version: str) -> DeployComponentTask:
        return DeployComponentTask(
            comp,
            version=version,
            peers=spec.peers_for(comp),
            renderer=self.renderer,
            folders=self.folders,
            **self._component_kw(spec),
        )

    def build_deploy(self, spec: Specification, version: str, run_ctx: dict) -> TaskOrchestrator:
        o = self.options
        orch = self._orchestrator(run_ctx)

        if o.auto_provision_disks and spec.volume_servers:
            group = self._group("provision-disks", parallel=True, run_ctx=run_ctx)
            # one pass per host, even with several volume servers on it
            for host in dict.fromkeys(v.host for v in spec.volume_servers):
                group.add_task(ProvisionDisksTask(DiskProvisioner(
                    self.executor,
                    host,
                    volume_size_limit_mb=spec.global_options.volume_size_limit_mb,
                    prefixes=o.disk_prefixes,
                    settle_seconds=o.settle_seconds,
                    registry=self.folders,
                    bus=self.bus,
                    run_ctx=run_ctx,
                )))
            orch.add_group(group)

        if spec.master_servers:
            group = self._group("deploy-masters", parallel=False, run_ctx=run_ctx)
            for m in spec.master_servers:
                group.add_task(self._deploy_task(spec, m, version))
            orch.add_group(group)

        if spec.volume_servers:
            group = self._group("deploy-volumes", parallel=True, run_ctx=run_ctx)
            for v in spec.volume_servers:
                group.add_task(self._deploy_task(spec, v, version))
            orch.add_group(group)

        if spec.filer_servers:
            group = self._group("deploy-filers", parallel=True, run_ctx=run_ctx)
            for f in spec.filer_servers:
                group.add_task(self._deploy_task(spec, f, version))
            orch.add_group(group)

        if spec.envoy_servers:
            group = self._group("deploy-envoy", parallel=False, run_ctx=run_ctx)
            for e in spec.envoy_servers:
                envoy_version = e.version or o.envoy_version
                if not envoy_version:
                    raise ConfigurationError(f"no envoy version for {e.address}")
                group.add_task(self._deploy_task(spec, e, envoy_version))
            orch.add_group(group)

        return orch

    def deploy_cluster(
        self,
        spec: Specification,
        version: str,
        *,
        dry_run: bool = False,
        ctx: Optional[ExecutionContext] = None,
    ) -> OperationReport:
        ctx = ctx or ExecutionContext(dry_run=dry_run)
        run_ctx = new_ctx(spec.name, "deploy", self.run_id)
        log.info("deploying cluster %s version %s", spec.name, version)

        if self.options.auto_provision_disks and self.options.dynamic_file is None:
            raise ConfigurationError("a dynamic folders file is required when provisioning disks")
        if not dry_run:
            self._require_installed(version)
            for e in spec.envoy_servers:
                envoy_version = e.version or self.options.envoy_version
                if envoy_version and not self.registry.is_installed(e.binary, envoy_version):
                    raise ComponentNotInstalledError(e.binary, envoy_version)
        self._load_folders()

        orch = self.build_deploy(spec, version, run_ctx)
        try:
            report = self._run("deploy", spec, orch, run_ctx, ctx, dry_run)
        finally:
            # on failure too: formatted disks stay formatted
            self._save_folders()
        if not dry_run and self.options.verify:
            report.verification = self.verify(spec, ctx=ctx)
        return report

    def verify(
        self,
        spec: Specification,
        components: Optional[Sequence[ComponentSpec]] = None,
        *,
        ctx: Optional[ExecutionContext] = None,
    ) -> ClusterStatus:
        """Post-operation health check. Only warns."""
        if components is None:
            status = self.collector.collect(spec, self._status_options(), ctx)
        else:
            status = self.collector.collect_components(spec.name, components, self._status_options(), ctx)
        healthy = sum(1 for c in status.components if c.is_healthy)
        total = len(status.components)
        if healthy == total:
            log.info("verification: all %d components are healthy", total)
        else:
            log.warning("verification: %d/%d components are healthy", healthy, total)
        for err in status.errors:
            log.warning("verification: %s", err)
        return status

    # ------------------------------------------------------------------
    # Upgrade
    # ------------------------------------------------------------------
    def validate_upgrade(self, spec: Specification, target_version: str, ctx: ExecutionContext) -> ClusterStatus:
        self._require_installed(target_version)
        status = self.collector.collect(spec, self._status_options(), ctx)
        if status.state is not ClusterState.RUNNING:
            unhealthy = [c.name for c in status.components if not c.is_healthy]
            raise UnhealthyClusterError(
                f"cluster {spec.name} is {status.state.value}, refusing to upgrade",
                context={"unhealthy": unhealthy},
            )
        return status

    def _upgrade_task(self, spec: Specification, comp: ComponentSpec, target_version: str) -> UpgradeComponentTask:
        return UpgradeComponentTask(
            comp,
            target_version=target_version,
            executor=self.executor,
            registry=self.registry,
            global_options=spec.global_options,
            backup_root=self.options.backup_root,
            health_timeout=self.options.health_timeout,
            poll_interval=self.options.poll_interval,
        )

    def build_upgrade(self, spec: Specification, target_version: str, run_ctx: dict) -> TaskOrchestrator:
        orch = self._orchestrator(run_ctx)
        phases = (
            ("upgrade-masters", spec.master_servers, False),
            ("upgrade-volumes", spec.volume_servers, False),
            ("upgrade-filers", spec.filer_servers, True),
        )
        for name, comps, parallel in phases:
            if not comps:
                continue
            group = self._group(name, parallel=parallel, run_ctx=run_ctx)
            for c in comps:
                group.add_task(self._upgrade_task(spec, c, target_version))
            orch.add_group(group)
        return orch

    def upgrade_cluster(
        self,
        spec: Specification,
        target_version: str,
        *,
        dry_run: bool = False,
        ctx: Optional[ExecutionContext] = None,
    ) -> OperationReport:
        ctx = ctx or ExecutionContext(dry_run=dry_run)
        run_ctx = new_ctx(spec.name, "upgrade", self.run_id)
        log.info("upgrading cluster %s to %s", spec.name, target_version)

        if not dry_run:
            self.validate_upgrade(spec, target_version, ctx)

        orch = self.build_upgrade(spec, target_version, run_ctx)
        report = self._run("upgrade", spec, orch, run_ctx, ctx, dry_run)
        if not dry_run and self.options.verify:
            report.verification = self.verify(spec, ctx=ctx)
        return report

    # ------------------------------------------------------------------
    # Scale out
    # ------------------------------------------------------------------
    def validate_scale_out(self, spec: Specification, config: ScaleOutConfig) -> None:
        new = config.components()
        if not new:
            raise PreconditionError("no new components to add")
        used = {c.address for c in spec.components(include_envoy=True)}
        for comp in new:
            if comp.address in used:
                raise PortConflictError(f"port conflict: {comp.address} already in use")
            used.add(comp.address)

    def scale_out(
        self,
        spec: Specification,
        config: ScaleOutConfig,
        *,
        dry_run: bool = False,
        ctx: Optional[ExecutionContext] = None,
    ) -> OperationReport:
        ctx = ctx or ExecutionContext(dry_run=dry_run)
        run_ctx = new_ctx(spec.name, "scale-out", self.run_id)
        self.validate_scale_out(spec, config)

        new = config.components()
        for comp in new:
            if not comp.data_dir:
                comp.data_dir = f"{spec.global_options.data_dir}/{comp.role}-{comp.port}"

        version = config.version or self.registry.latest_version(WEED)
        if not version:
            raise ComponentNotInstalledError(WEED, "latest")
        if not dry_run:
            self._require_installed(version)
        self._load_folders()
        log.info("scaling out cluster %s with %d component(s) at %s", spec.name, len(new), version)

        orch = self._orchestrator(run_ctx)
        group = self._group("scale-out", parallel=False, run_ctx=run_ctx)
        group.add_task(ScaleOutTask(
            new,
            version=version,
            spec=spec,
            executor=self.executor,
            registry=self.registry,
            renderer=self.renderer,
            folders=self.folders,
            health_timeout=self.options.health_timeout,
            poll_interval=self.options.poll_interval,
        ))
        orch.add_group(group)

        report = self._run("scale-out", spec, orch, run_ctx, ctx, dry_run)
        if not dry_run and self.options.verify:
            report.verification = self.verify(spec, new, ctx=ctx)
        return report

    # ------------------------------------------------------------------
    # Clean
    # ------------------------------------------------------------------
    def build_clean(self, spec: Specification, run_ctx: dict) -> TaskOrchestrator:
        """Stop filers, volumes, masters; wipe data; start masters first."""
        orch = self._orchestrator(run_ctx)
        kw = self._component_kw(spec)
        stop_phases = (
            ("stop-filers", spec.filer_servers, True),
            ("stop-volumes", spec.volume_servers, True),
            ("stop-masters", spec.master_servers, False),
        )
        for name, comps, parallel in stop_phases:
            if comps:
                group = self._group(name, parallel=parallel, run_ctx=run_ctx)
                for c in comps:
                    group.add_task(StopComponentTask(c, **kw))
                orch.add_group(group)

        group = self._group("reset-data", parallel=True, run_ctx=run_ctx)
        wiped_hosts = set()
        for c in spec.components():
            extra: List[str] = []
            # provisioned folders are shared per host, wiped once
            if isinstance(c, VolumeServerSpec) and c.host not in wiped_hosts:
                wiped_hosts.add(c.host)
                extra = [f.folder for f in self.folders.get(c.host)]
            group.add_task(ResetComponentTask(c, extra_dirs=extra, **kw))
        orch.add_group(group)

        start_phases = (
            ("start-masters", spec.master_servers, False),
            ("start-volumes", spec.volume_servers, True),
            ("start-filers", spec.filer_servers, True),
        )
        for name, comps, parallel in start_phases:
            if comps:
                group = self._group(name, parallel=parallel, run_ctx=run_ctx)
                for c in comps:
                    group.add_task(StartComponentTask(c, **kw))
                orch.add_group(group)
        return orch

    def clean_cluster(
        self,
        spec: Specification,
        *,
        dry_run: bool = False,
        ctx: Optional[ExecutionContext] = None,
    ) -> OperationReport:
        ctx = ctx or ExecutionContext(dry_run=dry_run)
        run_ctx = new_ctx(spec.name, "clean", self.run_id)
        log.info("cleaning cluster %s", spec.name)
        self._load_folders()

        orch = self.build_clean(spec, run_ctx)
        report = self._run("clean", spec, orch, run_ctx, ctx, dry_run)
        if not dry_run and self.options.verify:
            report.verification = self.verify(spec, ctx=ctx)
        return report

    # ------------------------------------------------------------------
    # Destroy
    # ------------------------------------------------------------------
    def build_destroy(self, spec: Specification, remove_data: bool, run_ctx: dict) -> TaskOrchestrator:
        orch = self._orchestrator(run_ctx)
        kw = self._component_kw(spec)
        phases = (
            ("destroy-envoy", spec.envoy_servers, True),
            ("destroy-filers", spec.filer_servers, True),
            ("destroy-volumes", spec.volume_servers, True),
            ("destroy-masters", spec.master_servers, False),
        )
        for name, comps, parallel in phases:
            if not comps:
                continue
            group = self._group(name, parallel=parallel, run_ctx=run_ctx)
            for c in comps:
                group.add_task(DestroyComponentTask(c, remove_data=remove_data, **kw))
            orch.add_group(group)
        return orch

    def destroy_cluster(
        self,
        spec: Specification,
        *,
        remove_data: bool = False,
        dry_run: bool = False,
        ctx: Optional[ExecutionContext] = None,
    ) -> OperationReport:
        ctx = ctx or ExecutionContext(dry_run=dry_run)
        run_ctx = new_ctx(spec.name, "destroy", self.run_id)
        log.info("destroying cluster %s%s", spec.name, " including data" if remove_data else "")

        orch = self.build_destroy(spec, remove_data, run_ctx)
        return self._run("destroy", spec, orch, run_ctx, ctx, dry_run)
