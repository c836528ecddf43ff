# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/tasks/component.py

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import List, Optional, Sequence

from seadeploy.config.models import ComponentSpec, EnvoyServerSpec, GlobalOptions, Specification, VolumeServerSpec
from seadeploy.disks import DiskProvisioner, DynamicFolders
from seadeploy.errors import (
    CommandFailedError,
    PreconditionError,
    SeaDeployError,
    VerificationError,
)
from seadeploy.executor.base import Executor, shq
from seadeploy.registry import ComponentRegistry
from seadeploy.render import TemplateRenderer
from seadeploy.utils.execution import ExecutionContext
from .task import BaseTask

log = logging.getLogger(__name__)

HEALTH_TIMEOUT = 60.0
HEALTH_POLL_INTERVAL = 5.0
BACKUP_ROOT = "/var/lib/seadeploy/backups"
BACKUP_TS_FORMAT = "%Y%m%d%H%M%S"


class ComponentTask(BaseTask):
    """Shared plumbing for tasks acting on one component instance."""

    def __init__(
        self,
        task_id: str,
        name: str,
        description: str,
        component: ComponentSpec,
        *,
        executor: Executor,
        registry: ComponentRegistry,
        global_options: GlobalOptions,
        health_timeout: float = HEALTH_TIMEOUT,
        poll_interval: float = HEALTH_POLL_INTERVAL,
    ):
        super().__init__(task_id, name, description)
        self.component = component
        self.executor = executor
        self.registry = registry
        self.g = global_options
        self.health_timeout = health_timeout
        self.poll_interval = poll_interval

    @property
    def host(self) -> str:
        return self.component.host

    @property
    def service(self) -> str:
        return self.component.service_name

    @property
    def binary_path(self) -> str:
        return f"{self.g.bin_dir}/{self.component.binary}"

    def _run(self, cmd: str, ctx: ExecutionContext) -> str:
        return self.executor.execute(self.host, cmd, ctx=ctx)

    def _version_cmd(self, path: str) -> str:
        if isinstance(self.component, EnvoyServerSpec):
            return f"{path} --version"
        return f"{path} version"

    def _binary_is(self, version: str, ctx: ExecutionContext) -> bool:
        try:
            out = self._run(self._version_cmd(self.binary_path), ctx)
        except CommandFailedError:
            return False
        return version in out

    def _install_binary(self, version: str, ctx: ExecutionContext) -> None:
        local = self.registry.get_binary_path(self.component.binary, version)
        if self._binary_is(version, ctx):
            log.info("(%s) %s %s already installed", self.host, self.component.binary, version)
            return
        log.info("(%s) installing %s %s -> %s", self.host, local, version, self.binary_path)
        self.executor.put_file(self.host, local, self.binary_path, mode="0755", ctx=ctx)
        self._run(f"test -x {shq(self.binary_path)}", ctx)

    def _is_active(self, ctx: ExecutionContext) -> bool:
        try:
            out = self._run(f"systemctl is-active {self.service}", ctx)
        except CommandFailedError:
            return False
        return out.strip() == "active"

    def _start(self, ctx: ExecutionContext) -> None:
        self._run(f"sudo systemctl enable {self.service} && sudo systemctl start {self.service}", ctx)

    def _stop(self, ctx: ExecutionContext) -> None:
        self._run(f"sudo systemctl stop {self.service}", ctx)

    def wait_for_active(self, ctx: ExecutionContext) -> None:
        deadline = time.monotonic() + self.health_timeout
        while True:
            if self._is_active(ctx):
                log.info("(%s) %s is active", self.host, self.service)
                return
            if time.monotonic() + self.poll_interval > deadline:
                raise VerificationError(
                    f"{self.service} on {self.host} did not become active within {self.health_timeout:g}s"
                )
            ctx.sleep(self.poll_interval)


class ProvisionDisksTask(BaseTask):
    """
    One provisioning pass on a volume host. Formatted disks are not undone
    on rollback.
    """

    def __init__(self, provisioner: DiskProvisioner):
        host = provisioner.host
        super().__init__(f"provision-disks-{host}", "Provision disks", f"Provision disks on {host}")
        self.provisioner = provisioner

    def execute(self, ctx: ExecutionContext) -> None:
        result = self.provisioner.provision(ctx)
        if result.changed:
            log.info("(%s) %d new folder(s): %s", result.host, len(result.new_folders),
                     ", ".join(f.folder for f in result.new_folders))


class DeployComponentTask(ComponentTask):
    """
    Installs one instance: directories, binary, options file, systemd unit,
    start, wait for active. Volume servers also get every folder provisioned
    on their host.
    """

    def __init__(
        self,
        component: ComponentSpec,
        *,
        version: str,
        peers: Sequence[str],
        executor: Executor,
        registry: ComponentRegistry,
        global_options: GlobalOptions,
        renderer: Optional[TemplateRenderer] = None,
        folders: Optional[DynamicFolders] = None,
        health_timeout: float = HEALTH_TIMEOUT,
        poll_interval: float = HEALTH_POLL_INTERVAL,
    ):
        c = component
        super().__init__(
            f"deploy-{c.role}-{c.host}-{c.port}",
            f"Deploy {c.role}",
            f"Deploy {c.role} on {c.address}",
            c,
            executor=executor,
            registry=registry,
            global_options=global_options,
            health_timeout=health_timeout,
            poll_interval=poll_interval,
        )
        self.version = version
        self.peers = list(peers)
        self.renderer = renderer or TemplateRenderer()
        self.folders = folders

    def execute(self, ctx: ExecutionContext) -> None:
        self._create_directories(ctx)
        self._install_binary(self.version, ctx)
        if self.folders is not None and isinstance(self.component, VolumeServerSpec):
            self._merge_folders(ctx)
        self._write_config(ctx)
        self._write_unit(ctx)
        self._start(ctx)
        self.wait_for_active(ctx)

    def _create_directories(self, ctx: ExecutionContext) -> None:
        user = self.g.service_user
        self._run(
            f"id -u {user} >/dev/null 2>&1 || sudo useradd --system --no-create-home --shell /usr/sbin/nologin {user}",
            ctx,
        )
        for d in (self.g.config_dir, self.component.data_dir, self.g.log_dir):
            self._run(f"sudo mkdir -p {shq(d)} && sudo chown {user}:{user} {shq(d)}", ctx)

    def _merge_folders(self, ctx: ExecutionContext) -> None:
        dynamic = self.folders.get(self.host)
        known = {f.folder for f in self.component.folders}
        for folder in dynamic:
            if folder.folder not in known:
                self.component.folders.append(folder)
                known.add(folder.folder)
        user = self.g.service_user
        for folder in dynamic:
            self._run(f"sudo chown {user}:{user} {shq(folder.folder)}", ctx)

    def _write_config(self, ctx: ExecutionContext) -> None:
        content = self.renderer.component_config(self.component, self.g, self.peers)
        self.executor.put_text(self.host, content, self.component.config_path(self.g), mode="0644", ctx=ctx)

    def _write_unit(self, ctx: ExecutionContext) -> None:
        unit = self.renderer.systemd_unit(self.component, self.g)
        self.executor.put_text(self.host, unit, self.component.unit_path, mode="0644", ctx=ctx)
        self._run("sudo systemctl daemon-reload", ctx)

    def rollback(self, ctx: ExecutionContext) -> None:
        try:
            self._stop(ctx)
        except SeaDeployError as e:
            log.warning("(%s) stopping %s during rollback failed: %s", self.host, self.service, e)
        self._run(
            f"sudo systemctl disable {self.service}; "
            f"sudo rm -f {self.component.unit_path} && sudo systemctl daemon-reload",
            ctx,
        )


class UpgradeComponentTask(ComponentTask):
    """
    Upgrades a running instance in place. Backups are named
    ``<backup_root>/<service>-<YYYYmmddHHMMSS>`` so the newest sorts last.
    """

    def __init__(
        self,
        component: ComponentSpec,
        *,
        target_version: str,
        executor: Executor,
        registry: ComponentRegistry,
        global_options: GlobalOptions,
        backup_root: str = BACKUP_ROOT,
        health_timeout: float = HEALTH_TIMEOUT,
        poll_interval: float = HEALTH_POLL_INTERVAL,
    ):
        c = component
        super().__init__(
            f"upgrade-{c.role}-{c.host}-{c.port}",
            f"Upgrade {c.role}",
            f"Upgrade {c.role} on {c.address} to {target_version}",
            c,
            executor=executor,
            registry=registry,
            global_options=global_options,
            health_timeout=health_timeout,
            poll_interval=poll_interval,
        )
        self.target_version = target_version
        self.backup_root = backup_root
        self.stopped = False

    @property
    def backup_prefix(self) -> str:
        return f"{self.backup_root}/{self.service}-"

    def execute(self, ctx: ExecutionContext) -> None:
        # once this task has stopped the service, retried attempts skip the health gate
        if not self.stopped:
            if not self._is_active(ctx):
                raise PreconditionError(f"{self.service} on {self.host} is not healthy before upgrade")
            # fails before anything is touched when the version is missing
            self.registry.get_binary_path(self.component.binary, self.target_version)
            self._backup_config(ctx)
            self.stopped = True
        else:
            log.info("(%s) resuming upgrade of %s after a failed attempt", self.host, self.service)

        self._stop(ctx)
        self._backup_binary(ctx)
        self._install_binary(self.target_version, ctx)
        self._start(ctx)
        self.wait_for_active(ctx)
        self._verify_version(ctx)

    def _backup_config(self, ctx: ExecutionContext) -> str:
        backup_dir = self.backup_prefix + datetime.now().strftime(BACKUP_TS_FORMAT)
        self._run(
            f"sudo mkdir -p {shq(self.backup_root)} && sudo cp -a {shq(self.g.config_dir)} {shq(backup_dir)}",
            ctx,
        )
        log.info("(%s) config backed up to %s", self.host, backup_dir)
        return backup_dir

    def _backup_binary(self, ctx: ExecutionContext) -> None:
        # an instance sharing the binary may already have upgraded it
        if self._binary_is(self.target_version, ctx):
            return
        self._run(f"sudo cp -p {shq(self.binary_path)} {shq(self.binary_path + '.backup')}", ctx)

    def _verify_version(self, ctx: ExecutionContext) -> None:
        out = self._run(self._version_cmd(self.binary_path), ctx)
        if self.target_version not in out:
            raise VerificationError(
                f"{self.service} on {self.host} reports {out.strip()!r}, expected {self.target_version}"
            )

    def latest_backup(self, ctx: ExecutionContext) -> str:
        out = self._run(f"ls -1d {self.backup_prefix}* 2>/dev/null | sort | tail -n 1", ctx).strip()
        if not out:
            raise SeaDeployError(f"no configuration backup for {self.service} on {self.host}")
        return out

    def rollback(self, ctx: ExecutionContext) -> None:
        try:
            self._stop(ctx)
        except SeaDeployError as e:
            log.warning("(%s) stopping %s during rollback failed: %s", self.host, self.service, e)
        self._run(f"sudo cp -p {shq(self.binary_path + '.backup')} {shq(self.binary_path)}", ctx)
        backup = self.latest_backup(ctx)
        self._run(f"sudo cp -a {shq(backup)}/. {shq(self.g.config_dir)}/", ctx)
        log.info("(%s) restored %s from %s", self.host, self.g.config_dir, backup)
        self._start(ctx)
        self.wait_for_active(ctx)


class ScaleOutTask(BaseTask):
    """Deploys brand-new instances one after another."""

    def __init__(
        self,
        components: Sequence[ComponentSpec],
        *,
        version: str,
        spec: Specification,
        executor: Executor,
        registry: ComponentRegistry,
        renderer: Optional[TemplateRenderer] = None,
        folders: Optional[DynamicFolders] = None,
        health_timeout: float = HEALTH_TIMEOUT,
        poll_interval: float = HEALTH_POLL_INTERVAL,
        task_id: str = "scale-out",
    ):
        self.components: List[ComponentSpec] = list(components)
        names = ", ".join(f"{c.role}@{c.address}" for c in self.components)
        super().__init__(task_id, "Scale out", f"Scale out: {names}")
        self.version = version
        self.spec = spec
        self.executor = executor
        self.registry = registry
        self.renderer = renderer or TemplateRenderer()
        self.folders = folders
        self.health_timeout = health_timeout
        self.poll_interval = poll_interval

    def deploy_task(self, comp: ComponentSpec) -> DeployComponentTask:
        return DeployComponentTask(
            comp,
            version=self.version,
            peers=self.spec.peers_for(comp),
            executor=self.executor,
            registry=self.registry,
            global_options=self.spec.global_options,
            renderer=self.renderer,
            folders=self.folders,
            health_timeout=self.health_timeout,
            poll_interval=self.poll_interval,
        )

    def execute(self, ctx: ExecutionContext) -> None:
        for comp in self.components:
            ctx.check()
            try:
                self.deploy_task(comp).execute(ctx)
            except SeaDeployError:
                log.error("scale-out: deploying %s on %s failed", comp.role, comp.address)
                raise

    def rollback(self, ctx: ExecutionContext) -> None:
        for comp in reversed(self.components):
            svc = comp.service_name
            try:
                self.executor.execute(
                    comp.host, f"sudo systemctl stop {svc} && sudo systemctl disable {svc}", ctx=ctx
                )
            except SeaDeployError as e:
                log.warning("scale-out rollback: %s on %s: %s", svc, comp.host, e)


class StopComponentTask(ComponentTask):
    def __init__(self, component: ComponentSpec, **kw):
        c = component
        super().__init__(f"stop-{c.role}-{c.host}-{c.port}", f"Stop {c.role}", f"Stop {c.role} on {c.address}", c, **kw)

    def execute(self, ctx: ExecutionContext) -> None:
        self._stop(ctx)

    def rollback(self, ctx: ExecutionContext) -> None:
        self._start(ctx)


class ResetComponentTask(ComponentTask):
    """
    Empties the data directories of a stopped instance: its data dir, the
    folders declared for it and any ``extra_dirs`` (provisioned folders of
    its host). The directories themselves and mount points stay.
    """

    def __init__(self, component: ComponentSpec, *, extra_dirs: Sequence[str] = (), **kw):
        c = component
        super().__init__(f"reset-{c.role}-{c.host}-{c.port}", f"Reset {c.role}", f"Reset {c.role} on {c.address}", c, **kw)
        self.extra_dirs = list(extra_dirs)

    @property
    def directories(self) -> List[str]:
        dirs = [self.component.data_dir]
        if isinstance(self.component, VolumeServerSpec):
            dirs.extend(f.folder for f in self.component.folders)
        dirs.extend(self.extra_dirs)
        out: List[str] = []
        for d in dirs:
            if d and d not in out:
                out.append(d)
        return out

    def execute(self, ctx: ExecutionContext) -> None:
        for d in self.directories:
            if d.rstrip("/") == "":
                raise PreconditionError(f"refusing to wipe {d!r} for {self.service} on {self.host}")
        for d in self.directories:
            self._run(f"[ ! -d {shq(d)} ] || sudo find {shq(d)} -mindepth 1 -delete", ctx)
            log.info("(%s) emptied %s", self.host, d)


class StartComponentTask(ComponentTask):
    def __init__(self, component: ComponentSpec, **kw):
        c = component
        super().__init__(f"start-{c.role}-{c.host}-{c.port}", f"Start {c.role}", f"Start {c.role} on {c.address}", c, **kw)

    def execute(self, ctx: ExecutionContext) -> None:
        self._start(ctx)
        self.wait_for_active(ctx)

    def rollback(self, ctx: ExecutionContext) -> None:
        self._stop(ctx)


class DestroyComponentTask(ComponentTask):
    """
    Stops an instance for good and removes its unit and options file. With
    ``remove_data`` the data dir goes too. The shared binary stays, and so
    do provisioned disks. Nothing to roll back.
    """

    def __init__(self, component: ComponentSpec, *, remove_data: bool = False, **kw):
        c = component
        super().__init__(
            f"destroy-{c.role}-{c.host}-{c.port}", f"Destroy {c.role}", f"Destroy {c.role} on {c.address}", c, **kw
        )
        self.remove_data = remove_data

    def execute(self, ctx: ExecutionContext) -> None:
        data_dir = self.component.data_dir
        if self.remove_data and data_dir and data_dir.rstrip("/") == "":
            raise PreconditionError(f"refusing to remove {data_dir!r} on {self.host}")
        try:
            self._stop(ctx)
        except CommandFailedError as e:
            # unit already gone
            log.warning("(%s) stopping %s failed: %s", self.host, self.service, e)
        self._run(
            f"sudo systemctl disable {self.service} >/dev/null 2>&1; "
            f"sudo rm -f {self.component.unit_path} {shq(self.component.config_path(self.g))} "
            f"&& sudo systemctl daemon-reload",
            ctx,
        )
        if self.remove_data and data_dir:
            self._run(f"sudo rm -rf {shq(data_dir)}", ctx)
            log.info("(%s) removed %s", self.host, data_dir)
