# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/seadeploy/cli/app.py
from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple

import typer

from seadeploy.config.loader import load_specification
from seadeploy.config.models import FilerServerSpec, Specification, VolumeServerSpec
from seadeploy.errors import SeaDeployError
from seadeploy.executor.base import Executor
from seadeploy.executor.local import LocalExecutor
from seadeploy.executor.ssh import SSHExecutor
from seadeploy.logging.log import init_logging
from seadeploy.observers.console import ConsoleObserver
from seadeploy.observers.jsonfile import JsonFileObserver
from seadeploy.observers.logger import LoggerObserver
from seadeploy.operation.manager import ClusterOperationManager, DeployOptions, OperationReport, ScaleOutConfig
from seadeploy.registry import ComponentRegistry
from seadeploy.status.collector import StatusCollector, generate_summary
from seadeploy.status.types import StatusCollectionOptions


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="SeaweedFS cluster deployment CLI")


# ------------------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------------------

def build_executor(
    spec: Specification,
    *,
    local: bool,
    ssh_user: str,
    ssh_port: int,
    ssh_key: Optional[Path],
) -> Executor:
    if local:
        return LocalExecutor()
    host_ports = {c.host: c.ssh_port for c in spec.components(include_envoy=True) if c.ssh_port != ssh_port}
    return SSHExecutor(
        ssh_user,
        port=ssh_port,
        host_ports=host_ports,
        identity_file=ssh_key,
    )


def parse_address(value: str, default_port: int) -> Tuple[str, int]:
    host, sep, port = value.rpartition(":")
    if not sep:
        return value, default_port
    try:
        return host, int(port)
    except ValueError:
        raise typer.BadParameter(f"invalid address {value!r}, expected host[:port]")


def start_run(debug: bool, title: str):
    logger, run_id, log_path = init_logging(verbose=debug)

    typer.echo("")
    typer.secho(title, bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo("")

    observers = [
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(log_path.parent / f"{run_id}.jsonl"),
    ]
    return logger, run_id, observers


def print_report(report: OperationReport) -> None:
    if report.dry_run:
        typer.secho("Plan (dry run):", bold=True)
        for line in report.plan:
            typer.echo(f"  {line}")
        return
    color = typer.colors.GREEN if report.ok else typer.colors.RED
    typer.secho(f"{report.operation} {report.cluster}: {report.summary()}", fg=color, bold=True)


def run_operation(fn, *args, **kwargs) -> None:
    try:
        report = fn(*args, **kwargs)
    except SeaDeployError as e:
        typer.secho(f"FAILED: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    print_report(report)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def deploy(
    topology: Path = typer.Argument(..., help="Cluster topology YAML"),
    version: str = typer.Option(..., "--version", help="weed version to deploy"),
    envoy_version: str = typer.Option("", "--envoy-version"),
    ssh_user: str = typer.Option("root", "--ssh-user"),
    ssh_port: int = typer.Option(22, "--ssh-port"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    local: bool = typer.Option(False, "--local", help="Run every command on this machine"),
    registry_root: Optional[Path] = typer.Option(None, "--registry-root"),
    provision_disks: bool = typer.Option(False, "--provision-disks", help="Format and mount unclaimed disks on volume hosts"),
    dynamic_file: Optional[Path] = typer.Option(None, "--dynamic-file", help="YAML record of provisioned folders"),
    retries: int = typer.Option(3, "--retries"),
    rollback_all: bool = typer.Option(False, "--rollback-all", help="Roll back completed phases on failure"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Deploy a new cluster."""
    _, run_id, observers = start_run(debug, "SeaweedFS Deployment Started")
    spec = _load(topology)
    options = DeployOptions(
        max_retries=retries,
        auto_provision_disks=provision_disks,
        dynamic_file=dynamic_file,
        envoy_version=envoy_version,
        rollback_completed_phases=rollback_all,
    )
    with build_executor(spec, local=local, ssh_user=ssh_user, ssh_port=ssh_port, ssh_key=ssh_key) as executor:
        mgr = ClusterOperationManager(
            executor,
            ComponentRegistry(registry_root),
            options=options,
            observers=observers,
            run_id=run_id,
        )
        run_operation(mgr.deploy_cluster, spec, version, dry_run=dry_run)
        for host, folders in mgr.folders.snapshot().items():
            typer.echo(f"  dynamic folders on {host}: {', '.join(f.folder for f in folders)}")


@app.command()
def upgrade(
    topology: Path = typer.Argument(..., help="Cluster topology YAML"),
    version: str = typer.Option(..., "--version", help="Target weed version"),
    ssh_user: str = typer.Option("root", "--ssh-user"),
    ssh_port: int = typer.Option(22, "--ssh-port"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    local: bool = typer.Option(False, "--local"),
    registry_root: Optional[Path] = typer.Option(None, "--registry-root"),
    retries: int = typer.Option(3, "--retries"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Rolling upgrade of a running cluster."""
    _, run_id, observers = start_run(debug, "SeaweedFS Upgrade Started")
    spec = _load(topology)
    with build_executor(spec, local=local, ssh_user=ssh_user, ssh_port=ssh_port, ssh_key=ssh_key) as executor:
        mgr = ClusterOperationManager(
            executor,
            ComponentRegistry(registry_root),
            options=DeployOptions(max_retries=retries),
            observers=observers,
            run_id=run_id,
        )
        run_operation(mgr.upgrade_cluster, spec, version, dry_run=dry_run)


@app.command("scale-out")
def scale_out(
    topology: Path = typer.Argument(..., help="Cluster topology YAML"),
    add_volume: Optional[List[str]] = typer.Option(None, "--add-volume", help="New volume server host[:port]"),
    add_filer: Optional[List[str]] = typer.Option(None, "--add-filer", help="New filer server host[:port]"),
    version: str = typer.Option("", "--version", help="weed version, defaults to the newest installed"),
    dynamic_file: Optional[Path] = typer.Option(None, "--dynamic-file", help="YAML record of provisioned folders"),
    ssh_user: str = typer.Option("root", "--ssh-user"),
    ssh_port: int = typer.Option(22, "--ssh-port"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    local: bool = typer.Option(False, "--local"),
    registry_root: Optional[Path] = typer.Option(None, "--registry-root"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Add volume and filer servers to a running cluster."""
    _, run_id, observers = start_run(debug, "SeaweedFS Scale-Out Started")
    spec = _load(topology)
    config = ScaleOutConfig(version=version)
    for value in add_volume or []:
        host, port = parse_address(value, 8080)
        config.new_volume_servers.append(VolumeServerSpec(host=host, port=port))
    for value in add_filer or []:
        host, port = parse_address(value, 8888)
        config.new_filer_servers.append(FilerServerSpec(host=host, port=port))

    with build_executor(spec, local=local, ssh_user=ssh_user, ssh_port=ssh_port, ssh_key=ssh_key) as executor:
        mgr = ClusterOperationManager(
            executor,
            ComponentRegistry(registry_root),
            options=DeployOptions(dynamic_file=dynamic_file),
            observers=observers,
            run_id=run_id,
        )
        run_operation(mgr.scale_out, spec, config, dry_run=dry_run)


@app.command()
def clean(
    topology: Path = typer.Argument(..., help="Cluster topology YAML"),
    dynamic_file: Optional[Path] = typer.Option(None, "--dynamic-file", help="YAML record of provisioned folders"),
    ssh_user: str = typer.Option("root", "--ssh-user"),
    ssh_port: int = typer.Option(22, "--ssh-port"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    local: bool = typer.Option(False, "--local"),
    registry_root: Optional[Path] = typer.Option(None, "--registry-root"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Stop the cluster, wipe its data and start it again empty."""
    if not (yes or dry_run):
        typer.confirm(f"Wipe all data of the cluster in {topology}?", abort=True)
    _, run_id, observers = start_run(debug, "SeaweedFS Clean Started")
    spec = _load(topology)
    with build_executor(spec, local=local, ssh_user=ssh_user, ssh_port=ssh_port, ssh_key=ssh_key) as executor:
        mgr = ClusterOperationManager(
            executor,
            ComponentRegistry(registry_root),
            options=DeployOptions(dynamic_file=dynamic_file),
            observers=observers,
            run_id=run_id,
        )
        run_operation(mgr.clean_cluster, spec, dry_run=dry_run)


@app.command()
def destroy(
    topology: Path = typer.Argument(..., help="Cluster topology YAML"),
    remove_data: bool = typer.Option(False, "--remove-data", help="Also delete each instance's data dir"),
    ssh_user: str = typer.Option("root", "--ssh-user"),
    ssh_port: int = typer.Option(22, "--ssh-port"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    local: bool = typer.Option(False, "--local"),
    registry_root: Optional[Path] = typer.Option(None, "--registry-root"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    dry_run: bool = typer.Option(False, "--dry-run"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Stop every instance and remove its service."""
    if not (yes or dry_run):
        typer.confirm(f"Destroy the cluster in {topology}?", abort=True)
    _, run_id, observers = start_run(debug, "SeaweedFS Destroy Started")
    spec = _load(topology)
    with build_executor(spec, local=local, ssh_user=ssh_user, ssh_port=ssh_port, ssh_key=ssh_key) as executor:
        mgr = ClusterOperationManager(
            executor,
            ComponentRegistry(registry_root),
            observers=observers,
            run_id=run_id,
        )
        run_operation(mgr.destroy_cluster, spec, remove_data=remove_data, dry_run=dry_run)


@app.command()
def status(
    topology: Path = typer.Argument(..., help="Cluster topology YAML"),
    ssh_user: str = typer.Option("root", "--ssh-user"),
    ssh_port: int = typer.Option(22, "--ssh-port"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    local: bool = typer.Option(False, "--local"),
    metrics: bool = typer.Option(False, "--metrics", help="Collect cpu, memory and disk usage"),
    timeout: float = typer.Option(10.0, "--timeout", help="HTTP health check timeout"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Show the status of every declared component."""
    init_logging(verbose=debug)
    spec = _load(topology)
    options = StatusCollectionOptions(timeout=timeout, include_metrics=metrics, verbose=debug)
    with build_executor(spec, local=local, ssh_user=ssh_user, ssh_port=ssh_port, ssh_key=ssh_key) as executor:
        cluster = StatusCollector(executor).collect(spec, options)

    typer.secho(f"Cluster {cluster.name}: {cluster.state.value}", bold=True)
    for comp in sorted(cluster.components, key=lambda c: (c.type, c.host, c.port)):
        line = f"  {comp.type:<7} {comp.host}:{comp.port:<6} {comp.status:<12}"
        if comp.pid:
            line += f" pid={comp.pid}"
        if comp.health_check.error:
            line += f" ({comp.health_check.error})"
        typer.echo(line)
    for err in cluster.errors:
        typer.secho(f"  error: {err}", fg=typer.colors.YELLOW)

    summary = generate_summary(cluster)
    typer.echo("")
    typer.echo(f"  Components : {summary.total_components}")
    typer.echo(f"  Running    : {summary.running_components}")
    typer.echo(f"  Healthy    : {summary.healthy_components}")
    if summary.cluster_version:
        typer.echo(f"  Version    : {summary.cluster_version}")
    if summary.average_response_time:
        typer.echo(f"  Avg latency: {summary.average_response_time * 1000:.1f} ms")


def _load(topology: Path) -> Specification:
    try:
        return load_specification(topology)
    except SeaDeployError as e:
        typer.secho(str(e), fg=typer.colors.RED, err=True)
        raise typer.Exit(code=2)


if __name__ == "__main__":
    app()
