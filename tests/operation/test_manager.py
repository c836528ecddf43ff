# tests/operation/test_manager.py
from __future__ import annotations

import pytest

from conftest import FakeExecutor
from seadeploy.config.loader import load_dynamic_folders, save_dynamic_folders
from seadeploy.config.models import (
    EnvoyServerSpec,
    FilerServerSpec,
    FolderSpec,
    MasterServerSpec,
    Specification,
    VolumeServerSpec,
)
from seadeploy.errors import (
    CommandFailedError,
    ComponentNotInstalledError,
    ConfigurationError,
    PhaseFailedError,
    PortConflictError,
    PreconditionError,
    UnhealthyClusterError,
)
from seadeploy.observers.events import OperationSummary, PlanComputed
from seadeploy.operation.manager import ClusterOperationManager, DeployOptions, ScaleOutConfig
from seadeploy.status.collector import StatusCollector
from seadeploy.status.types import ClusterState


class Capture:
    def __init__(self): self.events = []
    def notify(self, ev): self.events.append(ev)


class OkResponse:
    status_code = 200
    def json(self): return {"Version": "3.68"}


class OkSession:
    def get(self, url, timeout=None): return OkResponse()


def _spec():
    return Specification(
        name="prod",
        master_servers=[MasterServerSpec(host="10.0.0.1")],
        volume_servers=[VolumeServerSpec(host="10.0.0.2"), VolumeServerSpec(host="10.0.0.3")],
        filer_servers=[FilerServerSpec(host="10.0.0.4")],
    )


def _executor(**kw):
    ex = FakeExecutor(**kw)
    ex.responses.setdefault("pgrep", "100\n")
    return ex


def _manager(ex, registry, cap=None, **opts):
    opts.setdefault("retry_delay", 0)
    opts.setdefault("health_timeout", 1)
    opts.setdefault("poll_interval", 0.01)
    return ClusterOperationManager(
        ex,
        registry,
        collector=StatusCollector(ex, session=OkSession()),
        options=DeployOptions(**opts),
        observers=[cap] if cap else None,
        run_id="run-1",
    )


def test_deploy_cluster_end_to_end(registry):
    ex = _executor()
    cap = Capture()
    report = _manager(ex, registry, cap).deploy_cluster(_spec(), "3.68")

    assert report.ok
    assert len(report.results) == 4
    assert all(r.success for r in report.results)
    assert report.summary() == "OK=4 FAILED=0 ROLLED_BACK=0"
    assert report.verification.state is ClusterState.RUNNING

    plan = next(e for e in cap.events if isinstance(e, PlanComputed))
    assert plan.phases == ["deploy-masters", "deploy-volumes", "deploy-filers"]
    assert plan.run_id == "run-1"
    summary = next(e for e in cap.events if isinstance(e, OperationSummary))
    assert (summary.ok, summary.failed) == (4, 0)

    # masters are up before any volume server is touched
    first_volume = next(i for i, (h, _) in enumerate(ex.calls) if h in ("10.0.0.2", "10.0.0.3"))
    master_started = max(i for i, (h, c) in enumerate(ex.calls) if h == "10.0.0.1" and "is-active" in c)
    assert master_started < first_volume


def test_deploy_dry_run_touches_nothing(registry):
    ex = _executor()
    report = _manager(ex, registry).deploy_cluster(_spec(), "9.99", dry_run=True)
    assert report.dry_run
    assert ex.calls == []
    assert report.plan[0] == "deploy-masters (sequential)"
    assert "deploy-volumes (parallel)" in report.plan
    assert "  - Deploy volume on 10.0.0.3:8080" in report.plan


def test_deploy_requires_installed_version(registry):
    ex = _executor()
    with pytest.raises(ComponentNotInstalledError):
        _manager(ex, registry).deploy_cluster(_spec(), "9.99")
    assert ex.calls == []


def test_deploy_failure_rolls_back_the_failing_phase(registry):
    ex = _executor(errors={
        "systemctl start": lambda host, cmd: CommandFailedError(host, cmd, 1, "bad unit") if host == "10.0.0.3" else None,
    })
    mgr = _manager(ex, registry, max_retries=1)

    with pytest.raises(PhaseFailedError) as ei:
        mgr.deploy_cluster(_spec(), "3.68")

    err = ei.value
    assert err.phase == "deploy-volumes"
    assert err.task_id == "deploy-volume-10.0.0.3-8080"
    assert mgr.last_report.error is err
    assert mgr.last_report.rolled_back == 1

    assert any("rm -f" in c for c in ex.commands("10.0.0.2"))
    assert not any("rm -f" in c for c in ex.commands("10.0.0.1"))
    assert ex.commands("10.0.0.4") == []
    starts = [c for c in ex.commands("10.0.0.3") if "systemctl start" in c]
    assert len(starts) == 2


def test_deploy_can_roll_back_completed_phases(registry):
    ex = _executor(errors={
        "systemctl start seaweed-filer": CommandFailedError("10.0.0.4", "start", 1, ""),
    })
    mgr = _manager(ex, registry, max_retries=0, rollback_completed_phases=True)
    with pytest.raises(PhaseFailedError):
        mgr.deploy_cluster(_spec(), "3.68")
    assert any("rm -f" in c for c in ex.commands("10.0.0.1"))
    assert any("rm -f" in c for c in ex.commands("10.0.0.2"))


def _shared_host_spec():
    return Specification(
        master_servers=[MasterServerSpec(host="10.0.0.1")],
        volume_servers=[VolumeServerSpec(host="10.0.0.2", port=8080), VolumeServerSpec(host="10.0.0.2", port=8081)],
    )


def _disk_executor(mounted=False):
    """One raw 100 GiB disk on 10.0.0.2 that turns ext4 once mkfs runs."""
    state = {"formatted": mounted}

    def lsblk(host, cmd):
        if host != "10.0.0.2":
            return ""
        fs, uuid = ("ext4", "u1") if state["formatted"] else ("", "")
        mount = "/data1" if mounted else ""
        return (f'KNAME="sdb" PATH="/dev/sdb" SIZE="{100 * 1024 ** 3}" LABEL="" UUID="{uuid}" '
                f'FSTYPE="{fs}" TYPE="disk" MOUNTPOINT="{mount}" MAJ:MIN="8:16"\n')

    def mkfs(host, cmd):
        state["formatted"] = True
        return ""

    return _executor(responses={"lsblk": lsblk, "mkfs.ext4": mkfs})


def _options_of(ex, port):
    return next(c for _, p, c, _ in ex.uploads if p == f"/etc/seaweed/volume-{port}.options")


def test_auto_provisioning_runs_once_per_host(registry, tmp_path):
    ex = _disk_executor()
    cap = Capture()
    mgr = _manager(ex, registry, cap, auto_provision_disks=True, verify=False, settle_seconds=0,
                   dynamic_file=tmp_path / "dynamic.yaml")
    mgr.deploy_cluster(_shared_host_spec(), "3.68")

    lsblk = [c for h, c in ex.calls if c.startswith("lsblk -b -P -o KNAME")]
    assert len(lsblk) == 2  # discovery, then the uuid lookup
    assert sum("mkfs.ext4" in c for c in ex.commands()) == 1
    plan = next(e for e in cap.events if isinstance(e, PlanComputed))
    assert plan.phases == ["provision-disks", "deploy-masters", "deploy-volumes"]


def test_every_volume_server_on_a_host_gets_provisioned_folders(registry, tmp_path):
    ex = _disk_executor()
    spec = _shared_host_spec()
    dynamic = tmp_path / "dynamic.yaml"
    _manager(ex, registry, auto_provision_disks=True, verify=False, settle_seconds=0,
             dynamic_file=dynamic).deploy_cluster(spec, "3.68")

    for vol in spec.volume_servers:
        assert [f.folder for f in vol.folders] == ["/data1"]
    assert "dir=/data1\n" in _options_of(ex, 8080)
    assert "dir=/data1\n" in _options_of(ex, 8081)
    saved = load_dynamic_folders(dynamic)
    assert [(f.folder, f.block_device, f.uuid) for f in saved["10.0.0.2"]] == [("/data1", "/dev/sdb", "u1")]


def test_second_run_reuses_saved_folders(registry, tmp_path):
    dynamic = tmp_path / "dynamic.yaml"
    save_dynamic_folders(dynamic, {"10.0.0.2": [FolderSpec(folder="/data1", block_device="/dev/sdb", uuid="u1", max=19)]})
    before = dynamic.read_text()

    ex = _disk_executor(mounted=True)
    _manager(ex, registry, auto_provision_disks=True, verify=False, settle_seconds=0,
             dynamic_file=dynamic).deploy_cluster(_shared_host_spec(), "3.68")

    assert not any("mkfs" in c for c in ex.commands())
    assert "dir=/data1\n" in _options_of(ex, 8080)
    assert "max=19\n" in _options_of(ex, 8081)
    assert dynamic.read_text() == before


def test_provisioning_requires_a_dynamic_file(registry):
    ex = _executor()
    with pytest.raises(ConfigurationError, match="dynamic folders file"):
        _manager(ex, registry, auto_provision_disks=True).deploy_cluster(_shared_host_spec(), "3.68")
    assert ex.calls == []


def test_envoy_needs_a_version(registry):
    spec = _spec()
    spec.envoy_servers.append(EnvoyServerSpec(host="10.0.0.9"))
    with pytest.raises(ConfigurationError, match="no envoy version"):
        _manager(_executor(), registry).deploy_cluster(spec, "3.68", dry_run=True)


def test_upgrade_refuses_unhealthy_cluster(registry):
    ex = _executor(responses={"pgrep": lambda host, cmd: "" if host == "10.0.0.3" else "100\n"})
    with pytest.raises(UnhealthyClusterError) as ei:
        _manager(ex, registry).upgrade_cluster(_spec(), "3.69")
    assert "Degraded" in str(ei.value)
    assert not any("systemctl stop" in c for _, c in ex.calls)


def test_upgrade_requires_target_in_registry(registry):
    ex = _executor()
    with pytest.raises(ComponentNotInstalledError):
        _manager(ex, registry).upgrade_cluster(_spec(), "4.00")
    assert ex.calls == []


def test_upgrade_cluster_phases(registry):
    ex = _executor()

    def version(host, cmd):
        upgraded = any(h == host and p == "/usr/local/bin/weed" for h, p, _, _ in ex.uploads)
        return "version 3.69\n" if upgraded else "version 3.68\n"

    ex.responses["weed version"] = version
    cap = Capture()
    report = _manager(ex, registry, cap).upgrade_cluster(_spec(), "3.69")

    assert report.ok
    assert len(report.results) == 4
    plan = next(e for e in cap.events if isinstance(e, PlanComputed))
    assert plan.phases == ["upgrade-masters", "upgrade-volumes", "upgrade-filers"]
    assert {h for h, _, _, _ in ex.uploads} == {"10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.4"}


def test_scale_out_rejects_port_conflict(registry):
    ex = _executor()
    config = ScaleOutConfig(version="3.68", new_volume_servers=[VolumeServerSpec(host="10.0.0.2")])
    with pytest.raises(PortConflictError, match="10.0.0.2:8080 already in use"):
        _manager(ex, registry).scale_out(_spec(), config)
    assert ex.calls == []


def test_scale_out_rejects_duplicates_among_new_servers(registry):
    config = ScaleOutConfig(new_filer_servers=[FilerServerSpec(host="10.0.0.7"), FilerServerSpec(host="10.0.0.7")])
    with pytest.raises(PortConflictError):
        _manager(_executor(), registry).scale_out(_spec(), config)


def test_scale_out_with_nothing_to_add(registry):
    with pytest.raises(PreconditionError, match="no new components"):
        _manager(_executor(), registry).scale_out(_spec(), ScaleOutConfig())


def test_scale_out_defaults_to_latest_version(registry):
    ex = _executor()
    new = VolumeServerSpec(host="10.0.0.8")
    report = _manager(ex, registry).scale_out(_spec(), ScaleOutConfig(new_volume_servers=[new]))

    assert report.ok
    assert [r.task_id for r in report.results] == ["scale-out"]
    assert new.data_dir == "/opt/seaweed/volume-8080"
    binary = next(c for h, p, c, _ in ex.uploads if h == "10.0.0.8" and p == "/usr/local/bin/weed")
    assert binary == registry.get_binary_path("weed", "3.69")
    assert report.verification is not None
    assert [c.host for c in report.verification.components] == ["10.0.0.8"]


def test_clean_stops_wipes_and_restarts_in_order(registry, tmp_path):
    dynamic = tmp_path / "dynamic.yaml"
    save_dynamic_folders(dynamic, {"10.0.0.2": [FolderSpec(folder="/data1")]})
    ex = _executor()
    cap = Capture()
    report = _manager(ex, registry, cap, dynamic_file=dynamic).clean_cluster(_spec())

    assert report.ok
    plan = next(e for e in cap.events if isinstance(e, PlanComputed))
    assert plan.phases == [
        "stop-filers", "stop-volumes", "stop-masters", "reset-data",
        "start-masters", "start-volumes", "start-filers",
    ]
    cmds = ex.commands()
    filer_stop = cmds.index("sudo systemctl stop seaweed-filer-8888")
    master_stop = cmds.index("sudo systemctl stop seaweed-master-9333")
    first_wipe = next(i for i, c in enumerate(cmds) if "find" in c)
    master_start = next(i for i, c in enumerate(cmds) if "systemctl start seaweed-master" in c)
    volume_start = next(i for i, c in enumerate(cmds) if "systemctl start seaweed-volume" in c)
    assert filer_stop < master_stop < first_wipe < master_start < volume_start

    assert "[ ! -d '/data1' ] || sudo find '/data1' -mindepth 1 -delete" in ex.commands("10.0.0.2")
    assert not any("/data1" in c for c in ex.commands("10.0.0.3"))
    assert "[ ! -d '/opt/seaweed/volume-8080' ] || sudo find '/opt/seaweed/volume-8080' -mindepth 1 -delete" \
        in ex.commands("10.0.0.3")
    assert report.verification.state is ClusterState.RUNNING


def test_clean_failure_stops_before_wiping(registry):
    ex = _executor(errors={"systemctl stop seaweed-master": CommandFailedError("10.0.0.1", "stop", 1, "")})
    mgr = _manager(ex, registry, max_retries=0)
    with pytest.raises(PhaseFailedError) as ei:
        mgr.clean_cluster(_spec())
    assert ei.value.phase == "stop-masters"
    assert not any("find" in c for c in ex.commands())


def test_destroy_tears_down_in_reverse_order(registry):
    base = _spec()
    spec = Specification(
        name="prod",
        master_servers=base.master_servers,
        volume_servers=base.volume_servers,
        filer_servers=base.filer_servers,
        envoy_servers=[EnvoyServerSpec(host="10.0.0.9")],
    )
    ex = _executor()
    cap = Capture()
    report = _manager(ex, registry, cap).destroy_cluster(spec, remove_data=True)

    assert report.ok
    assert report.verification is None
    plan = next(e for e in cap.events if isinstance(e, PlanComputed))
    assert plan.phases == ["destroy-envoy", "destroy-filers", "destroy-volumes", "destroy-masters"]
    hosts = [h for h, c in ex.calls if "systemctl stop" in c]
    assert hosts[0] == "10.0.0.9"
    assert hosts[-1] == "10.0.0.1"
    assert "sudo rm -rf '/opt/seaweed/volume-8080'" in ex.commands("10.0.0.2")


def test_destroy_keeps_data_by_default(registry):
    ex = _executor()
    report = _manager(ex, registry).destroy_cluster(_spec())
    assert len(report.results) == 4
    assert not any("rm -rf" in c for c in ex.commands())
