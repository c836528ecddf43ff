import logging
import textwrap
from pathlib import Path

import pytest
from typer.testing import CliRunner

from seadeploy.cli.app import app, parse_address

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    yield
    # init_logging points handlers at the runner's streams
    logger = logging.getLogger("seadeploy")
    logger.handlers.clear()
    logger.propagate = True


def _topology(tmp_path: Path) -> Path:
    f = tmp_path / "cluster.yaml"
    f.write_text(textwrap.dedent("""
        name: lab
        master_servers:
          - host: 127.0.0.1
        volume_servers:
          - host: 127.0.0.1
            port: 8081
    """))
    return f


def test_deploy_dry_run_prints_plan(tmp_path: Path):
    result = runner.invoke(app, ["deploy", str(_topology(tmp_path)), "--version", "3.68", "--local", "--dry-run"])
    assert result.exit_code == 0, result.output
    assert "Plan (dry run):" in result.output
    assert "deploy-masters (sequential)" in result.output
    assert "Deploy volume on 127.0.0.1:8081" in result.output
    assert list((tmp_path / "home" / ".seadeploy" / "logs").glob("*.jsonl"))


def test_missing_topology_exits_with_error(tmp_path: Path):
    result = runner.invoke(app, ["status", str(tmp_path / "missing.yaml"), "--local"])
    assert result.exit_code == 2


def test_deploy_without_installed_binary_fails(tmp_path: Path):
    result = runner.invoke(app, [
        "deploy", str(_topology(tmp_path)), "--version", "3.68", "--local",
        "--registry-root", str(tmp_path / "empty"),
    ])
    assert result.exit_code == 1
    assert "not installed" in result.output


def test_parse_address():
    assert parse_address("10.0.0.5", 8080) == ("10.0.0.5", 8080)
    assert parse_address("10.0.0.5:18080", 8080) == ("10.0.0.5", 18080)


def test_provision_disks_requires_dynamic_file(tmp_path: Path):
    result = runner.invoke(app, [
        "deploy", str(_topology(tmp_path)), "--version", "3.68", "--local", "--provision-disks", "--dry-run",
    ])
    assert result.exit_code == 1
    assert "dynamic folders file" in result.output


def test_clean_dry_run_prints_phases(tmp_path: Path):
    result = runner.invoke(app, ["clean", str(_topology(tmp_path)), "--local", "--dry-run"])
    assert result.exit_code == 0, result.output
    assert "stop-volumes (parallel)" in result.output
    assert "reset-data (parallel)" in result.output
    assert "Start master on 127.0.0.1:9333" in result.output


def test_destroy_asks_for_confirmation(tmp_path: Path):
    result = runner.invoke(app, ["destroy", str(_topology(tmp_path)), "--local"], input="n\n")
    assert result.exit_code == 1
    assert "Aborted" in result.output


def test_destroy_dry_run_with_yes(tmp_path: Path):
    result = runner.invoke(app, ["destroy", str(_topology(tmp_path)), "--local", "--yes", "--dry-run", "--remove-data"])
    assert result.exit_code == 0, result.output
    assert "destroy-volumes (parallel)" in result.output
    assert "Destroy master on 127.0.0.1:9333" in result.output
