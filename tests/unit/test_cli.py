"""
Tests for the CLI module.
"""

from pathlib import Path

import pytest
from conftest import GENERATION, PLATFORM
from typer.testing import CliRunner

from workload_py.cli import app
from workload_py.records import InstallationRecordStore


@pytest.fixture
def runner() -> CliRunner:
    """Fixture to create a CLI runner."""
    return CliRunner()


@pytest.fixture
def config_file(tmp_path: Path, feed: Path) -> Path:
    """A config file pointing at a fresh root and the test feed."""
    path = tmp_path / "config.yaml"
    path.write_text(f"""\
install_root: "{tmp_path / 'root'}"
feed: "{feed}"
platform: "{PLATFORM}"
backend: "file"
default_generation: "{GENERATION}"
lock_timeout: 1
""")
    return path


def test_version(runner: CliRunner) -> None:
    """Test the version command."""
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "Workload-Py version" in result.stdout


def test_install_and_list(runner: CliRunner, config_file: Path) -> None:
    """Installed workloads and packs show up in the listing."""
    result = runner.invoke(app, ["install", "B", "--config", str(config_file)])
    assert result.exit_code == 0
    assert "Installed P1@1.0.0" in result.stdout
    assert "Installed P2@2.0.0" in result.stdout

    result = runner.invoke(app, ["list", "--json", "--config", str(config_file)])
    assert result.exit_code == 0
    assert '"workloads": [\n    "B"\n  ]' in result.stdout
    assert '"id": "P2"' in result.stdout


def test_install_unknown_workload_fails(
    runner: CliRunner, config_file: Path
) -> None:
    args = ["--json", "--config", str(config_file)]
    result = runner.invoke(app, ["install", "nope", *args])
    assert result.exit_code == 1
    assert '"error": "UnknownWorkloadError"' in result.stdout


def test_uninstall_rejected(runner: CliRunner, config_file: Path) -> None:
    """Uninstalling a workload another one extends fails with exit code 1."""
    args = ["--config", str(config_file)]
    assert runner.invoke(app, ["install", "A", "B", *args]).exit_code == 0

    result = runner.invoke(app, ["uninstall", "A", "--json", *args])
    assert result.exit_code == 1
    assert '"error": "WorkloadDependencyError"' in result.stdout

    result = runner.invoke(app, ["uninstall", "B", "A", *args])
    assert result.exit_code == 0
    assert "Removed P1@1.0.0" in result.stdout


def test_generation_required(runner: CliRunner, tmp_path: Path) -> None:
    """Without --generation or a configured default the command fails."""
    path = tmp_path / "config.yaml"
    path.write_text(f'install_root: "{tmp_path / "root"}"\nbackend: "file"\n')
    result = runner.invoke(
        app, ["install", "A", "--config", str(path)], env={"WORKLOAD_GENERATION": ""}
    )
    assert result.exit_code == 1
    assert "Generation not specified" in result.stdout


def test_gc_dry_run(runner: CliRunner, config_file: Path, tmp_path: Path) -> None:
    orphan = tmp_path / "root" / "packs" / "Orphan" / "0.1"
    orphan.mkdir(parents=True)

    result = runner.invoke(app, ["gc", "--dry-run", "--config", str(config_file)])

    assert result.exit_code == 0
    assert "Would remove Orphan@0.1" in result.stdout
    assert orphan.exists()

    result = runner.invoke(app, ["gc", "--config", str(config_file)])
    assert result.exit_code == 0
    assert not orphan.exists()


def test_search(runner: CliRunner, config_file: Path) -> None:
    args = ["--config", str(config_file)]
    assert runner.invoke(app, ["install", "A", *args]).exit_code == 0

    result = runner.invoke(app, ["search", "--json", *args])

    assert result.exit_code == 0
    assert '"C"' in result.stdout
    assert '"base"' not in result.stdout


def test_update_and_repair(runner: CliRunner, config_file: Path) -> None:
    args = ["--config", str(config_file)]
    assert runner.invoke(app, ["install", "A", *args]).exit_code == 0
    assert runner.invoke(app, ["update", *args]).exit_code == 0
    assert runner.invoke(app, ["repair", *args]).exit_code == 0


def test_retire(runner: CliRunner, config_file: Path) -> None:
    args = ["--config", str(config_file)]
    assert runner.invoke(app, ["install", "A", *args]).exit_code == 0

    result = runner.invoke(app, ["retire", GENERATION, *args])

    assert result.exit_code == 0
    assert "Removed P1@1.0.0" in result.stdout


def test_collection_error_is_shown(
    runner: CliRunner, config_file: Path, tmp_path: Path
) -> None:
    """A failed collection after a completed uninstall is printed, not hidden."""
    args = ["--config", str(config_file)]
    assert runner.invoke(app, ["install", "A", *args]).exit_code == 0
    records = InstallationRecordStore(tmp_path / "root")
    records.register_generation("9.0.100")
    records.add_workloads("9.0.100", ["ghost"])

    result = runner.invoke(app, ["uninstall", "A", *args])

    assert result.exit_code == 0
    assert "Garbage collection after uninstall" in result.stdout

    result = runner.invoke(app, ["gc", "--json", *args])
    assert result.exit_code == 1
    assert '"error": "InconsistentStateError"' in result.stdout
