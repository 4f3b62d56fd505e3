"""Tests for the backupctl command line."""

import json

import pytest
from click.testing import CliRunner

from backupctl import cli as cli_module
from backupctl.cli import cli
from backupctl.models import JobType
from backupctl.orchestrator import process_owner
from backupctl.storage import FileJobRegistry


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture(autouse=True)
def _reset_orchestrator(monkeypatch):
    monkeypatch.setattr(cli_module, "_orchestrator", None)
    yield
    if cli_module._orchestrator is not None:
        cli_module._orchestrator.close(wait=True)


@pytest.fixture
def config_file(tmp_path):
    def write(**overrides):
        data = {
            "data_dir": str(tmp_path / "state"),
            "storage": {"primary_location": str(tmp_path / "backups")},
            "dump": {"target": "app", "full_command": "printf 'CREATE TABLE {target} (id INTEGER);'"},
        }
        data.update(overrides)
        path = tmp_path / "backupctl.json"
        path.write_text(json.dumps(data))
        return str(path)

    return write


def _invoke(runner, path, *args):
    cli_module._orchestrator = None
    return runner.invoke(cli, ["--config", path, *args])


class TestCli:
    def test_run_full_then_show(self, runner, config_file, tmp_path):
        """Test: run full stores a verified backup that show and list can see."""
        path = config_file()
        result = _invoke(runner, path, "run", "full")
        assert result.exit_code == 0, result.output
        assert "verified" in result.output

        job_id = result.output.split()[2]
        assert (tmp_path / "backups" / "full" / job_id).exists()

        shown = _invoke(runner, path, "show", job_id)
        assert shown.exit_code == 0
        assert json.loads(shown.output)["status"] == "verified"

        listed = _invoke(runner, path, "list", "--type", "full")
        assert job_id in listed.output

    def test_failed_run_exits_nonzero(self, runner, config_file):
        result = _invoke(runner, config_file(), "run", "incremental")
        assert result.exit_code == 1
        assert "No successful full backup" in result.output

    def test_list_empty(self, runner, config_file):
        result = _invoke(runner, config_file(), "list")
        assert result.exit_code == 0
        assert "No jobs found" in result.output

    def test_show_unknown_job(self, runner, config_file):
        result = _invoke(runner, config_file(), "show", "missing")
        assert result.exit_code == 1

    def test_metrics(self, runner, config_file):
        path = config_file()
        _invoke(runner, path, "run", "full")
        result = _invoke(runner, path, "metrics")
        assert result.exit_code == 0
        assert "Total Backups:      1" in result.output
        assert "Retention Compliant: no" in result.output

    def test_verify_all(self, runner, config_file):
        path = config_file(verification={"enabled": False})
        _invoke(runner, path, "run", "full")
        result = _invoke(runner, path, "verify", "--all")
        assert result.exit_code == 0
        assert "Verified 1/1 backup(s)" in result.output

    def test_sweep(self, runner, config_file):
        result = _invoke(runner, config_file(), "sweep")
        assert result.exit_code == 0
        assert "Deleted 0 backup(s)" in result.output

    def test_config_show_masks_key(self, runner, config_file, tmp_path):
        path = config_file(storage={
            "primary_location": str(tmp_path / "backups"),
            "encryption_enabled": True,
            "encryption_key": "11" * 32,
        })
        result = _invoke(runner, path, "config", "show")
        assert result.exit_code == 0
        shown = json.loads(result.output)
        assert shown["storage"]["encryption_key"] == "****"
        assert "11" * 32 not in result.output

    def test_invalid_config(self, runner, config_file):
        path = config_file(retention={"daily_backups": -5})
        result = _invoke(runner, path, "list")
        assert result.exit_code == 1
        assert "Invalid backup configuration" in result.output

    def test_run_files(self, runner, config_file, tmp_path):
        data = tmp_path / "uploads"
        data.mkdir()
        (data / "logo.png").write_bytes(b"png")
        path = config_file(files={"paths": [str(data)], "archive_format": "zip"})

        result = _invoke(runner, path, "run", "files")
        assert result.exit_code == 0, result.output
        assert "verified" in result.output
        job_id = result.output.split()[2]
        assert (tmp_path / "backups" / "files" / job_id).exists()

    def test_cancel(self, runner, config_file, tmp_path):
        path = config_file()
        registry = FileJobRegistry(tmp_path / "state")
        job = registry.create(JobType.FULL, "backups/full/x", {"owner": process_owner()})

        result = _invoke(runner, path, "cancel", job.id)
        assert result.exit_code == 0, result.output
        assert registry.get(job.id).error_message == "Job cancelled by user"

        again = _invoke(runner, path, "cancel", job.id)
        assert again.exit_code == 1
        assert "cannot move from failed" in again.output

    def test_stale_jobs_are_recovered_on_startup(self, runner, config_file, tmp_path):
        path = config_file()
        registry = FileJobRegistry(tmp_path / "state")
        stale = registry.mark_running(registry.create(JobType.FULL, "backups/full/x").id)

        _invoke(runner, path, "list")
        assert registry.get(stale.id).error_message == "Interrupted before completion"
