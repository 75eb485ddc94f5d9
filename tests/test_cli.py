# tests/test_cli.py
import uuid

import pytest
from typer.testing import CliRunner

from modelfarm import __version__
from modelfarm.cli import app
from modelfarm.contracts.enums import TrainingJobStatus
from modelfarm.contracts.training import TrainingJob
from modelfarm.persistence.database import Database
from modelfarm.persistence.repositories import Repositories

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.delenv("MODELFARM_BASE_DIR", raising=False)
    monkeypatch.delenv("MODELFARM_LOG_DIR", raising=False)
    path = tmp_path / "cli.yml"
    path.write_text(
        "log:\n"
        f"  dir: {tmp_path / 'logs'}\n"
        "storage:\n"
        f"  base_dir: {tmp_path / 'farm'}\n",
        encoding="utf-8",
    )
    return path


def _seed_job(tmp_path, status: TrainingJobStatus) -> TrainingJob:
    db = Database(tmp_path / "farm" / "modelfarm.db")
    try:
        return Repositories.open(db).jobs.upsert(
            TrainingJob(name="seeded", configuration_id=uuid.uuid4(), status=status, current_epoch=7)
        )
    finally:
        db.close()


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert f"v{__version__}" in result.output


def test_jobs_empty(config_file):
    result = runner.invoke(app, ["jobs", "--config", str(config_file)])
    assert result.exit_code == 0, result.output
    assert "Training jobs (0)" in result.output


def test_tasks_empty(config_file):
    result = runner.invoke(app, ["tasks", "--config", str(config_file)])
    assert result.exit_code == 0, result.output
    assert "Background tasks (0)" in result.output


def test_reconcile_marks_interrupted_job(tmp_path, config_file):
    job = _seed_job(tmp_path, TrainingJobStatus.TRAINING)

    result = runner.invoke(app, ["reconcile", "--config", str(config_file)])
    assert result.exit_code == 0, result.output
    assert "Reconciled 1 job(s)" in result.output
    assert str(job.id) in result.output

    result = runner.invoke(app, ["jobs", "--status", "failed", "--config", str(config_file)])
    assert result.exit_code == 0, result.output
    assert "Training jobs (1)" in result.output


def test_missing_config(tmp_path):
    result = runner.invoke(app, ["jobs", "--config", str(tmp_path / "missing.yml")])
    assert result.exit_code != 0
    assert isinstance(result.exception, FileNotFoundError)
