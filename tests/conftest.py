"""Shared pytest fixtures for resumeflow tests."""

import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml
from typer.testing import CliRunner

from resumeflow.checkpoint import CheckpointManager
from resumeflow.config import AppConfig, EngineConfig, HooksConfig, LoggingConfig, PathsConfig
from resumeflow.hooks import NullResumeHook
from resumeflow.runners import SequentialRunner
from resumeflow.secure_store import Identity, InstallationKeyBackend, SecureStore

WORKFLOW_ID = "wf-test"


@pytest.fixture
def cli_runner():
    """Typer CLI test runner."""
    return CliRunner()


@pytest.fixture
def state_dir(tmp_path):
    """Empty state directory."""
    path = tmp_path / "state"
    path.mkdir()
    return path


@pytest.fixture
def identity():
    return Identity(account="tester", host="testhost")


@pytest.fixture
def store(state_dir, identity):
    """Secure store with a per-test installation key."""
    return SecureStore(InstallationKeyBackend.for_state_dir(state_dir), identity=identity)


@pytest.fixture
def manager(state_dir, store):
    """Checkpoint manager for WORKFLOW_ID."""
    return CheckpointManager(WORKFLOW_ID, state_dir, store)


@pytest.fixture
def engine_config():
    """Fast polling and short grace periods for tests."""
    return EngineConfig(cancel_grace_seconds=1.0, output_queue_size=16, poll_interval=0.02)


@pytest.fixture
def hook():
    return NullResumeHook()


@pytest.fixture
def runner(manager, hook, engine_config):
    """Sequential runner bound to the test checkpoint manager."""
    return SequentialRunner(manager, resume_hook=hook, engine_config=engine_config)


@pytest.fixture
def app_config(tmp_path, engine_config):
    """App config rooted in tmp_path with hooks disabled."""
    return AppConfig(
        paths=PathsConfig(state_dir=tmp_path / "state", logs_dir=tmp_path / "logs"),
        engine=engine_config,
        hooks=HooksConfig(enabled=False, backend="none"),
        logging=LoggingConfig(level="WARNING", file_logging=True, console_logging=False),
    )


@pytest.fixture
def config_file(tmp_path):
    """Config file for CLI tests."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "paths": {"state_dir": str(tmp_path / "state"), "logs_dir": str(tmp_path / "logs")},
                "engine": {"poll_interval": 0.02, "cancel_grace_seconds": 1.0},
                "hooks": {"enabled": False, "backend": "none"},
                "logging": {"level": "WARNING", "console_logging": False},
            }
        )
    )
    return path


@pytest.fixture
def write_workflow(tmp_path):
    """Write a YAML workflow file whose tasks run small Python snippets."""

    def _write(workflow_id: str, snippets: list[str], **task_options) -> Path:
        tasks = []
        for index, code in enumerate(snippets, start=1):
            task = {"name": f"step{index}", "command": [sys.executable, "-c", code]}
            task.update(task_options.get(f"step{index}", {}))
            tasks.append(task)
        path = tmp_path / f"{workflow_id}.yaml"
        path.write_text(yaml.safe_dump({"id": workflow_id, "title": f"Workflow {workflow_id}", "tasks": tasks}))
        return path

    return _write


@pytest.fixture
def mock_subprocess():
    """Mock subprocess.run for tests that call external tools."""
    with patch("subprocess.run") as mock_run:
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")
        yield mock_run
