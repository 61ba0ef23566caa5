"""Tests for logging setup and per-run workflow logs."""

import logging

import pytest
from rich.logging import RichHandler

import task_bodies
from conftest import WORKFLOW_ID
from resumeflow.config import LoggingConfig
from resumeflow.logs import WorkflowLog, configure_logging
from resumeflow.workflow import ErrorPolicy, InlineBody, WorkflowDefinition, WorkflowTask


@pytest.fixture
def package_logger():
    """Package logger, restored after the test."""
    root = logging.getLogger("resumeflow")
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.usefixtures("package_logger")
class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_rich_console_handler(self):
        configure_logging(LoggingConfig(level="debug"))
        root = logging.getLogger("resumeflow")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0], RichHandler)
        assert root.level == logging.DEBUG

    def test_reconfiguring_replaces_handlers(self):
        configure_logging(LoggingConfig())
        configure_logging(LoggingConfig(level="WARNING", console_logging=False))
        root = logging.getLogger("resumeflow")

        assert root.handlers == []
        assert root.level == logging.WARNING


class TestWorkflowLog:
    """Tests for the per-run workflow log file."""

    def test_run_is_recorded(self, runner, tmp_path):
        definition = WorkflowDefinition(id=WORKFLOW_ID, title="Logged run")
        definition.add_task(WorkflowTask(name="greet", title="Say hello", body=InlineBody(task_bodies.say_hello)))
        definition.add_task(
            WorkflowTask(name="explode", body=InlineBody(task_bodies.boom), on_error=ErrorPolicy.CONTINUE)
        )
        definition.add_task(WorkflowTask(name="skip", body=InlineBody(task_bodies.skip_me)))

        with WorkflowLog(tmp_path / "logs", WORKFLOW_ID, definition.title) as wlog:
            runner.run(definition, callbacks=wlog.callbacks())

        text = wlog.path.read_text()
        assert wlog.path.name.startswith(f"workflow_{WORKFLOW_ID}_")
        assert "Workflow started: Logged run (wf-test)" in text
        assert "TASK START: greet - Say hello" in text
        assert "TASK COMPLETE: greet - Say hello" in text
        assert "[greet] [OUTPUT] hello from greet" in text
        assert "TASK FAILED: explode - explode: RuntimeError: boom" in text
        assert "TASK SKIPPED: skip: skipped" in text
        assert "Workflow finished: completed with 1 failed task (1/3 tasks completed)" in text

    def test_reboot_is_recorded(self, runner, tmp_path):
        definition = WorkflowDefinition(id=WORKFLOW_ID)
        definition.add_task(WorkflowTask(name="install", body=InlineBody(task_bodies.ask_reboot)))
        definition.add_task(WorkflowTask(name="after", body=InlineBody(task_bodies.say_hello)))

        with WorkflowLog(tmp_path, WORKFLOW_ID) as wlog:
            runner.run(definition, callbacks=wlog.callbacks())

        text = wlog.path.read_text()
        assert "REBOOT REQUESTED: driver installed" in text
        assert "Workflow finished: awaiting resume" in text

    def test_log_does_not_reach_package_logger(self, tmp_path, caplog):
        with WorkflowLog(tmp_path, "isolated") as wlog:
            wlog.task_start("a", "A")

        assert "TASK START" not in caplog.text
        assert not wlog._logger.handlers
