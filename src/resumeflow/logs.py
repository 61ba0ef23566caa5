"""
Logging setup - console logging through Rich, per-run workflow log files.

The workflow log is a plain-text audit trail of one run: task start,
completion, failure, output lines, reboot requests and the final outcome.
"""

import logging
import re
import time
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from .config import LoggingConfig
from .constants import LEVEL_ERROR
from .runners.base import OutputEvent, RunnerCallbacks, RunnerResult
from .workflow.tasks import TaskStatus

WORKFLOW_LOGGER = "resumeflow.runlog"

_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"


def configure_logging(config: LoggingConfig, console: Console | None = None) -> None:
    """Configure the package logger with Rich console output."""
    root = logging.getLogger("resumeflow")

    # Remove any existing handlers to avoid duplicate logs when re-configuring.
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if config.console_logging:
        handler = RichHandler(console=console or Console(stderr=True), show_path=False, rich_tracebacks=True)
        handler.setFormatter(logging.Formatter("%(message)s"))
        root.addHandler(handler)

    root.setLevel(config.level.upper())


def _safe_name(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "_", value).strip("_") or "workflow"


class WorkflowLog:
    """
    Per-run workflow log file.

    Usage:
        with WorkflowLog(logs_dir, "deploy", "Deploy servers") as wlog:
            runner.run(definition, callbacks=wlog.callbacks())
    """

    def __init__(self, logs_dir: Path, workflow_id: str, title: str = ""):
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.workflow_id = workflow_id
        self.title = title or workflow_id
        self.path = logs_dir / f"workflow_{_safe_name(workflow_id)}_{timestamp}.log"
        self._logger = logging.getLogger(f"{WORKFLOW_LOGGER}.{_safe_name(workflow_id)}")
        self._handler: logging.FileHandler | None = None

    def open(self) -> "WorkflowLog":
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handler = logging.FileHandler(self.path, encoding="utf-8")
        self._handler.setFormatter(logging.Formatter(_FILE_FORMAT))
        self._logger.addHandler(self._handler)
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False
        self._logger.info("Workflow started: %s (%s)", self.title, self.workflow_id)
        return self

    def close(self) -> None:
        if self._handler is not None:
            self._logger.removeHandler(self._handler)
            self._handler.close()
            self._handler = None

    def __enter__(self) -> "WorkflowLog":
        return self.open()

    def __exit__(self, *exc) -> None:
        self.close()

    def task_start(self, name: str, title: str) -> None:
        self._logger.info("TASK START: %s - %s", name, title)

    def task_complete(self, name: str, title: str, duration: float) -> None:
        self._logger.info("TASK COMPLETE: %s - %s (%.1fs)", name, title, duration)

    def task_failed(self, name: str, title: str, error: str) -> None:
        self._logger.error("TASK FAILED: %s - %s: %s", name, title, error)

    def task_skipped(self, name: str, reason: str) -> None:
        self._logger.info("TASK SKIPPED: %s: %s", name, reason)

    def output(self, name: str, level: str, message: str) -> None:
        self._logger.debug("[%s] [%s] %s", name, level, message)

    def reboot(self, reason: str) -> None:
        self._logger.warning("REBOOT REQUESTED: %s", reason)

    def workflow_complete(self, outcome: str, completed: int, total: int) -> None:
        self._logger.info("Workflow finished: %s (%d/%d tasks completed)", outcome, completed, total)

    def callbacks(self) -> RunnerCallbacks:
        """Runner callbacks that write this log."""
        titles: dict[str, str] = {}
        started: dict[str, float] = {}
        last_error: dict[str, str] = {}

        def on_task_start(name: str, title: str) -> None:
            titles[name] = title
            started[name] = time.monotonic()
            self.task_start(name, title)

        def on_task_complete(name: str, status: TaskStatus) -> None:
            title = titles.get(name, name)
            if status == TaskStatus.COMPLETED:
                self.task_complete(name, title, time.monotonic() - started.get(name, time.monotonic()))
            elif status == TaskStatus.FAILED:
                self.task_failed(name, title, last_error.get(name, "task body failed"))
            else:
                self.task_skipped(name, status.value)

        def on_output(event: OutputEvent) -> None:
            if event.level == LEVEL_ERROR:
                last_error[event.task_name] = event.message
            self.output(event.task_name, event.level, event.message)

        def on_workflow_complete(result: RunnerResult) -> None:
            self.workflow_complete(result.outcome, result.tasks_completed, len(result.task_statuses))

        return RunnerCallbacks(
            on_task_start=on_task_start,
            on_task_complete=on_task_complete,
            on_output=on_output,
            on_reboot_requested=self.reboot,
            on_workflow_complete=on_workflow_complete,
        )
