"""Base runner classes and protocols."""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from ..constants import LEVEL_OUTPUT
from ..workflow.state import WorkflowStatus, describe_outcome
from ..workflow.tasks import TaskStatus

if TYPE_CHECKING:
    from ..workflow import WorkflowDefinition, WorkflowState


@dataclass
class OutputEvent:
    """One record of the engine -> observer output stream."""

    workflow_id: str
    task_name: str
    status: TaskStatus
    progress: float  # workflow progress, 0-100
    message: str
    level: str = LEVEL_OUTPUT
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> dict:
        return {
            "workflow_id": self.workflow_id,
            "task_name": self.task_name,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "level": self.level,
            "timestamp": self.timestamp,
        }


@dataclass
class RunnerResult:
    """Result of running a workflow."""

    success: bool
    workflow_id: str
    status: WorkflowStatus = WorkflowStatus.NOT_STARTED
    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_skipped: int = 0
    # Per-task outcomes, kept apart from the workflow status
    task_statuses: dict[str, TaskStatus] = field(default_factory=dict)
    errors: list[str] = field(default_factory=list)
    progress: float = 0.0
    reboot_reason: str | None = None
    checkpoint_writes: int = 0

    @property
    def outcome(self) -> str:
        """Workflow outcome, e.g. "completed with 1 failed task"."""
        return describe_outcome(self.status, self.tasks_failed)

    @property
    def awaiting_resume(self) -> bool:
        return self.status == WorkflowStatus.AWAITING_RESUME


@dataclass
class RunnerCallbacks:
    """
    Callbacks for runner progress reporting.

    Allows CLI to display progress without coupling runner to Rich/UI.
    All callbacks are optional - if None, no callback is made.
    Callbacks run on the engine thread; a slow callback slows the task
    body down rather than losing output.
    """

    # Workflow lifecycle
    on_workflow_start: Callable[[str, int], None] | None = None  # workflow_id, total_tasks
    on_workflow_complete: Callable[[RunnerResult], None] | None = None

    # Task lifecycle
    on_task_start: Callable[[str, str], None] | None = None  # name, title
    on_task_complete: Callable[[str, TaskStatus], None] | None = None  # name, final status

    # Output stream
    on_output: Callable[[OutputEvent], None] | None = None

    # Persistence
    on_checkpoint: Callable[[int], None] | None = None  # sequence number
    on_reboot_requested: Callable[[str], None] | None = None  # reason


class RunnerProtocol(Protocol):
    """Protocol for workflow runners."""

    def run(
        self,
        definition: "WorkflowDefinition",
        state: "WorkflowState | None" = None,
        callbacks: RunnerCallbacks | None = None,
    ) -> RunnerResult:
        """
        Execute a workflow.

        Args:
            definition: The workflow to execute
            state: Checkpointed state to continue from, or None to start fresh
            callbacks: Optional callbacks for progress reporting

        Returns:
            RunnerResult with execution summary
        """
        ...

    def cancel(self) -> None:
        """Ask a running workflow to stop."""
        ...
