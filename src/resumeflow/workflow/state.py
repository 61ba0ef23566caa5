"""
Workflow state - the checkpointed snapshot of one workflow run.

The state is plain data: the runner mutates it, the checkpoint manager
persists it, the resume controller restores it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from ..secure_store import Identity
from .tasks import TaskStatus, WorkflowDefinition

STATE_VERSION = "1"


class WorkflowStatus(Enum):
    """Workflow-level lifecycle."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    AWAITING_RESUME = "awaiting_resume"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED)


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class TaskRecord:
    """Runtime state of a single task."""

    name: str
    title: str = ""
    status: TaskStatus = TaskStatus.PENDING
    progress: float = 0.0  # percent of this task
    message: str = ""
    error: str | None = None
    started_at: str | None = None
    ended_at: str | None = None
    output: list[str] = field(default_factory=list)

    @property
    def duration(self) -> float:
        if not self.started_at or not self.ended_at:
            return 0.0
        return (datetime.fromisoformat(self.ended_at) - datetime.fromisoformat(self.started_at)).total_seconds()

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "title": self.title,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "error": self.error,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "output": list(self.output),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "TaskRecord":
        return cls(
            name=data["name"],
            title=data.get("title", ""),
            status=TaskStatus(data.get("status", "pending")),
            progress=float(data.get("progress", 0.0)),
            message=data.get("message", ""),
            error=data.get("error"),
            started_at=data.get("started_at"),
            ended_at=data.get("ended_at"),
            output=list(data.get("output", [])),
        )


@dataclass
class WorkflowSummary:
    """Read-only view of a workflow run, for status queries."""

    workflow_id: str
    title: str
    status: WorkflowStatus
    progress: float
    next_index: int
    total_tasks: int
    sequence: int
    updated_at: str
    tasks: list[tuple[str, TaskStatus]]
    reboot_reason: str | None = None

    @property
    def failed_tasks(self) -> int:
        return sum(1 for _, status in self.tasks if status == TaskStatus.FAILED)

    @property
    def outcome(self) -> str:
        return describe_outcome(self.status, self.failed_tasks)


def describe_outcome(status: WorkflowStatus, failed_tasks: int) -> str:
    """Human-readable workflow outcome, separate from per-task outcomes."""
    if status == WorkflowStatus.COMPLETED and failed_tasks:
        noun = "task" if failed_tasks == 1 else "tasks"
        return f"completed with {failed_tasks} failed {noun}"
    return status.value.replace("_", " ")


@dataclass
class WorkflowState:
    """Checkpointed state of a workflow run."""

    workflow_id: str
    title: str
    tasks: list[TaskRecord]
    account: str
    host: str
    status: WorkflowStatus = WorkflowStatus.NOT_STARTED
    next_index: int = 0
    progress: float = 0.0
    sequence: int = 0
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)
    # Shared data written by task bodies, visible to later tasks
    data: dict[str, Any] = field(default_factory=dict)
    reboot_reason: str | None = None
    reboot_count: int = 0
    definition_path: str | None = None
    version: str = STATE_VERSION

    @classmethod
    def fresh(cls, definition: WorkflowDefinition, identity: Identity) -> "WorkflowState":
        """Initial state for a definition that has never run."""
        return cls(
            workflow_id=definition.id,
            title=definition.title,
            tasks=[TaskRecord(name=t.name, title=t.title) for t in definition.tasks],
            account=identity.account,
            host=identity.host,
            definition_path=str(definition.source_path) if definition.source_path else None,
        )

    @property
    def identity(self) -> Identity:
        return Identity(account=self.account, host=self.host)

    def matches(self, definition: WorkflowDefinition) -> bool:
        """True if this state was produced by the same task list."""
        return self.workflow_id == definition.id and [t.name for t in self.tasks] == definition.task_names()

    def record(self, name: str) -> TaskRecord | None:
        for record in self.tasks:
            if record.name == name:
                return record
        return None

    def count(self, status: TaskStatus) -> int:
        return sum(1 for t in self.tasks if t.status == status)

    def finished_indices(self) -> list[int]:
        return [i for i, t in enumerate(self.tasks) if t.status.is_terminal]

    def summary(self) -> WorkflowSummary:
        return WorkflowSummary(
            workflow_id=self.workflow_id,
            title=self.title,
            status=self.status,
            progress=self.progress,
            next_index=self.next_index,
            total_tasks=len(self.tasks),
            sequence=self.sequence,
            updated_at=self.updated_at,
            tasks=[(t.name, t.status) for t in self.tasks],
            reboot_reason=self.reboot_reason,
        )

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "workflow_id": self.workflow_id,
            "title": self.title,
            "status": self.status.value,
            "next_index": self.next_index,
            "progress": self.progress,
            "sequence": self.sequence,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "account": self.account,
            "host": self.host,
            "data": self.data,
            "reboot_reason": self.reboot_reason,
            "reboot_count": self.reboot_count,
            "definition_path": self.definition_path,
            "tasks": [t.to_dict() for t in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowState":
        return cls(
            workflow_id=data["workflow_id"],
            title=data.get("title", data["workflow_id"]),
            tasks=[TaskRecord.from_dict(t) for t in data.get("tasks", [])],
            account=data["account"],
            host=data["host"],
            status=WorkflowStatus(data.get("status", "not_started")),
            next_index=int(data.get("next_index", 0)),
            progress=float(data.get("progress", 0.0)),
            sequence=int(data["sequence"]),
            created_at=data.get("created_at", ""),
            updated_at=data.get("updated_at", ""),
            data=dict(data.get("data", {})),
            reboot_reason=data.get("reboot_reason"),
            reboot_count=int(data.get("reboot_count", 0)),
            definition_path=data.get("definition_path"),
            version=data.get("version", STATE_VERSION),
        )
