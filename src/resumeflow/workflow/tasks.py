"""Task definitions for workflows."""

import math
import re
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from ..constants import PROGRESS_MAX
from ..errors import ValidationError

WORKFLOW_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

# Interpreters for script references, keyed by lowercase suffix
SCRIPT_INTERPRETERS: dict[str, list[str]] = {
    ".py": [sys.executable],
    ".sh": ["sh"],
    ".bash": ["bash"],
    ".ps1": ["pwsh", "-NoProfile", "-File"],
}


class TaskStatus(Enum):
    """Status of a task in a workflow."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.SKIPPED)


class ErrorPolicy(Enum):
    """What a task failure does to the rest of the workflow."""

    STOP = "stop"
    CONTINUE = "continue"

    @classmethod
    def parse(cls, value: "str | ErrorPolicy") -> "ErrorPolicy":
        if isinstance(value, ErrorPolicy):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown error policy: {value!r} (expected 'stop' or 'continue')") from None


@dataclass(frozen=True)
class InlineBody:
    """
    A Python callable run in a child process.

    The callable receives a TaskContext. It fails the task by raising.
    """

    func: Callable[..., Any]

    def describe(self) -> str:
        return getattr(self.func, "__qualname__", repr(self.func))


@dataclass(frozen=True)
class ExternalReference:
    """
    An external script or command run as a subprocess.

    Either ``path`` (interpreter chosen from the suffix) or an explicit
    ``command`` argv list.
    """

    path: Path | None = None
    command: tuple[str, ...] = ()
    cwd: Path | None = None

    def argv(self) -> list[str]:
        if self.command:
            return list(self.command)
        if self.path is None:
            raise ValidationError("External reference needs a script path or a command")
        interpreter = SCRIPT_INTERPRETERS.get(self.path.suffix.lower(), [])
        return [*interpreter, str(self.path)]

    def describe(self) -> str:
        return str(self.path) if self.path else " ".join(self.command)


TaskBody = InlineBody | ExternalReference


@dataclass
class WorkflowTask:
    """
    A unit of work in a workflow.

    Tasks are data - they describe what to do, not how to do it.
    The runner executes the body and owns the runtime status.
    """

    name: str
    body: TaskBody
    title: str = ""
    # None = equal share of whatever the explicit weights leave over
    weight: float | None = None
    on_error: ErrorPolicy = ErrorPolicy.STOP
    reboot: bool = False
    timeout_seconds: float = 0
    # Predicate over the shared workflow data; True skips the task
    skip_when: Callable[[dict[str, Any]], bool] | None = None
    arguments: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.on_error = ErrorPolicy.parse(self.on_error)
        if not self.title:
            self.title = self.name


@dataclass
class DataFlag:
    """skip_when predicate: skip when a shared data key holds a truthy value."""

    key: str

    def __call__(self, data: dict[str, Any]) -> bool:
        return bool(data.get(self.key))


@dataclass
class WorkflowDefinition:
    """
    An ordered collection of tasks to execute.

    Insertion order is execution order. The definition is frozen once a
    runner starts executing it.
    """

    id: str
    title: str = ""
    tasks: list[WorkflowTask] = field(default_factory=list)
    cancel_grace_seconds: float | None = None
    parameters: dict[str, Any] = field(default_factory=dict)
    # File the definition was loaded from, used by the resume hook
    source_path: Path | None = None
    _frozen: bool = field(default=False, init=False, repr=False)

    def __post_init__(self):
        if not self.title:
            self.title = self.id

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> None:
        self._frozen = True

    def add_task(self, task: WorkflowTask) -> WorkflowTask:
        """Add a task to the workflow."""
        if self._frozen:
            raise ValidationError("Cannot add tasks once execution has started", self.id)
        self.tasks.append(task)
        return task

    def get_task(self, name: str) -> WorkflowTask | None:
        """Get a task by name."""
        for task in self.tasks:
            if task.name == name:
                return task
        return None

    def task_names(self) -> list[str]:
        return [task.name for task in self.tasks]

    def resolved_weights(self) -> list[float]:
        """
        Progress weight of every task.

        Tasks without an explicit weight share what the explicit weights
        leave of 100 equally.
        """
        explicit = sum(t.weight for t in self.tasks if t.weight is not None)
        implicit = [t for t in self.tasks if t.weight is None]
        share = (PROGRESS_MAX - explicit) / len(implicit) if implicit else 0.0
        return [t.weight if t.weight is not None else share for t in self.tasks]

    def validate(self) -> None:
        """
        Check the definition before anything runs.

        Raises:
            ValidationError: on an empty workflow, a bad id, duplicate or
                empty task names, negative timeouts, or weights that do
                not sum to 100
        """
        if not self.id or not WORKFLOW_ID_PATTERN.match(self.id):
            raise ValidationError(f"Invalid workflow id: {self.id!r}")

        if not self.tasks:
            raise ValidationError("Workflow has no tasks", self.id)

        seen: set[str] = set()
        for task in self.tasks:
            if not task.name:
                raise ValidationError("Task name must not be empty", self.id)
            if task.name in seen:
                raise ValidationError(f"Duplicate task name: {task.name}", self.id)
            seen.add(task.name)
            if not isinstance(task.body, InlineBody | ExternalReference):
                raise ValidationError(f"Task {task.name} has no executable body", self.id)
            if isinstance(task.body, ExternalReference) and task.body.path is None and not task.body.command:
                raise ValidationError(f"Task {task.name} has no script path or command", self.id)
            if task.timeout_seconds < 0:
                raise ValidationError(f"Task {task.name} has a negative timeout", self.id)
            if task.weight is not None and task.weight < 0:
                raise ValidationError(f"Task {task.name} has a negative weight", self.id)

        weights = self.resolved_weights()
        if any(w < 0 for w in weights):
            raise ValidationError("Explicit task weights exceed 100", self.id)
        if not math.isclose(sum(weights), PROGRESS_MAX, abs_tol=1e-6):
            raise ValidationError(f"Task weights must sum to 100 (got {sum(weights):g})", self.id)

        if self.cancel_grace_seconds is not None and self.cancel_grace_seconds < 0:
            raise ValidationError("cancel_grace_seconds must not be negative", self.id)
