"""
Runner layer - Executes workflows.

Runners take a WorkflowDefinition and execute its tasks.
They handle:
- Task ordering and error policies
- Checkpointing every transition
- Progress reporting via callbacks
- Cancellation, timeouts and reboot requests
"""

from .base import OutputEvent, RunnerCallbacks, RunnerProtocol, RunnerResult
from .context import BodyEvent, TaskContext, TaskRequest, open_context, parse_directive
from .resume import ResumeController
from .sequential import SequentialRunner

__all__ = [
    "BodyEvent",
    "OutputEvent",
    "ResumeController",
    "RunnerCallbacks",
    "RunnerProtocol",
    "RunnerResult",
    "SequentialRunner",
    "TaskContext",
    "TaskRequest",
    "open_context",
    "parse_directive",
]
