"""
Workflow layer - Task and workflow definitions, run state, progress.

Workflows are DATA STRUCTURES that define what to do.
They do NOT execute anything - that's the runner's job.
"""

from .loader import load_workflow_file, workflow_from_dict
from .progress import ProgressTracker
from .state import TaskRecord, WorkflowState, WorkflowStatus, WorkflowSummary, describe_outcome
from .tasks import (
    DataFlag,
    ErrorPolicy,
    ExternalReference,
    InlineBody,
    TaskBody,
    TaskStatus,
    WorkflowDefinition,
    WorkflowTask,
)

__all__ = [
    "DataFlag",
    "ErrorPolicy",
    "ExternalReference",
    "InlineBody",
    "ProgressTracker",
    "TaskBody",
    "TaskRecord",
    "TaskStatus",
    "WorkflowDefinition",
    "WorkflowState",
    "WorkflowStatus",
    "WorkflowSummary",
    "WorkflowTask",
    "describe_outcome",
    "load_workflow_file",
    "workflow_from_dict",
]
