"""
Workflow file loader - builds a WorkflowDefinition from YAML.

Example:

    id: provision-host
    title: Provision host
    cancel_grace_seconds: 10
    parameters:
      environment: staging
    tasks:
      - name: install
        script: scripts/install.sh
        weight: 60
        reboot: true
      - name: configure
        command: ["python", "-m", "configure"]
        on_error: continue
        timeout: 300
        skip_if_data: already_configured
"""

from pathlib import Path
from typing import Any

import yaml

from ..errors import ValidationError
from .tasks import DataFlag, ErrorPolicy, ExternalReference, WorkflowDefinition, WorkflowTask


def _task_from_dict(entry: Any, base_dir: Path, workflow_id: str) -> WorkflowTask:
    if not isinstance(entry, dict):
        raise ValidationError(f"Task entry must be a mapping, got {type(entry).__name__}", workflow_id)

    name = entry.get("name")
    if not name:
        raise ValidationError("Every task needs a name", workflow_id)

    script = entry.get("script")
    command = entry.get("command")
    if bool(script) == bool(command):
        raise ValidationError(f"Task {name} needs exactly one of 'script' or 'command'", workflow_id)

    if script:
        path = Path(script).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        body = ExternalReference(path=path, cwd=base_dir)
    else:
        if isinstance(command, str):
            command = command.split()
        body = ExternalReference(command=tuple(str(part) for part in command), cwd=base_dir)

    weight = entry.get("weight")
    skip_key = entry.get("skip_if_data")

    try:
        return WorkflowTask(
            name=str(name),
            title=str(entry.get("title", "")),
            body=body,
            weight=float(weight) if weight is not None else None,
            on_error=ErrorPolicy.parse(entry.get("on_error", "stop")),
            reboot=bool(entry.get("reboot", False)),
            timeout_seconds=float(entry.get("timeout", 0)),
            skip_when=DataFlag(str(skip_key)) if skip_key else None,
            arguments=dict(entry.get("arguments") or {}),
        )
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Task {name} is malformed: {e}", workflow_id) from e


def workflow_from_dict(data: dict, base_dir: Path | None = None, source_path: Path | None = None) -> WorkflowDefinition:
    """Build and validate a definition from a parsed mapping."""
    if not isinstance(data, dict):
        raise ValidationError("Workflow file must contain a mapping")

    workflow_id = str(data.get("id", ""))
    base_dir = base_dir or Path.cwd()

    tasks = data.get("tasks") or []
    if not isinstance(tasks, list):
        raise ValidationError("'tasks' must be a list", workflow_id)

    grace = data.get("cancel_grace_seconds")
    definition = WorkflowDefinition(
        id=workflow_id,
        title=str(data.get("title", "")),
        cancel_grace_seconds=float(grace) if grace is not None else None,
        parameters=dict(data.get("parameters") or {}),
        source_path=source_path,
    )
    for entry in tasks:
        definition.add_task(_task_from_dict(entry, base_dir, workflow_id))

    definition.validate()
    return definition


def load_workflow_file(path: Path) -> WorkflowDefinition:
    """
    Load a workflow definition from a YAML file.

    Relative script paths resolve against the file's directory.

    Raises:
        ValidationError: unreadable YAML or an invalid definition
    """
    path = path.expanduser().resolve()
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ValidationError(f"Cannot read workflow file {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ValidationError(f"Invalid YAML in {path}: {e}") from e

    return workflow_from_dict(data, base_dir=path.parent, source_path=path)
