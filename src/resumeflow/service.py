"""
Workflow service - the control surface used by the CLI and embedding hosts.

    service = WorkflowService(load_config())
    result = service.start(definition)
    service.status(definition.id)
    service.cancel(definition.id)
    service.clear_state(definition.id)
"""

import contextlib
import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from .checkpoint import CheckpointManager, list_checkpoints
from .config import AppConfig
from .errors import CheckpointError, ResumeError, WorkflowLockedError
from .hooks import ResumeHook, create_resume_hook
from .logs import WorkflowLog
from .runners import ResumeController, RunnerCallbacks, RunnerResult, SequentialRunner
from .secure_store import SecureStore, create_backend
from .workflow import WorkflowDefinition, WorkflowState, WorkflowSummary

logger = logging.getLogger(__name__)


@dataclass
class WorkflowListing:
    """One entry of list_workflows()."""

    workflow_id: str
    summary: WorkflowSummary | None = None
    error: str | None = None
    running: bool = False


class WorkflowService:
    """Starts, resumes, cancels and inspects workflows under one state directory."""

    def __init__(
        self,
        config: AppConfig | None = None,
        store: SecureStore | None = None,
        hook: ResumeHook | None = None,
    ):
        self.config = config or AppConfig()
        self.state_dir: Path = self.config.paths.state_dir
        self.store = store or SecureStore(create_backend(self.config.security.backend, self.state_dir))
        self.hook = hook or create_resume_hook(self.config.hooks.backend, self.config.hooks.enabled)
        self._runners: dict[str, SequentialRunner] = {}
        self._lock = threading.Lock()

    def manager(self, workflow_id: str) -> CheckpointManager:
        return CheckpointManager(workflow_id, self.state_dir, self.store)

    def is_running(self, workflow_id: str) -> bool:
        """True if this process or another live engine is running the workflow."""
        with self._lock:
            if workflow_id in self._runners:
                return True
        return self.manager(workflow_id).is_locked_elsewhere()

    # Execution

    def start(
        self,
        definition: WorkflowDefinition,
        callbacks: RunnerCallbacks | None = None,
        discard_invalid: bool = False,
    ) -> RunnerResult:
        """
        Run a workflow.

        An in-flight checkpoint for the same id is resumed; a finished one
        (failed, or completed with failures) is discarded and the workflow
        starts over.

        Raises:
            ValidationError: malformed definition
            ResumeError: existing checkpoint cannot be trusted and
                ``discard_invalid`` is False
            WorkflowLockedError: another engine is running this id
        """
        return self._execute(definition, callbacks, discard_invalid, restart_finished=True)

    def resume(
        self,
        definition: WorkflowDefinition,
        callbacks: RunnerCallbacks | None = None,
        discard_invalid: bool = False,
    ) -> RunnerResult:
        """
        Continue a workflow from its checkpoint (fresh start if none).

        A finished checkpoint is reported as-is without running anything.
        """
        return self._execute(definition, callbacks, discard_invalid, restart_finished=False)

    def _execute(
        self,
        definition: WorkflowDefinition,
        callbacks: RunnerCallbacks | None,
        discard_invalid: bool,
        restart_finished: bool,
    ) -> RunnerResult:
        definition.validate()
        manager = self.manager(definition.id)
        runner = SequentialRunner(manager, self.hook, self.config.engine)
        controller = ResumeController(manager)

        with manager:
            try:
                state: WorkflowState | None = controller.prepare(definition)
            except ResumeError as e:
                if not discard_invalid:
                    raise
                logger.warning(f"Discarding unusable checkpoint: {e}")
                controller.discard()
                state = None

            if restart_finished and state is not None and state.status.is_terminal:
                logger.info(f"Previous run of {definition.id} {state.status.value}; starting over")
                controller.discard()
                state = None

            with self._lock:
                self._runners[definition.id] = runner
            try:
                with self._workflow_log(definition) as wlog:
                    if wlog is not None:
                        runner.add_observer(wlog.callbacks())
                    return runner.run(definition, state=state, callbacks=callbacks)
            finally:
                with self._lock:
                    self._runners.pop(definition.id, None)

    def _workflow_log(self, definition: WorkflowDefinition):
        if not self.config.logging.file_logging:
            return contextlib.nullcontext()
        return WorkflowLog(self.config.paths.logs_dir, definition.id, definition.title)

    # Control

    def cancel(self, workflow_id: str) -> bool:
        """
        Cancel a workflow.

        A run in this process is signalled directly; a run in another
        process gets a cancel request file it polls for. A workflow that is
        not running (e.g. awaiting a restart) has its checkpoint and resume
        hook removed.

        Returns:
            True if there was something to cancel
        """
        with self._lock:
            runner = self._runners.get(workflow_id)
        if runner is not None:
            runner.cancel()
            return True

        manager = self.manager(workflow_id)
        if manager.is_locked_elsewhere():
            manager.request_cancel()
            return True

        if not manager.exists():
            return False

        with manager:
            manager.clear()
        self.hook.deregister(workflow_id)
        logger.info(f"Cancelled idle workflow {workflow_id}")
        return True

    def status(self, workflow_id: str) -> WorkflowSummary | None:
        """
        Summary of the persisted state, or None without a checkpoint.

        Raises:
            CheckpointError: the checkpoint failed verification
        """
        state = self.manager(workflow_id).load()
        return state.summary() if state else None

    def definition_path(self, workflow_id: str) -> Path | None:
        """Workflow file recorded in the checkpoint, if any."""
        state = self.manager(workflow_id).load()
        if state is None or not state.definition_path:
            return None
        return Path(state.definition_path)

    def clear_state(self, workflow_id: str, force: bool = False) -> bool:
        """
        Delete the checkpoint and resume hook of a workflow.

        Raises:
            WorkflowLockedError: the workflow is running and ``force`` is False
        """
        manager = self.manager(workflow_id)
        if force:
            manager.force_unlock()
        elif self.is_running(workflow_id):
            raise WorkflowLockedError("Workflow is running; cancel it first or use force", workflow_id)

        with manager:
            removed = manager.clear()
        self.hook.deregister(workflow_id)
        return removed

    def list_workflows(self) -> list[WorkflowListing]:
        """Every workflow with a checkpoint in the state directory."""
        listings = []
        for workflow_id in list_checkpoints(self.state_dir):
            listing = WorkflowListing(workflow_id=workflow_id, running=self.is_running(workflow_id))
            try:
                listing.summary = self.status(workflow_id)
            except CheckpointError as e:
                listing.error = e.message
            listings.append(listing)
        return listings
