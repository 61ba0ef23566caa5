"""
Resume controller - picks a workflow up from its checkpoint.

Never resumes from a checkpoint that failed verification: the caller gets
a ResumeError and decides whether to discard() and start over, or abort.
"""

import logging

from ..checkpoint import CheckpointManager
from ..errors import CheckpointError, ResumeError
from ..workflow import TaskStatus, WorkflowDefinition, WorkflowState
from .base import RunnerCallbacks, RunnerResult
from .sequential import SequentialRunner

logger = logging.getLogger(__name__)


class ResumeController:
    """Loads and verifies the checkpoint of one workflow id."""

    def __init__(self, checkpoint: CheckpointManager):
        self.checkpoint = checkpoint

    def has_checkpoint(self) -> bool:
        return self.checkpoint.exists()

    def prepare(self, definition: WorkflowDefinition) -> WorkflowState:
        """
        State to run ``definition`` from.

        Returns a fresh state when there is no checkpoint.

        Raises:
            ResumeError: the checkpoint cannot be verified or decrypted, or
                was written for a different task list
            StaleStateError: the checkpoint went backwards
        """
        try:
            state = self.checkpoint.load()
        except CheckpointError as e:
            raise ResumeError(f"Checkpoint cannot be trusted: {e.message}", definition.id) from e

        if state is None:
            logger.info(f"No checkpoint for {definition.id}; starting fresh")
            return WorkflowState.fresh(definition, self.checkpoint.store.identity)

        if not state.matches(definition):
            raise ResumeError(
                f"Checkpoint tasks {[t.name for t in state.tasks]} do not match definition {definition.task_names()}",
                definition.id,
            )

        done = sum(1 for t in state.tasks if t.status.is_terminal)
        interrupted = [t.name for t in state.tasks if t.status == TaskStatus.RUNNING]
        logger.info(
            f"Resuming {definition.id} at task {state.next_index + 1}/{len(state.tasks)} "
            f"({done} finished, sequence {state.sequence})"
        )
        if interrupted:
            logger.info(f"Interrupted task(s) will run again: {', '.join(interrupted)}")
        return state

    def discard(self) -> bool:
        """Drop the checkpoint so the workflow can start over."""
        logger.warning(f"Discarding checkpoint for {self.checkpoint.workflow_id}")
        return self.checkpoint.clear()

    def resume(
        self,
        runner: SequentialRunner,
        definition: WorkflowDefinition,
        callbacks: RunnerCallbacks | None = None,
    ) -> RunnerResult:
        """Verify the checkpoint and continue ``definition`` where it stopped."""
        owns_lock = not self.checkpoint.locked
        if owns_lock:
            self.checkpoint.acquire()
        try:
            state = self.prepare(definition)
            return runner.run(definition, state=state, callbacks=callbacks)
        finally:
            if owns_lock:
                self.checkpoint.release()
