"""Sequential runner - Executes workflow tasks one at a time, checkpointing every transition."""

import logging
import queue
import subprocess
import threading
import time
from dataclasses import dataclass
from datetime import datetime

from ..checkpoint import CheckpointManager
from ..config import EngineConfig
from ..constants import LEVEL_ERROR, LEVEL_INFO
from ..errors import ResumeError, ResumeflowError, TaskExecutionError, ValidationError
from ..hooks import NullResumeHook, ResumeHook
from ..workflow import (
    ErrorPolicy,
    ProgressTracker,
    TaskRecord,
    TaskStatus,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    WorkflowTask,
)
from .base import OutputEvent, RunnerCallbacks, RunnerResult
from .context import EOF, BodyEvent, TaskRequest, open_context

logger = logging.getLogger(__name__)

# How a single task attempt ended
OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_CANCELLED = "cancelled"


def _now() -> str:
    return datetime.now().isoformat()


@dataclass
class TaskOutcome:
    """What happened to one task body."""

    kind: str = OUTCOME_COMPLETED
    error: str | None = None
    skip_reason: str | None = None
    reboot_reason: str | None = None
    exit_code: int | None = None


class SequentialRunner:
    """
    Sequential workflow runner.

    Executes tasks one at a time in definition order, each in its own
    process. Every task transition is persisted through the checkpoint
    manager; a task's terminal transition is committed together with the
    start of the next task, or with the workflow outcome.
    Uses callbacks for progress reporting without coupling to UI.
    """

    def __init__(
        self,
        checkpoint: CheckpointManager,
        resume_hook: ResumeHook | None = None,
        engine_config: EngineConfig | None = None,
    ):
        """
        Initialize the runner.

        Args:
            checkpoint: Manager owning the checkpoint of the workflow to run
            resume_hook: Restart trigger registered on reboot requests
            engine_config: Grace period, queue size and polling settings
        """
        self.checkpoint = checkpoint
        self.resume_hook = resume_hook or NullResumeHook()
        self.engine = engine_config or EngineConfig()
        self._observers: list[RunnerCallbacks] = []
        self._cancel = threading.Event()

    def add_observer(self, callbacks: RunnerCallbacks) -> None:
        """Attach callbacks that receive every event of every run."""
        self._observers.append(callbacks)

    def remove_observer(self, callbacks: RunnerCallbacks) -> None:
        if callbacks in self._observers:
            self._observers.remove(callbacks)

    def cancel(self) -> None:
        """Request cancellation of the running workflow (thread-safe)."""
        self._cancel.set()

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set() or self.checkpoint.cancel_requested()

    def run(
        self,
        definition: WorkflowDefinition,
        state: WorkflowState | None = None,
        callbacks: RunnerCallbacks | None = None,
    ) -> RunnerResult:
        """
        Execute a workflow.

        Args:
            definition: The workflow to execute
            state: Checkpointed state to continue from, or None to start fresh
            callbacks: Optional callbacks for this run only

        Returns:
            RunnerResult with per-task outcomes and the workflow outcome

        Raises:
            ValidationError: malformed definition (nothing runs, nothing is written)
            ResumeError: ``state`` was produced by a different task list
            WorkflowLockedError: another engine owns this workflow id
        """
        definition.validate()
        if definition.id != self.checkpoint.workflow_id:
            raise ValidationError(f"Runner is bound to workflow {self.checkpoint.workflow_id}", definition.id)
        if state is not None and not state.matches(definition):
            raise ResumeError("Checkpoint task list does not match the definition", definition.id)
        definition.freeze()

        observers = [*self._observers, callbacks] if callbacks else list(self._observers)

        owns_lock = not self.checkpoint.locked
        if owns_lock:
            self.checkpoint.acquire()
        try:
            # A cancel marker left before this engine took the lock is stale
            self.checkpoint.clear_cancel_request()
            return self._run_locked(definition, state, observers)
        finally:
            self._cancel.clear()
            if owns_lock:
                self.checkpoint.release()

    # Run loop

    def _run_locked(
        self, definition: WorkflowDefinition, state: WorkflowState | None, observers: list[RunnerCallbacks]
    ) -> RunnerResult:
        writes_before = self.checkpoint.write_count
        if state is None:
            state = WorkflowState.fresh(definition, self.checkpoint.store.identity)

        result = RunnerResult(success=False, workflow_id=definition.id)

        if state.status.is_terminal:
            logger.info(f"Workflow {definition.id} already {state.status.value}; nothing to run")
            return self._summarize(result, state, writes_before)

        self._prepare_resume(state)
        tracker = ProgressTracker(definition.resolved_weights(), state.progress)
        self._emit(observers, "on_workflow_start", definition.id, len(definition.tasks))
        logger.info(f"Running workflow {definition.id} from task {state.next_index + 1}/{len(definition.tasks)}")

        finished = False
        for index in range(state.next_index, len(definition.tasks)):
            task = definition.tasks[index]
            record = state.tasks[index]
            if record.status.is_terminal:
                continue

            if self.cancel_requested:
                self._finish_cancelled(state, index, observers)
                finished = True
                break

            if task.skip_when is not None and task.skip_when(dict(state.data)):
                self._mark_skipped(state, index, "Skipped: condition met", observers)
                continue

            self._start_task(state, index, tracker, observers)
            outcome = self._execute(definition, task, index, state, tracker, observers)
            if self._apply_outcome(definition, task, index, state, tracker, outcome, result, observers):
                finished = True
                break

        if not finished:
            self._finish_completed(state, tracker, observers)

        result = self._summarize(result, state, writes_before)
        self._emit(observers, "on_workflow_complete", result)
        return result

    def _prepare_resume(self, state: WorkflowState) -> None:
        for record in state.tasks:
            if record.status == TaskStatus.RUNNING:
                logger.warning(f"Task {record.name} was interrupted; running it again")
                record.status = TaskStatus.PENDING
                record.progress = 0.0
                record.started_at = None
                record.message = "Interrupted; restarted"
        if state.status == WorkflowStatus.AWAITING_RESUME:
            logger.info(f"Resuming {state.workflow_id} after restart ({state.reboot_reason})")
            state.reboot_reason = None
        state.status = WorkflowStatus.RUNNING

    def _start_task(self, state: WorkflowState, index: int, tracker: ProgressTracker, observers) -> None:
        record = state.tasks[index]
        record.status = TaskStatus.RUNNING
        record.started_at = _now()
        record.ended_at = None
        record.progress = 0.0
        record.error = None
        record.output = []
        state.next_index = index
        state.progress = tracker.begin(index, state.finished_indices())

        # Also commits the previous task's terminal transition
        self._save(state, observers)
        logger.info(f"Task {record.name} started")
        self._emit(observers, "on_task_start", record.name, record.title)

    def _mark_skipped(self, state: WorkflowState, index: int, reason: str, observers) -> None:
        record = state.tasks[index]
        record.status = TaskStatus.SKIPPED
        record.message = reason
        record.ended_at = _now()
        state.next_index = index + 1
        logger.info(f"Task {record.name} skipped: {reason}")
        self._emit(observers, "on_task_complete", record.name, TaskStatus.SKIPPED)

    def _skip_remaining(self, state: WorkflowState, after: int, reason: str) -> list[TaskRecord]:
        skipped = []
        for record in state.tasks[after + 1 :]:
            if record.status == TaskStatus.PENDING:
                record.status = TaskStatus.SKIPPED
                record.message = reason
                skipped.append(record)
        state.next_index = len(state.tasks)
        return skipped

    def _apply_outcome(
        self,
        definition: WorkflowDefinition,
        task: WorkflowTask,
        index: int,
        state: WorkflowState,
        tracker: ProgressTracker,
        outcome: TaskOutcome,
        result: RunnerResult,
        observers,
    ) -> bool:
        """Record the outcome of a task. Returns True when the run is over."""
        record = state.tasks[index]
        record.ended_at = _now()

        if outcome.kind == OUTCOME_CANCELLED:
            record.status = TaskStatus.SKIPPED
            record.message = "Cancelled"
            self._emit(observers, "on_task_complete", record.name, TaskStatus.SKIPPED)
            self._finish_cancelled(state, index + 1, observers)
            return True

        if outcome.kind == OUTCOME_FAILED:
            error = TaskExecutionError(outcome.error or "Task failed", definition.id, task.name)
            record.status = TaskStatus.FAILED
            record.error = error.message
            state.progress = tracker.freeze()
            logger.error(f"Task {task.name} failed: {error.message}")
            self._emit(observers, "on_task_complete", record.name, TaskStatus.FAILED)

            if task.on_error == ErrorPolicy.STOP:
                for skipped in self._skip_remaining(state, index, f"Skipped: {task.name} failed"):
                    self._emit(observers, "on_task_complete", skipped.name, TaskStatus.SKIPPED)
                state.status = WorkflowStatus.FAILED
                # Failure, bulk skip and workflow outcome in one write
                self._save(state, observers)
                self._deregister_hook(state)
                return True

            state.next_index = index + 1
            return False

        if outcome.kind == OUTCOME_SKIPPED:
            record.status = TaskStatus.SKIPPED
            record.message = outcome.skip_reason or "Skipped by task"
            state.progress = tracker.freeze()
            state.next_index = index + 1
            logger.info(f"Task {task.name} skipped: {record.message}")
            self._emit(observers, "on_task_complete", record.name, TaskStatus.SKIPPED)
            return False

        record.status = TaskStatus.COMPLETED
        record.progress = 100.0
        state.progress = tracker.complete()
        state.next_index = index + 1
        logger.info(f"Task {task.name} completed")
        self._emit(observers, "on_task_complete", record.name, TaskStatus.COMPLETED)

        reboot_reason = outcome.reboot_reason or ("Reboot required to continue" if task.reboot else None)
        if reboot_reason:
            self._finish_reboot(definition, state, reboot_reason, result, observers)
            return True
        return False

    # Workflow outcomes

    def _finish_completed(self, state: WorkflowState, tracker: ProgressTracker, observers) -> None:
        failed = state.count(TaskStatus.FAILED)
        state.status = WorkflowStatus.COMPLETED
        state.next_index = len(state.tasks)
        # A finished workflow reports 100 even when tasks failed or were skipped
        state.progress = tracker.finish()
        self._save(state, observers)
        self._deregister_hook(state)

        if failed:
            logger.warning(f"Workflow {state.workflow_id} completed with {failed} failed task(s)")
        else:
            logger.info(f"Workflow {state.workflow_id} completed")
            self.checkpoint.clear()

    def _finish_cancelled(self, state: WorkflowState, from_index: int, observers) -> None:
        for record in self._skip_remaining(state, from_index - 1, "Skipped: workflow cancelled"):
            self._emit(observers, "on_task_complete", record.name, TaskStatus.SKIPPED)
        state.status = WorkflowStatus.CANCELLED
        self._save(state, observers)
        self.checkpoint.clear()
        self._deregister_hook(state)
        logger.warning(f"Workflow {state.workflow_id} cancelled")

    def _finish_reboot(
        self, definition: WorkflowDefinition, state: WorkflowState, reason: str, result: RunnerResult, observers
    ) -> None:
        state.status = WorkflowStatus.AWAITING_RESUME
        state.reboot_reason = reason
        state.reboot_count += 1
        self._save(state, observers)

        definition_path = state.definition_path or definition.source_path
        try:
            self.resume_hook.register(state.workflow_id, self.checkpoint.checkpoint_path, definition_path)
        except (OSError, ValueError, ResumeflowError, subprocess.SubprocessError) as e:
            result.errors.append(f"Resume hook registration failed: {e}")
            logger.error(f"Could not register resume hook for {state.workflow_id}: {e}")

        logger.warning(f"Workflow {state.workflow_id} awaiting restart: {reason}")
        self._emit(observers, "on_reboot_requested", reason)

    def _deregister_hook(self, state: WorkflowState) -> None:
        try:
            self.resume_hook.deregister(state.workflow_id)
        except (OSError, ResumeflowError, subprocess.SubprocessError) as e:
            logger.warning(f"Could not remove resume hook for {state.workflow_id}: {e}")

    # Task body execution

    def _execute(
        self,
        definition: WorkflowDefinition,
        task: WorkflowTask,
        index: int,
        state: WorkflowState,
        tracker: ProgressTracker,
        observers,
    ) -> TaskOutcome:
        """Run one task body and drain its events until it exits."""
        request = TaskRequest(
            workflow_id=definition.id,
            task_name=task.name,
            task_index=index,
            task_count=len(definition.tasks),
            parameters={**definition.parameters, **task.arguments},
            data=dict(state.data),
        )
        grace = (
            definition.cancel_grace_seconds
            if definition.cancel_grace_seconds is not None
            else self.engine.cancel_grace_seconds
        )
        outcome = TaskOutcome()

        context = open_context(task.body, self.engine.output_queue_size)
        try:
            context.start(request)
        except (OSError, ValueError, ResumeflowError) as e:
            return TaskOutcome(kind=OUTCOME_FAILED, error=f"Could not start {task.body.describe()}: {e}")

        deadline = time.monotonic() + task.timeout_seconds if task.timeout_seconds else None
        stop_reason: str | None = None
        kill_at: float | None = None
        abandon_at: float | None = None
        eofs = 0

        try:
            while eofs < context.reader_count or context.is_alive():
                if abandon_at is not None and time.monotonic() >= abandon_at and not context.is_alive():
                    logger.warning(f"Task {task.name} output still open after termination; not waiting")
                    break

                try:
                    event = context.events.get(timeout=self.engine.poll_interval)
                except queue.Empty:
                    event = None

                if event is EOF:
                    eofs += 1
                elif event is not None:
                    self._handle_event(event, state, index, tracker, outcome, observers)

                now = time.monotonic()
                if stop_reason is None:
                    if self.cancel_requested:
                        stop_reason = OUTCOME_CANCELLED
                    elif deadline is not None and now >= deadline:
                        stop_reason = "timeout"
                    if stop_reason is not None:
                        logger.info(f"Stopping task {task.name} ({stop_reason}), grace {grace:g}s")
                        context.request_stop()
                        kill_at = now + grace
                elif kill_at is not None and now >= kill_at:
                    # Runs even when the body itself exited, for processes it left behind
                    logger.warning(f"Task {task.name} did not stop within {grace:g}s; terminating")
                    context.kill()
                    kill_at = None
                    abandon_at = now + max(self.engine.poll_interval * 10, 1.0)

            outcome.exit_code = context.wait(self.engine.cancel_grace_seconds)
        finally:
            if context.is_alive():
                context.kill()
                context.wait(self.engine.cancel_grace_seconds)
            context.close()

        return self._resolve(task, outcome, stop_reason)

    def _resolve(self, task: WorkflowTask, outcome: TaskOutcome, stop_reason: str | None) -> TaskOutcome:
        if stop_reason == OUTCOME_CANCELLED:
            outcome.kind = OUTCOME_CANCELLED
        elif stop_reason == "timeout":
            outcome.kind = OUTCOME_FAILED
            outcome.error = f"Timed out after {task.timeout_seconds:g}s"
        elif outcome.error is not None:
            outcome.kind = OUTCOME_FAILED
        elif outcome.exit_code not in (0, None):
            outcome.kind = OUTCOME_FAILED
            outcome.error = f"{task.body.describe()} exited with code {outcome.exit_code}"
        elif outcome.skip_reason is not None:
            outcome.kind = OUTCOME_SKIPPED
        return outcome

    def _handle_event(
        self,
        event: BodyEvent,
        state: WorkflowState,
        index: int,
        tracker: ProgressTracker,
        outcome: TaskOutcome,
        observers,
    ) -> None:
        record = state.tasks[index]

        if event.kind == "output":
            state.progress = tracker.observe_event()
            record.progress = tracker.task_percent
            self._capture(record, event.message)
            self._publish(state, record, event.message, event.level, observers)
        elif event.kind == "progress":
            state.progress = tracker.report(event.percent or 0.0)
            record.progress = tracker.task_percent
            if event.message:
                record.message = event.message
            self._publish(state, record, event.message, LEVEL_INFO, observers)
        elif event.kind == "status":
            record.message = event.message
            self._publish(state, record, event.message, LEVEL_INFO, observers)
        elif event.kind == "data":
            state.data[event.key] = event.value
            logger.debug(f"Task {record.name} set data {event.key}")
        elif event.kind == "reboot":
            outcome.reboot_reason = event.message
        elif event.kind == "skip":
            outcome.skip_reason = event.message
        elif event.kind == "error":
            outcome.error = event.message
            self._capture(record, event.message)
            self._publish(state, record, event.message, LEVEL_ERROR, observers)
            if event.value:
                logger.debug(f"Task {record.name} traceback:\n{event.value}")

    def _capture(self, record: TaskRecord, line: str) -> None:
        record.output.append(line)
        limit = self.engine.capture_output_lines
        if len(record.output) > limit:
            del record.output[:-limit]

    def _publish(self, state: WorkflowState, record: TaskRecord, message: str, level: str, observers) -> None:
        event = OutputEvent(
            workflow_id=state.workflow_id,
            task_name=record.name,
            status=record.status,
            progress=state.progress,
            message=message,
            level=level,
        )
        self._emit(observers, "on_output", event)

    # Plumbing

    def _save(self, state: WorkflowState, observers) -> None:
        sequence = self.checkpoint.save(state)
        self._emit(observers, "on_checkpoint", sequence)

    @staticmethod
    def _emit(observers: list[RunnerCallbacks], name: str, *args) -> None:
        for callbacks in observers:
            callback = getattr(callbacks, name)
            if callback:
                callback(*args)

    def _summarize(self, result: RunnerResult, state: WorkflowState, writes_before: int) -> RunnerResult:
        result.status = state.status
        result.task_statuses = {t.name: t.status for t in state.tasks}
        result.tasks_completed = state.count(TaskStatus.COMPLETED)
        result.tasks_failed = state.count(TaskStatus.FAILED)
        result.tasks_skipped = state.count(TaskStatus.SKIPPED)
        result.progress = state.progress
        result.reboot_reason = state.reboot_reason
        result.checkpoint_writes = self.checkpoint.write_count - writes_before
        failures = [
            str(TaskExecutionError(t.error or "Task failed", state.workflow_id, t.name))
            for t in state.tasks
            if t.status == TaskStatus.FAILED
        ]
        result.errors = failures + result.errors
        result.success = result.tasks_failed == 0 and state.status in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.AWAITING_RESUME,
        )
        return result
