"""Tests for resuming workflows from their checkpoints."""

import pytest

import task_bodies
from conftest import WORKFLOW_ID
from resumeflow.checkpoint import CheckpointManager
from resumeflow.errors import DecryptionError, IntegrityError, ResumeError, StaleStateError
from resumeflow.runners import ResumeController, RunnerCallbacks, SequentialRunner
from resumeflow.secure_store import Identity, SecureStore
from resumeflow.workflow import (
    InlineBody,
    TaskStatus,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    WorkflowTask,
)


@pytest.fixture
def marker_dir(tmp_path):
    path = tmp_path / "markers"
    path.mkdir()
    return path


@pytest.fixture
def definition(marker_dir):
    """Four tasks that each leave a marker file when they run."""
    wf = WorkflowDefinition(id=WORKFLOW_ID, parameters={"marker_dir": str(marker_dir)})
    for name in ("one", "two", "three", "four"):
        wf.add_task(WorkflowTask(name=name, body=InlineBody(task_bodies.mark)))
    return wf


def _runs(marker_dir, name: str) -> int:
    marker = marker_dir / name
    return int(marker.read_text()) if marker.exists() else 0


def _save(manager: CheckpointManager, state: WorkflowState) -> None:
    with manager:
        manager.save(state)


class TestPrepare:
    """Tests for ResumeController.prepare."""

    def test_fresh_state_without_checkpoint(self, manager, definition):
        controller = ResumeController(manager)

        state = controller.prepare(definition)

        assert not controller.has_checkpoint()
        assert state.status == WorkflowStatus.NOT_STARTED
        assert state.sequence == 0

    def test_tampered_checkpoint(self, manager, definition, identity):
        _save(manager, WorkflowState.fresh(definition, identity))
        text = manager.checkpoint_path.read_text()
        middle = len(text) // 2
        manager.checkpoint_path.write_text(text[:middle] + ("A" if text[middle] != "A" else "B") + text[middle + 1 :])

        with pytest.raises(ResumeError) as exc_info:
            ResumeController(manager).prepare(definition)

        assert isinstance(exc_info.value.__cause__, IntegrityError)
        assert exc_info.value.workflow_id == WORKFLOW_ID

    def test_checkpoint_from_other_account(self, manager, definition, identity, state_dir, store):
        _save(manager, WorkflowState.fresh(definition, identity))
        other = SecureStore(store.backend, identity=Identity("mallory", "testhost"))

        with pytest.raises(ResumeError) as exc_info:
            ResumeController(CheckpointManager(WORKFLOW_ID, state_dir, other)).prepare(definition)

        assert isinstance(exc_info.value.__cause__, DecryptionError)

    def test_task_list_mismatch(self, manager, definition, identity):
        _save(manager, WorkflowState.fresh(definition, identity))
        changed = WorkflowDefinition(id=WORKFLOW_ID)
        for name in ("one", "three", "two", "four"):
            changed.add_task(WorkflowTask(name=name, body=InlineBody(task_bodies.mark)))

        with pytest.raises(ResumeError, match="do not match"):
            ResumeController(manager).prepare(changed)

    def test_stale_checkpoint_is_not_wrapped(self, manager, definition, identity):
        state = WorkflowState.fresh(definition, identity)
        with manager:
            manager.save(state)
            old = manager.checkpoint_path.read_text()
            manager.save(state)
        controller = ResumeController(manager)
        controller.prepare(definition)

        manager.checkpoint_path.write_text(old)

        with pytest.raises(StaleStateError):
            controller.prepare(definition)

    def test_discard(self, manager, definition, identity):
        _save(manager, WorkflowState.fresh(definition, identity))
        controller = ResumeController(manager)

        assert controller.has_checkpoint()
        assert controller.discard()
        assert not controller.has_checkpoint()


class TestResume:
    """Resuming never re-runs finished tasks."""

    def test_resume_at_third_task(self, manager, runner, definition, identity, marker_dir):
        state = WorkflowState.fresh(definition, identity)
        state.status = WorkflowStatus.RUNNING
        state.tasks[0].status = TaskStatus.COMPLETED
        state.tasks[1].status = TaskStatus.COMPLETED
        state.next_index = 2
        state.progress = 50
        _save(manager, state)
        started = []

        result = ResumeController(manager).resume(
            runner, definition, RunnerCallbacks(on_task_start=lambda name, title: started.append(name))
        )

        assert result.success
        assert started == ["three", "four"]
        assert [_runs(marker_dir, n) for n in ("one", "two", "three", "four")] == [0, 0, 1, 1]
        assert result.progress == 100
        assert not manager.exists()
        assert not manager.locked

    def test_interrupted_task_runs_again(self, manager, runner, definition, identity, marker_dir):
        state = WorkflowState.fresh(definition, identity)
        state.status = WorkflowStatus.RUNNING
        state.tasks[0].status = TaskStatus.COMPLETED
        state.tasks[1].status = TaskStatus.RUNNING
        state.next_index = 1
        _save(manager, state)
        # The interrupted attempt already got this far
        (marker_dir / "two").write_text("1")

        result = ResumeController(manager).resume(runner, definition)

        assert result.status == WorkflowStatus.COMPLETED
        assert [_runs(marker_dir, n) for n in ("one", "two", "three", "four")] == [0, 2, 1, 1]

    def test_finished_checkpoint_is_reported(self, manager, runner, definition, identity, marker_dir):
        state = WorkflowState.fresh(definition, identity)
        state.status = WorkflowStatus.FAILED
        state.tasks[0].status = TaskStatus.FAILED
        state.tasks[0].error = "disk full"
        for record in state.tasks[1:]:
            record.status = TaskStatus.SKIPPED
        state.next_index = 4
        _save(manager, state)

        result = ResumeController(manager).resume(runner, definition)

        assert result.status == WorkflowStatus.FAILED
        assert result.checkpoint_writes == 0
        assert result.errors == ["Task one: disk full"]
        assert list(marker_dir.iterdir()) == []

    def test_untrusted_checkpoint_releases_lock(self, manager, runner, definition, identity):
        _save(manager, WorkflowState.fresh(definition, identity))
        manager.checkpoint_path.write_text("garbage")

        with pytest.raises(ResumeError):
            ResumeController(manager).resume(runner, definition)

        assert not manager.locked
        assert not manager.lock_path.exists()

    def test_reboot_round_trip(self, manager, runner, hook, definition, marker_dir, state_dir, store, engine_config):
        definition.tasks[1].reboot = True

        first = runner.run(definition)

        assert first.status == WorkflowStatus.AWAITING_RESUME
        assert hook.is_registered(WORKFLOW_ID)
        assert [_runs(marker_dir, n) for n in ("one", "two", "three", "four")] == [1, 1, 0, 0]

        # After the restart a new process builds everything from scratch
        after_boot = CheckpointManager(WORKFLOW_ID, state_dir, store)
        second = ResumeController(after_boot).resume(SequentialRunner(after_boot, hook, engine_config), definition)

        assert second.status == WorkflowStatus.COMPLETED
        assert second.task_statuses == {name: TaskStatus.COMPLETED for name in ("one", "two", "three", "four")}
        assert [_runs(marker_dir, n) for n in ("one", "two", "three", "four")] == [1, 1, 1, 1]
        assert not hook.is_registered(WORKFLOW_ID)
        assert not after_boot.exists()
