"""Tests for workflow state and summaries."""

from resumeflow.secure_store import Identity
from resumeflow.workflow import (
    InlineBody,
    TaskRecord,
    TaskStatus,
    WorkflowDefinition,
    WorkflowState,
    WorkflowStatus,
    WorkflowTask,
    describe_outcome,
)


def _noop(ctx):
    pass


def _definition(names=("a", "b", "c")) -> WorkflowDefinition:
    definition = WorkflowDefinition(id="wf", title="Example")
    for name in names:
        definition.add_task(WorkflowTask(name=name, title=name.upper(), body=InlineBody(_noop)))
    return definition


class TestWorkflowStatus:
    """Tests for WorkflowStatus enum."""

    def test_terminal(self):
        assert WorkflowStatus.COMPLETED.is_terminal
        assert WorkflowStatus.FAILED.is_terminal
        assert WorkflowStatus.CANCELLED.is_terminal
        assert not WorkflowStatus.RUNNING.is_terminal
        assert not WorkflowStatus.AWAITING_RESUME.is_terminal
        assert not WorkflowStatus.NOT_STARTED.is_terminal


class TestTaskRecord:
    """Tests for TaskRecord."""

    def test_duration(self):
        record = TaskRecord(name="a", started_at="2024-01-01T10:00:00", ended_at="2024-01-01T10:00:05.500000")
        assert record.duration == 5.5

    def test_duration_unfinished(self):
        assert TaskRecord(name="a", started_at="2024-01-01T10:00:00").duration == 0.0

    def test_from_dict_defaults(self):
        record = TaskRecord.from_dict({"name": "a"})
        assert record.status == TaskStatus.PENDING
        assert record.output == []


class TestWorkflowState:
    """Tests for WorkflowState."""

    def test_fresh(self):
        state = WorkflowState.fresh(_definition(), Identity("alice", "box"))

        assert state.workflow_id == "wf"
        assert state.title == "Example"
        assert [t.name for t in state.tasks] == ["a", "b", "c"]
        assert [t.title for t in state.tasks] == ["A", "B", "C"]
        assert all(t.status == TaskStatus.PENDING for t in state.tasks)
        assert state.status == WorkflowStatus.NOT_STARTED
        assert state.next_index == 0
        assert state.sequence == 0
        assert state.identity == Identity("alice", "box")

    def test_matches(self):
        state = WorkflowState.fresh(_definition(), Identity("alice", "box"))

        assert state.matches(_definition())
        assert not state.matches(_definition(("a", "c", "b")))
        assert not state.matches(_definition(("a", "b")))

    def test_counts_and_finished(self):
        state = WorkflowState.fresh(_definition(), Identity("alice", "box"))
        state.tasks[0].status = TaskStatus.COMPLETED
        state.tasks[1].status = TaskStatus.FAILED

        assert state.count(TaskStatus.COMPLETED) == 1
        assert state.count(TaskStatus.FAILED) == 1
        assert state.finished_indices() == [0, 1]
        assert state.record("b").status == TaskStatus.FAILED
        assert state.record("zzz") is None

    def test_dict_round_trip(self):
        state = WorkflowState.fresh(_definition(), Identity("alice", "box"))
        state.status = WorkflowStatus.AWAITING_RESUME
        state.next_index = 2
        state.progress = 66.6
        state.sequence = 9
        state.data = {"token": [1, 2]}
        state.reboot_reason = "kernel"
        state.reboot_count = 1
        state.tasks[0].status = TaskStatus.COMPLETED
        state.tasks[0].output = ["line"]

        restored = WorkflowState.from_dict(state.to_dict())

        assert restored == state

    def test_summary(self):
        state = WorkflowState.fresh(_definition(), Identity("alice", "box"))
        state.status = WorkflowStatus.COMPLETED
        state.tasks[1].status = TaskStatus.FAILED

        summary = state.summary()

        assert summary.total_tasks == 3
        assert summary.failed_tasks == 1
        assert summary.outcome == "completed with 1 failed task"
        assert summary.tasks[1] == ("b", TaskStatus.FAILED)


class TestDescribeOutcome:
    """Workflow outcome text is separate from per-task outcomes."""

    def test_clean_completion(self):
        assert describe_outcome(WorkflowStatus.COMPLETED, 0) == "completed"

    def test_completion_with_failures(self):
        assert describe_outcome(WorkflowStatus.COMPLETED, 1) == "completed with 1 failed task"
        assert describe_outcome(WorkflowStatus.COMPLETED, 3) == "completed with 3 failed tasks"

    def test_other_statuses(self):
        assert describe_outcome(WorkflowStatus.FAILED, 1) == "failed"
        assert describe_outcome(WorkflowStatus.AWAITING_RESUME, 0) == "awaiting resume"
