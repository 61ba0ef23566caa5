"""Exception classes for resumeflow."""


class ResumeflowError(Exception):
    """Base exception for all resumeflow errors.

    Carries the workflow id (when known) so callers can report which
    workflow an error belongs to.
    """

    def __init__(self, message: str, workflow_id: str | None = None):
        super().__init__(message)
        self.message = message
        self.workflow_id = workflow_id

    def __str__(self) -> str:
        if self.workflow_id:
            return f"{self.message} (workflow_id={self.workflow_id})"
        return self.message


class ValidationError(ResumeflowError):
    """Raised when a workflow definition is malformed.

    Examples: duplicate task names, weights that do not sum to 100,
    a workflow without tasks.
    """


class TaskExecutionError(ResumeflowError):
    """Raised (and recorded) when a task body fails."""

    def __init__(self, message: str, workflow_id: str | None = None, task_name: str | None = None):
        super().__init__(message, workflow_id)
        self.task_name = task_name

    def __str__(self) -> str:
        if self.task_name:
            return f"Task {self.task_name}: {self.message}"
        return self.message


class CheckpointError(ResumeflowError):
    """Base class for errors reading a protected checkpoint."""


class IntegrityError(CheckpointError):
    """Checkpoint tag did not verify (tampered, truncated or malformed)."""


class DecryptionError(CheckpointError):
    """Checkpoint could not be decrypted under the current identity."""


class UnsupportedFormatError(CheckpointError):
    """Checkpoint carries an unknown format marker."""


class StaleStateError(ResumeflowError):
    """A checkpoint sequence number went backwards (stale or replayed state)."""


class WorkflowLockedError(ResumeflowError):
    """Another manager already holds the write lock for this workflow id."""


class ResumeError(ResumeflowError):
    """A prior checkpoint exists but cannot be trusted for resuming.

    The caller may discard the checkpoint and start over, or abort.
    The underlying cause is chained as ``__cause__``.
    """
