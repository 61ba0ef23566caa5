"""
Checkpoint manager - crash-safe, protected persistence of WorkflowState.

Stored in the state directory:
    <state_dir>/<workflow_id>.checkpoint   protected state (RFW1 container)
    <state_dir>/<workflow_id>.lock         write lock (pid + host)
    <state_dir>/<workflow_id>.cancel       cancel request from another process
    <state_dir>/<workflow_id>.seq          highest sequence written (protected)

Writes go to a temp file in the same directory and are moved into place
with a single os.replace, so readers see either the previous or the new
checkpoint, never a partial one.
The .seq file is written after the checkpoint and lets a fresh manager
reject an older checkpoint copied back over a newer one.
"""

import contextlib
import hashlib
import json
import logging
import os
import subprocess
import tempfile
from datetime import datetime
from pathlib import Path

from .constants import CANCEL_SUFFIX, CHECKPOINT_SUFFIX, LOCK_SUFFIX, SEQUENCE_SUFFIX, TEMP_SUFFIX
from .errors import (
    DecryptionError,
    IntegrityError,
    ResumeflowError,
    StaleStateError,
    WorkflowLockedError,
)
from .secure_store import SecureBlob, SecureStore
from .workflow.state import WorkflowState

logger = logging.getLogger(__name__)


def _pid_alive(pid: int) -> bool:
    """Check whether a process id is running on this host."""
    if pid <= 0:
        return False
    if os.name == "nt":
        result = subprocess.run(
            ["tasklist", "/FI", f"PID eq {pid}", "/NH"], capture_output=True, text=True, timeout=30
        )
        return str(pid) in result.stdout
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def list_checkpoints(state_dir: Path) -> list[str]:
    """Workflow ids with a checkpoint in ``state_dir``."""
    if not state_dir.exists():
        return []
    return sorted(p.name[: -len(CHECKPOINT_SUFFIX)] for p in state_dir.glob(f"*{CHECKPOINT_SUFFIX}"))


class CheckpointManager:
    """
    Owns the checkpoint of one workflow id.

    Saving requires the write lock; loading does not. Sequence numbers
    increase on every save, and a load that returns a different state with
    a sequence number not above the last one observed raises StaleStateError.
    """

    def __init__(self, workflow_id: str, state_dir: Path, store: SecureStore):
        self.workflow_id = workflow_id
        self.state_dir = state_dir
        self.store = store
        self.checkpoint_path = state_dir / f"{workflow_id}{CHECKPOINT_SUFFIX}"
        self.lock_path = state_dir / f"{workflow_id}{LOCK_SUFFIX}"
        self.cancel_path = state_dir / f"{workflow_id}{CANCEL_SUFFIX}"
        self.sequence_path = state_dir / f"{workflow_id}{SEQUENCE_SUFFIX}"
        self.write_count = 0
        self._locked = False
        self._observed_sequence = 0
        self._observed_digest: str | None = None

    # Locking

    @property
    def locked(self) -> bool:
        return self._locked

    def acquire(self) -> "CheckpointManager":
        """
        Take the write lock for this workflow id.

        Raises:
            WorkflowLockedError: a live process already holds it
        """
        if self._locked:
            return self

        self.state_dir.mkdir(parents=True, exist_ok=True)
        owner = {
            "pid": os.getpid(),
            "host": self.store.identity.host,
            "acquired_at": datetime.now().isoformat(),
        }

        for attempt in range(2):
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            except FileExistsError:
                if attempt == 0 and self._reclaim_stale_lock():
                    continue
                raise WorkflowLockedError(
                    f"Workflow is locked by another engine ({self.lock_path})", self.workflow_id
                ) from None
            with os.fdopen(fd, "w") as f:
                json.dump(owner, f)
            break

        self._locked = True
        self._remove_temp_files()
        logger.debug(f"Acquired checkpoint lock: {self.lock_path}")
        return self

    def release(self) -> None:
        """Release the write lock if held."""
        if not self._locked:
            return
        with contextlib.suppress(FileNotFoundError):
            self.lock_path.unlink()
        self._locked = False
        logger.debug(f"Released checkpoint lock: {self.lock_path}")

    def __enter__(self) -> "CheckpointManager":
        return self.acquire()

    def __exit__(self, *exc) -> None:
        self.release()

    def lock_owner(self) -> dict | None:
        """Contents of the lock file, or None if unlocked or unreadable."""
        try:
            return json.loads(self.lock_path.read_text())
        except (OSError, ValueError):
            return None

    def is_locked_elsewhere(self) -> bool:
        """True if a live process other than this manager holds the lock."""
        if self._locked or not self.lock_path.exists():
            return False
        owner = self.lock_owner()
        if owner is None or owner.get("host") != self.store.identity.host:
            return True
        return _pid_alive(int(owner.get("pid", 0)))

    def _reclaim_stale_lock(self) -> bool:
        owner = self.lock_owner()
        if owner is None:
            return False
        if owner.get("host") != self.store.identity.host:
            return False
        pid = int(owner.get("pid", 0))
        if _pid_alive(pid):
            return False
        logger.warning(f"Reclaiming stale lock for {self.workflow_id} (pid {pid} is gone)")
        with contextlib.suppress(FileNotFoundError):
            self.lock_path.unlink()
        return True

    # Persistence

    def exists(self) -> bool:
        return self.checkpoint_path.exists()

    def save(self, state: WorkflowState) -> int:
        """
        Persist ``state`` atomically.

        Increments and embeds the sequence number before writing.

        Returns:
            The sequence number written
        """
        if not self._locked:
            raise ResumeflowError("Checkpoint write without holding the lock", self.workflow_id)
        if state.workflow_id != self.workflow_id:
            raise ResumeflowError(f"State belongs to workflow {state.workflow_id}", self.workflow_id)

        state.sequence = max(state.sequence, self._observed_sequence) + 1
        state.updated_at = datetime.now().isoformat()

        payload = json.dumps(state.to_dict(), sort_keys=True, default=str)
        text = self.store.protect_text(payload)
        self._atomic_write(self.checkpoint_path, text)
        self._observe(state.sequence, text)
        self._write_high_water()
        self.write_count += 1

        logger.debug(f"Checkpoint {self.workflow_id} saved (sequence {state.sequence})")
        return state.sequence

    def _atomic_write(self, target: Path, text: str) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.workflow_id}~", suffix=TEMP_SUFFIX, dir=self.state_dir)
        try:
            with os.fdopen(fd, "w", encoding="ascii") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(tmp_name)
            raise
        self._fsync_dir()

    def _fsync_dir(self) -> None:
        if os.name != "posix":
            return
        dir_fd = os.open(self.state_dir, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def _observe(self, sequence: int, text: str) -> None:
        self._observed_sequence = sequence
        self._observed_digest = hashlib.sha256(text.encode("ascii")).hexdigest()

    def _write_high_water(self) -> None:
        record = {
            "workflow_id": self.workflow_id,
            "sequence": self._observed_sequence,
            "digest": self._observed_digest,
        }
        self._atomic_write(self.sequence_path, self.store.protect_text(json.dumps(record, sort_keys=True)))

    def _read_high_water(self) -> tuple[int, str | None]:
        """Highest sequence recorded on disk, or (0, None) if none was."""
        try:
            text = self.sequence_path.read_text(encoding="ascii")
        except FileNotFoundError:
            return 0, None
        except UnicodeDecodeError:
            raise IntegrityError("Sequence record contains non-ASCII bytes", self.workflow_id) from None

        try:
            record = json.loads(self.store.unprotect(SecureBlob.decode(text)))
            if record["workflow_id"] != self.workflow_id:
                raise ValueError(f"belongs to workflow {record['workflow_id']}")
            return int(record["sequence"]), record["digest"]
        except (ValueError, KeyError, TypeError) as e:
            raise IntegrityError(f"Sequence record is invalid: {e}", self.workflow_id) from e

    def load(self) -> WorkflowState | None:
        """
        Load and verify the checkpoint.

        Returns:
            The state, or None if there is no checkpoint

        Raises:
            UnsupportedFormatError, IntegrityError, DecryptionError: the
                checkpoint cannot be trusted
            StaleStateError: sequence number went backwards
        """
        try:
            text = self.checkpoint_path.read_text(encoding="ascii")
        except FileNotFoundError:
            return None
        except UnicodeDecodeError:
            raise IntegrityError("Checkpoint contains non-ASCII bytes", self.workflow_id) from None

        plaintext = self.store.unprotect(SecureBlob.decode(text))

        try:
            state = WorkflowState.from_dict(json.loads(plaintext))
        except (ValueError, KeyError, TypeError) as e:
            raise IntegrityError(f"Checkpoint payload is not a workflow state: {e}", self.workflow_id) from e

        if state.workflow_id != self.workflow_id:
            raise IntegrityError(f"Checkpoint belongs to workflow {state.workflow_id}", self.workflow_id)

        if state.identity != self.store.identity:
            raise DecryptionError(
                f"Checkpoint is bound to {state.identity.label()}, not {self.store.identity.label()}",
                self.workflow_id,
            )

        floor, floor_digest = self._observed_sequence, self._observed_digest
        if floor == 0:
            floor, floor_digest = self._read_high_water()

        digest = hashlib.sha256(text.encode("ascii")).hexdigest()
        if state.sequence < floor or (state.sequence == floor and digest != floor_digest):
            raise StaleStateError(
                f"Checkpoint sequence {state.sequence} is not newer than {floor}",
                self.workflow_id,
            )

        self._observe(state.sequence, text)
        return state

    def clear(self) -> bool:
        """
        Delete the checkpoint, its sequence record, temp files and any cancel request.

        Returns:
            True if a checkpoint was removed
        """
        removed = False
        with contextlib.suppress(FileNotFoundError):
            self.checkpoint_path.unlink()
            removed = True
        with contextlib.suppress(FileNotFoundError):
            self.sequence_path.unlink()
        self._remove_temp_files()
        self.clear_cancel_request()
        if removed:
            logger.info(f"Cleared checkpoint: {self.checkpoint_path}")
        return removed

    def force_unlock(self) -> None:
        """Remove the lock file regardless of owner."""
        with contextlib.suppress(FileNotFoundError):
            self.lock_path.unlink()
        self._locked = False

    def _remove_temp_files(self) -> None:
        if not self.state_dir.exists():
            return
        for tmp in self.state_dir.glob(f".{self.workflow_id}~*{TEMP_SUFFIX}"):
            with contextlib.suppress(FileNotFoundError):
                tmp.unlink()

    # Cancel requests from other processes

    def request_cancel(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.cancel_path.write_text(datetime.now().isoformat())
        logger.info(f"Cancel requested for {self.workflow_id}")

    def cancel_requested(self) -> bool:
        return self.cancel_path.exists()

    def clear_cancel_request(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.cancel_path.unlink()
