"""
Execution contexts - run one task body in its own process.

Both body kinds go through the same interface:
- InlineBody: a multiprocessing child calls the function with a TaskContext
  that sends events back over a pipe.
- ExternalReference: a subprocess whose stdout/stderr lines become output
  events; stdout lines starting with ``::rfw::`` are directives.

Reader threads drain the process channel into a bounded queue. A full queue
blocks the readers, which in turn blocks the child on its next write.
"""

import contextlib
import io
import json
import logging
import multiprocessing
import os
import queue
import signal
import subprocess
import sys
import threading
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from ..constants import (
    DIRECTIVE_PREFIX,
    ENV_DATA,
    ENV_PARAM_PREFIX,
    ENV_TASK_COUNT,
    ENV_TASK_INDEX,
    ENV_TASK_NAME,
    ENV_WORKFLOW_ID,
    LEVEL_ERROR,
    LEVEL_INFO,
    LEVEL_OUTPUT,
    LEVEL_WARN,
)
from ..workflow.tasks import ExternalReference, InlineBody, TaskBody

logger = logging.getLogger(__name__)

# Reader finished marker placed on the event queue
EOF = object()


@dataclass
class BodyEvent:
    """Something a running task body reported."""

    kind: str  # output, progress, status, data, reboot, skip, error
    message: str = ""
    level: str = LEVEL_OUTPUT
    key: str | None = None
    value: Any = None
    percent: float | None = None


@dataclass
class TaskRequest:
    """Everything a body gets to see when it starts."""

    workflow_id: str
    task_name: str
    task_index: int
    task_count: int
    parameters: dict[str, Any] = field(default_factory=dict)
    data: dict[str, Any] = field(default_factory=dict)


def parse_directive(line: str) -> BodyEvent:
    """
    Turn one stdout line of an external script into an event.

    Directives:
        ::rfw:: progress 40 Copying files
        ::rfw:: status Waiting for service
        ::rfw:: set key=value          (value parsed as JSON when possible)
        ::rfw:: reboot Kernel updated
        ::rfw:: skip Nothing to do
        ::rfw:: warn Disk almost full
        ::rfw:: info Using mirror
    Any other line is plain output.
    """
    if not line.startswith(DIRECTIVE_PREFIX):
        return BodyEvent("output", message=line, level=LEVEL_OUTPUT)

    command, _, rest = line[len(DIRECTIVE_PREFIX) :].strip().partition(" ")
    command = command.lower()
    rest = rest.strip()

    if command == "progress":
        percent_text, _, message = rest.partition(" ")
        try:
            return BodyEvent("progress", message=message.strip(), percent=float(percent_text))
        except ValueError:
            return BodyEvent("output", message=line, level=LEVEL_WARN)
    if command == "status":
        return BodyEvent("status", message=rest)
    if command == "set":
        key, sep, raw = rest.partition("=")
        if not sep or not key.strip():
            return BodyEvent("output", message=line, level=LEVEL_WARN)
        try:
            value = json.loads(raw)
        except ValueError:
            value = raw
        return BodyEvent("data", key=key.strip(), value=value)
    if command == "reboot":
        return BodyEvent("reboot", message=rest or "Reboot required to continue")
    if command == "skip":
        return BodyEvent("skip", message=rest or "Skipped by task")
    if command == "warn":
        return BodyEvent("output", message=rest, level=LEVEL_WARN)
    if command == "info":
        return BodyEvent("output", message=rest, level=LEVEL_INFO)
    return BodyEvent("output", message=line, level=LEVEL_OUTPUT)


class TaskContext:
    """
    Handle given to inline task bodies (runs inside the child process).

    Example:
        def install(ctx):
            ctx.write_output("Installing packages")
            ctx.update_progress(50, "Half way")
            ctx.set_data("installed", True)
            if ctx.get_parameter("needs_reboot"):
                ctx.request_reboot("Kernel updated")
    """

    def __init__(self, request: TaskRequest, conn, cancel_event):
        self._request = request
        self._conn = conn
        self._cancel_event = cancel_event
        self._data = dict(request.data)

    @property
    def workflow_id(self) -> str:
        return self._request.workflow_id

    @property
    def task_name(self) -> str:
        return self._request.task_name

    @property
    def task_index(self) -> int:
        return self._request.task_index

    @property
    def task_count(self) -> int:
        return self._request.task_count

    @property
    def cancel_requested(self) -> bool:
        """True once the engine asked this body to stop."""
        return self._cancel_event.is_set()

    def _send(self, event: BodyEvent) -> None:
        self._conn.send(event)

    def write_output(self, message: str, level: str = LEVEL_OUTPUT) -> None:
        self._send(BodyEvent("output", message=str(message), level=level))

    def update_progress(self, percent: float, message: str = "") -> None:
        self._send(BodyEvent("progress", message=message, percent=float(percent)))

    def set_status(self, message: str) -> None:
        self._send(BodyEvent("status", message=message))

    def set_data(self, key: str, value: Any) -> None:
        """Share a JSON-serializable value with later tasks."""
        if not key:
            raise ValueError("Data key must not be empty")
        json.dumps(value)
        self._data[key] = value
        self._send(BodyEvent("data", key=key, value=value))

    def get_data(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def has_data(self, key: str) -> bool:
        return key in self._data

    def data_keys(self) -> list[str]:
        return list(self._data)

    def get_parameter(self, name: str, default: Any = None) -> Any:
        return self._request.parameters.get(name, default)

    def request_reboot(self, reason: str = "Reboot required to continue") -> None:
        self._send(BodyEvent("reboot", message=reason))

    def skip_task(self, reason: str = "Skipped by task") -> None:
        self._send(BodyEvent("skip", message=reason))


class _ChannelWriter(io.TextIOBase):
    """File-like object that turns printed lines into output events."""

    def __init__(self, ctx: TaskContext, level: str):
        self._ctx = ctx
        self._level = level
        self._buffer = ""

    def writable(self) -> bool:
        return True

    def write(self, text: str) -> int:
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            self._ctx.write_output(line.rstrip("\r"), self._level)
        return len(text)

    def flush(self) -> None:
        if self._buffer:
            self._ctx.write_output(self._buffer, self._level)
            self._buffer = ""


def _inline_entry(func, conn, cancel_event, request: TaskRequest) -> None:
    """Child process entry point for inline bodies."""
    # Interrupts go to the engine, which stops the body cooperatively
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    ctx = TaskContext(request, conn, cancel_event)
    stdout = _ChannelWriter(ctx, LEVEL_OUTPUT)
    stderr = _ChannelWriter(ctx, LEVEL_ERROR)
    sys.stdout, sys.stderr = stdout, stderr
    exit_code = 0
    try:
        func(ctx)
    except Exception as e:
        conn.send(BodyEvent("error", message=f"{type(e).__name__}: {e}", value=traceback.format_exc()))
        exit_code = 1
    finally:
        stdout.flush()
        stderr.flush()
        conn.close()
    sys.exit(exit_code)


def _mp_context():
    # fork keeps lambdas and closures usable as bodies; spawn elsewhere
    if "fork" in multiprocessing.get_all_start_methods():
        return multiprocessing.get_context("fork")
    return multiprocessing.get_context("spawn")


class ExecutionContext(ABC):
    """One task body running in an isolated process."""

    def __init__(self, queue_size: int):
        self.events: queue.Queue = queue.Queue(maxsize=queue_size)
        self._readers: list[threading.Thread] = []

    @property
    def reader_count(self) -> int:
        """Number of EOF markers the queue will eventually carry."""
        return len(self._readers)

    def _spawn_reader(self, target, *args) -> None:
        thread = threading.Thread(target=self._reader_main, args=(target, *args), daemon=True)
        self._readers.append(thread)
        thread.start()

    def _reader_main(self, target, *args) -> None:
        try:
            target(*args)
        finally:
            self.events.put(EOF)

    @abstractmethod
    def start(self, request: TaskRequest) -> None: ...

    @abstractmethod
    def request_stop(self) -> None:
        """Ask the body to stop cooperatively."""

    @abstractmethod
    def kill(self) -> None:
        """Terminate the body forcibly."""

    @abstractmethod
    def is_alive(self) -> bool: ...

    @abstractmethod
    def wait(self, timeout: float | None = None) -> int | None:
        """Wait for the process; returns the exit code or None on timeout."""

    def close(self) -> None:
        for thread in self._readers:
            thread.join(timeout=5)


class InlineContext(ExecutionContext):
    """Runs an InlineBody in a multiprocessing child."""

    def __init__(self, body: InlineBody, queue_size: int):
        super().__init__(queue_size)
        self.body = body
        self._mp = _mp_context()
        self._cancel_event = self._mp.Event()
        self._process = None

    def start(self, request: TaskRequest) -> None:
        reader, writer = self._mp.Pipe(duplex=False)
        self._process = self._mp.Process(
            target=_inline_entry,
            args=(self.body.func, writer, self._cancel_event, request),
            name=f"rfw-{request.task_name}",
            daemon=True,
        )
        self._process.start()
        # Only the child holds the write end now, so EOF arrives when it exits
        writer.close()
        self._spawn_reader(self._drain, reader)

    def _drain(self, reader) -> None:
        try:
            while True:
                try:
                    event = reader.recv()
                except (EOFError, OSError):
                    break
                self.events.put(event)
        finally:
            reader.close()

    def request_stop(self) -> None:
        self._cancel_event.set()

    def kill(self) -> None:
        if self._process is not None and self._process.is_alive():
            self._process.kill()

    def is_alive(self) -> bool:
        return self._process is not None and self._process.is_alive()

    def wait(self, timeout: float | None = None) -> int | None:
        if self._process is None:
            return None
        self._process.join(timeout)
        return self._process.exitcode

    def close(self) -> None:
        super().close()
        if self._process is not None and not self._process.is_alive():
            self._process.close()


class ScriptContext(ExecutionContext):
    """Runs an ExternalReference as a subprocess."""

    def __init__(self, body: ExternalReference, queue_size: int):
        super().__init__(queue_size)
        self.body = body
        self._proc: subprocess.Popen | None = None

    def _environment(self, request: TaskRequest) -> dict[str, str]:
        env = os.environ.copy()
        env[ENV_WORKFLOW_ID] = request.workflow_id
        env[ENV_TASK_NAME] = request.task_name
        env[ENV_TASK_INDEX] = str(request.task_index)
        env[ENV_TASK_COUNT] = str(request.task_count)
        env[ENV_DATA] = json.dumps(request.data, default=str)
        for name, value in request.parameters.items():
            env[f"{ENV_PARAM_PREFIX}{str(name).upper()}"] = value if isinstance(value, str) else json.dumps(value)
        return env

    def start(self, request: TaskRequest) -> None:
        kwargs: dict[str, Any] = {}
        if os.name == "nt":
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        self._proc = subprocess.Popen(
            self.body.argv(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            cwd=self.body.cwd,
            env=self._environment(request),
            **kwargs,
        )
        self._spawn_reader(self._drain, self._proc.stdout, False)
        self._spawn_reader(self._drain, self._proc.stderr, True)

    def _drain(self, stream, is_stderr: bool) -> None:
        with stream:
            for raw in stream:
                line = raw.rstrip("\r\n")
                if is_stderr:
                    self.events.put(BodyEvent("output", message=line, level=LEVEL_ERROR))
                else:
                    self.events.put(parse_directive(line))

    def _signal_group(self, signum: int) -> None:
        # The group outlives the script while a child it started holds the pipes
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(self._proc.pid, signum)

    def request_stop(self) -> None:
        if self._proc is None:
            return
        if os.name == "nt":
            if self._proc.poll() is None:
                self._proc.send_signal(signal.CTRL_BREAK_EVENT)
            return
        self._signal_group(signal.SIGTERM)

    def kill(self) -> None:
        if self._proc is None:
            return
        if os.name == "nt":
            if self._proc.poll() is None:
                self._proc.kill()
            return
        self._signal_group(signal.SIGKILL)

    def is_alive(self) -> bool:
        return self._proc is not None and self._proc.poll() is None

    def wait(self, timeout: float | None = None) -> int | None:
        if self._proc is None:
            return None
        try:
            return self._proc.wait(timeout)
        except subprocess.TimeoutExpired:
            return None


def open_context(body: TaskBody, queue_size: int) -> ExecutionContext:
    """Execution context for a task body."""
    if isinstance(body, InlineBody):
        return InlineContext(body, queue_size)
    if isinstance(body, ExternalReference):
        return ScriptContext(body, queue_size)
    raise TypeError(f"Unsupported task body: {body!r}")
