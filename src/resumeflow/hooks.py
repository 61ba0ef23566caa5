"""
Restart-resume hooks - re-invoke the engine after a host restart.

When a task requires a reboot, the runner registers a "run at next login"
trigger that executes:

    <python> -m resumeflow resume <workflow-id> [--definition <file>]

Backends:
    xdg      ~/.config/autostart/rfw-resume-<id>.desktop   (Linux desktops)
    launchd  ~/Library/LaunchAgents/<label>.plist          (macOS)
    runonce  HKCU\\...\\RunOnce value via reg.exe          (Windows)
    none     NullResumeHook, nothing is registered
"""

import contextlib
import logging
import os
import plistlib
import shlex
import subprocess
import sys
from pathlib import Path
from typing import Protocol

from . import __package_name__, __short_name__
from .errors import ResumeflowError

logger = logging.getLogger(__name__)

RUNONCE_KEY = r"HKCU\Software\Microsoft\Windows\CurrentVersion\RunOnce"
LAUNCH_AGENT_PREFIX = "io.resumeflow.resume"


def resume_command(workflow_id: str, definition_path: Path | str | None = None) -> list[str]:
    """Command line that resumes ``workflow_id``."""
    argv = [sys.executable, "-m", __package_name__, "resume", workflow_id]
    if definition_path:
        argv += ["--definition", str(definition_path)]
    return argv


def _entry_name(workflow_id: str) -> str:
    return f"{__short_name__}-resume-{workflow_id}"


class ResumeHook(Protocol):
    """Host-level trigger that resumes a workflow after restart."""

    name: str

    def register(self, workflow_id: str, checkpoint_path: Path, definition_path: Path | str | None = None) -> None:
        """Install the trigger. Registering twice replaces the first one."""
        ...

    def deregister(self, workflow_id: str) -> None:
        """Remove the trigger if present."""
        ...

    def is_registered(self, workflow_id: str) -> bool: ...


class NullResumeHook:
    """Hook that only remembers registrations in memory."""

    name = "none"

    def __init__(self):
        self.registered: dict[str, Path] = {}

    def register(self, workflow_id: str, checkpoint_path: Path, definition_path: Path | str | None = None) -> None:
        self.registered[workflow_id] = checkpoint_path

    def deregister(self, workflow_id: str) -> None:
        self.registered.pop(workflow_id, None)

    def is_registered(self, workflow_id: str) -> bool:
        return workflow_id in self.registered


class XdgAutostartHook:
    """Desktop entry in the XDG autostart directory."""

    name = "xdg"

    def __init__(self, autostart_dir: Path | None = None):
        if autostart_dir is None:
            config_home = os.environ.get("XDG_CONFIG_HOME")
            base = Path(config_home) if config_home else Path.home() / ".config"
            autostart_dir = base / "autostart"
        self.autostart_dir = autostart_dir

    def entry_path(self, workflow_id: str) -> Path:
        return self.autostart_dir / f"{_entry_name(workflow_id)}.desktop"

    def register(self, workflow_id: str, checkpoint_path: Path, definition_path: Path | str | None = None) -> None:
        self.autostart_dir.mkdir(parents=True, exist_ok=True)
        command = shlex.join(resume_command(workflow_id, definition_path))
        lines = [
            "[Desktop Entry]",
            "Type=Application",
            f"Name=Resume workflow {workflow_id}",
            f"Comment=Checkpoint: {checkpoint_path}",
            f"Exec={command}",
            "Terminal=true",
            "X-GNOME-Autostart-enabled=true",
        ]
        self.entry_path(workflow_id).write_text("\n".join(lines) + "\n")
        logger.info(f"Registered autostart entry: {self.entry_path(workflow_id)}")

    def deregister(self, workflow_id: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.entry_path(workflow_id).unlink()
            logger.info(f"Removed autostart entry for {workflow_id}")

    def is_registered(self, workflow_id: str) -> bool:
        return self.entry_path(workflow_id).exists()


class LaunchAgentHook:
    """LaunchAgent plist with RunAtLoad (macOS)."""

    name = "launchd"

    def __init__(self, agents_dir: Path | None = None):
        self.agents_dir = agents_dir or Path.home() / "Library" / "LaunchAgents"

    def label(self, workflow_id: str) -> str:
        return f"{LAUNCH_AGENT_PREFIX}.{workflow_id}"

    def plist_path(self, workflow_id: str) -> Path:
        return self.agents_dir / f"{self.label(workflow_id)}.plist"

    def register(self, workflow_id: str, checkpoint_path: Path, definition_path: Path | str | None = None) -> None:
        self.agents_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "Label": self.label(workflow_id),
            "ProgramArguments": resume_command(workflow_id, definition_path),
            "RunAtLoad": True,
            "EnvironmentVariables": {"RFW_CHECKPOINT": str(checkpoint_path)},
        }
        with open(self.plist_path(workflow_id), "wb") as f:
            plistlib.dump(payload, f)
        logger.info(f"Registered launch agent: {self.plist_path(workflow_id)}")

    def deregister(self, workflow_id: str) -> None:
        with contextlib.suppress(FileNotFoundError):
            self.plist_path(workflow_id).unlink()
            logger.info(f"Removed launch agent for {workflow_id}")

    def is_registered(self, workflow_id: str) -> bool:
        return self.plist_path(workflow_id).exists()


class RunOnceHook:
    """RunOnce registry value under HKCU, written through reg.exe (Windows)."""

    name = "runonce"

    def _reg(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return subprocess.run(["reg", *args], capture_output=True, text=True, check=check, timeout=30)

    def register(self, workflow_id: str, checkpoint_path: Path, definition_path: Path | str | None = None) -> None:
        command = subprocess.list2cmdline(resume_command(workflow_id, definition_path))
        try:
            self._reg("add", RUNONCE_KEY, "/v", _entry_name(workflow_id), "/t", "REG_SZ", "/d", command, "/f")
        except subprocess.CalledProcessError as e:
            raise ResumeflowError(f"reg.exe failed: {e.stderr.strip()}", workflow_id) from e
        logger.info(f"Registered RunOnce value {_entry_name(workflow_id)}")

    def deregister(self, workflow_id: str) -> None:
        # Missing values are not an error
        self._reg("delete", RUNONCE_KEY, "/v", _entry_name(workflow_id), "/f", check=False)

    def is_registered(self, workflow_id: str) -> bool:
        result = self._reg("query", RUNONCE_KEY, "/v", _entry_name(workflow_id), check=False)
        return result.returncode == 0


def create_resume_hook(backend: str = "auto", enabled: bool = True) -> ResumeHook:
    """
    Resume hook for the named backend.

    "auto" picks the platform backend: runonce on Windows, launchd on macOS,
    xdg elsewhere.
    """
    if not enabled or backend == "none":
        return NullResumeHook()
    if backend == "auto":
        if sys.platform == "win32":
            backend = "runonce"
        elif sys.platform == "darwin":
            backend = "launchd"
        else:
            backend = "xdg"

    hooks = {"xdg": XdgAutostartHook, "launchd": LaunchAgentHook, "runonce": RunOnceHook}
    if backend not in hooks:
        raise ResumeflowError(f"Unknown resume hook backend: {backend}")
    return hooks[backend]()
