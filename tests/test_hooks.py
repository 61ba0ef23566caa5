"""Tests for restart-resume hooks."""

import plistlib
import shlex
import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from resumeflow.errors import ResumeflowError
from resumeflow.hooks import (
    RUNONCE_KEY,
    LaunchAgentHook,
    NullResumeHook,
    RunOnceHook,
    XdgAutostartHook,
    create_resume_hook,
    resume_command,
)

CHECKPOINT = Path("/var/lib/rfw/state/deploy.checkpoint")


class TestResumeCommand:
    """Tests for the command line registered with hooks."""

    def test_without_definition(self):
        assert resume_command("deploy") == [sys.executable, "-m", "resumeflow", "resume", "deploy"]

    def test_with_definition(self):
        argv = resume_command("deploy", Path("/etc/rfw/deploy.yaml"))
        assert argv[-2:] == ["--definition", "/etc/rfw/deploy.yaml"]


class TestNullResumeHook:
    def test_register_cycle(self):
        hook = NullResumeHook()
        hook.register("deploy", CHECKPOINT)
        assert hook.is_registered("deploy")
        hook.deregister("deploy")
        hook.deregister("deploy")
        assert not hook.is_registered("deploy")


class TestXdgAutostartHook:
    """Tests for the desktop autostart entry."""

    def test_register_writes_desktop_entry(self, tmp_path):
        hook = XdgAutostartHook(tmp_path / "autostart")

        hook.register("deploy", CHECKPOINT, "/etc/rfw/deploy.yaml")

        entry = hook.entry_path("deploy")
        assert entry.name == "rfw-resume-deploy.desktop"
        text = entry.read_text()
        assert "[Desktop Entry]" in text
        assert f"Comment=Checkpoint: {CHECKPOINT}" in text
        exec_line = next(line for line in text.splitlines() if line.startswith("Exec="))
        assert shlex.split(exec_line[len("Exec=") :]) == resume_command("deploy", "/etc/rfw/deploy.yaml")
        assert hook.is_registered("deploy")

    def test_register_twice_replaces(self, tmp_path):
        hook = XdgAutostartHook(tmp_path)
        hook.register("deploy", CHECKPOINT)
        hook.register("deploy", CHECKPOINT, "/new/path.yaml")

        assert len(list(tmp_path.iterdir())) == 1
        assert "/new/path.yaml" in hook.entry_path("deploy").read_text()

    def test_deregister_is_idempotent(self, tmp_path):
        hook = XdgAutostartHook(tmp_path)
        hook.register("deploy", CHECKPOINT)

        hook.deregister("deploy")
        hook.deregister("deploy")

        assert not hook.is_registered("deploy")

    def test_default_dir_follows_xdg_config_home(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert XdgAutostartHook().autostart_dir == tmp_path / "autostart"


class TestLaunchAgentHook:
    """Tests for the macOS launch agent."""

    def test_register_writes_plist(self, tmp_path):
        hook = LaunchAgentHook(tmp_path)

        hook.register("deploy", CHECKPOINT)

        with open(hook.plist_path("deploy"), "rb") as f:
            payload = plistlib.load(f)
        assert payload["Label"] == "io.resumeflow.resume.deploy"
        assert payload["ProgramArguments"] == resume_command("deploy")
        assert payload["RunAtLoad"] is True
        assert payload["EnvironmentVariables"]["RFW_CHECKPOINT"] == str(CHECKPOINT)

    def test_deregister(self, tmp_path):
        hook = LaunchAgentHook(tmp_path)
        hook.register("deploy", CHECKPOINT)
        hook.deregister("deploy")

        assert not hook.is_registered("deploy")


class TestRunOnceHook:
    """Tests for the Windows RunOnce value (reg.exe is mocked)."""

    def test_register(self, mock_subprocess):
        RunOnceHook().register("deploy", CHECKPOINT)

        args = mock_subprocess.call_args[0][0]
        assert args[:3] == ["reg", "add", RUNONCE_KEY]
        assert "rfw-resume-deploy" in args
        assert mock_subprocess.call_args[1]["check"] is True

    def test_register_failure(self, mock_subprocess):
        mock_subprocess.side_effect = subprocess.CalledProcessError(1, ["reg"], stderr="Access is denied.\n")

        with pytest.raises(ResumeflowError, match="Access is denied"):
            RunOnceHook().register("deploy", CHECKPOINT)

    def test_deregister_ignores_missing_value(self, mock_subprocess):
        mock_subprocess.return_value = MagicMock(returncode=1)

        RunOnceHook().deregister("deploy")

        args = mock_subprocess.call_args[0][0]
        assert args[:2] == ["reg", "delete"]
        assert mock_subprocess.call_args[1]["check"] is False

    def test_is_registered(self, mock_subprocess):
        hook = RunOnceHook()
        assert hook.is_registered("deploy")

        mock_subprocess.return_value = MagicMock(returncode=1)
        assert not hook.is_registered("deploy")


class TestCreateResumeHook:
    """Tests for backend selection."""

    def test_disabled(self):
        assert isinstance(create_resume_hook("xdg", enabled=False), NullResumeHook)
        assert isinstance(create_resume_hook("none"), NullResumeHook)

    @pytest.mark.parametrize(
        ("platform", "expected"),
        [("linux", XdgAutostartHook), ("darwin", LaunchAgentHook), ("win32", RunOnceHook)],
    )
    def test_auto(self, platform, expected):
        with patch("resumeflow.hooks.sys.platform", platform):
            assert isinstance(create_resume_hook("auto"), expected)

    def test_explicit(self):
        assert isinstance(create_resume_hook("launchd"), LaunchAgentHook)

    def test_unknown(self):
        with pytest.raises(ResumeflowError, match="Unknown resume hook backend"):
            create_resume_hook("cron")
