"""Tests for ToolRunner: timeouts, missing tools, output capture and sampling."""

import subprocess
import sys
from dataclasses import fields
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from crashpack.diagnostics.command_runner import COMMAND_NOT_FOUND, CommandResult, ToolRunner, as_user
from crashpack.exceptions import ExternalToolFailure


class TestRun:
    @patch("subprocess.run")
    def test_captures_stdout(self, mock_run) -> None:
        mock_run.return_value = MagicMock(returncode=0, stdout="Linux host 6.1\n", stderr="")

        result = ToolRunner().run(["uname", "-a"])

        assert result.ok
        assert result.stdout == "Linux host 6.1\n"
        assert mock_run.call_args.kwargs["timeout"] == 120.0

    @patch("subprocess.run")
    def test_timeout_override(self, mock_run) -> None:
        mock_run.return_value = MagicMock(returncode=0, stdout="", stderr="")

        ToolRunner(default_timeout=10).run(["df"], timeout=3)

        assert mock_run.call_args.kwargs["timeout"] == 3

    @patch("subprocess.run")
    def test_timeout_expired(self, mock_run) -> None:
        mock_run.side_effect = subprocess.TimeoutExpired(cmd=["gdb"], timeout=5)

        result = ToolRunner().run(["gdb", "-p", "1"], timeout=5)

        assert result.timed_out
        assert not result.ok

    @patch("subprocess.run")
    def test_missing_tool(self, mock_run) -> None:
        mock_run.side_effect = FileNotFoundError("gdb")

        result = ToolRunner().run(["gdb"])

        assert result.returncode == COMMAND_NOT_FOUND
        assert "command not found" in result.stderr

    def test_output_file(self, tmp_path: Path) -> None:
        out = tmp_path / "out.txt"

        result = ToolRunner().run([sys.executable, "-c", "print('hello')"], output_path=out)

        assert result.ok
        assert out.read_text() == "hello\n"
        assert result.stdout == ""
        assert result.output_path == out

    def test_result_fields(self) -> None:
        """Artifacts are reported by actions, never by the runner."""
        assert {f.name for f in fields(CommandResult)} == {
            "command",
            "returncode",
            "stdout",
            "stderr",
            "output_path",
            "timed_out",
            "duration_s",
        }

    def test_append(self, tmp_path: Path) -> None:
        out = tmp_path / "top.out"
        out.write_text("first\n")

        ToolRunner().run([sys.executable, "-c", "print('second')"], output_path=out, append=True)

        assert out.read_text() == "first\nsecond\n"


class TestCheck:
    @patch("subprocess.run")
    def test_raises_on_failure(self, mock_run) -> None:
        mock_run.return_value = MagicMock(returncode=2, stdout="", stderr="boom\n")

        with pytest.raises(ExternalToolFailure) as exc_info:
            ToolRunner().check(["/usr/bin/vmstat", "1"])

        assert "vmstat failed (exit status 2)" in str(exc_info.value)
        assert exc_info.value.stderr == "boom"
        assert exc_info.value.returncode == 2

    def test_partial_output_reported(self, tmp_path: Path) -> None:
        out = tmp_path / "partial.out"
        command = [sys.executable, "-c", "print('partial'); raise SystemExit(1)"]

        with pytest.raises(ExternalToolFailure) as exc_info:
            ToolRunner().check(command, output_path=out)

        assert exc_info.value.partial_artifacts == [out]


class TestSample:
    def test_window_end_is_success(self) -> None:
        command = [sys.executable, "-c", "import time; time.sleep(30)"]

        result = ToolRunner().sample(command, window_s=0.2)

        assert result.ok
        assert result.duration_s < 25

    def test_early_exit_keeps_status(self) -> None:
        result = ToolRunner().sample([sys.executable, "-c", "raise SystemExit(3)"], window_s=10)

        assert result.returncode == 3

    def test_missing_tool(self) -> None:
        result = ToolRunner().sample(["/nonexistent/strace"], window_s=1)

        assert result.returncode == COMMAND_NOT_FOUND


class TestAsUser:
    def test_non_root_unchanged(self, monkeypatch) -> None:
        monkeypatch.setattr("crashpack.diagnostics.command_runner.os.geteuid", lambda: 1000)
        assert as_user(["jcmd", "1", "VM.flags"], "app") == ["jcmd", "1", "VM.flags"]

    def test_root_drops_to_target_user(self, monkeypatch) -> None:
        monkeypatch.setattr("crashpack.diagnostics.command_runner.os.geteuid", lambda: 0)
        assert as_user(["jcmd", "1"], "app") == ["sudo", "-u", "app", "jcmd", "1"]

    def test_root_target_unchanged(self, monkeypatch) -> None:
        monkeypatch.setattr("crashpack.diagnostics.command_runner.os.geteuid", lambda: 0)
        assert as_user(["jcmd", "1"], "root") == ["jcmd", "1"]
        assert as_user(["jcmd", "1"], None) == ["jcmd", "1"]
