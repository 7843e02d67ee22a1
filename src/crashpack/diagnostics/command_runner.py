"""External tool invocation with hard timeouts.

Every diagnostic that shells out goes through ``ToolRunner`` so a hung tool can
never stall the whole run:

- ``run()`` executes a command to completion, stdout optionally streamed to an
  artifact file, stderr always captured for the log.
- ``sample()`` runs a tracer for a fixed wall-clock window and then stops it
  with SIGTERM so it detaches cleanly from the target.
- ``check()`` is ``run()`` that raises ``ExternalToolFailure`` on a non-zero
  exit.

Usage:
    runner = ToolRunner(default_timeout=120)
    result = runner.run(["uname", "-a"], output_path=staging / "uname.out")
    if not result.ok:
        print(result.stderr_tail)
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from crashpack.exceptions import ExternalToolFailure

logger = logging.getLogger(__name__)

# Exit status reported when the executable does not exist (shell convention)
COMMAND_NOT_FOUND = 127
STOP_GRACE_S = 5.0


@dataclass
class CommandResult:
    """Result from one external tool invocation."""

    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    output_path: Optional[Path] = None
    timed_out: bool = False
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    @property
    def stderr_tail(self) -> str:
        lines = self.stderr.strip().splitlines()
        return "\n".join(lines[-20:])


class ToolRunner:
    """Runs external tools with a default hard timeout."""

    def __init__(self, default_timeout: float = 120.0, env: Optional[Dict[str, str]] = None):
        self.default_timeout = default_timeout
        self.env = env

    def run(
        self,
        command: Sequence[str],
        output_path: Optional[Path] = None,
        timeout: Optional[float] = None,
        append: bool = False,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        """Run a command to completion.

        Args:
            command: Command to execute as list
            output_path: File receiving stdout. If None, stdout is captured.
            timeout: Seconds before the tool is killed (default: runner default)
            append: Append to output_path instead of truncating it
            cwd: Working directory for the tool

        Returns:
            CommandResult; never raises for tool failures
        """
        cmd = [str(c) for c in command]
        timeout = self.default_timeout if timeout is None else timeout
        logger.debug(f"[ToolRunner] Running: {' '.join(cmd)} (timeout {timeout}s)")
        start = time.monotonic()

        try:
            if output_path is not None:
                with open(output_path, "a" if append else "w", encoding="utf-8", errors="replace") as out:
                    proc = subprocess.run(
                        cmd,
                        stdout=out,
                        stderr=subprocess.PIPE,
                        cwd=cwd,
                        env=self.env,
                        timeout=timeout,
                        text=True,
                        errors="replace",
                    )
                stdout = ""
            else:
                proc = subprocess.run(
                    cmd,
                    capture_output=True,
                    cwd=cwd,
                    env=self.env,
                    timeout=timeout,
                    text=True,
                    errors="replace",
                )
                stdout = proc.stdout or ""
        except FileNotFoundError:
            return CommandResult(
                command=cmd,
                returncode=COMMAND_NOT_FOUND,
                stderr=f"{cmd[0]}: command not found",
                output_path=output_path,
                duration_s=time.monotonic() - start,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"[ToolRunner] Command timed out after {timeout}s: {' '.join(cmd)}")
            stderr = e.stderr if isinstance(e.stderr, str) else (e.stderr or b"").decode(errors="replace")
            return CommandResult(
                command=cmd,
                returncode=-1,
                stderr=stderr or f"timed out after {timeout}s",
                output_path=output_path,
                timed_out=True,
                duration_s=time.monotonic() - start,
            )

        return CommandResult(
            command=cmd,
            returncode=proc.returncode,
            stdout=stdout,
            stderr=proc.stderr or "",
            output_path=output_path,
            duration_s=time.monotonic() - start,
        )

    def check(self, command: Sequence[str], **kwargs) -> CommandResult:
        """Run a command and raise ExternalToolFailure unless it succeeds."""
        result = self.run(command, **kwargs)
        if not result.ok:
            partial = [result.output_path] if result.output_path and result.output_path.exists() else []
            reason = "timed out" if result.timed_out else f"exit status {result.returncode}"
            raise ExternalToolFailure(
                f"{Path(result.command[0]).name} failed ({reason})",
                returncode=result.returncode,
                stderr=result.stderr_tail,
                partial_artifacts=partial,
            )
        return result

    def sample(
        self,
        command: Sequence[str],
        window_s: float,
        output_path: Optional[Path] = None,
        cwd: Optional[Path] = None,
    ) -> CommandResult:
        """Run a tracer for exactly window_s seconds, then stop it.

        Reaching the end of the window is the expected outcome and is not
        reported as a timeout. A tool that exits by itself earlier keeps its
        own exit status.
        """
        cmd = [str(c) for c in command]
        logger.debug(f"[ToolRunner] Sampling for {window_s}s: {' '.join(cmd)}")
        start = time.monotonic()
        out = open(output_path, "w", encoding="utf-8", errors="replace") if output_path else subprocess.DEVNULL
        try:
            try:
                proc = subprocess.Popen(
                    cmd, stdout=out, stderr=subprocess.PIPE, cwd=cwd, env=self.env, text=True, errors="replace"
                )
            except FileNotFoundError:
                return CommandResult(
                    command=cmd,
                    returncode=COMMAND_NOT_FOUND,
                    stderr=f"{cmd[0]}: command not found",
                    output_path=output_path,
                )
            try:
                _, stderr = proc.communicate(timeout=window_s)
                returncode = proc.returncode
            except subprocess.TimeoutExpired:
                proc.terminate()
                try:
                    _, stderr = proc.communicate(timeout=STOP_GRACE_S)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    _, stderr = proc.communicate()
                returncode = 0
        finally:
            if out is not subprocess.DEVNULL:
                out.close()

        return CommandResult(
            command=cmd,
            returncode=returncode,
            stderr=stderr or "",
            output_path=output_path,
            duration_s=time.monotonic() - start,
        )


def as_user(command: Sequence[str], user: Optional[str]) -> List[str]:
    """Prefix a command with ``sudo -u <user>`` when running on behalf of another user.

    JVM attach only works from the JVM's own user, so root drops privileges.
    """
    if user is None or os.geteuid() != 0 or user == "root":
        return list(command)
    return ["sudo", "-u", user, *command]
