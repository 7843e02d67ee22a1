"""Pytest configuration and fixtures for crashpack tests"""

import os
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

# Ensure src directory is in Python path before any imports
project_root = Path(__file__).resolve().parent.parent
src_path = project_root / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from crashpack.config import Settings  # noqa: E402
from crashpack.diagnostics.capabilities import CapabilitySet  # noqa: E402
from crashpack.diagnostics.command_runner import CommandResult, ToolRunner  # noqa: E402
from crashpack.diagnostics.target import ProcessTarget, build_run_context  # noqa: E402

Handler = Callable[[List[str]], Tuple[int, str, str]]


class FakeRunner(ToolRunner):
    """ToolRunner that never spawns a process.

    Handlers are keyed by tool name and return (returncode, stdout, stderr).
    Tools without a handler succeed and print "<tool> output".
    """

    def __init__(self, handlers: Optional[Dict[str, Handler]] = None):
        super().__init__(default_timeout=5)
        self.handlers = dict(handlers or {})
        self.calls: List[List[str]] = []

    @staticmethod
    def tool_name(command: Sequence[str]) -> str:
        if command[0] == "sudo":
            return Path(command[3]).name
        return Path(command[0]).name

    def _respond(self, command, output_path, append=False) -> CommandResult:
        cmd = [str(c) for c in command]
        self.calls.append(cmd)
        name = self.tool_name(cmd)
        handler = self.handlers.get(name)
        if handler is None:
            returncode, stdout, stderr = 0, f"{name} output\n", ""
        else:
            returncode, stdout, stderr = handler(cmd)
        if output_path is not None:
            with open(output_path, "a" if append else "w", encoding="utf-8") as f:
                f.write(stdout)
            stdout = ""
        return CommandResult(
            command=cmd, returncode=returncode, stdout=stdout, stderr=stderr, output_path=output_path
        )

    def run(self, command, output_path=None, timeout=None, append=False, cwd=None) -> CommandResult:
        return self._respond(command, output_path, append)

    def sample(self, command, window_s, output_path=None, cwd=None) -> CommandResult:
        return self._respond(command, output_path)

    def tools_called(self) -> List[str]:
        return [self.tool_name(c) for c in self.calls]


def gdb_handler(cmd: List[str]) -> Tuple[int, str, str]:
    """gdb that writes cores for gcore and lists no libraries."""
    for arg in cmd:
        if arg.startswith("gcore "):
            Path(arg[len("gcore "):]).write_bytes(b"\x7fELF core")
            return 0, "Saved corefile\n", ""
    return 0, "Thread 1 (LWP 1):\n#0  0x00007f in main ()\n", ""


def strace_handler(cmd: List[str]) -> Tuple[int, str, str]:
    prefix = cmd[cmd.index("-o") + 1]
    Path(f"{prefix}.{os.getpid()}").write_text("read(3, ...) = 1\n")
    return 0, "", ""


def jcmd_handler(cmd: List[str]) -> Tuple[int, str, str]:
    if "GC.heap_dump" in cmd:
        Path(cmd[-1]).write_bytes(b"JAVA PROFILE 1.0.2")
        return 0, "Heap dump file created\n", ""
    if "GC.heap_info" in cmd:
        return 0, " garbage-first heap   total 262144K, used 102400K\n  region size 1024K\n", ""
    return 0, "jcmd output\n", ""


@pytest.fixture
def settings() -> Settings:
    """Settings with every sampling window and delay shrunk to zero."""
    return Settings(
        _env_file=None,
        top_samples=1,
        top_interval_s=0,
        vmstat_window_s=0,
        strace_window_s=0,
        backtrace_samples=1,
        backtrace_interval_s=0,
        attach_retry_delay_s=0,
        command_timeout_s=5,
        dump_timeout_s=5,
    )


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner(
        {"gdb": gdb_handler, "strace": strace_handler, "jcmd": jcmd_handler}
    )


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    return lambda seconds: None


@pytest.fixture
def live_context(tmp_path: Path):
    """RunContext for the test process itself, writing into tmp_path."""
    output_dir = tmp_path / "out"
    output_dir.mkdir()
    return build_run_context(ProcessTarget(os.getpid()), output_dir, sleep=lambda s: None)


@pytest.fixture
def make_caps() -> Callable[..., CapabilitySet]:
    """Capability sets where everything is permitted unless overridden."""

    def _make(**overrides) -> CapabilitySet:
        values = dict(
            debugger_available=True,
            trace_tool_available=True,
            jvm_tools_available=True,
            jstat_available=True,
            procps_available=True,
            deployment_tool_available=False,
            ptrace_scope=0,
            selinux_enforcing=False,
            selinux_deny_ptrace=False,
            caller_is_root=False,
            caller_matches_target_user=True,
            target_has_jvm=False,
            target_executable_readable=True,
            free_disk_mb=10_000,
            estimated_dump_mb=100,
        )
        values.update(overrides)
        return CapabilitySet(**values)

    return _make
