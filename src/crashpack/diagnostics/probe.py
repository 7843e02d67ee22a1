"""
Capability probe: inspect host, user and target to build a CapabilitySet.

Each probe is independent and cheap. A probe that cannot read its source (a
kernel without Yama, SELinux disabled, a JVM that refuses attach) degrades to
its safe default instead of failing the whole snapshot. Probing has no side
effects on the target.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
from pathlib import Path
from typing import Dict, Optional

from crashpack.diagnostics.capabilities import CapabilitySet, PtraceScope
from crashpack.diagnostics.command_runner import ToolRunner, as_user
from crashpack.diagnostics.target import PROC_ROOT, RunContext
from crashpack.disk_space import get_available_disk_space_mb

logger = logging.getLogger(__name__)

YAMA_PTRACE_SCOPE = Path("/proc/sys/kernel/yama/ptrace_scope")
SELINUX_ENFORCE = Path("/sys/fs/selinux/enforce")
SELINUX_DENY_PTRACE = Path("/sys/fs/selinux/booleans/deny_ptrace")

_HEAP_USED_RE = re.compile(r"used (\d+)K")
_GETSEBOOL_RE = re.compile(r"deny_ptrace\s+-->\s+(\w+)")
_VMSIZE_RE = re.compile(r"^VmSize:\s+(\d+)\s+kB", re.MULTILINE)


def _read_text(path: Path) -> Optional[str]:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None


def parse_heap_used_mb(heap_info: str) -> Optional[int]:
    """Sum the 'used NNNK' figures of the first two heap regions (young + old).

    Returns None when the output carries no usage figures.
    """
    used = [int(m) for m in _HEAP_USED_RE.findall(heap_info)[:2]]
    if not used:
        return None
    return sum(used) // 1024


def parse_jvm_pids(listing: str) -> set:
    """Pids from ``jcmd -l`` output (one '<pid> <main class>' per line)."""
    pids = set()
    for line in listing.splitlines():
        head = line.strip().split(" ", 1)[0]
        if head.isdigit():
            pids.add(int(head))
    return pids


class ToolLocator:
    """Finds external tools, preferring the target's own JAVA_HOME for JVM tools."""

    def __init__(self, java_home: Optional[str] = None):
        self.java_home = java_home

    def find(self, name: str) -> Optional[str]:
        if self.java_home and name in ("jcmd", "jstat"):
            candidate = Path(self.java_home) / "bin" / name
            if candidate.is_file() and os.access(candidate, os.X_OK):
                return str(candidate)
        return shutil.which(name)

    @classmethod
    def for_process(cls, pid: Optional[int], proc_root: Path = PROC_ROOT) -> "ToolLocator":
        if pid is None:
            return cls(os.environ.get("JAVA_HOME"))
        return cls(read_process_environ(pid, proc_root).get("JAVA_HOME") or os.environ.get("JAVA_HOME"))


def read_process_environ(pid: int, proc_root: Path = PROC_ROOT) -> Dict[str, str]:
    """Environment of a process from /proc/<pid>/environ; empty if unreadable."""
    try:
        raw = (proc_root / str(pid) / "environ").read_bytes()
    except OSError:
        return {}
    env: Dict[str, str] = {}
    for entry in raw.split(b"\0"):
        key, sep, value = entry.decode(errors="replace").partition("=")
        if sep:
            env[key] = value
    return env


class CapabilityProbe:
    """Builds the capability snapshot for one run."""

    def __init__(
        self,
        runner: ToolRunner,
        locator: Optional[ToolLocator] = None,
        proc_root: Path = PROC_ROOT,
        ptrace_scope_path: Path = YAMA_PTRACE_SCOPE,
        selinux_enforce_path: Path = SELINUX_ENFORCE,
        selinux_deny_ptrace_path: Path = SELINUX_DENY_PTRACE,
    ):
        self.runner = runner
        self.locator = locator or ToolLocator()
        self.proc_root = proc_root
        self.ptrace_scope_path = ptrace_scope_path
        self.selinux_enforce_path = selinux_enforce_path
        self.selinux_deny_ptrace_path = selinux_deny_ptrace_path

    def probe(self, context: RunContext) -> CapabilitySet:
        """Inspect the environment for the given run."""
        jcmd = self.locator.find("jcmd")
        target_has_jvm = bool(jcmd) and context.is_live and self.target_has_jvm(jcmd, context)
        deployment_tool = context.deployment_tool

        caps = CapabilitySet(
            debugger_available=self.locator.find("gdb") is not None,
            trace_tool_available=self.locator.find("strace") is not None,
            jvm_tools_available=jcmd is not None,
            jstat_available=self.locator.find("jstat") is not None,
            procps_available=all(self.locator.find(t) for t in ("top", "free", "vmstat")),
            deployment_tool_available=deployment_tool is not None and os.access(deployment_tool, os.X_OK),
            ptrace_scope=self.ptrace_scope(),
            selinux_enforcing=self.selinux_enforcing(),
            selinux_deny_ptrace=self.selinux_deny_ptrace(),
            caller_is_root=context.caller_uid == 0,
            caller_matches_target_user=context.caller_uid == context.target_uid,
            target_has_jvm=target_has_jvm,
            target_executable_readable=context.binary is not None
            and os.access(context.binary, os.R_OK),
            free_disk_mb=get_available_disk_space_mb(context.output_dir),
            estimated_dump_mb=self.process_size_mb(context.pid) if context.is_live else 0,
            estimated_heap_dump_mb=self.heap_used_mb(jcmd, context) if target_has_jvm else None,
        )
        logger.debug(f"[CapabilityProbe] {caps.as_dict()}")
        return caps

    def refresh_disk(self, caps: CapabilitySet, context: RunContext) -> CapabilitySet:
        """Return a new snapshot with the current free space of the output directory."""
        return caps.with_free_disk(get_available_disk_space_mb(context.output_dir))

    # ------------------------------------------------------------------ #
    # Individual probes
    # ------------------------------------------------------------------ #

    def ptrace_scope(self) -> PtraceScope:
        return PtraceScope.parse(_read_text(self.ptrace_scope_path))

    def selinux_enforcing(self) -> bool:
        return (_read_text(self.selinux_enforce_path) or "0").strip() == "1"

    def selinux_deny_ptrace(self) -> bool:
        raw = _read_text(self.selinux_deny_ptrace_path)
        if raw is not None:
            # "<current> <pending>"
            return raw.split()[:1] == ["1"]
        if self.locator.find("getsebool") is None:
            return False
        result = self.runner.run(["getsebool", "deny_ptrace"])
        match = _GETSEBOOL_RE.search(result.stdout) if result.ok else None
        return bool(match and match.group(1) == "on")

    def process_size_mb(self, pid: Optional[int]) -> int:
        """Virtual size of the process in MB, the upper bound of a core file."""
        status = _read_text(self.proc_root / str(pid) / "status") if pid is not None else None
        match = _VMSIZE_RE.search(status or "")
        if not match:
            logger.debug(f"[CapabilityProbe] No VmSize for pid {pid}; estimating 0MB")
            return 0
        return int(match.group(1)) // 1024

    def target_has_jvm(self, jcmd: str, context: RunContext) -> bool:
        result = self.runner.run(as_user([jcmd, "-l"], context.jvm_user))
        if not result.ok:
            logger.debug(f"[CapabilityProbe] 'jcmd -l' failed: {result.stderr_tail}")
            return False
        return context.pid in parse_jvm_pids(result.stdout)

    def heap_used_mb(self, jcmd: Optional[str], context: RunContext) -> Optional[int]:
        if not jcmd:
            return None
        result = self.runner.run(as_user([jcmd, str(context.pid), "GC.heap_info"], context.jvm_user))
        return parse_heap_used_mb(result.stdout) if result.ok else None
