"""
Reusable preconditions for catalog rows.

Each factory returns a ``Precondition`` whose reason text is stable, so the
operator (and tests) can recognise the cause of a skip:

- tool absence:      "... not found ..."
- Yama:              "prohibited by kernel policy (Yama ptrace_scope N ...)"
- SELinux:           "prohibited by SELinux policy (...)"
- disk:              "insufficient disk space (...)"
"""

from __future__ import annotations

from typing import Callable, Tuple

from crashpack.diagnostics.capabilities import CapabilitySet, Fact, PtraceScope
from crashpack.diagnostics.models import Precondition, PreconditionRank


def ptrace_permitted_by_yama(caps: CapabilitySet) -> bool:
    """Yama rule for attaching to the target.

    - scope 0: permitted.
    - scope 1-2: a caller running as the target's own user is blocked, root
      included. A root caller diagnosing another user's process is permitted.
    - scope 3: never permitted, root included.
    """
    scope = caps.ptrace_scope
    if scope is PtraceScope.NO_ATTACH:
        return False
    if scope is PtraceScope.CLASSIC:
        return True
    return not caps.caller_matches_target_user


def tool_available(fact: Fact, tool: str, package: str) -> Precondition:
    return Precondition(
        name=f"{tool}-available",
        rank=PreconditionRank.TOOL,
        check=lambda caps: bool(caps.get(fact)),
        reason=lambda caps: f"{tool} not found in executable path (requires '{package}' package)",
    )


def debugger() -> Precondition:
    return tool_available(Fact.DEBUGGER_AVAILABLE, "gdb", "gdb")


def trace_tool() -> Precondition:
    return tool_available(Fact.TRACE_TOOL_AVAILABLE, "strace", "strace")


def jvm_tools() -> Precondition:
    return tool_available(Fact.JVM_TOOLS_AVAILABLE, "jcmd", "JDK")


def jstat() -> Precondition:
    return tool_available(Fact.JSTAT_AVAILABLE, "jstat", "JDK")


def procps() -> Precondition:
    return tool_available(Fact.PROCPS_AVAILABLE, "top/free/vmstat", "procps")


def deployment_tool() -> Precondition:
    return Precondition(
        name="deployment-tool-found",
        rank=PreconditionRank.TOOL,
        check=lambda caps: caps.deployment_tool_available,
        reason=lambda caps: "Deployment Framework 'dfw' not found in parent directories of the binary",
    )


def target_has_jvm() -> Precondition:
    return Precondition(
        name="target-has-jvm",
        rank=PreconditionRank.TARGET,
        check=lambda caps: caps.target_has_jvm,
        reason=lambda caps: "target process has no JVM",
    )


def executable_readable() -> Precondition:
    return Precondition(
        name="executable-readable",
        rank=PreconditionRank.TARGET,
        check=lambda caps: caps.target_executable_readable,
        reason=lambda caps: "target binary is not readable",
    )


def _yama_reason(caps: CapabilitySet) -> str:
    scope = int(caps.ptrace_scope)
    if caps.ptrace_scope is PtraceScope.NO_ATTACH or caps.caller_is_root:
        return f"prohibited by kernel policy (Yama ptrace_scope {scope})"
    return f"prohibited by kernel policy (Yama ptrace_scope {scope} -- run as root)"


def yama_permits_ptrace() -> Precondition:
    return Precondition(
        name="yama-permits-ptrace",
        rank=PreconditionRank.POLICY,
        check=ptrace_permitted_by_yama,
        reason=_yama_reason,
    )


def selinux_permits_ptrace() -> Precondition:
    return Precondition(
        name="selinux-permits-ptrace",
        rank=PreconditionRank.POLICY,
        check=lambda caps: not (caps.selinux_enforcing and caps.selinux_deny_ptrace),
        reason=lambda caps: "prohibited by SELinux policy (enforcing with deny_ptrace on)",
    )


def ptrace_allowed() -> Tuple[Precondition, ...]:
    """Both policy checks every attaching diagnostic carries."""
    return (yama_permits_ptrace(), selinux_permits_ptrace())


def disk_budget(estimate: Callable[[CapabilitySet], int]) -> Precondition:
    """Free space on the staging filesystem must cover the estimated dump size."""
    return Precondition(
        name="disk-budget",
        rank=PreconditionRank.RESOURCE,
        check=lambda caps: caps.free_disk_mb >= estimate(caps),
        reason=lambda caps: (
            f"insufficient disk space (need at least {estimate(caps)}MB, "
            f"{caps.free_disk_mb}MB available)"
        ),
    )


def core_dump_estimate(caps: CapabilitySet) -> int:
    return caps.estimated_dump_mb


def heap_dump_estimate(caps: CapabilitySet) -> int:
    return caps.heap_dump_estimate_mb
