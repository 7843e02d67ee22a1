"""Capability facts: what the current host, user and target permit.

A ``CapabilitySet`` is computed once per run by ``CapabilityProbe`` and never
mutated. Refreshing a fact (only free disk space is ever refreshed) produces a
new set.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from enum import Enum, IntEnum
from typing import Dict, Optional, Union

FactValue = Union[bool, int, None]


class PtraceScope(IntEnum):
    """Yama ptrace_scope values (Documentation/admin-guide/LSM/Yama.rst)."""

    CLASSIC = 0  # any process with the same uid may attach
    RESTRICTED = 1  # only descendants, or explicitly allowed tracers
    ADMIN_ONLY = 2  # CAP_SYS_PTRACE required
    NO_ATTACH = 3  # nobody, not even root

    @classmethod
    def parse(cls, raw: Optional[str]) -> "PtraceScope":
        """Parse the sysctl text; anything unreadable means classic ptrace."""
        try:
            return cls(int((raw or "").strip()))
        except ValueError:
            return cls.CLASSIC


class Fact(Enum):
    """Names of capability facts. Values are CapabilitySet field names."""

    DEBUGGER_AVAILABLE = "debugger_available"
    TRACE_TOOL_AVAILABLE = "trace_tool_available"
    JVM_TOOLS_AVAILABLE = "jvm_tools_available"
    JSTAT_AVAILABLE = "jstat_available"
    PROCPS_AVAILABLE = "procps_available"
    DEPLOYMENT_TOOL_AVAILABLE = "deployment_tool_available"
    PTRACE_SCOPE = "ptrace_scope"
    SELINUX_ENFORCING = "selinux_enforcing"
    SELINUX_DENY_PTRACE = "selinux_deny_ptrace"
    CALLER_IS_ROOT = "caller_is_root"
    CALLER_MATCHES_TARGET_USER = "caller_matches_target_user"
    TARGET_HAS_JVM = "target_has_jvm"
    TARGET_EXECUTABLE_READABLE = "target_executable_readable"
    FREE_DISK_MB = "free_disk_mb"
    ESTIMATED_DUMP_MB = "estimated_dump_mb"
    ESTIMATED_HEAP_DUMP_MB = "estimated_heap_dump_mb"

    @property
    def display_name(self) -> str:
        """CamelCase name used in logs and the manifest, e.g. FreeDiskMB."""
        words = self.value.split("_")
        return "".join("MB" if w == "mb" else w.capitalize() for w in words)


@dataclass(frozen=True)
class CapabilitySet:
    """Immutable snapshot of facts relevant to diagnostic feasibility."""

    debugger_available: bool = False
    trace_tool_available: bool = False
    jvm_tools_available: bool = False
    jstat_available: bool = False
    procps_available: bool = False
    deployment_tool_available: bool = False
    ptrace_scope: PtraceScope = PtraceScope.CLASSIC
    selinux_enforcing: bool = False
    selinux_deny_ptrace: bool = False
    caller_is_root: bool = False
    caller_matches_target_user: bool = False
    target_has_jvm: bool = False
    target_executable_readable: bool = False
    free_disk_mb: int = 0
    estimated_dump_mb: int = 0
    estimated_heap_dump_mb: Optional[int] = None

    def __post_init__(self) -> None:
        # Accept plain ints for the scope and normalize to the enum
        if not isinstance(self.ptrace_scope, PtraceScope):
            object.__setattr__(self, "ptrace_scope", PtraceScope(int(self.ptrace_scope)))

    def get(self, fact: Fact) -> FactValue:
        """Return the value of a named fact."""
        return getattr(self, fact.value)

    def as_dict(self) -> Dict[str, FactValue]:
        """Mapping view keyed by fact display name (JSON friendly)."""
        values = asdict(self)
        return {
            fact.display_name: int(values[fact.value])
            if isinstance(values[fact.value], PtraceScope)
            else values[fact.value]
            for fact in Fact
        }

    def with_fact(self, fact: Fact, value: FactValue) -> "CapabilitySet":
        """Return a new set with one fact replaced."""
        return replace(self, **{fact.value: value})

    def with_free_disk(self, free_disk_mb: int) -> "CapabilitySet":
        return self.with_fact(Fact.FREE_DISK_MB, free_disk_mb)

    @property
    def heap_dump_estimate_mb(self) -> int:
        """Heap usage if it was measured, else the process size."""
        if self.estimated_heap_dump_mb is not None:
            return self.estimated_heap_dump_mb
        return self.estimated_dump_mb
