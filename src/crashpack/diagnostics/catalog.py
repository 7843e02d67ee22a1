"""
Declarative diagnostic catalogs.

A catalog is a fixed, ordered list of ``DiagnosticSpec`` rows; the order is the
execution order. Adding a diagnostic means adding one row with its
preconditions, nothing else.

Two catalogs exist:
- ``process_catalog()`` for a running process (pid),
- ``core_catalog()`` for a core file dumped by a crashed process.
"""

from __future__ import annotations

from typing import List, Sequence

from crashpack.config import Settings
from crashpack.diagnostics import actions
from crashpack.diagnostics import preconditions as pre
from crashpack.diagnostics.models import DiagnosticSpec
from crashpack.diagnostics.retry_policy import RetryPolicy


def _attach_retry(settings: Settings) -> RetryPolicy:
    return RetryPolicy(max_attempts=settings.attach_max_attempts, delay_s=settings.attach_retry_delay_s)


def _host_rows() -> List[DiagnosticSpec]:
    return [
        DiagnosticSpec("os-release", "OS version", actions.record_os_release),
        DiagnosticSpec("uname", "'uname -a' output", actions.record_uname),
        DiagnosticSpec(
            "core-settings", "kernel core-file settings", actions.record_core_settings
        ),
    ]


def _core_file_rows(required: bool, extra: tuple = ()) -> List[DiagnosticSpec]:
    """Rows reading a core file. In process mode they depend on the core dump
    and carry its preconditions (extra)."""
    return [
        DiagnosticSpec(
            "core-backtrace",
            "core-file thread backtraces",
            actions.record_core_backtrace,
            preconditions=(pre.debugger(), pre.executable_readable(), *extra),
            required=required,
        ),
        DiagnosticSpec(
            "shared-libraries",
            "shared libraries referenced by the core file",
            actions.record_shared_libraries,
            preconditions=(pre.debugger(), pre.executable_readable(), *extra),
            required=required,
        ),
    ]


def process_catalog(settings: Settings) -> List[DiagnosticSpec]:
    """Diagnostics for a running process, in execution order."""
    ptrace = pre.ptrace_allowed()
    jvm = (pre.jvm_tools(), pre.target_has_jvm())
    core_dump_preconditions = (*ptrace, pre.disk_budget(pre.core_dump_estimate))
    return [
        *_host_rows(),
        DiagnosticSpec("process-limits", "process resource limits", actions.record_process_limits),
        DiagnosticSpec(
            "top",
            "'top' output (sampled)",
            actions.record_top,
            preconditions=(pre.procps(),),
        ),
        DiagnosticSpec(
            "process-top",
            "'top' output for the process (sampled)",
            actions.record_process_top,
            preconditions=(pre.procps(),),
        ),
        DiagnosticSpec("df", "'df' output", actions.record_df),
        DiagnosticSpec("free", "'free' output", actions.record_free, preconditions=(pre.procps(),)),
        DiagnosticSpec("vmstat", "'vmstat' output", actions.record_vmstat, preconditions=(pre.procps(),)),
        DiagnosticSpec(
            "deployment-reports",
            "Deployment Framework reports",
            actions.deployment_reports("info", "status", "versions"),
            preconditions=(pre.deployment_tool(),),
        ),
        DiagnosticSpec(
            "thread-backtraces",
            "GDB thread backtraces",
            actions.record_thread_backtraces,
            preconditions=(pre.debugger(), *ptrace),
            required=settings.require_debugger,
            retry_policy=_attach_retry(settings),
        ),
        DiagnosticSpec(
            "jvm-stacktrace", "JVM stack trace", actions.jcmd_report("Thread.print", "jvm-stacktrace"),
            preconditions=jvm,
        ),
        DiagnosticSpec(
            "jvm-heapinfo", "JVM heap info", actions.jcmd_report("GC.heap_info", "jvm-heapinfo"),
            preconditions=jvm,
        ),
        DiagnosticSpec(
            "jvm-heapdump",
            "JVM heap dump",
            actions.record_heap_dump,
            preconditions=(*jvm, pre.disk_budget(pre.heap_dump_estimate)),
            resource_estimate=pre.heap_dump_estimate,
            timeout_s=settings.dump_timeout_s,
        ),
        DiagnosticSpec(
            "jvm-properties", "JVM system properties",
            actions.jcmd_report("VM.system_properties", "jvm-props"),
            preconditions=jvm,
        ),
        DiagnosticSpec(
            "jvm-flags", "JVM flags", actions.jcmd_report("VM.flags", "jvm-flags"),
            preconditions=jvm,
        ),
        DiagnosticSpec(
            "jvm-perfcounters", "JVM performance counters",
            actions.jcmd_report("PerfCounter.print", "jvm-perfcounter"),
            preconditions=jvm,
        ),
        DiagnosticSpec(
            "jvm-jstat", "JVM jstat GC statistics", actions.record_jstat,
            preconditions=(*jvm, pre.jstat()),
        ),
        DiagnosticSpec(
            "strace",
            "system calls (strace)",
            actions.record_strace,
            preconditions=(pre.trace_tool(), *ptrace),
            timeout_s=settings.strace_window_s + actions.WINDOW_SLACK_S,
        ),
        DiagnosticSpec(
            "core-dump",
            "GDB core dump",
            actions.record_core_dump,
            preconditions=(pre.debugger(), *core_dump_preconditions),
            required=settings.require_debugger,
            resource_estimate=pre.core_dump_estimate,
            retry_policy=_attach_retry(settings),
            timeout_s=settings.dump_timeout_s,
        ),
        *_core_file_rows(required=False, extra=core_dump_preconditions),
        DiagnosticSpec(
            "binary", "process binary", actions.link_binary, preconditions=(pre.executable_readable(),)
        ),
    ]


def core_catalog(settings: Settings) -> List[DiagnosticSpec]:
    """Diagnostics for a core file and the binary that dumped it, in execution order."""
    return [
        DiagnosticSpec("binary", "crashed binary", actions.link_binary, preconditions=(pre.executable_readable(),)),
        DiagnosticSpec("core-file", "core file", actions.link_core),
        *_host_rows(),
        DiagnosticSpec("limits-conf", "/etc/security/limits.conf", actions.record_limits_conf),
        DiagnosticSpec("ulimits", "user limits (ulimit)", actions.record_ulimits),
        DiagnosticSpec("df", "'df' output", actions.record_df),
        DiagnosticSpec(
            "deployment-versions",
            "'dfw versions' output",
            actions.deployment_reports("versions"),
            preconditions=(pre.deployment_tool(),),
        ),
        *_core_file_rows(required=settings.require_debugger),
    ]


def validate_catalog(catalog: Sequence[DiagnosticSpec]) -> None:
    """Raise ValueError if catalog ids are not unique."""
    seen = set()
    for spec in catalog:
        if spec.id in seen:
            raise ValueError(f"Duplicate diagnostic id in catalog: {spec.id}")
        seen.add(spec.id)
