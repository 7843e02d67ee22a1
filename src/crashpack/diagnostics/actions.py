"""
Diagnostic actions.

Each action takes an ``ActionContext``, writes its artifacts into the staging
area and returns their paths. Actions signal problems with exceptions:

- ``PreconditionUnmet`` when something discovered at run time makes the
  diagnostic inapplicable (e.g. no core file was produced),
- ``TransientToolFailure`` when a debugger attach lost a race,
- ``ExternalToolFailure`` when a tool failed.

Actions never decide feasibility; that is the resolver's job.
"""

from __future__ import annotations

import logging
import os
import re
import resource
import shutil
import tarfile
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Sequence

from crashpack.diagnostics.command_runner import CommandResult, as_user
from crashpack.diagnostics.models import ActionContext
from crashpack.exceptions import ExternalToolFailure, PreconditionUnmet, TransientToolFailure

logger = logging.getLogger(__name__)

OS_RELEASE_FILES = (Path("/etc/os-release"), Path("/etc/redhat-release"))
CORE_SETTINGS_FILES = (Path("/proc/sys/kernel/core_pattern"), Path("/proc/sys/kernel/core_uses_pid"))
LIMITS_CONF = Path("/etc/security/limits.conf")
LIMITS_DIR = Path("/etc/security/limits.d")
PROC_ROOT = Path("/proc")

# Extra seconds a window-bound tool gets beyond its window before it is killed
WINDOW_SLACK_S = 30.0

_ATTACH_FAILURE_RE = re.compile(
    r"(ptrace: |Could not attach|Unable to attach|is already traced|not being run)", re.IGNORECASE
)

# (label, resource, bytes per unit) in the order `ulimit -a` prints them
_ULIMITS = [
    ("core file size (blocks, -c)", resource.RLIMIT_CORE, 512),
    ("data seg size (kbytes, -d)", resource.RLIMIT_DATA, 1024),
    ("file size (blocks, -f)", resource.RLIMIT_FSIZE, 512),
    ("max locked memory (kbytes, -l)", resource.RLIMIT_MEMLOCK, 1024),
    ("max memory size (kbytes, -m)", resource.RLIMIT_RSS, 1024),
    ("open files (-n)", resource.RLIMIT_NOFILE, 1),
    ("stack size (kbytes, -s)", resource.RLIMIT_STACK, 1024),
    ("cpu time (seconds, -t)", resource.RLIMIT_CPU, 1),
    ("max user processes (-u)", resource.RLIMIT_NPROC, 1),
    ("virtual memory (kbytes, -v)", resource.RLIMIT_AS, 1024),
]


def _gdb_batch(ctx: ActionContext, *commands: str) -> List[str]:
    args = [ctx.tool("gdb"), "--batch", "-nx", "-ex", "set pagination off", "-ex", "set confirm off"]
    for command in commands:
        args.extend(["-ex", command])
    return args


def _require_pid(ctx: ActionContext) -> int:
    if ctx.run.pid is None:
        raise PreconditionUnmet("no live process")
    return ctx.run.pid


def _existing(paths: Sequence[Optional[Path]]) -> List[Path]:
    return [p for p in paths if p is not None and (p.exists() or p.is_symlink())]


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass


def _raise_for_attach(result: CommandResult, what: str, partial: List[Path]) -> None:
    """Classify a failed debugger attach as transient so it is retried."""
    attach_failed = bool(_ATTACH_FAILURE_RE.search(result.stderr))
    if result.ok and not attach_failed:
        return
    if not attach_failed:
        reason = "timed out" if result.timed_out else f"exit status {result.returncode}"
        raise ExternalToolFailure(
            f"{what} failed ({reason})",
            returncode=result.returncode,
            stderr=result.stderr_tail,
            partial_artifacts=partial,
        )
    raise TransientToolFailure(
        f"{what} could not attach to the process",
        returncode=result.returncode,
        stderr=result.stderr_tail,
        partial_artifacts=partial,
    )


# ============================================================================
# Host information
# ============================================================================


def record_os_release(ctx: ActionContext) -> List[Path]:
    artifacts = []
    for source in OS_RELEASE_FILES:
        if os.access(source, os.R_OK):
            dest = ctx.file(source.name)
            shutil.copyfile(source, dest)
            artifacts.append(dest)
    if not artifacts:
        raise PreconditionUnmet("no OS release file is readable")
    return artifacts


def record_uname(ctx: ActionContext) -> List[Path]:
    out = ctx.file("uname.out")
    ctx.runner.check(["uname", "-a"], output_path=out, timeout=ctx.timeout_s)
    return [out]


def record_core_settings(ctx: ActionContext) -> List[Path]:
    """Kernel core-dump settings, e.g. /proc/sys/kernel/core_pattern -> proc-sys-kernel-core_pattern."""
    artifacts = []
    for source in CORE_SETTINGS_FILES:
        dest = ctx.file(str(source).lstrip("/").replace("/", "-"))
        dest.write_text(source.read_text(encoding="utf-8", errors="replace"), encoding="utf-8")
        artifacts.append(dest)
    return artifacts


def record_process_limits(ctx: ActionContext) -> List[Path]:
    pid = _require_pid(ctx)
    dest = ctx.file(f"proc-{pid}-limits")
    dest.write_text((PROC_ROOT / str(pid) / "limits").read_text(encoding="utf-8"), encoding="utf-8")
    return [dest]


def record_limits_conf(ctx: ActionContext) -> List[Path]:
    """Concatenate limits.conf and limits.d/* into one file."""
    if not os.access(LIMITS_CONF, os.R_OK):
        raise PreconditionUnmet(f"{LIMITS_CONF} is not readable")
    sources = [LIMITS_CONF]
    if LIMITS_DIR.is_dir():
        sources.extend(sorted(p for p in LIMITS_DIR.iterdir() if p.is_file()))
    dest = ctx.file("limits.conf")
    with open(dest, "w", encoding="utf-8") as out:
        for source in sources:
            out.write(f"# {source}\n")
            out.write(source.read_text(encoding="utf-8", errors="replace"))
            out.write("\n")
    return [dest]


def _format_limit(value: int, divisor: int) -> str:
    if value == resource.RLIM_INFINITY:
        return "unlimited"
    return str(value // divisor)


def format_ulimits(which: int) -> str:
    """Render the current process limits the way ``ulimit -a`` does.

    Args:
        which: 0 for soft limits, 1 for hard limits
    """
    lines = []
    for label, rlimit, divisor in _ULIMITS:
        value = resource.getrlimit(rlimit)[which]
        lines.append(f"{label:<40}{_format_limit(value, divisor)}")
    return "\n".join(lines) + "\n"


def record_ulimits(ctx: ActionContext) -> List[Path]:
    soft = ctx.file(f"ulimit-soft-{ctx.run.caller_user}.out")
    hard = ctx.file(f"ulimit-hard-{ctx.run.caller_user}.out")
    soft.write_text(format_ulimits(0), encoding="utf-8")
    hard.write_text(format_ulimits(1), encoding="utf-8")
    return [soft, hard]


# ============================================================================
# Sampling diagnostics (block for their window by design)
# ============================================================================


def _sample_repeatedly(ctx: ActionContext, command: List[str], out: Path) -> List[Path]:
    samples = max(1, ctx.settings.top_samples)
    out.write_text("", encoding="utf-8")
    for i in range(samples):
        with open(out, "a", encoding="utf-8") as f:
            f.write("\n\n")
        ctx.runner.check(command, output_path=out, append=True, timeout=ctx.timeout_s)
        if i < samples - 1:
            ctx.sleep(ctx.settings.top_interval_s)
    return [out]


def record_top(ctx: ActionContext) -> List[Path]:
    return _sample_repeatedly(ctx, ["top", "-b", "-n", "1"], ctx.file("top.out"))


def record_process_top(ctx: ActionContext) -> List[Path]:
    pid = _require_pid(ctx)
    command = ["top", "-H", "-p", str(pid), "-b", "-n", "1"]
    return _sample_repeatedly(ctx, command, ctx.file(f"{ctx.run.command}-top.out"))


def record_df(ctx: ActionContext) -> List[Path]:
    working_dir = ctx.run.working_dir
    if working_dir is None:
        raise PreconditionUnmet("process's working directory unknown")
    target = working_dir / "var" if (working_dir / "var").is_dir() else working_dir
    out = ctx.file("df.out")
    ctx.runner.check(["df", "-kh", str(target)], output_path=out, timeout=ctx.timeout_s)
    return [out]


def record_free(ctx: ActionContext) -> List[Path]:
    out = ctx.file("free.out")
    ctx.runner.check(["free", "-h"], output_path=out, timeout=ctx.timeout_s)
    return [out]


def record_vmstat(ctx: ActionContext) -> List[Path]:
    window = ctx.settings.vmstat_window_s
    out = ctx.file("vmstat.out")
    ctx.runner.check(
        ["vmstat", "-S", "m", "1", str(max(1, window))],
        output_path=out,
        timeout=window + WINDOW_SLACK_S,
    )
    return [out]


# ============================================================================
# Deployment tool
# ============================================================================


def deployment_reports(*subcommands: str):
    """Build an action running ``dfw <subcommand>`` for each subcommand."""

    def record_deployment_reports(ctx: ActionContext) -> List[Path]:
        tool = ctx.run.deployment_tool
        if tool is None:
            raise PreconditionUnmet("no Deployment Framework found")
        artifacts: List[Path] = []
        for sub in subcommands:
            out = ctx.file(f"dfw-{sub}.out")
            result = ctx.runner.run([str(tool), sub], output_path=out, timeout=ctx.timeout_s)
            artifacts.append(out)
            if not result.ok:
                raise ExternalToolFailure(
                    f"'dfw {sub}' failed (exit status {result.returncode})",
                    returncode=result.returncode,
                    stderr=result.stderr_tail,
                    partial_artifacts=artifacts,
                )
            if result.stderr:
                with open(out, "a", encoding="utf-8") as f:
                    f.write(result.stderr)
        return artifacts

    return record_deployment_reports


# ============================================================================
# Debugger and tracer (ptrace)
# ============================================================================


def record_thread_backtraces(ctx: ActionContext) -> List[Path]:
    """Take several full thread backtraces of the live process, spaced apart.

    Only the attach of the failing sample is retried; samples already taken
    are kept.
    """
    pid = _require_pid(ctx)
    samples = max(1, ctx.settings.backtrace_samples)
    artifacts: List[Path] = []
    for i in range(1, samples + 1):
        stamp = datetime.now().strftime("%Y%m%d%H%M%S")
        out = ctx.file(f"{ctx.run.command}-backtrace-{i}-{stamp}.out")
        logger.info(f"{i}/{samples}: Dumping GDB thread backtraces for process {pid}")

        def attach(out: Path = out) -> None:
            result = ctx.runner.run(
                _gdb_batch(ctx, "thread apply all bt full") + ["-p", str(pid)],
                output_path=out,
                timeout=ctx.timeout_s,
            )
            _raise_for_attach(result, "gdb", artifacts + [out])

        ctx.retry.call(attach, operation_name=f"backtrace {i}/{samples}", sleep=ctx.sleep)
        artifacts.append(out)
        if i < samples:
            ctx.sleep(ctx.settings.backtrace_interval_s)
    return artifacts


def record_strace(ctx: ActionContext) -> List[Path]:
    """Log system calls of every thread for a fixed window."""
    pid = _require_pid(ctx)
    prefix = ctx.file(f"{ctx.run.command}-strace")
    result = ctx.runner.sample(
        [ctx.tool("strace"), "-ff", "-tt", "-o", str(prefix), "-p", str(pid)],
        window_s=ctx.settings.strace_window_s,
    )
    artifacts = sorted(ctx.staging.path.glob(f"{prefix.name}*"))
    if not result.ok or not artifacts:
        raise ExternalToolFailure(
            f"strace failed (exit status {result.returncode})",
            returncode=result.returncode,
            stderr=result.stderr_tail,
            partial_artifacts=artifacts,
        )
    return artifacts


def record_core_dump(ctx: ActionContext) -> List[Path]:
    """Dump a core of the live process with gdb's gcore; the process keeps running."""
    pid = _require_pid(ctx)
    core = ctx.file(ctx.run.core_name)
    logger.info(
        f"Estimated core-file size: {ctx.capabilities.estimated_dump_mb}MB, "
        f"available disk space: {ctx.capabilities.free_disk_mb}MB"
    )

    def attach() -> None:
        result = ctx.runner.run(
            _gdb_batch(ctx, f"gcore {core}") + ["-p", str(pid)],
            timeout=ctx.settings.dump_timeout_s,
        )
        if core.exists() and result.ok:
            return
        # A truncated core is useless and may be huge
        _discard(core)
        if _ATTACH_FAILURE_RE.search(result.stderr):
            raise TransientToolFailure(
                "gdb could not attach to dump a core", returncode=result.returncode, stderr=result.stderr_tail
            )
        raise ExternalToolFailure(
            f"Core dump failed (core file '{core.name}' not found)",
            returncode=result.returncode,
            stderr=result.stderr_tail,
        )

    ctx.retry.call(attach, operation_name="core dump", sleep=ctx.sleep)
    return [core]


def _core_and_binary(ctx: ActionContext) -> tuple:
    core = ctx.run.core if ctx.run.core is not None else ctx.file(ctx.run.core_name)
    if not core.exists():
        raise PreconditionUnmet("no core file was produced")
    if ctx.run.binary is None:
        raise PreconditionUnmet("binary of the process is unknown")
    return core, ctx.run.binary


def record_core_backtrace(ctx: ActionContext) -> List[Path]:
    core, binary = _core_and_binary(ctx)
    out = ctx.file(f"{ctx.run.core_name}.backtrace.out")
    ctx.runner.check(
        _gdb_batch(ctx, "thread apply all bt full") + [str(binary), "-c", str(core)],
        output_path=out,
        timeout=ctx.timeout_s,
    )
    return [out]


def parse_shared_libraries(info_sharedlibrary: str) -> List[str]:
    """Library paths from gdb's ``info sharedlibrary`` table.

    Rows look like ``0x... 0x... Yes (*) /lib64/libc.so.6``; only loaded
    libraries (rows starting with an address) are listed.
    """
    libraries: List[str] = []
    for line in info_sharedlibrary.splitlines():
        fields = line.split()
        if len(fields) < 3 or not fields[0].startswith("0x"):
            continue
        path = fields[-1]
        if path.startswith("/"):
            normalized = os.path.normpath(path)
            if normalized not in libraries:
                libraries.append(normalized)
    return libraries


def record_shared_libraries(ctx: ActionContext) -> List[Path]:
    """List the libraries referenced by the core and bundle them into a tarball."""
    core, binary = _core_and_binary(ctx)
    listing = ctx.file("libs-list.out")
    ctx.runner.check(
        _gdb_batch(ctx, "info sharedlibrary") + [str(binary), "-c", str(core)],
        output_path=listing,
        timeout=ctx.timeout_s,
    )
    libraries = parse_shared_libraries(listing.read_text(encoding="utf-8", errors="replace"))
    manifest = ctx.file("libs-list.txt")
    manifest.write_text("".join(f"{lib}\n" for lib in libraries), encoding="utf-8")

    bundle = ctx.file(f"{ctx.run.core_name}.libs.tar")
    missing = 0
    with tarfile.open(bundle, "w", dereference=True) as tar:
        for lib in libraries:
            try:
                tar.add(lib)
            except OSError as e:
                missing += 1
                logger.debug(f"Cannot add {lib} to {bundle.name}: {e}")
    if missing:
        logger.warning(f"{missing} of {len(libraries)} libraries could not be read")
    return [listing, manifest, bundle]


# ============================================================================
# JVM
# ============================================================================


def _jcmd(ctx: ActionContext, *arguments: str, output: Optional[Path] = None, timeout: Optional[float] = None):
    pid = _require_pid(ctx)
    command = as_user([ctx.tool("jcmd"), str(pid), *arguments], ctx.run.jvm_user)
    return ctx.runner.check(command, output_path=output, timeout=timeout or ctx.timeout_s)


def jcmd_report(subcommand: str, filename: str):
    """Build an action saving ``jcmd <pid> <subcommand>`` output to filename."""

    def record_jcmd_report(ctx: ActionContext) -> List[Path]:
        out = ctx.file(filename)
        _jcmd(ctx, subcommand, output=out)
        return [out]

    return record_jcmd_report


def record_heap_dump(ctx: ActionContext) -> List[Path]:
    """Dump the whole JVM heap (live and dead objects)."""
    hprof = ctx.file("jvm-heap.hprof")
    logger.info(
        f"Estimated heap-file size: {ctx.capabilities.heap_dump_estimate_mb}MB, "
        f"available disk space: {ctx.capabilities.free_disk_mb}MB"
    )
    try:
        result = _jcmd(ctx, "GC.heap_dump", "-all", str(hprof), timeout=ctx.settings.dump_timeout_s)
    except ExternalToolFailure:
        _discard(hprof)
        raise
    logger.debug(result.stdout.strip())
    if not hprof.exists():
        raise ExternalToolFailure("JVM heap dump failed (no heap file written)", stderr=result.stdout.strip())
    return [hprof]


def record_jstat(ctx: ActionContext) -> List[Path]:
    pid = _require_pid(ctx)
    artifacts: List[Path] = []
    for option in ("gc", "gcutil"):
        out = ctx.file(f"jvm-jstat-{option}")
        command = as_user([ctx.tool("jstat"), f"-{option}", str(pid)], ctx.run.jvm_user)
        try:
            ctx.runner.check(command, output_path=out, timeout=ctx.timeout_s)
        except ExternalToolFailure as e:
            e.partial_artifacts = artifacts + [out]
            raise
        artifacts.append(out)
    return artifacts


# ============================================================================
# Binary and core file
# ============================================================================


def link_binary(ctx: ActionContext) -> List[Path]:
    binary = ctx.run.binary
    if binary is None or not binary.exists():
        raise PreconditionUnmet(f"cannot find the process's binary '{binary}'")
    return [ctx.staging.link(binary, binary.name)]


def link_core(ctx: ActionContext) -> List[Path]:
    core = ctx.run.core
    if core is None:
        raise PreconditionUnmet("no core file given")
    return [ctx.staging.link(core, ctx.run.core_name)]
