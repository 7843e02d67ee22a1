"""Target resolution and the per-run context.

A target is either a live process (pid) or a crashed one (core file plus the
binary that dumped it). ``build_run_context()`` derives everything the run
needs to know about the target exactly once; the resulting ``RunContext`` is
immutable and handed explicitly to every component.
"""

from __future__ import annotations

import logging
import os
import pwd
import re
import socket
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

from crashpack.diagnostics.command_runner import ToolRunner
from crashpack.exceptions import UsageError

logger = logging.getLogger(__name__)

PROC_ROOT = Path("/proc")
DEPLOYMENT_TOOL_NAME = "dfw"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"

ELF_MAGIC = b"\x7fELF"
ET_EXEC = 2
ET_DYN = 3
ET_CORE = 4

_EXECFN_RE = re.compile(r"execfn: '([^']+)'")

# Servers whose working directory sits at a fixed place inside a deployment
_DEPLOYMENT_SERVER_DIRS = {
    "rttpd": "servers/Liberator",
    "transformer": "servers/Transformer",
}


class FileKind(Enum):
    """ELF object type of a file given on the command line."""

    CORE = "core"
    EXECUTABLE = "executable"
    OTHER = "other"


@dataclass(frozen=True)
class ProcessTarget:
    pid: int


@dataclass(frozen=True)
class CoreTarget:
    core: Path
    binary: Path


Target = Union[ProcessTarget, CoreTarget]


def classify_file(path: Path) -> FileKind:
    """Classify a file from its ELF header (``e_type``)."""
    try:
        with Path(path).open("rb") as f:
            head = f.read(64)
    except OSError:
        return FileKind.OTHER
    if len(head) < 18 or not head.startswith(ELF_MAGIC):
        return FileKind.OTHER
    endian = "big" if head[5] == 2 else "little"
    e_type = int.from_bytes(head[16:18], endian, signed=False)
    if e_type == ET_CORE:
        return FileKind.CORE
    if e_type in (ET_EXEC, ET_DYN):
        return FileKind.EXECUTABLE
    return FileKind.OTHER


def recorded_executable(core: Path, runner: ToolRunner) -> Optional[str]:
    """Return the executable path recorded in a core file, if ``file`` reports one."""
    result = runner.run(["file", "--brief", str(core)])
    if not result.ok:
        logger.debug(f"'file' could not inspect {core}: {result.stderr_tail}")
        return None
    match = _EXECFN_RE.search(result.stdout)
    return match.group(1) if match else None


def resolve_process_target(pid: int, proc_root: Path = PROC_ROOT) -> ProcessTarget:
    if pid <= 0 or not (proc_root / str(pid)).exists():
        raise UsageError(f"Process {pid} not found")
    return ProcessTarget(pid=pid)


def resolve_core_target(paths: Sequence[Path], runner: ToolRunner) -> CoreTarget:
    """Work out which argument is the core and which is the binary.

    Accepts ``[core]``, ``[core, binary]`` or ``[binary, core]``. With a core
    alone, the binary is recovered from the path recorded in the core.

    Raises:
        UsageError: If the files cannot be classified or the binary cannot be found.
    """
    usage = "Usage: crashpack core CORE [BINARY]"
    if not 1 <= len(paths) <= 2:
        raise UsageError(usage)
    for p in paths:
        if not Path(p).is_file():
            raise UsageError(f"File does not exist or is not a regular file: {p}")

    if len(paths) == 1:
        core = Path(paths[0])
        if classify_file(core) is not FileKind.CORE:
            raise UsageError(f"Not a core file: {core}\n{usage}")
        execfn = recorded_executable(core, runner)
        if not execfn:
            raise UsageError(
                f"Core file {core.name} has not recorded the location of the crashed binary\n"
                f"Please specify both the binary and the core on the command line\n{usage}"
            )
        if not Path(execfn).is_file():
            raise UsageError(
                f"Core file {core.name} has recorded the location of the crashed binary\n"
                f"Cannot find binary {execfn}\n{usage}"
            )
        return CoreTarget(core=core.resolve(), binary=Path(execfn).resolve())

    core: Optional[Path] = None
    binary: Optional[Path] = None
    for p in paths:
        kind = classify_file(Path(p))
        if kind is FileKind.CORE:
            core = Path(p).resolve()
        elif kind is FileKind.EXECUTABLE:
            binary = Path(p).resolve()
    if core is None or binary is None:
        raise UsageError(f"Expected one core file and one executable\n{usage}")
    return CoreTarget(core=core, binary=binary)


def find_in_parents(start: Path, name: str) -> Optional[Path]:
    """Search ``start`` and each of its parents for ``name``."""
    directory = Path(start)
    for candidate_dir in [directory, *directory.parents]:
        candidate = candidate_dir / name
        if candidate.exists():
            return candidate.resolve()
    return None


def infer_working_dir(binary: Path, deployment_tool: Optional[Path]) -> Path:
    """Best guess at where a crashed binary ran from.

    Only accurate if the binary has not been moved since it crashed.
    """
    binary_dir = binary.parent
    server_dir = _DEPLOYMENT_SERVER_DIRS.get(binary.name)
    if server_dir and deployment_tool is not None:
        return deployment_tool.parent / server_dir
    if server_dir or "DataSource" in str(binary_dir.parent):
        return binary_dir.parent
    return binary_dir


def _user_name(uid: int) -> str:
    try:
        return pwd.getpwuid(uid).pw_name
    except KeyError:
        return str(uid)


def _read_link(path: Path) -> Optional[Path]:
    try:
        return Path(os.readlink(path))
    except OSError:
        return None


@dataclass(frozen=True)
class RunContext:
    """Everything known about one diagnostics run, computed once."""

    target: Target
    host: str
    command: str
    binary: Optional[Path]
    working_dir: Optional[Path]
    deployment_tool: Optional[Path]
    caller_user: str
    caller_uid: int
    target_user: str
    target_uid: int
    output_dir: Path
    captured_at: datetime
    archive_name: str

    @property
    def pid(self) -> Optional[int]:
        return self.target.pid if isinstance(self.target, ProcessTarget) else None

    @property
    def core(self) -> Optional[Path]:
        return self.target.core if isinstance(self.target, CoreTarget) else None

    @property
    def is_live(self) -> bool:
        return isinstance(self.target, ProcessTarget)

    @property
    def staging_dir(self) -> Path:
        return self.output_dir / self.archive_name

    @property
    def archive_path(self) -> Path:
        return self.output_dir / f"{self.archive_name}.tar.gz"

    @property
    def core_name(self) -> str:
        """File name a core file is stored under inside the archive."""
        if self.core is not None:
            return self.core.name.replace(":", "")
        return f"{self.command}.core.{self.pid}"

    @property
    def jvm_user(self) -> Optional[str]:
        """User to run JVM tools as (None means the caller)."""
        return self.target_user if self.caller_user != self.target_user else None


def archive_name_for(host: str, command: str, target: Target, captured_at: datetime) -> str:
    if isinstance(target, ProcessTarget):
        target_id = str(target.pid)
    else:
        target_id = target.core.name.replace(":", "")
    return f"diagnostics-{host}-{command}-{target_id}-{captured_at.strftime(TIMESTAMP_FORMAT)}"


def build_run_context(
    target: Target,
    output_dir: Path,
    clock: Callable[[], datetime] = datetime.now,
    sleep: Callable[[float], None] = time.sleep,
    proc_root: Path = PROC_ROOT,
) -> RunContext:
    """Derive the immutable run context for a resolved target.

    The capture timestamp has one-second granularity. If an archive or staging
    directory with the same name already exists, wait for the next second.
    """
    output_dir = Path(output_dir).resolve()
    host = socket.gethostname().split(".")[0]
    caller_uid = os.geteuid()

    if isinstance(target, ProcessTarget):
        proc_dir = proc_root / str(target.pid)
        try:
            target_uid = proc_dir.stat().st_uid
        except OSError as e:
            raise UsageError(f"Process {target.pid} not found") from e
        binary = _read_link(proc_dir / "exe")
        working_dir = _read_link(proc_dir / "cwd")
        if binary is not None:
            command = binary.name
        else:
            try:
                command = (proc_dir / "comm").read_text(encoding="utf-8").strip() or str(target.pid)
            except OSError:
                command = str(target.pid)
        deployment_tool = find_in_parents(binary.parent, DEPLOYMENT_TOOL_NAME) if binary else None
    else:
        try:
            target_uid = target.core.stat().st_uid
        except OSError as e:
            raise UsageError(f"Cannot read core file {target.core}") from e
        binary = target.binary
        command = binary.name
        deployment_tool = find_in_parents(binary.parent, DEPLOYMENT_TOOL_NAME)
        working_dir = infer_working_dir(binary, deployment_tool)

    captured_at = clock().replace(microsecond=0)
    archive_name = archive_name_for(host, command, target, captured_at)
    for _ in range(3):
        if not (output_dir / archive_name).exists() and not (output_dir / f"{archive_name}.tar.gz").exists():
            break
        sleep(1.0)
        captured_at = clock().replace(microsecond=0)
        archive_name = archive_name_for(host, command, target, captured_at)

    return RunContext(
        target=target,
        host=host,
        command=command,
        binary=binary,
        working_dir=working_dir,
        deployment_tool=deployment_tool,
        caller_user=_user_name(caller_uid),
        caller_uid=caller_uid,
        target_user=_user_name(target_uid),
        target_uid=target_uid,
        output_dir=output_dir,
        captured_at=captured_at,
        archive_name=archive_name,
    )


def validate_caller(context: RunContext) -> None:
    """Hard preconditions checked before anything is probed or collected.

    Raises:
        UsageError: If the output directory is not writable, or a live target
            belongs to another user and the caller is not root.
    """
    if not os.access(context.output_dir, os.W_OK):
        raise UsageError("This tool must be run from a writeable directory. Aborting.")
    if context.is_live and context.caller_uid != 0 and context.caller_uid != context.target_uid:
        raise UsageError(
            f"This tool must be run as root (recommended) or the same user as "
            f"process {context.pid} ({context.target_user})"
        )
