"""Archive Builder for Diagnostics Runs

Packages a staging area into one compressed tarball:
- manifest.json: what was collected, skipped and failed, with file sizes
- diagnostics.log: the run log
- every artifact, with symlinked binaries and cores dereferenced

The staging directory is removed only after the archive has been written and
verified; on any failure it is kept so nothing collected is lost.
"""

from __future__ import annotations

import json
import logging
import os
import tarfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

from crashpack import __version__
from crashpack.diagnostics.capabilities import CapabilitySet
from crashpack.diagnostics.models import ExecutionOutcome
from crashpack.diagnostics.staging import StagingArea
from crashpack.diagnostics.target import RunContext
from crashpack.exceptions import SetupFailure
from crashpack.logging_config import RUN_LOG_FILENAME

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"


@dataclass(frozen=True)
class Archive:
    path: Path
    created_at: datetime
    manifest: Dict[str, Any]


def invoking_user_ids(output_dir: Path) -> Optional[Tuple[int, int]]:
    """(uid, gid) that should own the results of a root run.

    The sudo caller if known, else the owner of the output directory. None if
    that is root itself.
    """
    sudo_uid = os.environ.get("SUDO_UID")
    sudo_gid = os.environ.get("SUDO_GID")
    if sudo_uid and sudo_gid and sudo_uid.isdigit() and sudo_gid.isdigit():
        uid, gid = int(sudo_uid), int(sudo_gid)
    else:
        stat = Path(output_dir).stat()
        uid, gid = stat.st_uid, stat.st_gid
    if uid == 0:
        return None
    return uid, gid


class ArchiveBuilder:
    """Writes the manifest and the final tarball for one run."""

    def __init__(self, chown: Optional[bool] = None):
        """
        Args:
            chown: Hand the results to the invoking user. Defaults to True
                when running as root.
        """
        self.chown = os.geteuid() == 0 if chown is None else chown

    def build(
        self,
        staging: StagingArea,
        context: RunContext,
        outcomes: Sequence[ExecutionOutcome],
        caps: Optional[CapabilitySet] = None,
    ) -> Archive:
        """Package the staging area into ``context.archive_path``.

        Raises:
            SetupFailure: If the archive cannot be written or fails verification.
                The staging area is left in place.
        """
        manifest = self._generate_manifest(staging, context, outcomes, caps)
        self._write_manifest(staging, manifest)

        owner = invoking_user_ids(context.output_dir) if self.chown else None
        if owner is not None:
            staging.chown(*owner)

        archive_path = context.archive_path
        logger.info(f"[ArchiveBuilder] Compressing {staging.path.name} to {archive_path}")
        try:
            with tarfile.open(archive_path, "w:gz", dereference=True) as tar:
                tar.add(staging.path, arcname=staging.path.name)
        except (OSError, tarfile.TarError) as e:
            raise SetupFailure(
                f"Could not write archive {archive_path}: {e}. Collected files kept in {staging.path}"
            ) from e

        self._verify(archive_path, staging.path.name)

        if owner is not None:
            try:
                os.chown(archive_path, *owner)
            except OSError as e:
                logger.warning(f"[ArchiveBuilder] Could not chown {archive_path}: {e}")

        staging.remove()
        logger.info(f"[ArchiveBuilder] Archive complete: {archive_path}")
        return Archive(path=archive_path, created_at=datetime.now(), manifest=manifest)

    def _generate_manifest(
        self,
        staging: StagingArea,
        context: RunContext,
        outcomes: Sequence[ExecutionOutcome],
        caps: Optional[CapabilitySet],
    ) -> Dict[str, Any]:
        files = []
        for path in staging.files():
            try:
                size = path.stat().st_size
            except OSError:
                size = None
            files.append({"name": path.name, "size_bytes": size, "linked": path.is_symlink()})

        return {
            "version": "1.0",
            "crashpack_version": __version__,
            "archive": context.archive_path.name,
            "host": context.host,
            "command": context.command,
            "pid": context.pid,
            "core": str(context.core) if context.core else None,
            "binary": str(context.binary) if context.binary else None,
            "caller_user": context.caller_user,
            "target_user": context.target_user,
            "captured_at": context.captured_at.isoformat(),
            "capabilities": caps.as_dict() if caps is not None else {},
            "diagnostics": [outcome.to_dict() for outcome in outcomes],
            "file_count": len(files),
            "files": files,
        }

    def _write_manifest(self, staging: StagingArea, manifest: Dict[str, Any]) -> None:
        path = staging.file(MANIFEST_FILENAME)
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(manifest, f, indent=2, sort_keys=True, default=str)
        except OSError as e:
            raise SetupFailure(f"Could not write {path}: {e}") from e
        logger.debug(f"[ArchiveBuilder] Wrote manifest: {path}")

    def _verify(self, archive_path: Path, top_level: str) -> None:
        """The archive must exist, be a readable tar and carry the run log."""
        if not archive_path.is_file() or not tarfile.is_tarfile(archive_path):
            raise SetupFailure(f"Archive {archive_path} is missing or unreadable")
        try:
            with tarfile.open(archive_path, "r:gz") as tar:
                names = set(tar.getnames())
        except (OSError, tarfile.TarError) as e:
            raise SetupFailure(f"Archive {archive_path} is unreadable: {e}") from e
        if f"{top_level}/{RUN_LOG_FILENAME}" not in names:
            raise SetupFailure(f"Archive {archive_path} does not contain {RUN_LOG_FILENAME}")
