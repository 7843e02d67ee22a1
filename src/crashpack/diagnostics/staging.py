"""Staging area: the directory that accumulates artifacts before packaging."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import List

from crashpack.exceptions import SetupFailure

logger = logging.getLogger(__name__)


class StagingArea:
    """Exclusively owned working directory for one run."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def create(cls, path: Path) -> "StagingArea":
        """Create a fresh staging directory.

        Raises:
            SetupFailure: If the directory exists already or cannot be created.
        """
        try:
            Path(path).mkdir(parents=False, exist_ok=False)
        except OSError as e:
            raise SetupFailure(f"Could not create temporary directory {path}: {e}") from e
        logger.debug(f"[StagingArea] Created {path}")
        return cls(path)

    def file(self, name: str) -> Path:
        """Path of an artifact inside the staging area (flat layout)."""
        return self.path / name

    def files(self) -> List[Path]:
        """Artifacts currently staged, sorted by name."""
        return sorted(p for p in self.path.iterdir() if p.is_file() or p.is_symlink())

    def link(self, source: Path, name: str) -> Path:
        """Symlink a large external file (binary, core) instead of copying it."""
        dest = self.file(name)
        dest.symlink_to(Path(source).resolve())
        return dest

    def chown(self, uid: int, gid: int) -> None:
        """Hand the directory and its files to another user (root runs only)."""
        for p in [self.path, *self.files()]:
            try:
                os.chown(p, uid, gid, follow_symlinks=False)
            except OSError as e:
                logger.warning(f"[StagingArea] Could not chown {p}: {e}")

    def remove(self) -> None:
        shutil.rmtree(self.path)
        logger.debug(f"[StagingArea] Removed {self.path}")
