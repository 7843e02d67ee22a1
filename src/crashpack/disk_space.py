"""Disk space checking utilities for dump writes.

A core file or heap dump can be as large as the target's address space, so the
free space of the staging filesystem is checked before any dump is attempted.
"""

import logging
import shutil
from pathlib import Path
from typing import Union

from .exceptions import ResourceExhausted

logger = logging.getLogger(__name__)

BYTES_PER_MB = 1024 * 1024


def _existing_ancestor(path: Path) -> Path:
    path = path.resolve()
    check_path = path if path.is_dir() else path.parent

    # If parent doesn't exist, walk up to find an existing directory
    while not check_path.exists() and check_path.parent != check_path:
        check_path = check_path.parent
    return check_path


def get_available_disk_space(path: Union[str, Path]) -> int:
    """Get available disk space in bytes.

    Args:
        path: Path to check (uses the disk containing this path)

    Returns:
        Available bytes, or -1 if unable to determine.
    """
    try:
        check_path = _existing_ancestor(Path(path))
        if not check_path.exists():
            return -1

        usage = shutil.disk_usage(check_path)
        return usage.free

    except OSError:
        return -1


def get_available_disk_space_mb(path: Union[str, Path]) -> int:
    """Available disk space in whole MB, or 0 if it cannot be determined."""
    free = get_available_disk_space(path)
    if free < 0:
        logger.warning(f"Cannot determine disk space for path: {path}")
        return 0
    return free // BYTES_PER_MB


def ensure_disk_space_mb(available_mb: int, required_mb: int) -> None:
    """Raise ResourceExhausted when a dump of required_mb will not fit.

    Args:
        available_mb: Free space on the staging filesystem
        required_mb: Estimated dump size

    Raises:
        ResourceExhausted: If available_mb < required_mb.
    """
    if available_mb < required_mb:
        raise ResourceExhausted(
            f"insufficient disk space (need at least {required_mb}MB, {available_mb}MB available)",
            required_mb=required_mb,
            available_mb=available_mb,
        )
