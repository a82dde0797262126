"""Atomic file replacement for database saves.

A save either leaves the target exactly as it was or replaces it with the
complete new contents. The new bytes go to a temporary file in the same
directory, are flushed and fsynced, and only then renamed over the target
with ``os.replace``. The rename is the single commit point: if anything
fails before it, the temporary file is removed and the target is never
touched.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path

from .exceptions import AlreadyExistsError, PathError, WriteError

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"


def backup_path(path: Path) -> Path:
    """Where the previous version goes: ``db.kdbx`` -> ``db.old.kdbx``."""
    return path.with_name(f"{path.stem}.old{path.suffix}")


def check_target(path: str | Path, *, overwrite: bool = False) -> Path:
    """Validate a save target without touching the filesystem.

    Args:
        path: Target file path
        overwrite: Whether an existing file may be replaced

    Returns:
        The target as a Path

    Raises:
        AlreadyExistsError: If the target exists and overwrite is False
        PathError: If the target is a directory, or its parent is missing
            or not writable
    """
    path = Path(path)
    if path.is_dir():
        raise PathError(f"{path} is a directory", path)
    if path.exists() and not overwrite:
        raise AlreadyExistsError(path)

    parent = path.parent
    if not parent.exists():
        raise PathError(f"Directory {parent} does not exist", path)
    if not parent.is_dir():
        raise PathError(f"{parent} is not a directory", path)
    if not os.access(parent, os.W_OK | os.X_OK):
        raise PathError(f"Directory {parent} is not writable", path)
    return path


def _fsync_directory(directory: Path) -> None:
    # Makes the rename itself durable; not every platform can open a directory
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        logger.debug("Directory fsync not supported for %s", directory)
        return
    try:
        os.fsync(fd)
    except OSError:
        logger.debug("Directory fsync not supported for %s", directory)
    finally:
        os.close(fd)


def atomic_write(
    path: str | Path,
    data: bytes,
    *,
    overwrite: bool = False,
    backup: bool = False,
) -> Path:
    """Replace ``path`` with ``data`` atomically.

    Args:
        path: Target file path
        data: Complete new file contents
        overwrite: Whether an existing file may be replaced
        backup: Copy an existing target to ``<stem>.old<suffix>`` first

    Returns:
        The target as a Path

    Raises:
        AlreadyExistsError: If the target exists and overwrite is False
        PathError: If the parent directory is unusable
        WriteError: If writing, syncing, backing up or renaming fails; the
            target is unchanged and no temporary file is left behind
    """
    path = check_target(path, overwrite=overwrite)

    try:
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=TEMP_SUFFIX, dir=path.parent
        )
    except OSError as e:
        raise WriteError(f"Cannot create temporary file: {e.strerror or e}", path) from e
    temp_path = Path(temp_name)
    logger.debug("Writing %d bytes to %s", len(data), temp_path)

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

        if backup and path.exists():
            shutil.copy2(path, backup_path(path))
            logger.debug("Backed up %s to %s", path, backup_path(path))

        os.replace(temp_path, path)
    except OSError as e:
        temp_path.unlink(missing_ok=True)
        raise WriteError(f"Cannot write {path}: {e.strerror or e}", path) from e
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise

    _fsync_directory(path.parent)
    logger.info("Wrote %s", path)
    return path
