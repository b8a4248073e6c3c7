"""Filesystem helpers for hdbak."""

from __future__ import annotations

import errno
import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Iterator

from .models import EntryType, Outcome, RunContext

logger = logging.getLogger(__name__)

_OUT_OF_SPACE_ERRNOS = frozenset({errno.ENOSPC, errno.EDQUOT})


def ensure_parent(path: Path) -> None:
    """Ensure the parent directory exists."""

    path.parent.mkdir(parents=True, exist_ok=True)


def detect_entry_type(path: Path, stat_result: os.stat_result | None = None) -> EntryType:
    """Determine the ``EntryType`` for ``path`` without following symlinks."""

    mode = (stat_result or path.lstat()).st_mode
    if stat.S_ISLNK(mode):
        return EntryType.SYMLINK
    if stat.S_ISDIR(mode):
        return EntryType.DIRECTORY
    if stat.S_ISREG(mode):
        return EntryType.FILE
    return EntryType.OTHER


def iter_tree(root: Path) -> Iterator[Path]:
    """Yield every path below ``root`` (not ``root`` itself), never entering symlinked dirs."""

    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        for name in dirnames:
            yield base / name
        for name in filenames:
            yield base / name


def copy_entry(source: Path, destination: Path, *, context: RunContext) -> Outcome:
    """Copy one entry, classifying recoverable failures.

    Running out of space on the destination gives ``OUT_OF_SPACE`` and a source
    that disappeared gives ``SOURCE_VANISHED``. Any other ``OSError`` propagates.
    """

    try:
        return _copy_entry(source, destination, context)
    except FileNotFoundError:
        if os.path.lexists(source):
            raise
        logger.warning("%s was deleted before it could be copied", source)
        return Outcome.SOURCE_VANISHED
    except OSError as exc:
        if exc.errno in _OUT_OF_SPACE_ERRNOS:
            logger.warning("Out of space while copying %s", source)
            return Outcome.OUT_OF_SPACE
        raise


def _copy_entry(source: Path, destination: Path, context: RunContext) -> Outcome:
    logger.debug("Copying entry %s to %s", source, destination)
    original = source.lstat()
    entry_type = detect_entry_type(source, original)

    if entry_type == EntryType.SYMLINK:
        ensure_parent(destination)
        os.symlink(os.readlink(source), destination)
        if context.preserve_ids:
            os.lchown(destination, original.st_uid, original.st_gid)
        return Outcome.OK

    if entry_type == EntryType.DIRECTORY:
        # Raises FileExistsError when something other than a directory is in the way.
        destination.mkdir(parents=True, exist_ok=True)
    elif entry_type == EntryType.FILE:
        ensure_parent(destination)
        shutil.copyfile(source, destination, follow_symlinks=False)
    else:
        logger.warning("Skipping %s: unsupported file type", source)
        return Outcome.UNSUPPORTED

    current = source.lstat()
    if context.preserve_atime:
        os.utime(source, ns=(original.st_atime_ns, current.st_mtime_ns))
    os.utime(destination, ns=(original.st_atime_ns, current.st_mtime_ns))
    if context.preserve_ids:
        os.chown(destination, current.st_uid, current.st_gid)
    return Outcome.OK


def remove_partial_file(path: Path) -> None:
    """Delete a partially written regular file, ignoring one that is already gone."""

    if path.is_file() and not path.is_symlink():
        path.unlink(missing_ok=True)
