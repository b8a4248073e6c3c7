"""The repository of persisted file sets, one per volume identifier."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable

from .errors import InvalidPathError, NotDirectoryError
from .fileset import FileSet, local_host
from .models import DEFAULT_CONTEXT, Metadata, RunContext

logger = logging.getLogger(__name__)

_LOCAL_HOST = object()


class Repository:
    """In-memory snapshot of every file set stored below ``root``.

    Loaded file sets are detached copies; the disk is only touched again by
    :meth:`persist` and :meth:`discard`.
    """

    def __init__(self, root: Path, *, context: RunContext = DEFAULT_CONTEXT) -> None:
        root = Path(root)
        if not root.is_dir():
            if root.exists() or root.is_symlink():
                raise NotDirectoryError(f"Repository root '{root}' is not a directory")
            root.mkdir(parents=True)
        self.root = root
        self.context = context
        self.filesets: dict[str, FileSet] = {}

        for dirpath, dirnames, filenames in os.walk(root):
            dirnames.sort()
            for name in sorted(filenames):
                path = Path(dirpath) / name
                if not path.is_file():
                    continue
                volume_id = path.relative_to(root).as_posix()
                fileset = FileSet.read_file(path)
                logger.info("Loaded file set %s: label=%s #files=%d", volume_id, fileset.label, len(fileset))
                self.filesets[volume_id] = fileset

    def volume_ids(self) -> list[str]:
        return sorted(self.filesets)

    def fileset_path(self, volume_id: str) -> Path:
        """Return the file holding the file set of ``volume_id``.

        The identifier must be a relative path of plain names below the root,
        and it must not name a directory of nested volumes.
        """

        parts = volume_id.split("/")
        if any(part in ("", ".", "..") for part in parts):
            raise InvalidPathError(f"Volume identifier '{volume_id}' must be a relative path inside the repository")
        path = self.root.joinpath(*parts)
        if path.is_dir():
            raise InvalidPathError(f"Volume identifier '{volume_id}' names a directory in the repository")
        return path

    def has_volume(self, volume_id: str) -> bool:
        """Whether a file set is persisted on disk for ``volume_id``."""

        return self.fileset_path(volume_id).is_file()

    def next_free_volume_id(self) -> str:
        """Return the lowest positive integer with no persisted file set."""

        number = 1
        while (self.root / str(number)).exists():
            number += 1
        return str(number)

    def filter_in_place(self, source_dir: str | os.PathLike[str] | None = None, host: object = _LOCAL_HOST) -> None:
        """Forget file sets from other hosts or from outside ``source_dir``.

        ``host`` defaults to this machine; pass ``None`` to keep every host.
        A file set is in scope when its recorded directory occurs as a substring
        of the normalized ``source_dir``, which also matches unrelated paths that
        merely share the text.
        """

        if host is _LOCAL_HOST:
            host = local_host()
        target = os.path.realpath(source_dir) if source_dir is not None else None

        for volume_id, fileset in list(self.filesets.items()):
            wrong_host = host is not None and fileset.host != host
            out_of_scope = target is not None and fileset.source_dir not in target
            if wrong_host or out_of_scope:
                logger.debug("Ignoring file set %s (host=%s dir=%s)", volume_id, fileset.host, fileset.source_dir)
                del self.filesets[volume_id]

    def find(
        self,
        archive_path: str | None = None,
        mtime: int | None = None,
        digest: str | None = None,
    ) -> list[Metadata]:
        results: list[Metadata] = []
        for fileset in self.filesets.values():
            results.extend(fileset.find(archive_path, mtime, digest))
        return results

    def exclude_already_backed_up(self, candidate: FileSet) -> None:
        """Remove from ``candidate`` everything already recorded on another volume."""

        for fileset in self.filesets.values():
            candidate.subtract(fileset.entries)

    def create_fileset(
        self,
        source_dir: str | os.PathLike[str],
        label: str = "",
        prune: bool = True,
        use_lookup: bool = False,
    ) -> FileSet:
        logger.info("Creating list of files (this can take a long time) in %s", source_dir)
        return FileSet.make(
            source_dir,
            label,
            self if use_lookup else None,
            prune=prune,
            context=self.context,
        )

    def persist(self, fileset: FileSet, volume_id: str) -> Path:
        path = self.fileset_path(volume_id)
        logger.info("Writing out copied data to %s", path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fileset.write_file(path)
        self.filesets[volume_id] = fileset
        return path

    def discard(self, volume_id: str) -> None:
        """Delete the persisted file set of a volume that is about to be overwritten."""

        path = self.fileset_path(volume_id)
        if path.exists():
            logger.info("Removing file set for volume ID %s", volume_id)
            path.unlink()
        self.filesets.pop(volume_id, None)

    def iter_filesets(self) -> Iterable[tuple[str, FileSet]]:
        return sorted(self.filesets.items(), key=lambda item: item[0])
