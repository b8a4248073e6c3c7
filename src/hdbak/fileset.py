"""File set persistence and the copy pass for hdbak."""

from __future__ import annotations

import logging
import os
import socket
from pathlib import Path
from typing import Iterable, TextIO

from .errors import FormatError, IncompatibleFormatError, InvalidPathError, NotDirectoryError
from .filesystem import copy_entry, iter_tree, remove_partial_file
from .models import DEFAULT_CONTEXT, CopyResult, Metadata, MetadataLookup, MetadataSet, Outcome, RunContext

logger = logging.getLogger(__name__)

FORMAT_VERSION = "3.2"
MAJOR_VERSION = FORMAT_VERSION.split(".")[0]


def local_host() -> str:
    return socket.gethostname()


def normalize_source_dir(path: str | os.PathLike[str]) -> str:
    """Return the absolute, symlink-free form of ``path`` without a trailing slash."""

    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve(strict=True))
    except FileNotFoundError:
        raise InvalidPathError(f"Source path '{path}' does not exist") from None


class FileSet(MetadataSet):
    """The files of one backup pass plus where and on which host they came from."""

    def __init__(
        self,
        entries: Iterable[Metadata] = (),
        *,
        label: str = "",
        host: str = "",
        source_dir: str = "",
        prune_leading_dir: bool = True,
        format_version: str = FORMAT_VERSION,
    ) -> None:
        super().__init__(entries)
        self.label = label
        self.host = host
        self.source_dir = source_dir
        self.prune_leading_dir = prune_leading_dir
        self.format_version = format_version

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FileSet):
            return NotImplemented
        return self.header() == other.header() and self.entries == other.entries

    def __repr__(self) -> str:
        return f"FileSet(label={self.label!r}, host={self.host!r}, source_dir={self.source_dir!r}, entries={len(self)})"

    def header(self) -> tuple[str, str, str, str, bool]:
        return (self.format_version, self.label, self.host, self.source_dir, self.prune_leading_dir)

    # ------------------------------------------------------------------
    # Building

    @classmethod
    def make(
        cls,
        source_dir: str | os.PathLike[str],
        label: str = "",
        lookup: MetadataLookup | None = None,
        *,
        prune: bool = True,
        context: RunContext = DEFAULT_CONTEXT,
    ) -> "FileSet":
        """Walk ``source_dir`` on this host and observe every entry below it."""

        root = normalize_source_dir(source_dir)
        fileset = cls(label=label, host=local_host(), source_dir=root, prune_leading_dir=prune)

        paths: list[str] = []
        for path in iter_tree(Path(root)):
            paths.append(str(path))
            if len(paths) % context.progress_interval == 0:
                logger.info("...%d files...", len(paths))
        logger.info("Found %d files total.", len(paths))

        paths.sort()
        leading = len(root if root == os.sep else root + os.sep)

        total = len(paths)
        for index, path in enumerate(paths, start=1):
            archive_path = path[leading:] if prune else path
            logger.info("Creating metadata (#%d/%d) %s", index, total, path)
            observation = Metadata.observe(path, archive_path, lookup, context=context)
            if observation.metadata is None:
                logger.warning("%s is gone already", path)
                continue
            fileset.append(observation.metadata)

        fileset.sort()
        return fileset

    def source_path(self, metadata: Metadata, root: str | None = None) -> str:
        """Return where ``metadata`` lives, below ``root`` or the recorded source dir."""

        if self.prune_leading_dir or root is not None:
            return os.path.join(root if root is not None else self.source_dir, metadata.archive_path.lstrip("/"))
        return metadata.archive_path

    # ------------------------------------------------------------------
    # Copying

    def copy(self, dest_root: str | os.PathLike[str], *, context: RunContext = DEFAULT_CONTEXT) -> list[CopyResult]:
        """Copy every entry below ``dest_root`` and drop the ones that did not land.

        Entries are processed in the current order. An entry that does not fit is
        removed (with any partial file) and the pass continues, since a smaller
        entry later on may still fit.
        """

        if not os.path.isdir(dest_root):
            raise NotDirectoryError(f"{dest_root} is not a directory")

        results: list[CopyResult] = []
        uncopied: list[Metadata] = []
        total = len(self.entries)
        for index, metadata in enumerate(self.entries, start=1):
            destination = os.path.join(dest_root, metadata.archive_path.lstrip("/"))
            source = self.source_path(metadata)
            logger.info("Copying (#%d/%d) %s to %s", index, total, source, destination)

            outcome = copy_entry(Path(source), Path(destination), context=context)
            if outcome == Outcome.OUT_OF_SPACE:
                remove_partial_file(Path(destination))
            if not outcome.retained:
                uncopied.append(metadata)
            results.append(CopyResult(metadata=metadata, source=source, destination=destination, outcome=outcome))

        self.subtract(uncopied)
        return results

    # ------------------------------------------------------------------
    # Persistence

    def write(self, stream: TextIO) -> None:
        stream.write(f"Version: {self.format_version}\n")
        stream.write(f"Label: {self.label}\n")
        stream.write(f"Host: {self.host}\n")
        stream.write(f"Dir: {self.source_dir}\n")
        stream.write(f"Prune: {'true' if self.prune_leading_dir else 'false'}\n")
        stream.write("\n")
        self.serialize(stream)

    def write_file(self, path: Path) -> None:
        """Write the file set to ``path``, removing the file again if writing fails.

        Names that are not valid UTF-8 are written back as their original bytes.
        """

        try:
            with path.open("w", encoding="utf-8", errors="surrogateescape") as handle:
                self.write(handle)
        except BaseException:
            path.unlink(missing_ok=True)
            raise

    @classmethod
    def read(cls, stream: TextIO, *, name: str = "<stream>") -> "FileSet":
        """Read a persisted file set, refusing other major format versions."""

        fileset = cls()
        version: str | None = None
        for raw in stream:
            line = raw.rstrip("\n")
            if line == "":
                break
            header, sep, value = line.partition(": ")
            if not sep and header.endswith(":"):
                header, value = header[:-1], ""
            if header == "Version":
                version = value
                if value.split(".")[0] != MAJOR_VERSION:
                    raise IncompatibleFormatError(name, value, FORMAT_VERSION)
                fileset.format_version = value
            elif header == "Label":
                fileset.label = value
            elif header == "Host":
                fileset.host = value
            elif header == "Dir":
                fileset.source_dir = value
            elif header == "Prune":
                fileset.prune_leading_dir = value == "true"
        if version is None:
            raise FormatError(f"File '{name}' has no Version header")

        fileset.deserialize(stream)
        return fileset

    @classmethod
    def read_file(cls, path: Path) -> "FileSet":
        with path.open("r", encoding="utf-8", errors="surrogateescape") as handle:
            return cls.read(handle, name=str(path))
