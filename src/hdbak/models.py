"""Shared models and enums for hdbak."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, Protocol, TextIO

from .errors import FormatError, InconsistentMetadataError
from .hashing import DIGEST_LENGTH, hash_file

logger = logging.getLogger(__name__)

NA_DIGEST = "*" * DIGEST_LENGTH
"""Digest recorded for anything that is not a regular file."""

_MTIME_MASK = 0xFFFFFFFF


class EntryType(str, Enum):
    """Kinds of filesystem objects, classified without following symlinks."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"
    OTHER = "other"


class Outcome(str, Enum):
    """Result of observing or copying a single entry."""

    OK = "ok"
    OUT_OF_SPACE = "out_of_space"
    SOURCE_VANISHED = "source_vanished"
    UNSUPPORTED = "unsupported"

    @property
    def retained(self) -> bool:
        """Whether the entry stays in the set after a copy pass."""

        # Unsupported kinds are skipped by the copy but still recorded.
        return self in (Outcome.OK, Outcome.UNSUPPORTED)


@dataclass(frozen=True, slots=True)
class RunContext:
    """Per-run switches handed down to every component."""

    preserve_atime: bool = True
    preserve_ids: bool = True
    progress_interval: int = 5000


DEFAULT_CONTEXT = RunContext()


class MetadataLookup(Protocol):
    """Anything that can answer partial-match queries for prior observations."""

    def find(
        self,
        archive_path: str | None = None,
        mtime: int | None = None,
        digest: str | None = None,
    ) -> list["Metadata"]: ...


@dataclass(frozen=True, slots=True, order=True)
class Metadata:
    """Identity record of one file: archive path, digest and mtime in seconds."""

    archive_path: str
    digest: str
    mtime: int

    @classmethod
    def observe(
        cls,
        path: str | os.PathLike[str],
        archive_path: str,
        lookup: MetadataLookup | None = None,
        *,
        context: RunContext = DEFAULT_CONTEXT,
    ) -> "Observation":
        """Stat ``path`` and work out its digest.

        A digest already recorded for the same archive path and mtime is reused
        instead of reading the file again. Two different recorded digests for the
        same pair raise :class:`InconsistentMetadataError`.
        """

        try:
            stat_result = os.lstat(path)
        except FileNotFoundError:
            return Observation(Outcome.SOURCE_VANISHED)
        mtime = int(stat_result.st_mtime)

        if lookup is not None:
            digests = {match.digest for match in lookup.find(archive_path=archive_path, mtime=mtime)}
            logger.debug("Found %d possible digests for %s", len(digests), archive_path)
            if len(digests) > 1:
                raise InconsistentMetadataError(archive_path, mtime, digests)
            if digests:
                logger.debug("Reusing SHA-512 digest for %s", archive_path)
                return Observation(Outcome.OK, cls(archive_path, digests.pop(), mtime))

        if not stat.S_ISREG(stat_result.st_mode):
            return Observation(Outcome.OK, cls(archive_path, NA_DIGEST, mtime))

        logger.debug("Computing SHA-512 digest for %s", path)
        try:
            digest = hash_file(path, preserve_atime=context.preserve_atime)
        except FileNotFoundError:
            return Observation(Outcome.SOURCE_VANISHED)
        return Observation(Outcome.OK, cls(archive_path, digest, mtime))

    @classmethod
    def parse(cls, line: str) -> "Metadata":
        """Parse one ``<digest> <mtime> <archive_path>`` record."""

        parts = line.rstrip("\n").split(" ", 2)
        if len(parts) != 3 or not parts[2]:
            raise FormatError(f"Malformed metadata record: {line!r}")
        digest, raw_mtime, archive_path = parts
        if len(digest) != DIGEST_LENGTH:
            raise FormatError(f"Malformed digest in metadata record: {line!r}")
        try:
            mtime = int(raw_mtime, 16)
        except ValueError as exc:
            raise FormatError(f"Malformed mtime in metadata record: {line!r}") from exc
        return cls(archive_path, digest, mtime)

    def to_line(self) -> str:
        # mtime is stored as 32 bits of hex and wraps after 2106.
        return f"{self.digest} {self.mtime & _MTIME_MASK:08x} {self.archive_path}"

    @property
    def is_regular_file(self) -> bool:
        return self.digest != NA_DIGEST

    def matches(
        self,
        archive_path: str | None = None,
        mtime: int | None = None,
        digest: str | None = None,
    ) -> bool:
        """Compare against the given fields; ``None`` matches anything."""

        return (
            (archive_path is None or self.archive_path == archive_path)
            and (mtime is None or self.mtime == mtime)
            and (digest is None or self.digest == digest)
        )


@dataclass(frozen=True, slots=True)
class Observation:
    """Outcome of :meth:`Metadata.observe`; ``metadata`` is set only on success."""

    outcome: Outcome
    metadata: Metadata | None = None


class MetadataSet:
    """Ordered collection of :class:`Metadata` with set-style subtraction."""

    def __init__(self, entries: Iterable[Metadata] = ()) -> None:
        self.entries: list[Metadata] = list(entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Metadata]:
        return iter(self.entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MetadataSet):
            return NotImplemented
        return self.entries == other.entries

    def append(self, metadata: Metadata) -> None:
        self.entries.append(metadata)

    def archive_paths(self) -> list[str]:
        return [entry.archive_path for entry in self.entries]

    def subtract(self, removals: Iterable[Metadata]) -> None:
        """Drop every entry equal to any of ``removals``, duplicates included."""

        doomed = set(removals)
        if doomed:
            self.entries[:] = [entry for entry in self.entries if entry not in doomed]

    def find(
        self,
        archive_path: str | None = None,
        mtime: int | None = None,
        digest: str | None = None,
    ) -> list[Metadata]:
        """Return all entries matching the partial query. Linear in the set size."""

        return [entry for entry in self.entries if entry.matches(archive_path, mtime, digest)]

    def sort(self) -> None:
        self.entries.sort()

    def serialize(self, stream: TextIO) -> None:
        for entry in self.entries:
            stream.write(entry.to_line())
            stream.write("\n")

    def deserialize(self, stream: Iterable[str]) -> "MetadataSet":
        """Replace the entries with the records read from ``stream``."""

        self.entries = [Metadata.parse(line) for line in stream]
        return self


@dataclass(frozen=True, slots=True)
class CopyResult:
    """Result emitted for each entry of a copy pass."""

    metadata: Metadata
    source: str
    destination: str
    outcome: Outcome
