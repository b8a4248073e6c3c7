"""Exception hierarchy for hdbak.

Only conditions that abort a run are exceptions.  Entries that vanish or do
not fit on the medium are reported through :class:`hdbak.models.Outcome`
instead, so the copy pass can keep going.
"""

from __future__ import annotations

__all__ = [
    "HdbError",
    "InconsistentMetadataError",
    "FormatError",
    "IncompatibleFormatError",
    "InvalidPathError",
    "NotDirectoryError",
    "VolumeError",
    "VolumeStateError",
    "AbortedError",
]


class HdbError(RuntimeError):
    """Base exception for unrecoverable hdbak failures."""


class InconsistentMetadataError(HdbError):
    """Raised when the repository holds two digests for one path and mtime."""

    def __init__(self, archive_path: str, mtime: int, digests: set[str]) -> None:
        super().__init__(
            f"Inconsistent metadata for '{archive_path}' (mtime {mtime}): "
            f"{len(digests)} different SHA-512 digests in the repository"
        )
        self.archive_path = archive_path
        self.mtime = mtime
        self.digests = frozenset(digests)


class FormatError(HdbError):
    """Raised when a persisted file set cannot be parsed."""


class IncompatibleFormatError(FormatError):
    """Raised when a persisted file set uses a different major format version."""

    def __init__(self, source: str, found: str, expected: str) -> None:
        super().__init__(
            f"File '{source}' uses a different format ({found}) than this program ({expected}). "
            "Please upgrade your repository"
        )
        self.found = found
        self.expected = expected


class InvalidPathError(HdbError, ValueError):
    """Raised when a source, destination, or repository path is unusable."""


class NotDirectoryError(InvalidPathError):
    """Raised when a path that must be a directory is something else."""


class VolumeError(HdbError):
    """Raised when an external volume command fails."""

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message if returncode is None else f"{message} (exit code {returncode})")
        self.returncode = returncode


class VolumeStateError(HdbError):
    """Raised when a volume lifecycle step is attempted out of order."""


class AbortedError(HdbError):
    """Raised when the operator declines to continue."""
