"""Core package for the hdbak project."""

from .cli import app, run
from .config import Config, ConfigError, load_config
from .errors import (
    AbortedError,
    FormatError,
    HdbError,
    IncompatibleFormatError,
    InconsistentMetadataError,
    InvalidPathError,
    NotDirectoryError,
    VolumeError,
    VolumeStateError,
)
from .fileset import FORMAT_VERSION, FileSet
from .manager import BackupOrchestrator, BackupReport
from .models import NA_DIGEST, CopyResult, Metadata, MetadataSet, Outcome, RunContext
from .repository import Repository
from .volume import BackupVolume, FilesystemKind, VolumeKind, VolumeState

__all__ = [
    "Config",
    "ConfigError",
    "load_config",
    "HdbError",
    "AbortedError",
    "FormatError",
    "IncompatibleFormatError",
    "InconsistentMetadataError",
    "InvalidPathError",
    "NotDirectoryError",
    "VolumeError",
    "VolumeStateError",
    "FORMAT_VERSION",
    "FileSet",
    "BackupOrchestrator",
    "BackupReport",
    "NA_DIGEST",
    "CopyResult",
    "Metadata",
    "MetadataSet",
    "Outcome",
    "RunContext",
    "Repository",
    "BackupVolume",
    "FilesystemKind",
    "VolumeKind",
    "VolumeState",
    "app",
    "run",
]
