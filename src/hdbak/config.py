"""TOML configuration loading for hdbak."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .models import RunContext
from .volume import FilesystemKind, VolumeKind

DEFAULT_CONFIG_FILENAME = "hdbak.toml"
REPOSITORY_ENV_VAR = "HDB_GROUPDIR"


class ConfigError(RuntimeError):
    """Raised when a configuration file cannot be parsed or validated."""


def _expand_path(raw: str | os.PathLike[str] | Path, *, base_dir: Path) -> Path:
    """Return an absolute ``Path`` by expanding env vars and user segments."""

    text = str(raw)
    expanded = Path(os.path.expandvars(text)).expanduser()
    if expanded.is_absolute():
        return expanded.resolve(strict=False)
    return (base_dir / expanded).resolve(strict=False)


def default_repository_root() -> str:
    return os.environ.get(REPOSITORY_ENV_VAR) or "~/.hdb"


class RepositorySettings(BaseModel):
    """Where the persisted file sets live."""

    model_config = ConfigDict(frozen=True)

    root: Path

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, base_dir: Path) -> "RepositorySettings":
        return cls(root=_expand_path(raw.get("root") or default_repository_root(), base_dir=base_dir))


class VolumeSettings(BaseModel):
    """The backup medium and how to prepare it."""

    model_config = ConfigDict(frozen=True)

    device: str | None = None
    mount_point: Path = Path("/mnt")
    filesystem: FilesystemKind = FilesystemKind.REISERFS
    encrypt: bool = False
    eject: bool = True
    label: str = ""

    @property
    def kind(self) -> VolumeKind:
        return VolumeKind.ENCRYPTED if self.encrypt else VolumeKind.PLAIN

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, base_dir: Path) -> "VolumeSettings":
        values = dict(raw)
        if "mount_point" in values:
            values["mount_point"] = _expand_path(values["mount_point"], base_dir=base_dir)
        return cls(**values)


class BackupSettings(BaseModel):
    """How file sets are built and copied."""

    model_config = ConfigDict(frozen=True)

    lookup: bool = False
    prune: bool = True
    skip_backed_up: bool = False
    preserve_atime: bool = True
    preserve_ids: bool = True
    progress_interval: int = Field(default=5000, gt=0)


class Config(BaseModel):
    """Fully parsed configuration file."""

    model_config = ConfigDict(frozen=True)

    config_path: Path | None = None
    repository: RepositorySettings
    volume: VolumeSettings = Field(default_factory=VolumeSettings)
    backup: BackupSettings = Field(default_factory=BackupSettings)

    def run_context(self) -> RunContext:
        return RunContext(
            preserve_atime=self.backup.preserve_atime,
            preserve_ids=self.backup.preserve_ids,
            progress_interval=self.backup.progress_interval,
        )


def load_config(path: Path | None = None) -> Config:
    """Load and validate a configuration file.

    Args:
        path: Optional path to the TOML file or the directory holding it. Defaults
            to ``hdbak.toml`` in the current working directory.
    """

    config_path = _resolve_config_path(path)
    base_dir = config_path.parent

    try:
        with config_path.open("rb") as handle:
            data = tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Configuration file '{config_path}' is not valid TOML: {exc}") from exc

    try:
        return Config(
            config_path=config_path,
            repository=RepositorySettings.from_raw(data.get("repository") or {}, base_dir=base_dir),
            volume=VolumeSettings.from_raw(data.get("volume") or {}, base_dir=base_dir),
            backup=BackupSettings(**(data.get("backup") or {})),
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in '{config_path}': {exc}") from exc


def _resolve_config_path(path: Path | None) -> Path:
    if path is None:
        path = Path.cwd() / DEFAULT_CONFIG_FILENAME
    else:
        path = Path(path)

    if not path.exists():
        raise ConfigError(f"Configuration file '{path}' does not exist")
    if path.is_dir():
        candidate = path / DEFAULT_CONFIG_FILENAME
        if not candidate.exists():
            raise ConfigError(f"Expected to find '{DEFAULT_CONFIG_FILENAME}' inside '{path}', but none was located")
        path = candidate

    return path.resolve(strict=False)
