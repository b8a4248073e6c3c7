"""High level orchestration of one backup run."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path

from .config import Config
from .errors import HdbError, NotDirectoryError
from .fileset import FileSet
from .models import CopyResult, Outcome
from .repository import Repository
from .volume import BackupVolume, CommandRunner, Prompter, VolumeKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BackupReport:
    """What a backup run put on its volume."""

    volume_id: str
    fileset: FileSet
    results: tuple[CopyResult, ...]
    ejected: bool = False

    @property
    def copied(self) -> int:
        return sum(1 for result in self.results if result.outcome == Outcome.OK)

    @property
    def dropped(self) -> int:
        return sum(1 for result in self.results if not result.outcome.retained)


class BackupOrchestrator:
    """Composes the repository, a new file set and the backup volume into one run."""

    def __init__(self, config: Config, *, runner: CommandRunner, prompter: Prompter) -> None:
        self.config = config
        self.runner = runner
        self.prompter = prompter
        self.context = config.run_context()

    def open_repository(self) -> Repository:
        return Repository(self.config.repository.root, context=self.context)

    def run(
        self,
        source_dir: str | os.PathLike[str],
        *,
        volume_id: str | None = None,
        label: str | None = None,
        eject: bool | None = None,
    ) -> BackupReport:
        """Prepare the medium, back ``source_dir`` up onto it and release it again.

        The volume is unmounted (and closed) even when the backup fails or is
        interrupted. It is ejected only after a clean run.
        """

        settings = self.config.volume
        if settings.device is None:
            raise HdbError("No backup device configured")
        if not settings.mount_point.is_dir():
            raise NotDirectoryError(f"Invalid mountpoint {settings.mount_point} (not a directory)")
        if not Path(source_dir).is_dir():
            raise NotDirectoryError(f"Error: ({source_dir}) is not a directory")

        repository = self.open_repository()
        volume = BackupVolume(
            device=settings.device,
            mount_point=settings.mount_point,
            filesystem=settings.filesystem,
            label=label if label is not None else settings.label,
            runner=self.runner,
            kind=settings.kind,
        )
        resolved_id = volume.resolve_id(repository, self.prompter, volume_id)
        if volume.kind == VolumeKind.ENCRYPTED:
            volume.set_passphrase(self.prompter)

        with volume.prepared() as mount_point:
            report = self.backup(repository, resolved_id, source_dir, mount_point, label=volume.label)

        should_eject = settings.eject if eject is None else eject
        if not should_eject:
            return report
        if not volume.released:
            logger.warning("Not ejecting %s: the volume was not released cleanly", volume.device)
            return report
        return replace(report, ejected=volume.eject())

    def backup(
        self,
        repository: Repository,
        volume_id: str,
        source_dir: str | os.PathLike[str],
        destination: str | os.PathLike[str],
        *,
        label: str = "",
        overwrite: bool = True,
    ) -> BackupReport:
        """Build a file set for ``source_dir``, copy it and record what landed."""

        settings = self.config.backup
        logger.info("Searching repository %s for file sets", repository.root)
        repository.filter_in_place(source_dir)

        # A freshly formatted medium invalidates its old record.
        if overwrite:
            repository.discard(volume_id)

        fileset = repository.create_fileset(source_dir, label, settings.prune, settings.lookup)
        if settings.skip_backed_up:
            logger.info("Filtering out files that have already been backed up")
            repository.exclude_already_backed_up(fileset)

        logger.info("Copying files to %s", destination)
        results = fileset.copy(destination, context=self.context)

        repository.persist(fileset, volume_id)
        return BackupReport(volume_id=volume_id, fileset=fileset, results=tuple(results))
