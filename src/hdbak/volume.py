"""Backup medium lifecycle: format, unlock, mkfs, mount and their reverse."""

from __future__ import annotations

import logging
import shlex
import subprocess
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Protocol, Sequence

from .errors import AbortedError, VolumeError, VolumeStateError
from .repository import Repository

logger = logging.getLogger(__name__)

NEW_VOLUME = "0"


class FilesystemKind(str, Enum):
    """Filesystems hdbak knows how to create on a medium."""

    EXT2 = "ext2"
    EXT3 = "ext3"
    EXT4 = "ext4"
    REISERFS = "reiserfs"


class VolumeKind(str, Enum):
    PLAIN = "plain"
    ENCRYPTED = "encrypted"


class Step(str, Enum):
    """Resource-acquiring steps run before the copy phase."""

    FORMAT = "format"
    OPEN = "open"
    MAKE_FILESYSTEM = "make_filesystem"
    MOUNT = "mount"


class VolumeState(str, Enum):
    UNSELECTED = "unselected"
    ID_RESOLVED = "id_resolved"
    PASSPHRASE_SET = "passphrase_set"
    FORMATTED = "formatted"
    OPENED = "opened"
    FILESYSTEM_CREATED = "filesystem_created"
    MOUNTED = "mounted"
    UNMOUNTED = "unmounted"
    CLOSED = "closed"
    EJECTED = "ejected"


def mkfs_command(kind: FilesystemKind, label: str, device: str) -> list[str]:
    if kind == FilesystemKind.REISERFS:
        # mkfs does not pass --label through to mkfs.reiserfs
        label_args = ["-l", label]
    else:
        label_args = ["-L", label]
    return ["mkfs", "-t", kind.value, *label_args, "-q", device]


def mount_command(device: str, mount_point: Path) -> list[str]:
    return ["mount", device, str(mount_point)]


def unmount_command(mount_point: Path) -> list[str]:
    return ["umount", str(mount_point)]


def eject_command(device: str) -> list[str]:
    return ["eject", device]


def luks_format_command(device: str) -> list[str]:
    return ["cryptsetup", "luksFormat", device, "-"]


def luks_open_command(device: str, name: str) -> list[str]:
    return ["cryptsetup", "--key-file", "-", "luksOpen", device, name]


def luks_close_command(name: str) -> list[str]:
    return ["cryptsetup", "luksClose", name]


def preparation_steps(kind: VolumeKind) -> tuple[Step, ...]:
    """Return the acquiring steps for ``kind``, in the order they must run."""

    if kind == VolumeKind.ENCRYPTED:
        return (Step.FORMAT, Step.OPEN, Step.MAKE_FILESYSTEM, Step.MOUNT)
    return (Step.MAKE_FILESYSTEM, Step.MOUNT)


@dataclass(frozen=True, slots=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    def run(self, args: Sequence[str], *, input: str | None = None) -> CommandResult: ...


class SubprocessRunner:
    """Runs volume commands as child processes and reports only their exit status."""

    def __init__(self, *, quiet: bool = True) -> None:
        self.quiet = quiet

    def run(self, args: Sequence[str], *, input: str | None = None) -> CommandResult:
        logger.info("Running %s", shlex.join(args))
        completed = subprocess.run(
            list(args),
            input=input,
            text=True,
            stdout=subprocess.DEVNULL if self.quiet else None,
            check=False,
        )
        return CommandResult(tuple(args), completed.returncode)


class Prompter(Protocol):
    def ask_volume_id(self) -> str: ...

    def confirm_overwrite(self, volume_id: str) -> bool: ...

    def ask_passphrase(self, prompt: str) -> str: ...


def read_passphrase(prompter: Prompter) -> str:
    """Ask until the same passphrase is entered twice in a row."""

    last: str | None = None
    current = prompter.ask_passphrase("Enter the passphrase")
    while last != current:
        last = current
        current = prompter.ask_passphrase("Enter the passphrase again")
    return current


class BackupVolume:
    """One backup medium, driven through its lifecycle one step at a time.

    For the encrypted kind the filesystem lives on the unlocked mapping
    (``/dev/mapper/<label>``) while ejecting always targets the physical device.
    """

    def __init__(
        self,
        *,
        device: str,
        mount_point: Path,
        filesystem: FilesystemKind,
        label: str,
        runner: CommandRunner,
        kind: VolumeKind = VolumeKind.PLAIN,
    ) -> None:
        if not label:
            raise VolumeError("A backup volume needs a label")
        self.device = device
        self.mount_point = Path(mount_point)
        self.filesystem = filesystem
        self.label = label
        self.kind = kind
        self.runner = runner
        self.state = VolumeState.UNSELECTED
        self.volume_id: str | None = None
        self._passphrase: str | None = None
        self._opened = False

    @property
    def target_device(self) -> str:
        if self.kind == VolumeKind.ENCRYPTED:
            return f"/dev/mapper/{self.label}"
        return self.device

    # ------------------------------------------------------------------
    # Selection

    def resolve_id(self, repository: Repository, prompter: Prompter, volume_id: str | None = None) -> str:
        """Pick the volume identifier, asking the operator when none is given.

        ``0`` (or nothing) assigns the lowest free number. Reusing an identifier
        that already has a file set needs the operator's confirmation.
        """

        self._require(VolumeState.UNSELECTED)
        if volume_id is None:
            volume_id = prompter.ask_volume_id().strip()

        if volume_id in ("", NEW_VOLUME):
            volume_id = repository.next_free_volume_id()
            logger.warning("Using new volume ID %s - please label this medium appropriately!", volume_id)
        elif repository.has_volume(volume_id):
            if not prompter.confirm_overwrite(volume_id):
                raise AbortedError("Aborted by user decision")
            logger.warning("Overwriting existing volume %s", volume_id)
        else:
            repository.fileset_path(volume_id)

        self.volume_id = volume_id
        self.state = VolumeState.ID_RESOLVED
        return volume_id

    def set_passphrase(self, prompter: Prompter) -> None:
        self._require(VolumeState.ID_RESOLVED, kind=VolumeKind.ENCRYPTED)
        self._passphrase = read_passphrase(prompter)
        self.state = VolumeState.PASSPHRASE_SET

    # ------------------------------------------------------------------
    # Acquiring steps

    def format(self) -> None:
        self._require(VolumeState.PASSPHRASE_SET, kind=VolumeKind.ENCRYPTED)
        logger.info("Formatting encrypted volume on %s", self.device)
        self._check(
            self.runner.run(luks_format_command(self.device), input=self._passphrase),
            "Error trying to format disk; it may already be an open encrypted device, or not be inserted",
        )
        self.state = VolumeState.FORMATTED

    def open(self) -> None:
        self._require(VolumeState.FORMATTED, kind=VolumeKind.ENCRYPTED)
        logger.info("Opening encrypted volume %s as %s", self.device, self.label)
        self._check(
            self.runner.run(luks_open_command(self.device, self.label), input=self._passphrase),
            "Error trying to open disk",
        )
        self._opened = True
        self.state = VolumeState.OPENED

    def make_filesystem(self) -> None:
        expected = VolumeState.OPENED if self.kind == VolumeKind.ENCRYPTED else VolumeState.ID_RESOLVED
        self._require(expected)
        logger.info("Making filesystem on %s", self.target_device)
        self._check(
            self.runner.run(mkfs_command(self.filesystem, self.label, self.target_device)),
            "Error trying to make file system",
        )
        self.state = VolumeState.FILESYSTEM_CREATED

    def mount(self) -> None:
        self._require(VolumeState.FILESYSTEM_CREATED)
        logger.info("Mounting %s on %s", self.target_device, self.mount_point)
        self._check(
            self.runner.run(mount_command(self.target_device, self.mount_point)),
            "Error trying to mount file system",
        )
        self.state = VolumeState.MOUNTED

    # ------------------------------------------------------------------
    # Releasing steps. Failures are logged, not raised.

    def unmount(self) -> bool:
        self._require(VolumeState.MOUNTED)
        logger.info("Unmounting %s", self.mount_point)
        if not self._release(unmount_command(self.mount_point), "unmount"):
            return False
        self.state = VolumeState.UNMOUNTED
        return True

    def close(self) -> bool:
        if not self._opened:
            raise VolumeStateError("Cannot close a volume that was never opened")
        logger.info("Closing encrypted file system %s", self.label)
        if not self._release(luks_close_command(self.label), "close"):
            return False
        self._opened = False
        self.state = VolumeState.CLOSED
        return True

    @property
    def released(self) -> bool:
        """Whether every acquired resource was given back cleanly."""

        return self.state == self._released_state()

    def eject(self) -> bool:
        self._require(self._released_state())
        logger.info("Ejecting %s", self.device)
        if not self._release(eject_command(self.device), "eject"):
            return False
        self.state = VolumeState.EJECTED
        return True

    @contextmanager
    def prepared(self) -> Iterator[Path]:
        """Run the acquiring steps and yield the mount point.

        Whatever was acquired is released in reverse order on the way out, also
        when the body raises or the operator interrupts the run.
        """

        actions: dict[Step, tuple[Callable[[], None], Callable[[], bool] | None]] = {
            Step.FORMAT: (self.format, None),
            Step.OPEN: (self.open, self.close),
            Step.MAKE_FILESYSTEM: (self.make_filesystem, None),
            Step.MOUNT: (self.mount, self.unmount),
        }
        with ExitStack() as stack:
            for step in preparation_steps(self.kind):
                acquire, release = actions[step]
                acquire()
                if release is not None:
                    stack.callback(release)
            yield self.mount_point

    # ------------------------------------------------------------------
    # Internal helpers

    def _require(self, *states: VolumeState, kind: VolumeKind | None = None) -> None:
        if kind is not None and self.kind != kind:
            raise VolumeStateError(f"Step not available for {self.kind.value} volumes")
        if self.state not in states:
            expected = ", ".join(state.value for state in states)
            raise VolumeStateError(f"Volume is {self.state.value}, expected {expected}")

    def _released_state(self) -> VolumeState:
        return VolumeState.CLOSED if self.kind == VolumeKind.ENCRYPTED else VolumeState.UNMOUNTED

    def _check(self, result: CommandResult, message: str) -> None:
        if not result.ok:
            raise VolumeError(message, returncode=result.returncode)

    def _release(self, args: list[str], action: str) -> bool:
        try:
            result = self.runner.run(args)
        except OSError as exc:
            logger.error("Could not %s %s: %s", action, self.device, exc)
            return False
        if not result.ok:
            logger.error("Could not %s %s (exit code %d)", action, self.device, result.returncode)
            return False
        return True
