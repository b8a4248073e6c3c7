from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Sequence

import pytest

from hdbak.config import BackupSettings, Config, RepositorySettings, VolumeSettings
from hdbak.models import RunContext
from hdbak.volume import CommandResult, FilesystemKind


@dataclass
class FakeRunner:
    """Records volume commands instead of running them."""

    failures: dict[str, int] = field(default_factory=dict)
    calls: list[tuple[str, ...]] = field(default_factory=list)
    inputs: list[str | None] = field(default_factory=list)

    @staticmethod
    def verb(args: Sequence[str]) -> str:
        if args[0] == "cryptsetup":
            return next(arg for arg in args[1:] if arg.startswith("luks"))
        return args[0]

    def run(self, args: Sequence[str], *, input: str | None = None) -> CommandResult:
        args = tuple(args)
        self.calls.append(args)
        self.inputs.append(input)
        return CommandResult(args, self.failures.get(self.verb(args), 0))

    def verbs(self) -> list[str]:
        return [self.verb(call) for call in self.calls]


class FakePrompter:
    def __init__(
        self,
        volume_id: str = "0",
        confirm: bool = True,
        passphrases: Sequence[str] = ("secret", "secret"),
    ) -> None:
        self.volume_id = volume_id
        self.confirm = confirm
        self._passphrases: Iterator[str] = iter(passphrases)
        self.questions: list[str] = []

    def ask_volume_id(self) -> str:
        self.questions.append("volume")
        return self.volume_id

    def confirm_overwrite(self, volume_id: str) -> bool:
        self.questions.append(f"overwrite {volume_id}")
        return self.confirm

    def ask_passphrase(self, prompt: str) -> str:
        self.questions.append(prompt)
        return next(self._passphrases)


@pytest.fixture(autouse=True)
def reset_logging() -> Iterator[None]:
    """Undo the handler the CLI installs so caplog keeps seeing records."""

    yield
    logger = logging.getLogger("hdbak")
    logger.handlers.clear()
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


@pytest.fixture
def fake_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.delenv("HDB_GROUPDIR", raising=False)
    return home


@pytest.fixture
def context() -> RunContext:
    return RunContext(preserve_atime=True, preserve_ids=True)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """A small tree: docs/, docs/readme.txt, notes.txt, and a dangling symlink."""

    root = tmp_path / "source"
    (root / "docs").mkdir(parents=True)
    (root / "docs" / "readme.txt").write_text("read me\n")
    (root / "notes.txt").write_text("some notes\n")
    (root / "dangling").symlink_to("nowhere")
    return root


@pytest.fixture
def make_config(tmp_path: Path):
    def factory(**overrides) -> Config:
        mount_point = tmp_path / "mnt"
        mount_point.mkdir(exist_ok=True)
        volume = {
            "device": "/dev/fake",
            "mount_point": mount_point,
            "filesystem": FilesystemKind.EXT4,
            "label": "backup",
            "eject": True,
        }
        volume.update(overrides.pop("volume", {}))
        return Config(
            repository=RepositorySettings(root=tmp_path / "repo"),
            volume=VolumeSettings(**volume),
            backup=BackupSettings(**overrides.pop("backup", {})),
        )

    return factory
