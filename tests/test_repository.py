from __future__ import annotations

import os
from pathlib import Path

import pytest

from hdbak.errors import (
    IncompatibleFormatError,
    InconsistentMetadataError,
    InvalidPathError,
    NotDirectoryError,
)
from hdbak.fileset import FileSet, local_host
from hdbak.models import Metadata, RunContext
from hdbak.repository import Repository

DIGEST_A = "a" * 128
DIGEST_B = "b" * 128


def _fileset(source_dir: str, *entries: Metadata, host: str | None = None, label: str = "") -> FileSet:
    return FileSet(entries, label=label, host=host or local_host(), source_dir=source_dir)


def test_creates_missing_root(tmp_path: Path) -> None:
    root = tmp_path / "nested" / "repo"

    repository = Repository(root)

    assert root.is_dir()
    assert repository.volume_ids() == []


def test_rejects_file_as_root(tmp_path: Path) -> None:
    root = tmp_path / "repo"
    root.write_text("not a directory")

    with pytest.raises(NotDirectoryError):
        Repository(root)


def test_loads_nested_volume_ids(tmp_path: Path) -> None:
    root = tmp_path / "repo"
    writer = Repository(root)
    writer.persist(_fileset("/data", Metadata("x", DIGEST_A, 1), label="one"), "1")
    writer.persist(_fileset("/data", Metadata("y", DIGEST_B, 2), label="offsite"), "offsite/2")

    repository = Repository(root)

    assert repository.volume_ids() == ["1", "offsite/2"]
    assert repository.filesets["offsite/2"].label == "offsite"
    assert repository.filesets["1"].entries == [Metadata("x", DIGEST_A, 1)]


def test_incompatible_fileset_aborts_loading(tmp_path: Path) -> None:
    root = tmp_path / "repo"
    root.mkdir()
    (root / "1").write_text("Version: 2.0\nLabel: old\nHost: box\nDir: /data\nPrune: true\n\n")

    with pytest.raises(IncompatibleFormatError):
        Repository(root)


def test_filter_in_place_by_host_and_directory(tmp_path: Path) -> None:
    data = tmp_path.resolve() / "data"
    (data / "photos").mkdir(parents=True)
    elsewhere = tmp_path.resolve() / "elsewhere"
    elsewhere.mkdir()

    repository = Repository(tmp_path / "repo")
    repository.persist(_fileset(str(data)), "1")
    repository.persist(_fileset(str(data / "photos")), "2")
    repository.persist(_fileset(str(elsewhere)), "3")
    repository.persist(_fileset(str(data), host="some-other-host"), "4")

    repository.filter_in_place(data / "photos")

    assert repository.volume_ids() == ["1", "2"]


def test_filter_in_place_keeps_every_host_when_asked(tmp_path: Path) -> None:
    repository = Repository(tmp_path / "repo")
    repository.persist(_fileset("/data"), "1")
    repository.persist(_fileset("/data", host="some-other-host"), "2")

    repository.filter_in_place(host=None)

    assert repository.volume_ids() == ["1", "2"]

    repository.filter_in_place()

    assert repository.volume_ids() == ["1"]


def test_filter_in_place_matches_recorded_dir_as_substring(tmp_path: Path) -> None:
    backup = tmp_path.resolve() / "backup"
    backup.mkdir()
    sibling = tmp_path.resolve() / "backup-old"
    sibling.mkdir()

    repository = Repository(tmp_path / "repo")
    repository.persist(_fileset(str(backup)), "1")

    repository.filter_in_place(sibling)

    assert repository.volume_ids() == ["1"]


def test_filter_in_place_leaves_disk_untouched(tmp_path: Path) -> None:
    repository = Repository(tmp_path / "repo")
    repository.persist(_fileset("/data", host="some-other-host"), "1")

    repository.filter_in_place()

    assert repository.volume_ids() == []
    assert Repository(tmp_path / "repo").volume_ids() == ["1"]


def test_find_spans_every_fileset(tmp_path: Path) -> None:
    repository = Repository(tmp_path / "repo")
    repository.persist(_fileset("/data", Metadata("x", DIGEST_A, 1)), "1")
    repository.persist(_fileset("/data", Metadata("x", DIGEST_A, 1), Metadata("y", DIGEST_B, 1)), "2")

    assert repository.find("x", 1) == [Metadata("x", DIGEST_A, 1)] * 2
    assert repository.find(digest=DIGEST_B) == [Metadata("y", DIGEST_B, 1)]
    assert repository.find("z") == []


def _single_file_source(tmp_path: Path) -> tuple[Path, int]:
    source = tmp_path.resolve() / "source"
    source.mkdir()
    target = source / "f.txt"
    target.write_text("contents\n")
    return source, int(target.lstat().st_mtime)


def test_create_fileset_reuses_recorded_digest(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    source, mtime = _single_file_source(tmp_path)
    repository = Repository(tmp_path / "repo")
    repository.persist(_fileset(str(source), Metadata("f.txt", DIGEST_A, mtime)), "1")
    repository.persist(_fileset(str(source), Metadata("f.txt", DIGEST_A, mtime)), "2")

    def no_hashing(*_args, **_kwargs):
        raise AssertionError("file should not be read")

    monkeypatch.setattr("hdbak.models.hash_file", no_hashing)

    fileset = repository.create_fileset(source, use_lookup=True)

    assert fileset.entries == [Metadata("f.txt", DIGEST_A, mtime)]


def test_create_fileset_detects_conflicting_digests(tmp_path: Path) -> None:
    source, mtime = _single_file_source(tmp_path)
    repository = Repository(tmp_path / "repo")
    repository.persist(_fileset(str(source), Metadata("f.txt", DIGEST_A, mtime)), "1")
    repository.persist(_fileset(str(source), Metadata("f.txt", DIGEST_B, mtime)), "2")

    with pytest.raises(InconsistentMetadataError) as excinfo:
        repository.create_fileset(source, use_lookup=True)

    assert excinfo.value.digests == {DIGEST_A, DIGEST_B}


def test_create_fileset_hashes_without_lookup(tmp_path: Path, context: RunContext) -> None:
    source, mtime = _single_file_source(tmp_path)
    repository = Repository(tmp_path / "repo", context=context)
    repository.persist(_fileset(str(source), Metadata("f.txt", DIGEST_A, mtime)), "1")

    fileset = repository.create_fileset(source, "fresh")

    assert fileset.label == "fresh"
    assert fileset.entries[0].digest != DIGEST_A


def test_exclude_already_backed_up(tmp_path: Path) -> None:
    repository = Repository(tmp_path / "repo")
    repository.persist(_fileset("/data", Metadata("x", DIGEST_A, 1)), "1")
    repository.persist(_fileset("/data", Metadata("y", DIGEST_B, 2)), "2")
    candidate = _fileset(
        "/data",
        Metadata("x", DIGEST_A, 1),
        Metadata("y", DIGEST_B, 3),
        Metadata("z", DIGEST_A, 1),
    )

    repository.exclude_already_backed_up(candidate)

    assert candidate.archive_paths() == ["y", "z"]


def test_persist_and_discard(tmp_path: Path) -> None:
    repository = Repository(tmp_path / "repo")
    fileset = _fileset("/data", Metadata("x", DIGEST_A, 1), label="weekly")

    path = repository.persist(fileset, "3")

    assert path == tmp_path / "repo" / "3"
    assert FileSet.read_file(path) == fileset
    assert repository.has_volume("3")

    repository.discard("3")
    repository.discard("3")

    assert not path.exists()
    assert repository.volume_ids() == []


def test_next_free_volume_id(tmp_path: Path) -> None:
    repository = Repository(tmp_path / "repo")
    assert repository.next_free_volume_id() == "1"

    repository.persist(_fileset("/data"), "1")
    repository.persist(_fileset("/data"), "2")
    repository.persist(_fileset("/data"), "4")

    assert repository.next_free_volume_id() == "3"


@pytest.mark.parametrize(
    "volume_id",
    ["", "/etc/passwd", "../outside", "a/../../b", ".", "./", "a/./b", "a//b", "site/"],
)
def test_fileset_path_rejects_escaping_ids(tmp_path: Path, volume_id: str) -> None:
    repository = Repository(tmp_path / "repo")

    with pytest.raises(InvalidPathError):
        repository.fileset_path(volume_id)


def test_fileset_path_rejects_directory_of_nested_volumes(tmp_path: Path) -> None:
    repository = Repository(tmp_path / "repo")
    repository.persist(_fileset("/data"), "site/1")

    with pytest.raises(InvalidPathError):
        repository.fileset_path("site")
    with pytest.raises(InvalidPathError):
        repository.has_volume("site")
    assert repository.fileset_path("site/2") == tmp_path / "repo" / "site" / "2"


def test_persist_handles_names_that_are_not_utf8(tmp_path: Path, context: RunContext) -> None:
    source = tmp_path.resolve() / "source"
    source.mkdir()
    name = os.fsdecode(b"caf\xe9.txt")
    (source / name).write_text("latin-1 name\n")
    repository = Repository(tmp_path / "repo", context=context)

    fileset = repository.create_fileset(source)
    path = repository.persist(fileset, "1")

    assert b" caf\xe9.txt\n" in path.read_bytes()
    assert Repository(tmp_path / "repo").filesets["1"] == fileset
    assert Repository(tmp_path / "repo").filesets["1"].archive_paths() == [name]


def test_iter_filesets_is_sorted(tmp_path: Path) -> None:
    repository = Repository(tmp_path / "repo")
    for volume_id in ("b", "a", "c"):
        repository.persist(_fileset("/data", label=volume_id), volume_id)

    assert [volume_id for volume_id, _ in repository.iter_filesets()] == ["a", "b", "c"]
    assert all(isinstance(fileset, FileSet) for _, fileset in repository.iter_filesets())
