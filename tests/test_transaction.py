from __future__ import annotations

import os
import threading
from pathlib import Path

import pytest

from ge.errors import FileIOError, OverwriteRefused, TransactionCancelled
from ge.memory.schema import UndoManifest
from ge.tools.patch import FileEdit, Hunk, HunkLine, parse_unified_diff
from ge.tools.transaction import WriteTransaction, allocate_backup, backup_candidate


def _leftovers(directory: Path) -> list[Path]:
    return [path for path in directory.iterdir() if path.name.endswith(".ge-tmp")]


def _undo_edit(name: str) -> FileEdit:
    hunk = Hunk(
        old_start=1,
        old_len=1,
        new_start=1,
        new_len=1,
        lines=[HunkLine("-", "new\n"), HunkLine("+", "old\n")],
    )
    return FileEdit(old_path=name, new_path=name, hunks=[hunk])


def test_commit_replaces_content_and_keeps_a_backup(tmp_path: Path) -> None:
    target = tmp_path / "notes.txt"
    target.write_bytes(b"old\n")

    outcome = WriteTransaction(target, b"old\n", fsync=False).commit(b"new\n")

    assert target.read_bytes() == b"new\n"
    assert outcome.backup_path == tmp_path / "notes.txt.bak"
    assert outcome.backup_path.read_bytes() == b"old\n"
    assert outcome.bytes_written == 4
    assert outcome.pre_checksum != outcome.post_checksum
    assert not _leftovers(tmp_path)


def test_failed_rename_leaves_target_untouched(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "notes.txt"
    target.write_bytes(b"old\n")
    undo_dir = tmp_path / "undo"

    def refuse(src: object, dst: object) -> None:
        raise OSError(28, "No space left on device")

    monkeypatch.setattr(os, "replace", refuse)
    transaction = WriteTransaction(target, b"old\n", undo_dir=undo_dir, fsync=False).with_undo(
        _undo_edit("notes.txt"), encoding="utf-8", newline="LF"
    )

    with pytest.raises(FileIOError):
        transaction.commit(b"new\n")

    assert target.read_bytes() == b"old\n"
    assert not _leftovers(tmp_path)
    assert not list(undo_dir.iterdir())
    assert not (tmp_path / "notes.txt.bak").exists()


def test_failed_restore_after_backup_error_is_a_file_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    target = tmp_path / "notes.txt"
    target.write_bytes(b"old\n")
    undo_dir = tmp_path / "undo"
    real_replace = os.replace
    calls = []

    def replace_once(src: object, dst: object) -> None:
        calls.append(dst)
        if len(calls) > 1:
            raise OSError(5, "Input/output error")
        real_replace(src, dst)

    def no_backup(path: Path, data: bytes, *, sync: bool = True) -> Path:
        raise FileIOError("backup disk full", details={"path": str(path)})

    monkeypatch.setattr(os, "replace", replace_once)
    monkeypatch.setattr("ge.tools.transaction.allocate_backup", no_backup)
    transaction = WriteTransaction(target, b"old\n", undo_dir=undo_dir, fsync=False).with_undo(
        _undo_edit("notes.txt"), encoding="utf-8", newline="LF"
    )

    with pytest.raises(FileIOError) as excinfo:
        transaction.commit(b"new\n")

    assert excinfo.value.details["restored"] is False
    assert "failed to restore" in str(excinfo.value)
    assert target.read_bytes() == b"new\n"
    assert list(undo_dir.glob("*.patch"))
    assert not _leftovers(tmp_path)


def test_backups_take_the_lowest_free_slot(tmp_path: Path) -> None:
    target = tmp_path / "notes.txt"
    target.write_bytes(b"v1\n")

    created = []
    for current, following in ((b"v1\n", b"v2\n"), (b"v2\n", b"v3\n"), (b"v3\n", b"v4\n")):
        created.append(WriteTransaction(target, current, fsync=False).commit(following).backup_path)

    assert [path.name for path in created] == ["notes.txt.bak", "notes.txt.bak2", "notes.txt.bak3"]
    assert [path.read_bytes() for path in created] == [b"v1\n", b"v2\n", b"v3\n"]
    assert target.read_bytes() == b"v4\n"


def test_allocate_backup_never_overwrites(tmp_path: Path) -> None:
    target = tmp_path / "data.txt"
    backup_candidate(target, 1).write_bytes(b"precious")

    path = allocate_backup(target, b"fresh", sync=False)

    assert path.name == "data.txt.bak2"
    assert backup_candidate(target, 1).read_bytes() == b"precious"


def test_cancel_before_rename_rolls_back(tmp_path: Path) -> None:
    target = tmp_path / "notes.txt"
    target.write_bytes(b"old\n")
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(TransactionCancelled):
        WriteTransaction(target, b"old\n", fsync=False, cancel=cancel).commit(b"new\n")

    assert target.read_bytes() == b"old\n"
    assert not _leftovers(tmp_path)


def test_stale_snapshot_is_refused(tmp_path: Path) -> None:
    target = tmp_path / "notes.txt"
    target.write_bytes(b"changed by someone else\n")

    with pytest.raises(FileIOError):
        WriteTransaction(target, b"old\n", fsync=False).commit(b"new\n")

    assert target.read_bytes() == b"changed by someone else\n"


def test_creating_never_clobbers_an_existing_file(tmp_path: Path) -> None:
    target = tmp_path / "fresh.txt"

    WriteTransaction(target, None, fsync=False).commit(b"hello\n")
    assert target.read_bytes() == b"hello\n"
    assert not (tmp_path / "fresh.txt.bak").exists()

    with pytest.raises(OverwriteRefused):
        WriteTransaction(target, None, fsync=False).commit(b"again\n")


def test_undo_patch_and_manifest_are_written(tmp_path: Path) -> None:
    target = tmp_path / "notes.txt"
    target.write_bytes(b"old\n")
    undo_dir = tmp_path / "undo"

    outcome = (
        WriteTransaction(target, b"old\n", undo_dir=undo_dir, fsync=False)
        .with_undo(_undo_edit("notes.txt"), encoding="utf-8", newline="LF")
        .commit(b"new\n")
    )

    assert outcome.undo_path is not None and outcome.undo_path.suffix == ".patch"
    (edit,) = parse_unified_diff(outcome.undo_path.read_text(encoding="utf-8"))
    assert edit.hunks[0].new_lines == ["old\n"]
    manifest = UndoManifest.model_validate_json(outcome.manifest_path.read_text(encoding="utf-8"))
    assert manifest.patch_file == outcome.undo_path.name
    assert manifest.post_checksum == outcome.post_checksum


def test_delete_moves_content_to_backup(tmp_path: Path) -> None:
    target = tmp_path / "gone.txt"
    target.write_bytes(b"bye\n")

    outcome = WriteTransaction(target, b"bye\n", fsync=False).delete()

    assert not target.exists()
    assert outcome.removed_path == target
    assert outcome.backup_path is not None and outcome.backup_path.read_bytes() == b"bye\n"


def test_rename_writes_destination_and_retires_source(tmp_path: Path) -> None:
    source = tmp_path / "old.txt"
    source.write_bytes(b"body\n")
    destination = tmp_path / "nested" / "new.txt"

    outcome = WriteTransaction(source, b"body\n", fsync=False).rename(destination, b"body\n")

    assert destination.read_bytes() == b"body\n"
    assert not source.exists()
    assert outcome.path == destination
    assert outcome.backup_path == tmp_path / "old.txt.bak"
