"""Crash-safe writes with numbered backups and on-disk undo patches."""

from __future__ import annotations

import hashlib
import logging
import os
import stat
import tempfile
import threading
from dataclasses import dataclass
from itertools import count
from pathlib import Path
from typing import Optional

from ..errors import FileIOError, OverwriteRefused, TransactionCancelled
from ..memory.schema import UndoManifest, utc_now
from ..telemetry import emit_event
from ..utils.slug import slugify
from .patch import FileEdit, render_file_edit

LOGGER = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak"
_TEMP_SUFFIX = ".ge-tmp"
_DEFAULT_MODE = 0o644


def checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def backup_candidate(path: Path, index: int) -> Path:
    """Return the backup name for ``index``: ``name.bak`` for 1, ``name.bakN`` after that."""
    suffix = BACKUP_SUFFIX if index <= 1 else f"{BACKUP_SUFFIX}{index}"
    return path.with_name(path.name + suffix)


def _write_fd(fd: int, data: bytes, *, sync: bool) -> None:
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)
        handle.flush()
        if sync:
            os.fsync(handle.fileno())


def allocate_backup(path: Path, data: bytes, *, sync: bool = True) -> Path:
    """Store ``data`` in the lowest free backup slot of ``path``.

    Each slot is claimed with ``O_CREAT | O_EXCL`` so an existing backup is
    never overwritten and concurrent allocators never share a slot.
    """
    for index in count(1):
        candidate = backup_candidate(path, index)
        try:
            fd = os.open(candidate, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            continue
        except OSError as error:
            raise FileIOError(
                f"failed to create backup {candidate.as_posix()}: {error.strerror or error}",
                details={"path": path.as_posix(), "backup": candidate.as_posix()},
            ) from error
        try:
            _write_fd(fd, data, sync=sync)
        except OSError as error:
            candidate.unlink(missing_ok=True)
            raise FileIOError(
                f"failed to write backup {candidate.as_posix()}: {error.strerror or error}",
                details={"path": path.as_posix(), "backup": candidate.as_posix()},
            ) from error
        LOGGER.info("Backup of %s stored at %s", path.as_posix(), candidate.as_posix())
        return candidate
    raise AssertionError("unreachable")


def write_undo_patch(
    undo_dir: Path,
    edit: FileEdit,
    *,
    target: Path,
    verb: str,
    encoding: str,
    newline: str,
    pre_checksum: str | None,
    post_checksum: str | None,
    backup_path: Path | None = None,
) -> tuple[Path, Path]:
    """Persist ``edit`` (already inverted) as ``<timestamp>_<slug>.patch`` plus a manifest."""
    try:
        undo_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        raise FileIOError(
            f"failed to create undo directory {undo_dir.as_posix()}: {error.strerror or error}",
            details={"path": target.as_posix()},
        ) from error

    created_at = utc_now()
    stem = f"{created_at.strftime('%Y%m%dT%H%M%S%fZ')}_{slugify(target.as_posix())}"
    text = render_file_edit(edit)
    codec = "utf-8" if encoding.startswith(("utf-16", "utf-32")) else encoding
    payload = text.encode(codec, errors="surrogateescape")

    for attempt in count(1):
        name = stem if attempt == 1 else f"{stem}-{attempt}"
        patch_path = undo_dir / f"{name}.patch"
        try:
            with patch_path.open("xb") as handle:
                handle.write(payload)
        except FileExistsError:
            continue
        except OSError as error:
            raise FileIOError(
                f"failed to write undo patch {patch_path.as_posix()}: {error.strerror or error}",
                details={"path": target.as_posix()},
            ) from error
        break

    manifest = UndoManifest(
        path=target.as_posix(),
        original_path=edit.new_path,
        verb=verb,
        pre_checksum=pre_checksum,
        post_checksum=post_checksum,
        encoding=encoding,
        newline=newline,
        patch_file=patch_path.name,
        backup_path=backup_path.as_posix() if backup_path else None,
        created_at=created_at,
    )
    manifest_path = undo_dir / f"{name}.manifest.json"
    try:
        manifest_path.write_text(manifest.model_dump_json(indent=2) + "\n", encoding="utf-8")
    except OSError as error:
        patch_path.unlink(missing_ok=True)
        raise FileIOError(
            f"failed to write undo manifest {manifest_path.as_posix()}: {error.strerror or error}",
            details={"path": target.as_posix()},
        ) from error

    emit_event("undo_written", path=target, patch=patch_path, manifest=manifest_path)
    return patch_path, manifest_path


@dataclass(slots=True)
class TransactionOutcome:
    """What a committed transaction left on disk."""

    path: Path
    verb: str
    pre_checksum: Optional[str]
    post_checksum: Optional[str]
    bytes_written: int = 0
    backup_path: Optional[Path] = None
    undo_path: Optional[Path] = None
    manifest_path: Optional[Path] = None
    removed_path: Optional[Path] = None


@dataclass(slots=True)
class _UndoPlan:
    edit: FileEdit
    encoding: str
    newline: str


class WriteTransaction:
    """Single-file write: temp file, fsync, atomic rename, backup, undo patch.

    ``snapshot`` holds the bytes the change was computed from (``None`` when
    the file is being created); the target must still hold exactly those bytes
    when the transaction commits.
    """

    def __init__(
        self,
        path: Path | str,
        snapshot: bytes | None,
        *,
        verb: str = "edit",
        backups: bool = True,
        undo_dir: Path | str | None = None,
        fsync: bool = True,
        cancel: threading.Event | None = None,
    ) -> None:
        self.path = Path(path)
        self.snapshot = snapshot
        self.verb = verb
        self.backups = backups
        self.undo_dir = Path(undo_dir) if undo_dir is not None else None
        self.fsync = fsync
        self.cancel = cancel
        self._undo: _UndoPlan | None = None

    def with_undo(self, edit: FileEdit, *, encoding: str, newline: str) -> "WriteTransaction":
        """Register the inverse edit to persist when an undo directory is configured."""
        self._undo = _UndoPlan(edit=edit, encoding=encoding, newline=newline)
        return self

    @property
    def pre_checksum(self) -> str | None:
        return checksum(self.snapshot) if self.snapshot is not None else None

    def _fail(self, message: str, error: BaseException | None = None, **details: object) -> FileIOError:
        payload = {"path": self.path.as_posix(), **details}
        if error is not None and isinstance(error, OSError):
            message = f"{message}: {error.strerror or error}"
        return FileIOError(message, details=payload)

    def _verify_snapshot(self, path: Path, snapshot: bytes | None) -> None:
        if snapshot is None:
            if path.exists():
                raise OverwriteRefused(
                    f"{path.as_posix()} already exists",
                    details={"path": path.as_posix()},
                )
            return
        try:
            current = path.read_bytes()
        except OSError as error:
            raise self._fail(f"failed to read {path.as_posix()}", error) from error
        if current != snapshot:
            raise FileIOError(
                f"{path.as_posix()} changed since the preview was computed",
                details={"path": path.as_posix(), "expected": checksum(snapshot), "found": checksum(current)},
            )

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise TransactionCancelled(
                f"cancelled before committing {self.path.as_posix()}",
                details={"path": self.path.as_posix()},
            )

    def _write_temp(self, directory: Path, name: str, data: bytes, mode: int | None) -> Path:
        try:
            handle = tempfile.NamedTemporaryFile(
                "wb",
                dir=directory,
                prefix=f".{name}.",
                suffix=_TEMP_SUFFIX,
                delete=False,
            )
        except OSError as error:
            raise self._fail(f"failed to create temporary file in {directory.as_posix()}", error) from error
        temp_path = Path(handle.name)
        try:
            with handle:
                handle.write(data)
                handle.flush()
                if self.fsync:
                    os.fsync(handle.fileno())
            os.chmod(temp_path, mode if mode is not None else _DEFAULT_MODE)
        except OSError as error:
            temp_path.unlink(missing_ok=True)
            raise self._fail(f"failed to write temporary file for {self.path.as_posix()}", error) from error
        return temp_path

    def _current_mode(self, path: Path) -> int | None:
        try:
            return stat.S_IMODE(path.stat().st_mode)
        except OSError:
            return None

    def _persist_undo(self, target: Path, post: str | None) -> tuple[Path | None, Path | None]:
        if self.undo_dir is None or self._undo is None:
            return None, None
        return write_undo_patch(
            self.undo_dir,
            self._undo.edit,
            target=target,
            verb=self.verb,
            encoding=self._undo.encoding,
            newline=self._undo.newline,
            pre_checksum=self.pre_checksum,
            post_checksum=post,
        )

    @staticmethod
    def _discard(*paths: Path | None) -> None:
        for path in paths:
            if path is not None:
                path.unlink(missing_ok=True)

    def _install(self, temp_path: Path, target: Path, *, exclusive: bool) -> None:
        if not exclusive:
            os.replace(temp_path, target)
            return
        try:
            os.link(temp_path, target)
        except FileExistsError as error:
            raise OverwriteRefused(
                f"{target.as_posix()} already exists", details={"path": target.as_posix()}
            ) from error
        temp_path.unlink(missing_ok=True)

    def _restore(self, data: bytes) -> None:
        """Put ``data`` back at the target after a post-rename failure."""
        temp_path = self._write_temp(self.path.parent, self.path.name, data, self._current_mode(self.path))
        try:
            os.replace(temp_path, self.path)
        except OSError as error:
            temp_path.unlink(missing_ok=True)
            LOGGER.error("Could not restore %s; its undo patch is kept", self.path.as_posix())
            raise self._fail(f"failed to restore {self.path.as_posix()}", error, restored=False) from error

    def commit(self, data: bytes) -> TransactionOutcome:
        """Replace (or create) the target with ``data``."""
        exclusive = self.snapshot is None
        post = checksum(data)
        self._verify_snapshot(self.path, self.snapshot)
        temp_path = self._write_temp(self.path.parent, self.path.name, data, self._current_mode(self.path))
        undo_path = manifest_path = None
        try:
            undo_path, manifest_path = self._persist_undo(self.path, post)
            self._check_cancel()
            self._install(temp_path, self.path, exclusive=exclusive)
        except OSError as error:
            self._discard(temp_path, undo_path, manifest_path)
            emit_event("transaction_rolled_back", path=self.path, verb=self.verb, reason=str(error))
            raise self._fail(f"failed to replace {self.path.as_posix()}", error) from error
        except BaseException as error:
            self._discard(temp_path, undo_path, manifest_path)
            emit_event("transaction_rolled_back", path=self.path, verb=self.verb, reason=str(error))
            raise

        backup_path = self._backup_after_commit(undo_path, manifest_path)
        emit_event(
            "transaction_committed",
            path=self.path,
            verb=self.verb,
            backup=backup_path,
            undo=undo_path,
            bytes=len(data),
        )
        return TransactionOutcome(
            path=self.path,
            verb=self.verb,
            pre_checksum=self.pre_checksum,
            post_checksum=post,
            bytes_written=len(data),
            backup_path=backup_path,
            undo_path=undo_path,
            manifest_path=manifest_path,
        )

    def _backup_after_commit(self, undo_path: Path | None, manifest_path: Path | None) -> Path | None:
        if not self.backups or self.snapshot is None:
            return None
        try:
            return allocate_backup(self.path, self.snapshot, sync=self.fsync)
        except FileIOError as error:
            LOGGER.error("Backup failed for %s; restoring original content", self.path.as_posix())
            self._restore(self.snapshot)
            self._discard(undo_path, manifest_path)
            emit_event("transaction_rolled_back", path=self.path, verb=self.verb, reason=str(error))
            raise

    def delete(self, *, permanent: bool = False) -> TransactionOutcome:
        """Remove the target; unless ``permanent`` its content moves to a backup slot."""
        if self.snapshot is None:
            raise FileIOError(f"{self.path.as_posix()} does not exist", details={"path": self.path.as_posix()})
        self._verify_snapshot(self.path, self.snapshot)
        undo_path, manifest_path = self._persist_undo(self.path, None)
        backup_path: Path | None = None
        try:
            self._check_cancel()
            if not permanent:
                backup_path = allocate_backup(self.path, self.snapshot, sync=self.fsync)
            self.path.unlink()
        except OSError as error:
            self._discard(undo_path, manifest_path)
            emit_event("transaction_rolled_back", path=self.path, verb=self.verb, reason=str(error))
            raise self._fail(f"failed to delete {self.path.as_posix()}", error) from error
        except BaseException as error:
            self._discard(undo_path, manifest_path)
            emit_event("transaction_rolled_back", path=self.path, verb=self.verb, reason=str(error))
            raise
        emit_event("transaction_committed", path=self.path, verb=self.verb, backup=backup_path, removed=True)
        return TransactionOutcome(
            path=self.path,
            verb=self.verb,
            pre_checksum=self.pre_checksum,
            post_checksum=None,
            backup_path=backup_path,
            undo_path=undo_path,
            manifest_path=manifest_path,
            removed_path=self.path,
        )

    def rename(self, destination: Path | str, data: bytes) -> TransactionOutcome:
        """Write ``data`` to ``destination`` without clobbering, then retire the source."""
        target = Path(destination)
        if self.snapshot is None:
            raise FileIOError(f"{self.path.as_posix()} does not exist", details={"path": self.path.as_posix()})
        self._verify_snapshot(self.path, self.snapshot)
        self._verify_snapshot(target, None)
        post = checksum(data)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise self._fail(f"failed to create {target.parent.as_posix()}", error) from error
        temp_path = self._write_temp(target.parent, target.name, data, self._current_mode(self.path))
        undo_path = manifest_path = None
        try:
            undo_path, manifest_path = self._persist_undo(target, post)
            self._check_cancel()
            self._install(temp_path, target, exclusive=True)
        except OSError as error:
            self._discard(temp_path, undo_path, manifest_path)
            emit_event("transaction_rolled_back", path=self.path, verb=self.verb, reason=str(error))
            raise self._fail(f"failed to create {target.as_posix()}", error) from error
        except BaseException as error:
            self._discard(temp_path, undo_path, manifest_path)
            emit_event("transaction_rolled_back", path=self.path, verb=self.verb, reason=str(error))
            raise

        backup_path: Path | None = None
        try:
            backup_path = allocate_backup(self.path, self.snapshot, sync=self.fsync)
            self.path.unlink()
        except (OSError, FileIOError) as error:
            target.unlink(missing_ok=True)
            self._discard(backup_path, undo_path, manifest_path)
            emit_event("transaction_rolled_back", path=self.path, verb=self.verb, reason=str(error))
            if isinstance(error, FileIOError):
                raise
            raise self._fail(f"failed to retire {self.path.as_posix()}", error) from error

        emit_event("transaction_committed", path=target, verb=self.verb, backup=backup_path, source=self.path)
        return TransactionOutcome(
            path=target,
            verb=self.verb,
            pre_checksum=self.pre_checksum,
            post_checksum=post,
            bytes_written=len(data),
            backup_path=backup_path,
            undo_path=undo_path,
            manifest_path=manifest_path,
            removed_path=self.path,
        )


__all__ = [
    "BACKUP_SUFFIX",
    "TransactionOutcome",
    "WriteTransaction",
    "allocate_backup",
    "backup_candidate",
    "checksum",
    "write_undo_patch",
]
