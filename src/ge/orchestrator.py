"""Single entry point for every edit-producing operation.

Each request is previewed first (decode, locate, diff) without touching the
filesystem; an approved preview is then written through a
:class:`~ge.tools.transaction.WriteTransaction` using exactly the bytes that
were previewed.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Literal, Optional, Sequence

from .config import EngineSettings
from .errors import ConfigurationError, EditError, FileIOError, GuardViolation, OverwriteRefused
from .memory.change_log import ChangeLog
from .memory.schema import ChangeAction, ChangeRecord, LineSpan
from .structured import (
    BlockRequest,
    EditRequest,
    PatchRequest,
    RenameRequest,
    ReplaceRequest,
    WriteRequest,
)
from .telemetry import emit_event
from .tools.blocks import apply_block
from .tools.diffing import (
    EditScript,
    RenderedDiff,
    collect_line_spans,
    compute_edit_script,
    render_diff,
    summarize_spans,
)
from .tools.encoding import (
    NEWLINE_LABELS,
    TextDocument,
    document_from_bytes,
    encode,
    looks_binary,
    normalize_newlines,
    split_lines,
)
from .tools.matching import MatchSpan, MissReport, find, substitute
from .tools.patch import FileEdit, Hunk, apply_file_edit, build_hunks, invert_file_edit
from .tools.transaction import TransactionOutcome, WriteTransaction

LOGGER = logging.getLogger(__name__)

Operation = Literal["write", "create", "delete", "rename"]

_NEWLINE_CHOICES = {"lf": "\n", "crlf": "\r\n", "cr": "\r"}


class ApprovalDecision(str, Enum):
    """Answer of the per-file approval callback."""

    APPLY = "apply"
    APPLY_ALL = "apply-all"
    SKIP = "skip"
    QUIT = "quit"


@dataclass(slots=True)
class _Plan:
    new_lines: list[str]
    operation: Operation = "write"
    matches: list[MatchSpan] = field(default_factory=list)
    miss: Optional[MissReport] = None
    overflow: int = 0
    newline: Optional[str] = None
    destination: Optional[Path] = None
    reason: Optional[str] = None


@dataclass(slots=True)
class EditPreview:
    """Everything shown to the reviewer and everything apply will write."""

    path: Path
    verb: str
    request: EditRequest
    document: Optional[TextDocument]
    script: EditScript
    diff: RenderedDiff
    new_lines: list[str] = field(default_factory=list)
    new_data: Optional[bytes] = None
    operation: Operation = "write"
    destination: Optional[Path] = None
    matches: list[MatchSpan] = field(default_factory=list)
    hunks: list[Hunk] = field(default_factory=list)
    miss: Optional[MissReport] = None
    overflow: int = 0
    warnings: list[str] = field(default_factory=list)
    reason: Optional[str] = None
    changed: bool = False

    @property
    def spans(self) -> list[LineSpan]:
        return collect_line_spans(self.script)

    @property
    def summary(self) -> str:
        return summarize_spans(self.spans)


@dataclass(slots=True)
class FileOutcome:
    """Result for one target file, failures included."""

    path: Path
    action: ChangeAction
    record: ChangeRecord
    preview: Optional[EditPreview] = None
    transaction: Optional[TransactionOutcome] = None
    error: Optional[EditError] = None

    @property
    def ok(self) -> bool:
        return self.action is not ChangeAction.FAILED

    @property
    def miss(self) -> Optional[MissReport]:
        if self.preview is not None and self.preview.miss is not None:
            return self.preview.miss
        if isinstance(self.error, GuardViolation):
            return self.error.miss
        return None


ApprovalCallback = Callable[[EditPreview], ApprovalDecision]


def _display_path(path: Path) -> str:
    try:
        return path.resolve().relative_to(Path.cwd().resolve()).as_posix()
    except ValueError:
        return path.as_posix()


def _verb(request: EditRequest) -> str:
    if isinstance(request, ReplaceRequest):
        return "regex" if request.mode == "regex" else "replace"
    return request.kind


class EditEngine:
    """Preview, approve and apply edit requests one file at a time."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        change_log: ChangeLog | None = None,
        encoding: str | None = None,
        verbatim: bool | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.change_log = change_log
        # An unknown override fails here, before any file is read.
        self.strategy = self.settings.encoding_strategy(encoding)
        self.verbatim = self.settings.verbatim_newlines if verbatim is None else verbatim
        LOGGER.debug("Encoding strategy: %s", self.strategy.describe())
        self._handlers: dict[str, Callable[[TextDocument, EditRequest], _Plan]] = {
            "replace": self._plan_replace,  # type: ignore[dict-item]
            "rename": self._plan_rename,  # type: ignore[dict-item]
            "block": self._plan_block,  # type: ignore[dict-item]
            "patch": self._plan_patch,  # type: ignore[dict-item]
            "write": self._plan_write,  # type: ignore[dict-item]
        }

    # ------------------------------------------------------------------ preview

    def _load(self, path: Path, request: EditRequest) -> tuple[TextDocument, bool]:
        """Return the decoded target and whether it looks binary."""
        may_be_missing = isinstance(request, WriteRequest) or (
            isinstance(request, PatchRequest) and request.edit.kind == "create"
        )
        if not path.exists():
            if may_be_missing:
                return TextDocument.empty(path, encoding=self.strategy.default_encoding()), False
            raise FileIOError(f"{path.as_posix()} does not exist", details={"path": path.as_posix()})
        try:
            data = path.read_bytes()
        except OSError as error:
            raise FileIOError(
                f"failed to read {path.as_posix()}: {error.strerror or error}",
                details={"path": path.as_posix()},
            ) from error
        if looks_binary(data):
            empty = TextDocument(
                path=path, encoding="binary", has_bom=False, newline="\n", raw=data, lines=[], source="binary"
            )
            return empty, True
        return document_from_bytes(path, data, self.strategy, verbatim=self.verbatim), False

    def _plan_replace(self, document: TextDocument, request: ReplaceRequest) -> _Plan:
        result = find(
            document.lines,
            request.pattern,
            request.mode,
            request.guards,
            window=self.settings.miss_window,
            candidates=self.settings.miss_candidates,
        )
        if not result.spans:
            return _Plan(new_lines=list(document.lines), miss=result.miss, reason="no-match")
        text = substitute(
            document.text,
            result.spans,
            request.replacement,
            mode=request.mode,
            case_aware=request.guards.case_aware,
            newline=None if document.verbatim else document.newline,
        )
        return _Plan(new_lines=split_lines(text), matches=result.spans, overflow=result.overflow)

    def _plan_rename(self, document: TextDocument, request: RenameRequest) -> _Plan:
        guards = request.guards
        result = find(
            document.lines,
            request.old,
            "literal",
            guards,
            window=self.settings.miss_window,
            candidates=self.settings.miss_candidates,
        )
        if not result.spans:
            return _Plan(new_lines=list(document.lines), miss=result.miss, reason="no-match")
        text = substitute(document.text, result.spans, request.new, case_aware=guards.case_aware)
        return _Plan(new_lines=split_lines(text), matches=result.spans, overflow=result.overflow)

    def _plan_block(self, document: TextDocument, request: BlockRequest) -> _Plan:
        text = apply_block(
            document.text,
            request.start_marker,
            request.end_marker,
            request.body,
            mode=request.mode,
            newline=document.newline,
        )
        if text is None:
            return _Plan(new_lines=list(document.lines), reason="unchanged")
        return _Plan(new_lines=split_lines(text))

    def _plan_patch(self, document: TextDocument, request: PatchRequest) -> _Plan:
        edit = request.edit
        if edit.kind == "create":
            new_lines = apply_file_edit(edit, [], max_offset=0)
            if not document.exists:
                return _Plan(new_lines=new_lines, operation="create", newline=None)
            if not request.allow_overwrite:
                raise OverwriteRefused(
                    f"{document.path.as_posix()} already exists; overwriting was not permitted",
                    details={"path": document.path.as_posix()},
                )
            # The existing file is replaced wholesale, with backup and undo.
            return _Plan(new_lines=new_lines)

        newline = None if document.verbatim else document.newline
        new_lines = apply_file_edit(
            edit,
            document.lines,
            newline=newline,
            max_offset=self.settings.max_hunk_offset,
        )
        if edit.kind == "delete":
            return _Plan(new_lines=new_lines, operation="delete")
        if edit.kind == "rename":
            destination = request.destination or document.path.with_name(edit.target_path.name)
            if destination.exists():
                raise OverwriteRefused(
                    f"{destination.as_posix()} already exists",
                    details={"path": destination.as_posix()},
                )
            return _Plan(new_lines=new_lines, operation="rename", destination=destination)
        return _Plan(new_lines=new_lines)

    def _plan_write(self, document: TextDocument, request: WriteRequest) -> _Plan:
        if document.exists and not request.allow_overwrite:
            raise OverwriteRefused(
                f"{document.path.as_posix()} already exists; overwriting was not permitted",
                details={"path": document.path.as_posix()},
            )
        if request.newline == "auto":
            newline = document.newline if document.exists else "\n"
        else:
            newline = _NEWLINE_CHOICES[request.newline]
        lines = split_lines(normalize_newlines(request.content, newline))
        operation: Operation = "write" if document.exists else "create"
        return _Plan(new_lines=lines, operation=operation, newline=newline)

    def preview(self, path: Path | str, request: EditRequest) -> EditPreview:
        """Compute the change for ``path`` without writing anything."""
        target = Path(path)
        verb = _verb(request)
        try:
            handler = self._handlers[request.kind]
        except KeyError:
            raise ConfigurationError(f"unsupported edit request '{request.kind}'") from None

        try:
            document, binary = self._load(target, request)
            if binary:
                script = compute_edit_script([], [])
                preview = EditPreview(
                    path=target,
                    verb=verb,
                    request=request,
                    document=document,
                    script=script,
                    diff=render_diff(script, "", ""),
                    reason="binary",
                    warnings=["binary file skipped"],
                )
                emit_event("edit_previewed", path=target, verb=verb, changed=False, reason="binary")
                return preview
            plan = handler(document, request)
        except EditError as error:
            error.with_path(target)
            raise

        script = compute_edit_script(
            document.lines,
            plan.new_lines,
            max_edit_distance=self.settings.max_edit_distance,
        )
        display = _display_path(target)
        old_label = "/dev/null" if plan.operation == "create" else f"a/{display}"
        if plan.operation == "delete":
            new_label = "/dev/null"
        elif plan.destination is not None:
            new_label = f"b/{_display_path(plan.destination)}"
        else:
            new_label = f"b/{display}"
        diff = render_diff(
            script,
            old_label,
            new_label,
            context=self.settings.context_lines,
            limits=self.settings.diff_limits(),
        )

        changed = script.changed or plan.operation != "write"
        new_data: bytes | None = None
        if plan.operation != "delete":
            newline = plan.newline
            if newline is None and not document.verbatim and plan.operation != "create":
                newline = document.newline
            new_data = encode("".join(plan.new_lines), document.encoding, newline, bom=document.has_bom)
            if plan.operation == "write" and new_data == document.raw:
                changed = False

        warnings = list(document.warnings) + list(diff.warnings)
        if plan.overflow:
            warnings.append(f"match limit reached: {plan.overflow} further match(es) left untouched")
        if document.had_errors and changed:
            warnings.append("file contained undecodable bytes; they are written back unchanged where possible")

        preview = EditPreview(
            path=target,
            verb=verb,
            request=request,
            document=document,
            script=script,
            diff=diff,
            new_lines=plan.new_lines,
            new_data=new_data,
            operation=plan.operation,
            destination=plan.destination,
            matches=plan.matches,
            hunks=build_hunks(script, context=self.settings.context_lines),
            miss=plan.miss,
            overflow=plan.overflow,
            warnings=warnings,
            reason=plan.reason if not changed else None,
            changed=changed,
        )
        if not changed and preview.reason is None:
            preview.reason = "unchanged"
        emit_event(
            "edit_previewed",
            path=target,
            verb=verb,
            changed=changed,
            matches=len(plan.matches),
            hunks=diff.hunk_count,
            diff_hash=diff.diff_hash,
            reason=preview.reason,
        )
        return preview

    # -------------------------------------------------------------------- apply

    def _undo_edit(self, preview: EditPreview) -> FileEdit:
        display = _display_path(preview.path)
        hunks = build_hunks(preview.script, context=self.settings.context_lines)
        if preview.operation == "create":
            forward = FileEdit(old_path=None, new_path=display, kind="create", hunks=hunks)
        elif preview.operation == "delete":
            forward = FileEdit(old_path=display, new_path=None, kind="delete", hunks=hunks)
        elif preview.operation == "rename" and preview.destination is not None:
            forward = FileEdit(
                old_path=display,
                new_path=_display_path(preview.destination),
                kind="rename",
                hunks=hunks,
            )
        else:
            forward = FileEdit(old_path=display, new_path=display, kind="modify", hunks=hunks)
        return invert_file_edit(forward)

    def commit(self, preview: EditPreview, *, cancel: threading.Event | None = None) -> TransactionOutcome:
        """Write ``preview`` exactly as it was shown."""
        if not preview.changed or preview.document is None:
            raise ConfigurationError(
                f"nothing to apply for {preview.path.as_posix()}",
                details={"path": preview.path.as_posix()},
            )
        document = preview.document
        snapshot = document.raw if document.exists else None
        transaction = WriteTransaction(
            preview.path,
            snapshot,
            verb=preview.verb,
            backups=self.settings.backups,
            undo_dir=self.settings.undo_dir,
            fsync=self.settings.fsync,
            cancel=cancel,
        ).with_undo(
            self._undo_edit(preview),
            encoding=document.encoding,
            newline=document.newline_label,
        )

        try:
            if preview.operation == "delete":
                permanent = isinstance(preview.request, PatchRequest) and preview.request.permanent
                outcome = transaction.delete(permanent=permanent)
            elif preview.operation == "rename" and preview.destination is not None:
                outcome = transaction.rename(preview.destination, preview.new_data or b"")
            else:
                outcome = transaction.commit(preview.new_data or b"")
        except EditError as error:
            error.with_path(preview.path)
            raise

        emit_event(
            "edit_applied",
            path=outcome.path,
            verb=preview.verb,
            summary=preview.summary,
            backup=outcome.backup_path,
            undo=outcome.undo_path,
        )
        return outcome

    # ---------------------------------------------------------------------- run

    def _record(
        self,
        path: Path,
        verb: str,
        action: ChangeAction,
        *,
        preview: EditPreview | None = None,
        transaction: TransactionOutcome | None = None,
        error: EditError | None = None,
    ) -> ChangeRecord:
        spans = preview.spans if preview is not None and preview.changed else []
        document = preview.document if preview is not None else None
        metadata: dict = {}
        message: str | None = None
        if preview is not None:
            if preview.reason:
                metadata["reason"] = preview.reason
            if preview.matches:
                metadata["matches"] = len(preview.matches)
            if preview.overflow:
                metadata["overflow"] = preview.overflow
            if preview.miss is not None:
                message = preview.miss.render()
        if error is not None:
            message = str(error)
            metadata["error"] = type(error).__name__
            metadata.update({key: value for key, value in error.details.items() if key != "path"})
        if transaction is not None and transaction.removed_path is not None:
            metadata["removed"] = transaction.removed_path.as_posix()
        return ChangeRecord(
            verb=verb,
            path=(transaction.path if transaction is not None else path).as_posix(),
            action=action,
            applied=action is ChangeAction.APPLIED,
            spans=spans,
            summary=summarize_spans(spans),
            diff_hash=preview.diff.diff_hash if preview is not None and preview.changed else None,
            encoding=document.encoding if document is not None else None,
            newline=NEWLINE_LABELS.get(document.newline) if document is not None else None,
            backup_path=transaction.backup_path.as_posix() if transaction and transaction.backup_path else None,
            undo_path=transaction.undo_path.as_posix() if transaction and transaction.undo_path else None,
            message=message,
            metadata=metadata,
        )

    def _finish(self, outcome: FileOutcome) -> FileOutcome:
        if self.change_log is not None:
            self.change_log.append(outcome.record)
        return outcome

    def apply(self, preview: EditPreview, *, cancel: threading.Event | None = None) -> ChangeRecord:
        """Commit an approved preview and return (and log) its change record."""
        transaction = self.commit(preview, cancel=cancel)
        record = self._record(
            preview.path, preview.verb, ChangeAction.APPLIED, preview=preview, transaction=transaction
        )
        if self.change_log is not None:
            self.change_log.append(record)
        return record

    def _failed(self, path: Path, verb: str, error: EditError, preview: EditPreview | None = None) -> FileOutcome:
        LOGGER.error("%s: %s", path.as_posix(), error)
        emit_event("edit_failed", path=path, verb=verb, error=type(error).__name__, message=str(error))
        record = self._record(path, verb, ChangeAction.FAILED, preview=preview, error=error)
        return self._finish(
            FileOutcome(path=path, action=ChangeAction.FAILED, record=record, preview=preview, error=error)
        )

    def _skipped(self, preview: EditPreview, action: ChangeAction) -> FileOutcome:
        emit_event("edit_skipped", path=preview.path, verb=preview.verb, action=action, reason=preview.reason)
        record = self._record(preview.path, preview.verb, action, preview=preview)
        return self._finish(FileOutcome(path=preview.path, action=action, record=record, preview=preview))

    def run(
        self,
        paths: Iterable[Path | str],
        request: EditRequest,
        **options,
    ) -> list[FileOutcome]:
        """Run one request against every path; see :meth:`run_requests`."""
        return self.run_requests([(Path(path), request) for path in paths], **options)

    def run_requests(
        self,
        targets: Sequence[tuple[Path, EditRequest]],
        *,
        apply: bool = False,
        approve: ApprovalCallback | None = None,
        auto_approve: bool = False,
        halt_on_failure: bool = False,
        cancel: threading.Event | None = None,
    ) -> list[FileOutcome]:
        """Preview every target and, when ``apply`` is set, write the approved ones.

        Failures become ``failed`` outcomes and processing continues unless
        ``halt_on_failure`` is set. Without ``apply`` the run is a dry run.
        """
        if apply and approve is None and not auto_approve:
            raise ConfigurationError("applying changes requires an approval callback or auto-approve")

        outcomes: list[FileOutcome] = []
        approve_all = auto_approve
        for path, request in targets:
            if cancel is not None and cancel.is_set():
                LOGGER.warning("Run cancelled; %s and later targets were not processed", path.as_posix())
                break
            verb = _verb(request)
            try:
                preview = self.preview(path, request)
            except EditError as error:
                outcomes.append(self._failed(path, verb, error))
                if halt_on_failure:
                    break
                continue

            if not preview.changed:
                outcomes.append(self._skipped(preview, ChangeAction.NO_OP))
                continue
            if not apply:
                outcomes.append(self._skipped(preview, ChangeAction.DRY_RUN))
                continue

            decision = ApprovalDecision.APPLY if approve_all else approve(preview)  # type: ignore[misc]
            if decision is ApprovalDecision.QUIT:
                outcomes.append(self._skipped(preview, ChangeAction.SKIPPED))
                break
            if decision is ApprovalDecision.SKIP:
                outcomes.append(self._skipped(preview, ChangeAction.SKIPPED))
                continue
            if decision is ApprovalDecision.APPLY_ALL:
                approve_all = True

            try:
                transaction = self.commit(preview, cancel=cancel)
            except EditError as error:
                outcomes.append(self._failed(path, verb, error, preview))
                if halt_on_failure:
                    break
                continue
            record = self._record(path, verb, ChangeAction.APPLIED, preview=preview, transaction=transaction)
            outcomes.append(
                self._finish(
                    FileOutcome(
                        path=path,
                        action=ChangeAction.APPLIED,
                        record=record,
                        preview=preview,
                        transaction=transaction,
                    )
                )
            )
        return outcomes


__all__ = [
    "ApprovalCallback",
    "ApprovalDecision",
    "EditEngine",
    "EditPreview",
    "FileOutcome",
]
