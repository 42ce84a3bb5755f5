"""CLI commands for previewing and applying guarded edits."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer

from .config import EngineSettings, load_settings
from .errors import ConfigurationError, EditError
from .memory.change_log import ChangeLog
from .memory.schema import ChangeAction
from .orchestrator import ApprovalDecision, EditEngine, EditPreview, FileOutcome
from .structured import (
    BlockRequest,
    EditRequest,
    MatchGuards,
    RenameRequest,
    ReplaceRequest,
    WriteRequest,
    requests_from_patch,
)

APP_HELP = "Preview-first, reversible text edits."

app = typer.Typer(help=APP_HELP)

_CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to a YAML configuration file (default: ge.yaml).")
_APPLY_OPTION = typer.Option(False, "--apply", help="Write approved changes instead of only previewing them.")
_YES_OPTION = typer.Option(False, "--yes", "-y", help="Approve every file without prompting (requires --apply).")
_ENCODING_OPTION = typer.Option(None, "--encoding", help="Force an encoding instead of auto-detection.")
_UNDO_OPTION = typer.Option(None, "--undo-dir", help="Directory that receives undo patches.")
_NO_BACKUP_OPTION = typer.Option(False, "--no-backup", help="Do not keep .bak copies of edited files.")
_CONTEXT_OPTION = typer.Option(None, "--context", min=0, help="Context lines around each hunk.")
_HALT_OPTION = typer.Option(False, "--halt", help="Stop at the first failing file.")
_VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Log engine activity to stderr.")

_DECISIONS = {
    "y": ApprovalDecision.APPLY,
    "yes": ApprovalDecision.APPLY,
    "n": ApprovalDecision.SKIP,
    "no": ApprovalDecision.SKIP,
    "a": ApprovalDecision.APPLY_ALL,
    "all": ApprovalDecision.APPLY_ALL,
    "q": ApprovalDecision.QUIT,
    "quit": ApprovalDecision.QUIT,
}


def _configure_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s", stream=sys.stderr)


def _build_engine(
    config: Optional[str],
    *,
    encoding: Optional[str],
    undo_dir: Optional[Path],
    no_backup: bool,
    context: Optional[int],
) -> EditEngine:
    """Resolve settings and construct the engine, reporting bad input as a CLI error."""
    try:
        settings: EngineSettings = load_settings(Path(config) if config else None)
        if undo_dir is not None:
            settings.undo_dir = undo_dir
        if no_backup:
            settings.backups = False
        if context is not None:
            settings.context_lines = context
        change_log = ChangeLog.from_settings(settings)
        return EditEngine(settings, change_log=change_log, encoding=encoding)
    except ConfigurationError as error:
        raise typer.BadParameter(str(error)) from error


def _echo_preview(preview: EditPreview) -> None:
    if preview.diff.text:
        typer.echo(preview.diff.text, nl=False)
    if preview.diff.paginate:
        typer.echo(f"(diff has {preview.diff.line_count} lines; consider paging the output)")
    for warning in preview.warnings:
        typer.echo(f"warning: {warning}", err=True)


def _prompt_approval(preview: EditPreview) -> ApprovalDecision:
    _echo_preview(preview)
    while True:
        answer = typer.prompt(
            f"Apply changes to {preview.path.as_posix()}? [y]es/[n]o/[a]ll/[q]uit",
            default="n",
            show_default=False,
        )
        decision = _DECISIONS.get(answer.strip().lower())
        if decision is not None:
            return decision
        typer.echo("Please answer y, n, a or q.")


def _report(outcomes: List[FileOutcome], *, shown: set[int]) -> None:
    for outcome in outcomes:
        record = outcome.record
        preview = outcome.preview
        location = outcome.path.as_posix()
        if outcome.action is ChangeAction.FAILED:
            typer.echo(f"error: {location}: {outcome.error}", err=True)
            miss = outcome.miss
            if miss is not None:
                typer.echo(miss.render(), err=True)
            continue
        if outcome.action is ChangeAction.NO_OP:
            reason = preview.reason if preview is not None else None
            typer.echo(f"{location}: no changes ({reason or 'unchanged'})")
            if preview is not None and preview.miss is not None:
                typer.echo(preview.miss.render())
            continue
        if preview is not None and id(preview) not in shown:
            _echo_preview(preview)
        if outcome.action is ChangeAction.DRY_RUN:
            typer.echo(f"{location}: would change {record.summary} (dry run)")
        elif outcome.action is ChangeAction.SKIPPED:
            typer.echo(f"{location}: skipped")
        else:
            typer.echo(f"{record.path}: applied {record.summary}")
            if record.backup_path:
                typer.echo(f"  backup: {record.backup_path}")
            if record.undo_path:
                typer.echo(f"  undo patch: {record.undo_path}")

    if any(outcome.action is ChangeAction.DRY_RUN for outcome in outcomes):
        typer.echo("Dry run only; re-run with --apply to write these changes.")


def _execute(
    engine: EditEngine,
    targets: List[tuple[Path, EditRequest]],
    *,
    apply: bool,
    yes: bool,
    halt: bool,
) -> None:
    if yes and not apply:
        raise typer.BadParameter("--yes only makes sense together with --apply.", param_hint="--yes")
    shown: set[int] = set()

    def approve(preview: EditPreview) -> ApprovalDecision:
        shown.add(id(preview))
        return _prompt_approval(preview)

    try:
        outcomes = engine.run_requests(
            targets,
            apply=apply,
            approve=approve if apply and not yes else None,
            auto_approve=yes,
            halt_on_failure=halt,
        )
    except EditError as error:
        typer.echo(f"error: {error}", err=True)
        raise typer.Exit(code=1) from error
    _report(outcomes, shown=shown)
    if not all(outcome.ok for outcome in outcomes):
        raise typer.Exit(code=1)


@app.command()
def replace(
    pattern: str = typer.Argument(..., help="Literal text (or regex with --regex) to find."),
    replacement: str = typer.Argument(..., help="Replacement text; regex mode accepts \\1 and \\g<name>."),
    paths: List[Path] = typer.Argument(..., help="Files to edit."),
    regex: bool = typer.Option(False, "--regex", help="Treat the pattern as a regular expression."),
    expect: Optional[int] = typer.Option(None, "--expect", min=0, help="Fail unless exactly N matches exist."),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Replace at most N matches per file."),
    after_line: Optional[int] = typer.Option(None, "--after-line", min=0, help="Ignore matches on or before line N."),
    word: bool = typer.Option(False, "--word", help="Only match whole identifiers."),
    case_aware: bool = typer.Option(False, "--case-aware", help="Match any casing and re-case each replacement."),
    config: Optional[str] = _CONFIG_OPTION,
    apply: bool = _APPLY_OPTION,
    yes: bool = _YES_OPTION,
    encoding: Optional[str] = _ENCODING_OPTION,
    undo_dir: Optional[Path] = _UNDO_OPTION,
    no_backup: bool = _NO_BACKUP_OPTION,
    context: Optional[int] = _CONTEXT_OPTION,
    halt: bool = _HALT_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Replace literal text or a regex match."""
    _configure_logging(verbose)
    try:
        guards = MatchGuards(
            expect=expect,
            match_limit=limit,
            after_line=after_line,
            word_boundary=word,
            case_aware=case_aware,
        )
    except ConfigurationError as error:
        raise typer.BadParameter(str(error)) from error
    request = ReplaceRequest(
        pattern=pattern,
        replacement=replacement,
        mode="regex" if regex else "literal",
        guards=guards,
    )
    engine = _build_engine(config, encoding=encoding, undo_dir=undo_dir, no_backup=no_backup, context=context)
    _execute(engine, [(path, request) for path in paths], apply=apply, yes=yes, halt=halt)


@app.command()
def rename(
    old: str = typer.Argument(..., help="Identifier to rename."),
    new: str = typer.Argument(..., help="New identifier (written in snake_case, re-cased per hit)."),
    paths: List[Path] = typer.Argument(..., help="Files to edit."),
    word_boundary: bool = typer.Option(True, "--word-boundary/--no-word-boundary", help="Match whole identifiers."),
    case_aware: bool = typer.Option(True, "--case-aware/--exact-case", help="Follow the casing of each hit."),
    expect: Optional[int] = typer.Option(None, "--expect", min=0, help="Fail unless exactly N matches exist."),
    limit: Optional[int] = typer.Option(None, "--limit", min=1, help="Rename at most N occurrences per file."),
    config: Optional[str] = _CONFIG_OPTION,
    apply: bool = _APPLY_OPTION,
    yes: bool = _YES_OPTION,
    encoding: Optional[str] = _ENCODING_OPTION,
    undo_dir: Optional[Path] = _UNDO_OPTION,
    no_backup: bool = _NO_BACKUP_OPTION,
    context: Optional[int] = _CONTEXT_OPTION,
    halt: bool = _HALT_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Rename an identifier, keeping the casing of every occurrence."""
    _configure_logging(verbose)
    request = RenameRequest(
        old=old,
        new=new,
        word_boundary=word_boundary,
        case_aware=case_aware,
        expect=expect,
        match_limit=limit,
    )
    engine = _build_engine(config, encoding=encoding, undo_dir=undo_dir, no_backup=no_backup, context=context)
    _execute(engine, [(path, request) for path in paths], apply=apply, yes=yes, halt=halt)


@app.command()
def block(
    paths: List[Path] = typer.Argument(..., help="Files to edit."),
    start: str = typer.Option(..., "--start", help="Start marker."),
    end: str = typer.Option(..., "--end", help="End marker."),
    body: Optional[str] = typer.Option(None, "--body", help="New block body."),
    body_file: Optional[Path] = typer.Option(None, "--body-file", help="Read the block body from a file."),
    insert: bool = typer.Option(False, "--insert", help="Only fill an empty block."),
    config: Optional[str] = _CONFIG_OPTION,
    apply: bool = _APPLY_OPTION,
    yes: bool = _YES_OPTION,
    encoding: Optional[str] = _ENCODING_OPTION,
    undo_dir: Optional[Path] = _UNDO_OPTION,
    no_backup: bool = _NO_BACKUP_OPTION,
    context: Optional[int] = _CONTEXT_OPTION,
    halt: bool = _HALT_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Replace (or fill) the text between two markers."""
    _configure_logging(verbose)
    if (body is None) == (body_file is None):
        raise typer.BadParameter("Provide exactly one of --body or --body-file.", param_hint="--body")
    if body_file is not None:
        try:
            body = body_file.read_text(encoding="utf-8")
        except OSError as error:
            raise typer.BadParameter(f"Cannot read {body_file}: {error}", param_hint="--body-file") from error
    request = BlockRequest(start_marker=start, end_marker=end, body=body or "", mode="insert" if insert else "replace")
    engine = _build_engine(config, encoding=encoding, undo_dir=undo_dir, no_backup=no_backup, context=context)
    _execute(engine, [(path, request) for path in paths], apply=apply, yes=yes, halt=halt)


@app.command("apply")
def apply_patch(
    patch_file: Path = typer.Argument(..., help="Unified diff to apply ('-' reads stdin)."),
    root: Path = typer.Option(Path("."), "--root", help="Directory the patch paths are relative to."),
    permanent: bool = typer.Option(False, "--permanent", help="Really remove deleted files instead of backing them up."),
    allow_overwrite: bool = typer.Option(
        False, "--allow-overwrite", help="Let file creations replace files that already exist."
    ),
    config: Optional[str] = _CONFIG_OPTION,
    apply: bool = _APPLY_OPTION,
    yes: bool = _YES_OPTION,
    encoding: Optional[str] = _ENCODING_OPTION,
    undo_dir: Optional[Path] = _UNDO_OPTION,
    no_backup: bool = _NO_BACKUP_OPTION,
    context: Optional[int] = _CONTEXT_OPTION,
    halt: bool = _HALT_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Apply an external unified diff, re-anchoring drifted hunks within a small window."""
    _configure_logging(verbose)
    try:
        text = sys.stdin.read() if str(patch_file) == "-" else patch_file.read_text(encoding="utf-8")
    except OSError as error:
        raise typer.BadParameter(f"Cannot read patch {patch_file}: {error}", param_hint="PATCH_FILE") from error
    engine = _build_engine(config, encoding=encoding, undo_dir=undo_dir, no_backup=no_backup, context=context)
    try:
        targets = requests_from_patch(text, root=root, permanent=permanent, allow_overwrite=allow_overwrite)
    except EditError as error:
        typer.echo(f"error: {error}", err=True)
        raise typer.Exit(code=1) from error
    _execute(engine, list(targets), apply=apply, yes=yes, halt=halt)


@app.command()
def write(
    path: Path = typer.Argument(..., help="File to create or overwrite."),
    content: Optional[str] = typer.Option(None, "--content", help="Complete new content."),
    source: Optional[Path] = typer.Option(None, "--from", help="Read the new content from a file."),
    newline: str = typer.Option("auto", "--newline", help="Line endings: auto, lf, crlf or cr."),
    allow_overwrite: bool = typer.Option(False, "--allow-overwrite", help="Permit replacing an existing file."),
    config: Optional[str] = _CONFIG_OPTION,
    apply: bool = _APPLY_OPTION,
    yes: bool = _YES_OPTION,
    encoding: Optional[str] = _ENCODING_OPTION,
    undo_dir: Optional[Path] = _UNDO_OPTION,
    no_backup: bool = _NO_BACKUP_OPTION,
    context: Optional[int] = _CONTEXT_OPTION,
    verbose: bool = _VERBOSE_OPTION,
) -> None:
    """Create a file, or overwrite one when explicitly allowed."""
    _configure_logging(verbose)
    if newline not in {"auto", "lf", "crlf", "cr"}:
        raise typer.BadParameter("Choose one of auto, lf, crlf, cr.", param_hint="--newline")
    if (content is None) == (source is None):
        raise typer.BadParameter("Provide exactly one of --content or --from.", param_hint="--content")
    if source is not None:
        try:
            content = source.read_text(encoding="utf-8")
        except OSError as error:
            raise typer.BadParameter(f"Cannot read {source}: {error}", param_hint="--from") from error
    request = WriteRequest(content=content or "", newline=newline, allow_overwrite=allow_overwrite)  # type: ignore[arg-type]
    engine = _build_engine(config, encoding=encoding, undo_dir=undo_dir, no_backup=no_backup, context=context)
    _execute(engine, [(path, request)], apply=apply, yes=yes, halt=False)


@app.command()
def log(
    limit: int = typer.Option(20, "--limit", "-n", min=1, help="Number of most recent records to show."),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON records."),
    config: Optional[str] = _CONFIG_OPTION,
) -> None:
    """Show recent change records."""
    try:
        settings = load_settings(Path(config) if config else None)
    except ConfigurationError as error:
        raise typer.BadParameter(str(error)) from error
    records = ChangeLog.from_settings(settings).entries(limit=limit)
    if not records:
        typer.echo("No change records yet.")
        return
    for record in records:
        if as_json:
            typer.echo(json.dumps(record.model_dump(mode="json"), sort_keys=True))
            continue
        stamp = record.timestamp.strftime("%Y-%m-%d %H:%M:%S")
        typer.echo(f"{stamp} {record.action.value:<8} {record.verb:<8} {record.path} {record.summary}")


if __name__ == "__main__":
    app()
