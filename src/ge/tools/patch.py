"""Unified diff model: parse, apply with bounded re-anchoring, build and invert."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Sequence

from ..errors import HunkMismatch, PatchFormatError
from .encoding import line_ending, strip_eol

if TYPE_CHECKING:
    from .diffing import EditScript

LOGGER = logging.getLogger(__name__)

EditKind = Literal["modify", "create", "delete", "rename"]
LineTag = Literal[" ", "-", "+"]

DEFAULT_MAX_OFFSET = 10
NO_NEWLINE_MARKER = "\\ No newline at end of file"

_DIFF_HEADER = re.compile(r"^diff --git (?P<old>\"[^\"]+\"|\S+) (?P<new>\"[^\"]+\"|\S+)$")
_HUNK_HEADER = re.compile(
    r"^@@ -(?P<old_start>\d+)(?:,(?P<old_count>\d+))? "
    r"\+(?P<new_start>\d+)(?:,(?P<new_count>\d+))? @@(?P<section>.*)$"
)
_EXTENDED_HEADERS = (
    "index ",
    "similarity index ",
    "dissimilarity index ",
    "new file mode ",
    "deleted file mode ",
    "old mode ",
    "new mode ",
    "rename from ",
    "rename to ",
    "copy from ",
    "copy to ",
    "Binary files ",
)


@dataclass(slots=True)
class HunkLine:
    """Body line of a hunk; ``text`` keeps its terminator, if it had one."""

    tag: LineTag
    text: str


@dataclass(slots=True)
class Hunk:
    """Old/new anchors (1-based start, length) plus tagged body lines."""

    old_start: int
    old_len: int
    new_start: int
    new_len: int
    lines: list[HunkLine] = field(default_factory=list)
    section: str = ""

    @property
    def old_lines(self) -> list[str]:
        return [line.text for line in self.lines if line.tag != "+"]

    @property
    def new_lines(self) -> list[str]:
        return [line.text for line in self.lines if line.tag != "-"]

    @property
    def header(self) -> str:
        return (
            f"@@ -{_format_range(self.old_start, self.old_len)} "
            f"+{_format_range(self.new_start, self.new_len)} @@{self.section}"
        )

    @property
    def anchor(self) -> int:
        """0-based index of the first old line (or the insertion point)."""
        return self.old_start - 1 if self.old_len else self.old_start


@dataclass(slots=True)
class FileEdit:
    """One file section of a unified diff."""

    old_path: str | None
    new_path: str | None
    kind: EditKind = "modify"
    hunks: list[Hunk] = field(default_factory=list)
    old_mode: str | None = None
    new_mode: str | None = None

    @property
    def target_path(self) -> Path:
        path = self.new_path if self.new_path is not None else self.old_path
        if path is None:
            raise PatchFormatError("file edit has neither an old nor a new path")
        return Path(path)

    @property
    def source_path(self) -> Path | None:
        return Path(self.old_path) if self.old_path is not None else None


@dataclass(slots=True)
class _Section:
    git_old: str | None = None
    git_new: str | None = None
    old_label: str | None = None
    new_label: str | None = None
    has_labels: bool = False
    rename_from: str | None = None
    rename_to: str | None = None
    new_file: bool = False
    deleted_file: bool = False
    old_mode: str | None = None
    new_mode: str | None = None
    hunks: list[Hunk] = field(default_factory=list)


def _format_range(start: int, length: int) -> str:
    if length == 1:
        return str(start)
    return f"{start},{length}"


def _default_count(value: str | None) -> int:
    """Return the number of lines represented in a hunk header."""
    return int(value) if value is not None else 1


def _normalise_label(raw: str) -> str | None:
    """Translate a ``---``/``+++``/``diff --git`` operand into a relative path."""
    entry = raw.split("\t", 1)[0].strip()
    if len(entry) >= 2 and entry[0] == entry[-1] == '"':
        entry = entry[1:-1]
    if entry == "/dev/null":
        return None
    if entry.startswith(("a/", "b/")):
        entry = entry[2:]
    while entry.startswith("./"):
        entry = entry[2:]
    return entry or None


def _split_git_header(line: str) -> tuple[str, str] | None:
    match = _DIFF_HEADER.match(line)
    if match:
        return match.group("old"), match.group("new")
    # git leaves paths containing spaces unquoted: "diff --git a/x y b/x y".
    operands = line[len("diff --git ") :]
    middle = operands.find(" b/")
    if operands.startswith("a/") and middle > 0:
        return operands[:middle], operands[middle + 1 :]
    return None


def _parse_hunk(lines: list[str], index: int, location: str) -> tuple[Hunk, int]:
    header = strip_eol(lines[index])
    match = _HUNK_HEADER.match(header)
    if not match:
        raise PatchFormatError(f"Malformed hunk header: {header}", details={"path": location, "line": index + 1})

    hunk = Hunk(
        old_start=int(match.group("old_start")),
        old_len=_default_count(match.group("old_count")),
        new_start=int(match.group("new_start")),
        new_len=_default_count(match.group("new_count")),
        section=match.group("section"),
    )
    seen_old = 0
    seen_new = 0

    def mismatch(reason: str) -> PatchFormatError:
        return PatchFormatError(
            f"Patch hunk line count mismatch for {location}: expected -{hunk.old_len}/+{hunk.new_len} "
            f"but saw -{seen_old}/+{seen_new} ({reason}).",
            details={"path": location, "line": index + 1, "header": header},
        )

    index += 1
    while seen_old < hunk.old_len or seen_new < hunk.new_len:
        if index >= len(lines):
            raise mismatch("unexpected end of patch")
        raw = lines[index]
        if raw.startswith("\\"):
            if hunk.lines:
                last = hunk.lines[-1]
                last.text = strip_eol(last.text)
            index += 1
            continue
        if raw in ("\n", "\r\n"):
            # Some tools strip the space in front of blank context lines.
            tag, text = " ", raw
        elif raw[:1] in (" ", "-", "+"):
            tag, text = raw[:1], raw[1:]
        else:
            raise mismatch(f"unexpected line {strip_eol(raw)!r}")
        if tag == " ":
            seen_old += 1
            seen_new += 1
        elif tag == "-":
            seen_old += 1
        else:
            seen_new += 1
        if seen_old > hunk.old_len or seen_new > hunk.new_len:
            raise mismatch("hunk body is longer than its header")
        hunk.lines.append(HunkLine(tag=tag, text=text))  # type: ignore[arg-type]
        index += 1

    if index < len(lines) and lines[index].startswith("\\"):
        if hunk.lines:
            hunk.lines[-1].text = strip_eol(hunk.lines[-1].text)
        index += 1

    if index < len(lines):
        following = lines[index]
        is_header = (
            following.startswith("--- ")
            and index + 1 < len(lines)
            and lines[index + 1].startswith("+++ ")
        )
        # git format-patch closes a mail with a "-- " signature separator.
        is_signature = following.rstrip("\r\n") == "-- "
        if following[:1] in (" ", "+", "-") and not (is_header or is_signature):
            raise mismatch("hunk body is longer than its header")

    return hunk, index


def _finish_section(section: _Section) -> FileEdit:
    if section.has_labels:
        old_path, new_path = section.old_label, section.new_label
    else:
        old_path, new_path = section.git_old, section.git_new
        if section.new_file:
            old_path = None
        if section.deleted_file:
            new_path = None
    if section.rename_from is not None:
        old_path = section.rename_from
    if section.rename_to is not None:
        new_path = section.rename_to

    if old_path is None and new_path is None:
        raise PatchFormatError("file section names no path")

    if old_path is None:
        kind: EditKind = "create"
    elif new_path is None:
        kind = "delete"
    elif old_path != new_path:
        kind = "rename"
    else:
        kind = "modify"

    location = new_path or old_path or "<unknown>"
    for number, hunk in enumerate(section.hunks, start=1):
        if kind == "create" and hunk.old_len:
            raise PatchFormatError(
                f"create patch for {location} has old-side lines in hunk {number}",
                details={"path": location, "hunk": number},
            )
        if kind == "delete" and hunk.new_len:
            raise PatchFormatError(
                f"delete patch for {location} has new-side lines in hunk {number}",
                details={"path": location, "hunk": number},
            )

    return FileEdit(
        old_path=old_path,
        new_path=new_path,
        kind=kind,
        hunks=section.hunks,
        old_mode=section.old_mode,
        new_mode=section.new_mode,
    )


def parse_unified_diff(patch: str) -> list[FileEdit]:
    """Parse unified diff text (plain or git-extended) into ordered file edits."""
    lines = patch.splitlines(keepends=True)
    edits: list[FileEdit] = []
    section: _Section | None = None
    index = 0

    def flush() -> None:
        nonlocal section
        if section is not None:
            edits.append(_finish_section(section))
        section = None

    while index < len(lines):
        line = strip_eol(lines[index])

        if line.startswith("diff --git "):
            flush()
            operands = _split_git_header(line)
            if operands is None:
                raise PatchFormatError(f"Malformed diff header: {line}", details={"line": index + 1})
            section = _Section(
                git_old=_normalise_label(operands[0]),
                git_new=_normalise_label(operands[1]),
            )
            index += 1
            continue

        if line.startswith("--- ") and index + 1 < len(lines) and lines[index + 1].startswith("+++ "):
            if section is None or section.has_labels or section.hunks:
                flush()
                section = _Section()
            section.old_label = _normalise_label(line[4:])
            section.new_label = _normalise_label(strip_eol(lines[index + 1])[4:])
            section.has_labels = True
            index += 2
            continue

        if line.startswith("@@"):
            if section is None or not (section.has_labels or section.git_old or section.git_new):
                raise PatchFormatError("hunk found before any file header", details={"line": index + 1})
            location = section.new_label or section.old_label or section.git_new or "<unknown>"
            hunk, index = _parse_hunk(lines, index, location)
            section.hunks.append(hunk)
            continue

        if section is not None and not section.hunks and line.startswith(_EXTENDED_HEADERS):
            if line.startswith("rename from "):
                section.rename_from = _normalise_label(line[len("rename from "):])
            elif line.startswith("rename to "):
                section.rename_to = _normalise_label(line[len("rename to "):])
            elif line.startswith("new file mode "):
                section.new_file = True
                section.new_mode = line.rsplit(" ", 1)[-1]
            elif line.startswith("deleted file mode "):
                section.deleted_file = True
                section.old_mode = line.rsplit(" ", 1)[-1]
            elif line.startswith("old mode "):
                section.old_mode = line.rsplit(" ", 1)[-1]
            elif line.startswith("new mode "):
                section.new_mode = line.rsplit(" ", 1)[-1]
            elif line.startswith("Binary files "):
                raise PatchFormatError("binary patches are not supported", details={"line": index + 1})
        elif line.startswith("+++ ") or (line.startswith("--- ") and section is not None and section.hunks):
            raise PatchFormatError(f"Malformed file header: {line}", details={"line": index + 1})
        index += 1

    flush()
    if not edits:
        raise PatchFormatError("patch contains no file sections")
    return edits


def _fits(lines: Sequence[str], expected: Sequence[str], position: int, floor: int) -> bool:
    if position < floor or position + len(expected) > len(lines):
        return False
    return all(strip_eol(lines[position + offset]) == text for offset, text in enumerate(expected))


def _anchor(
    lines: Sequence[str],
    hunk: Hunk,
    expected: int,
    *,
    floor: int,
    max_offset: int,
    number: int,
) -> int:
    """Find where ``hunk`` applies: exact position, then nearest offset within the window."""
    old = [strip_eol(text) for text in hunk.old_lines]
    if _fits(lines, old, expected, floor):
        return expected
    for delta in range(1, max_offset + 1):
        for candidate in (expected - delta, expected + delta):
            if _fits(lines, old, candidate, floor):
                LOGGER.info("Hunk %s applied with offset %+d lines", number, candidate - expected)
                return candidate

    elsewhere = [
        position for position in range(floor, len(lines) - len(old) + 1) if _fits(lines, old, position, floor)
    ]
    if elsewhere:
        nearest = min(elsewhere, key=lambda position: (abs(position - expected), position))
        raise HunkMismatch(
            f"hunk {number} context found at line {nearest + 1}, "
            f"{abs(nearest - expected)} lines from line {expected + 1} (beyond the {max_offset}-line window)",
            hunk_index=number,
            drift="positional",
            expected_line=expected + 1,
            nearest_line=nearest + 1,
        )

    best_line: int | None = None
    best_score = 0
    for position in range(max(floor, expected - max_offset), min(len(lines), expected + max_offset + 1)):
        score = sum(
            1
            for offset, text in enumerate(old)
            if position + offset < len(lines) and strip_eol(lines[position + offset]) == text
        )
        if score > best_score:
            best_line, best_score = position + 1, score
    raise HunkMismatch(
        f"hunk {number} does not match the file near line {expected + 1}",
        hunk_index=number,
        drift="contextual",
        expected_line=expected + 1,
        nearest_line=best_line,
        details={"matched_lines": best_score, "hunk_lines": len(old)},
    )


def _retarget(text: str, newline: str | None) -> str:
    if newline is None or not line_ending(text):
        return text
    return strip_eol(text) + newline


def apply_hunks(
    hunks: Sequence[Hunk],
    lines: Sequence[str],
    *,
    newline: str | None = None,
    max_offset: int = DEFAULT_MAX_OFFSET,
) -> list[str]:
    """Apply ``hunks`` in order; context lines are kept from ``lines`` verbatim.

    ``newline`` rewrites the terminator of added lines so they follow the
    target's style. Hunks never anchor before the end of the previous hunk.
    """
    result: list[str] = []
    cursor = 0
    shift = 0
    for number, hunk in enumerate(hunks, start=1):
        position = _anchor(
            lines,
            hunk,
            hunk.anchor + shift,
            floor=cursor,
            max_offset=max_offset,
            number=number,
        )
        result.extend(lines[cursor:position])
        source = position
        for body_line in hunk.lines:
            if body_line.tag == " ":
                result.append(lines[source])
                source += 1
            elif body_line.tag == "-":
                source += 1
            else:
                result.append(_retarget(body_line.text, newline))
        cursor = source
        shift = position - hunk.anchor
    result.extend(lines[cursor:])
    return result


def apply_file_edit(
    edit: FileEdit,
    lines: Sequence[str],
    *,
    newline: str | None = None,
    max_offset: int = DEFAULT_MAX_OFFSET,
) -> list[str]:
    """Apply ``edit`` to ``lines`` (the current content of its source path)."""
    location = edit.target_path.as_posix()
    try:
        if edit.kind == "create":
            return apply_hunks(edit.hunks, [], newline=newline, max_offset=0)
        result = apply_hunks(edit.hunks, lines, newline=newline, max_offset=max_offset)
    except HunkMismatch as error:
        error.with_path(location)
        raise
    if edit.kind == "delete" and result:
        raise HunkMismatch(
            f"delete patch for {location} leaves {len(result)} line(s) behind",
            hunk_index=len(edit.hunks),
            drift="contextual",
            expected_line=1,
            details={"path": location},
        )
    return result


def build_hunks(script: "EditScript", *, context: int = 3) -> list[Hunk]:
    """Group the changes of ``script`` into hunks with ``context`` lines around them."""
    changes = list(script.changes())
    if not changes:
        return []

    groups: list[list[tuple[int, int, int, int]]] = [[changes[0]]]
    for change in changes[1:]:
        previous = groups[-1][-1]
        if change[0] - previous[1] <= 2 * context:
            groups[-1].append(change)
        else:
            groups.append([change])

    old, new = script.old, script.new
    hunks: list[Hunk] = []
    for group in groups:
        first, last = group[0], group[-1]
        old_lo = max(0, first[0] - context)
        old_hi = min(len(old), last[1] + context)
        new_lo = first[2] - (first[0] - old_lo)
        new_hi = last[3] + (old_hi - last[1])

        body: list[HunkLine] = [HunkLine(" ", text) for text in old[old_lo : first[0]]]
        for position, (old_start, old_end, new_start, new_end) in enumerate(group):
            if position:
                gap_start = group[position - 1][1]
                body.extend(HunkLine(" ", text) for text in old[gap_start:old_start])
            body.extend(HunkLine("-", text) for text in old[old_start:old_end])
            body.extend(HunkLine("+", text) for text in new[new_start:new_end])
        body.extend(HunkLine(" ", text) for text in old[last[1] : old_hi])

        old_len = old_hi - old_lo
        new_len = new_hi - new_lo
        hunks.append(
            Hunk(
                old_start=old_lo + 1 if old_len else old_lo,
                old_len=old_len,
                new_start=new_lo + 1 if new_len else new_lo,
                new_len=new_len,
                lines=body,
            )
        )
    return hunks


_INVERTED_TAG: dict[str, LineTag] = {" ": " ", "-": "+", "+": "-"}


def invert_hunks(hunks: Sequence[Hunk]) -> list[Hunk]:
    """Swap the old and new sides so the hunks undo themselves."""
    inverted: list[Hunk] = []
    for hunk in hunks:
        body: list[HunkLine] = []
        pending_removed: list[HunkLine] = []
        # Keep removals ahead of additions within each change run.
        for line in hunk.lines:
            flipped = HunkLine(_INVERTED_TAG[line.tag], line.text)
            if flipped.tag == "+":
                pending_removed.append(flipped)
                continue
            if flipped.tag == " ":
                body.extend(pending_removed)
                pending_removed = []
            body.append(flipped)
        body.extend(pending_removed)
        inverted.append(
            Hunk(
                old_start=hunk.new_start,
                old_len=hunk.new_len,
                new_start=hunk.old_start,
                new_len=hunk.old_len,
                lines=body,
                section=hunk.section,
            )
        )
    return inverted


_INVERTED_KIND: dict[str, EditKind] = {
    "modify": "modify",
    "rename": "rename",
    "create": "delete",
    "delete": "create",
}


def invert_file_edit(edit: FileEdit) -> FileEdit:
    return replace(
        edit,
        old_path=edit.new_path,
        new_path=edit.old_path,
        kind=_INVERTED_KIND[edit.kind],
        hunks=invert_hunks(edit.hunks),
        old_mode=edit.new_mode,
        new_mode=edit.old_mode,
    )


def render_hunk(hunk: Hunk) -> list[str]:
    """Serialise one hunk; a line without terminator gets the no-newline marker."""
    rendered = [hunk.header + "\n"]
    for line in hunk.lines:
        if line_ending(line.text):
            rendered.append(line.tag + line.text)
        else:
            rendered.append(f"{line.tag}{line.text}\n")
            rendered.append(NO_NEWLINE_MARKER + "\n")
    return rendered


def render_file_edit(edit: FileEdit) -> str:
    """Serialise ``edit`` as git-style unified diff text."""
    old_name = edit.old_path or edit.new_path or ""
    new_name = edit.new_path or edit.old_path or ""
    out: list[str] = [f"diff --git a/{old_name} b/{new_name}\n"]
    if edit.kind == "create":
        out.append(f"new file mode {edit.new_mode or '100644'}\n")
    elif edit.kind == "delete":
        out.append(f"deleted file mode {edit.old_mode or '100644'}\n")
    elif edit.old_mode and edit.new_mode and edit.old_mode != edit.new_mode:
        out.append(f"old mode {edit.old_mode}\n")
        out.append(f"new mode {edit.new_mode}\n")
    if edit.kind == "rename":
        out.append(f"rename from {edit.old_path}\n")
        out.append(f"rename to {edit.new_path}\n")
    if edit.hunks:
        out.append("--- /dev/null\n" if edit.old_path is None else f"--- a/{edit.old_path}\n")
        out.append("+++ /dev/null\n" if edit.new_path is None else f"+++ b/{edit.new_path}\n")
        for hunk in edit.hunks:
            out.extend(render_hunk(hunk))
    return "".join(out)


__all__ = [
    "DEFAULT_MAX_OFFSET",
    "EditKind",
    "FileEdit",
    "Hunk",
    "HunkLine",
    "apply_file_edit",
    "apply_hunks",
    "build_hunks",
    "invert_file_edit",
    "invert_hunks",
    "parse_unified_diff",
    "render_file_edit",
    "render_hunk",
]
