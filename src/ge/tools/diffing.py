"""Line-level edit scripts and guarded unified-diff rendering."""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Iterator, Literal, Sequence

from ..memory.schema import LineSpan
from .encoding import line_ending
from .patch import build_hunks, render_hunk

LOGGER = logging.getLogger(__name__)

OpTag = Literal["equal", "insert", "delete"]

DEFAULT_CONTEXT = 3
DEFAULT_MAX_EDIT_DISTANCE = 1000


@dataclass(slots=True, frozen=True)
class EditOp:
    """One run of the script; ranges are 0-based and half open."""

    tag: OpTag
    old_start: int
    old_end: int
    new_start: int
    new_end: int


@dataclass(slots=True)
class EditScript:
    """Ordered equal/insert/delete runs turning ``old`` into ``new``."""

    old: list[str]
    new: list[str]
    ops: list[EditOp]
    approximate: bool = False

    @property
    def changed(self) -> bool:
        return any(op.tag != "equal" for op in self.ops)

    def changes(self) -> Iterator[tuple[int, int, int, int]]:
        """Yield ``(old_start, old_end, new_start, new_end)`` for each run of non-equal ops."""
        pending: list[int] | None = None
        for op in self.ops:
            if op.tag == "equal":
                if pending is not None:
                    yield tuple(pending)  # type: ignore[misc]
                    pending = None
                continue
            if pending is None:
                pending = [op.old_start, op.old_end, op.new_start, op.new_end]
            else:
                pending[1] = max(pending[1], op.old_end)
                pending[3] = max(pending[3], op.new_end)
        if pending is not None:
            yield tuple(pending)  # type: ignore[misc]


@dataclass(slots=True)
class DiffLimits:
    """Presentation guardrails; they never change the script or the undo patch."""

    max_bytes: int = 5 * 1024 * 1024
    max_lines: int = 5000
    max_line_bytes: int = 64 * 1024
    paginate_threshold: int = 200


@dataclass(slots=True)
class RenderedDiff:
    text: str
    line_count: int
    byte_count: int
    diff_hash: str
    hunk_count: int = 0
    capped: bool = False
    truncated_lines: int = 0
    paginate: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return self.hunk_count == 0


def _intern(old: Sequence[str], new: Sequence[str]) -> tuple[list[int], list[int]]:
    table: dict[str, int] = {}
    left = [table.setdefault(line, len(table)) for line in old]
    right = [table.setdefault(line, len(table)) for line in new]
    return left, right


def _myers(a: Sequence[int], b: Sequence[int], max_d: int) -> list[tuple[OpTag, int, int]] | None:
    """Shortest edit path as single-line steps, or ``None`` once ``max_d`` is exceeded."""
    n, m = len(a), len(b)
    limit = min(n + m, max_d)
    offset = limit + 1
    v = [0] * (2 * limit + 3)
    trace: list[list[int]] = []

    for d in range(limit + 1):
        # Snapshot of the frontier after step d-1, covering k in [-(d-1), d-1].
        trace.append(v[offset - d + 1 : offset + d])
        for k in range(-d, d + 1, 2):
            if k == -d or (k != d and v[offset + k - 1] < v[offset + k + 1]):
                x = v[offset + k + 1]
            else:
                x = v[offset + k - 1] + 1
            y = x - k
            while x < n and y < m and a[x] == b[y]:
                x += 1
                y += 1
            v[offset + k] = x
            if x >= n and y >= m:
                return _backtrack(trace, n, m)
    return None


def _backtrack(trace: list[list[int]], n: int, m: int) -> list[tuple[OpTag, int, int]]:
    steps: list[tuple[OpTag, int, int]] = []
    x, y = n, m
    for d in range(len(trace) - 1, -1, -1):
        k = x - y
        if d == 0:
            while x > 0 and y > 0:
                x -= 1
                y -= 1
                steps.append(("equal", x, y))
            break
        frontier = trace[d]

        def value(index: int) -> int:
            return frontier[index + d - 1]

        if k == -d or (k != d and value(k - 1) < value(k + 1)):
            prev_k = k + 1
        else:
            prev_k = k - 1
        prev_x = value(prev_k)
        prev_y = prev_x - prev_k
        while x > prev_x and y > prev_y:
            x -= 1
            y -= 1
            steps.append(("equal", x, y))
        if x == prev_x:
            steps.append(("insert", x, prev_y))
        else:
            steps.append(("delete", prev_x, y))
        x, y = prev_x, prev_y
    steps.reverse()
    return steps


def _compress(steps: list[tuple[OpTag, int, int]], old_base: int, new_base: int) -> list[EditOp]:
    """Fold single-line steps into runs, deletions before insertions within a change."""
    ops: list[EditOp] = []
    index = 0
    while index < len(steps):
        tag, x, y = steps[index]
        if tag == "equal":
            end = index
            while end < len(steps) and steps[end][0] == "equal":
                end += 1
            count = end - index
            ops.append(EditOp("equal", old_base + x, old_base + x + count, new_base + y, new_base + y + count))
            index = end
            continue
        deleted: list[int] = []
        inserted: list[int] = []
        while index < len(steps) and steps[index][0] != "equal":
            step_tag, step_x, step_y = steps[index]
            if step_tag == "delete":
                deleted.append(step_x)
            else:
                inserted.append(step_y)
            index += 1
        old_at = old_base + (deleted[0] if deleted else x)
        new_at = new_base + (inserted[0] if inserted else y)
        if deleted:
            ops.append(EditOp("delete", old_at, old_at + len(deleted), new_at, new_at))
        if inserted:
            old_after = old_at + len(deleted)
            ops.append(EditOp("insert", old_after, old_after, new_at, new_at + len(inserted)))
    return ops


def compute_edit_script(
    old: Sequence[str],
    new: Sequence[str],
    *,
    max_edit_distance: int = DEFAULT_MAX_EDIT_DISTANCE,
) -> EditScript:
    """Compute a minimal edit script, degrading to prefix/suffix trimming past ``max_edit_distance``."""
    old_lines = list(old)
    new_lines = list(new)

    prefix = 0
    limit = min(len(old_lines), len(new_lines))
    while prefix < limit and old_lines[prefix] == new_lines[prefix]:
        prefix += 1
    suffix = 0
    while (
        suffix < limit - prefix
        and old_lines[len(old_lines) - 1 - suffix] == new_lines[len(new_lines) - 1 - suffix]
    ):
        suffix += 1

    old_mid = old_lines[prefix : len(old_lines) - suffix]
    new_mid = new_lines[prefix : len(new_lines) - suffix]

    ops: list[EditOp] = []
    if prefix:
        ops.append(EditOp("equal", 0, prefix, 0, prefix))

    approximate = False
    if old_mid or new_mid:
        left, right = _intern(old_mid, new_mid)
        steps = _myers(left, right, max_edit_distance)
        if steps is None:
            approximate = True
            LOGGER.warning(
                "Edit distance exceeds %s; using an approximate script for %s/%s changed lines",
                max_edit_distance,
                len(old_mid),
                len(new_mid),
            )
            if old_mid:
                ops.append(EditOp("delete", prefix, prefix + len(old_mid), prefix, prefix))
            if new_mid:
                old_after = prefix + len(old_mid)
                ops.append(EditOp("insert", old_after, old_after, prefix, prefix + len(new_mid)))
        else:
            ops.extend(_compress(steps, prefix, prefix))

    if suffix:
        old_at = len(old_lines) - suffix
        new_at = len(new_lines) - suffix
        ops.append(EditOp("equal", old_at, len(old_lines), new_at, len(new_lines)))

    return EditScript(old=old_lines, new=new_lines, ops=ops, approximate=approximate)


def replay(script: EditScript, source: Sequence[str] | None = None) -> list[str]:
    """Apply ``script`` to ``source`` (default: the script's own old side)."""
    lines = list(script.old if source is None else source)
    if len(lines) != len(script.old):
        raise ValueError("source does not match the edit script's old side")
    result: list[str] = []
    for op in script.ops:
        if op.tag == "equal":
            result.extend(lines[op.old_start : op.old_end])
        elif op.tag == "insert":
            result.extend(script.new[op.new_start : op.new_end])
    return result


def collect_line_spans(script: EditScript) -> list[LineSpan]:
    """Describe each changed region with 1-based old/new anchors."""
    spans: list[LineSpan] = []
    for old_start, old_end, new_start, new_end in script.changes():
        if old_end > old_start and new_end > new_start:
            kind = "modify"
        elif old_end > old_start:
            kind = "delete"
        else:
            kind = "insert"
        spans.append(
            LineSpan(
                kind=kind,
                old_start=old_start + 1,
                old_count=old_end - old_start,
                new_start=new_start + 1,
                new_count=new_end - new_start,
            )
        )
    return spans


def summarize_spans(spans: Sequence[LineSpan]) -> str:
    """Render spans compactly: ``L2``, ``L4-L6``, ``+L9`` or ``no-change``."""
    parts: list[str] = []
    for span in spans:
        if span.kind == "insert":
            parts.append(f"+L{span.new_start}")
            continue
        end = span.old_start + span.old_count - 1
        if end == span.old_start:
            parts.append(f"L{span.old_start}")
        else:
            parts.append(f"L{span.old_start}-L{end}")
    return ", ".join(parts) if parts else "no-change"


def _truncate_line(line: str, limit: int) -> tuple[str, bool]:
    encoded = line.encode("utf-8", errors="surrogateescape")
    if len(encoded) <= limit:
        return line, False
    eol = line_ending(line) or "\n"
    kept = encoded[:limit].decode("utf-8", errors="ignore")
    return f"{kept} ... [line truncated, {len(encoded) - limit} bytes omitted]{eol}", True


def render_diff(
    script: EditScript,
    old_label: str,
    new_label: str,
    *,
    context: int = DEFAULT_CONTEXT,
    limits: DiffLimits | None = None,
) -> RenderedDiff:
    """Render ``script`` as unified diff text for review.

    The hash always covers the complete diff; guardrails only shape what is
    displayed.
    """
    limits = limits or DiffLimits()
    hunks = build_hunks(script, context=context)
    if not hunks:
        return RenderedDiff(text="", line_count=0, byte_count=0, diff_hash=hashlib.sha256(b"").hexdigest())

    full: list[str] = [f"--- {old_label}\n", f"+++ {new_label}\n"]
    for hunk in hunks:
        full.extend(render_hunk(hunk))
    digest = hashlib.sha256("".join(full).encode("utf-8", errors="surrogateescape")).hexdigest()

    shown: list[str] = []
    byte_count = 0
    truncated = 0
    capped = False
    for index, line in enumerate(full):
        line, cut = _truncate_line(line, limits.max_line_bytes)
        truncated += int(cut)
        size = len(line.encode("utf-8", errors="surrogateescape"))
        if len(shown) >= limits.max_lines or byte_count + size > limits.max_bytes:
            capped = True
            shown.append(f"... diff truncated: {len(full) - index} more line(s) not shown\n")
            break
        shown.append(line)
        byte_count += size

    warnings: list[str] = []
    if truncated:
        warnings.append(f"{truncated} line(s) longer than {limits.max_line_bytes} bytes were truncated")
    if capped:
        warnings.append(f"diff exceeds {limits.max_lines} lines or {limits.max_bytes} bytes; output capped")
    if script.approximate:
        warnings.append("diff is approximate: edit distance exceeded the search bound")

    text = "".join(shown)
    return RenderedDiff(
        text=text,
        line_count=len(full),
        byte_count=byte_count,
        diff_hash=digest,
        hunk_count=len(hunks),
        capped=capped,
        truncated_lines=truncated,
        paginate=len(full) > limits.paginate_threshold,
        warnings=warnings,
    )


__all__ = [
    "DiffLimits",
    "EditOp",
    "EditScript",
    "RenderedDiff",
    "collect_line_spans",
    "compute_edit_script",
    "render_diff",
    "replay",
    "summarize_spans",
]
