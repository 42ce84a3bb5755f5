"""Guarded literal/regex matching with near-miss diagnostics."""

from __future__ import annotations

import re
from bisect import bisect_right
from dataclasses import dataclass, field
from enum import Enum
from typing import Literal, Sequence

from rapidfuzz import fuzz
from rapidfuzz.distance import Levenshtein

from ..errors import ConfigurationError, GuardViolation
from ..structured import MatchGuards
from .encoding import normalize_newlines, strip_eol

MatchMode = Literal["literal", "regex"]

DEFAULT_MISS_WINDOW = 5
DEFAULT_MISS_CANDIDATES = 3
_MAX_SCAN_CHARS = 4096
_SHORTLIST_THRESHOLD = 64
_SHORTLIST_SIZE = 16


class CaseKind(str, Enum):
    """Casing pattern inferred from a single matched occurrence."""

    UPPER = "upper"
    LOWER = "lower"
    CAPITALIZED = "capitalized"
    MIXED = "mixed"


@dataclass(slots=True)
class MatchSpan:
    """One match; lines and columns are 1-based, ``end_column`` is exclusive."""

    start_line: int
    start_column: int
    end_line: int
    end_column: int
    start: int
    end: int
    text: str
    groups: tuple[str | None, ...] = ()
    context: str = ""
    _match: re.Match[str] | None = field(default=None, repr=False, compare=False)

    def expand(self, template: str) -> str:
        """Expand ``\\1`` / ``\\g<name>`` references against this match."""
        if self._match is None:
            return template
        return self._match.expand(template)


@dataclass(slots=True)
class Suggestion:
    """A near-miss candidate for a pattern that produced no matches."""

    line: int
    column: int
    score: int
    snippet: str
    line_text: str
    marker: str


@dataclass(slots=True)
class MissReport:
    """Informational report produced when a pattern matched nothing."""

    pattern: str
    candidates: list[Suggestion] = field(default_factory=list)
    filtered_by_line: int = 0
    after_line: int | None = None
    window: tuple[int, int] | None = None

    def render(self) -> str:
        lines: list[str] = []
        if self.after_line is not None and self.filtered_by_line:
            lines.append(
                f"no matches after line {self.after_line}; "
                f"{self.filtered_by_line} occurrence(s) were at or before that line"
            )
        if not self.candidates:
            lines.append(f"no similar text found for '{self.pattern}'")
            return "\n".join(lines)
        lines.append("no exact matches; closest candidates:")
        for candidate in self.candidates:
            lines.append(
                f"  - line {candidate.line} column {candidate.column} "
                f"(score {candidate.score}): {candidate.line_text.strip()}"
            )
            lines.append(f"    snippet: {candidate.snippet}")
            lines.append(f"    pattern: {self.pattern}")
            lines.append(f"             {candidate.marker}")
        return "\n".join(lines)


@dataclass(slots=True)
class MatchResult:
    """Ordered spans selected for substitution plus guard bookkeeping."""

    spans: list[MatchSpan]
    total: int
    overflow: int = 0
    filtered_by_line: int = 0
    miss: MissReport | None = None

    @property
    def matched(self) -> bool:
        return bool(self.spans)


def compile_pattern(pattern: str, mode: MatchMode, guards: MatchGuards) -> re.Pattern[str]:
    """Compile ``pattern`` honouring the word-boundary and case-aware guards."""
    if not pattern:
        raise ConfigurationError("pattern must not be empty")
    source = re.escape(pattern) if mode == "literal" else pattern
    if guards.word_boundary:
        source = rf"(?<!\w)(?:{source})(?!\w)"
    flags = re.MULTILINE
    if guards.case_aware:
        flags |= re.IGNORECASE
    try:
        return re.compile(source, flags)
    except re.error as error:
        raise ConfigurationError(f"invalid pattern: {error}", details={"pattern": pattern}) from error


def _line_starts(lines: Sequence[str]) -> list[int]:
    starts: list[int] = []
    offset = 0
    for line in lines:
        starts.append(offset)
        offset += len(line)
    return starts


def _position(starts: list[int], offset: int) -> tuple[int, int]:
    index = max(bisect_right(starts, offset) - 1, 0)
    if not starts:
        return 1, offset + 1
    return index + 1, offset - starts[index] + 1


def find(
    lines: Sequence[str],
    pattern: str,
    mode: MatchMode = "literal",
    guards: MatchGuards | None = None,
    *,
    window: int = DEFAULT_MISS_WINDOW,
    candidates: int = DEFAULT_MISS_CANDIDATES,
) -> MatchResult:
    """Locate ``pattern`` across ``lines`` under ``guards``.

    Zero eligible matches yield a :class:`MissReport` rather than an error,
    unless an ``expect`` guard is set, in which case any count other than the
    expected one raises :class:`GuardViolation`.
    """
    guards = guards or MatchGuards()
    regex = compile_pattern(pattern, mode, guards)
    text = "".join(lines)
    starts = _line_starts(lines)

    eligible: list[MatchSpan] = []
    filtered = 0
    for match in regex.finditer(text):
        start_line, start_column = _position(starts, match.start())
        if guards.after_line is not None and start_line <= guards.after_line:
            filtered += 1
            continue
        end_offset = match.end() if match.end() > match.start() else match.start()
        end_line, _ = _position(starts, max(end_offset - 1, match.start()))
        end_column = end_offset - starts[end_line - 1] + 1 if starts else end_offset + 1
        context = strip_eol(lines[start_line - 1]) if lines else ""
        eligible.append(
            MatchSpan(
                start_line=start_line,
                start_column=start_column,
                end_line=end_line,
                end_column=end_column,
                start=match.start(),
                end=match.end(),
                text=match.group(0),
                groups=match.groups(),
                context=context,
                _match=match,
            )
        )

    total = len(eligible)
    miss: MissReport | None = None
    if total == 0:
        hint = guards.after_line + 1 if guards.after_line is not None else None
        miss = collect_suggestions(
            lines,
            pattern,
            hint_line=hint,
            window=window,
            limit=candidates,
            ignore_case=guards.case_aware,
        )
        miss.filtered_by_line = filtered
        miss.after_line = guards.after_line

    if guards.expect is not None and total != guards.expect:
        raise GuardViolation(
            f"expected {guards.expect} match(es) for '{pattern}' but found {total}",
            expected=guards.expect,
            found=total,
            miss=miss,
            details={"pattern": pattern, "filtered_by_line": filtered},
        )

    overflow = 0
    selected = eligible
    if guards.match_limit is not None and total > guards.match_limit:
        overflow = total - guards.match_limit
        selected = eligible[: guards.match_limit]

    return MatchResult(spans=selected, total=total, overflow=overflow, filtered_by_line=filtered, miss=miss)


def substitute(
    text: str,
    spans: Sequence[MatchSpan],
    replacement: str,
    *,
    mode: MatchMode = "literal",
    case_aware: bool = False,
    newline: str | None = None,
) -> str:
    """Replace each span in ``text``; spans must be ordered and non-overlapping."""
    pieces: list[str] = []
    last = 0
    for span in spans:
        pieces.append(text[last : span.start])
        value = span.expand(replacement) if mode == "regex" else replacement
        if case_aware:
            value = adjust_case(span.text, value)
        if newline is not None:
            value = normalize_newlines(value, newline)
        pieces.append(value)
        last = span.end
    pieces.append(text[last:])
    return "".join(pieces)


def detect_case_kind(text: str) -> CaseKind:
    letters = [ch for ch in text if ch.isalpha()]
    if not letters:
        return CaseKind.MIXED
    has_upper = any(ch.isupper() for ch in letters)
    has_lower = any(ch.islower() for ch in letters)
    if has_upper and not has_lower:
        return CaseKind.UPPER
    if has_lower and not has_upper:
        return CaseKind.LOWER
    if text[:1].isupper() and not any(ch.isupper() for ch in text[1:]):
        return CaseKind.CAPITALIZED
    return CaseKind.MIXED


def _pascal_case(value: str) -> str:
    parts = [part for part in re.split(r"[_\-\s]+", value) if part]
    if not parts:
        return value
    return "".join(part[:1].upper() + part[1:] for part in parts)


def adjust_case(source: str, target: str) -> str:
    """Re-case ``target`` to follow the casing pattern of the matched ``source``."""
    kind = detect_case_kind(source)
    if kind is CaseKind.UPPER:
        return target.upper()
    if kind is CaseKind.LOWER:
        return target.lower()
    if kind is CaseKind.CAPITALIZED:
        return _pascal_case(target)
    return target


def levenshtein(left: str, right: str, *, score_cutoff: int | None = None) -> int:
    return Levenshtein.distance(left, right, score_cutoff=score_cutoff)


def render_marker(snippet: str, pattern: str) -> str:
    """Mark with ``^`` every column where ``snippet`` and ``pattern`` differ."""
    width = max(len(snippet), len(pattern))
    marks = []
    for index in range(width):
        left = snippet[index] if index < len(snippet) else " "
        right = pattern[index] if index < len(pattern) else " "
        marks.append(" " if left == right else "^")
    return "".join(marks).rstrip()


def _best_window(line: str, pattern: str, *, ignore_case: bool) -> tuple[int, int, str] | None:
    if not line:
        return None
    line = line[:_MAX_SCAN_CHARS]
    needle = pattern.lower() if ignore_case else pattern
    width = max(len(pattern), 1)
    best: tuple[int, int, str] | None = None
    for start in range(len(line)):
        for length in (width, width + 2):
            snippet = line[start : start + length]
            if not snippet:
                continue
            compared = snippet.lower() if ignore_case else snippet
            score = levenshtein(compared, needle, score_cutoff=None if best is None else best[0])
            if best is None or (score, start, len(snippet)) < (best[0], best[1], len(best[2])):
                best = (score, start, snippet)
        if best is not None and best[0] == 0:
            break
    return best


def _shortlist(lines: Sequence[str], numbers: range, pattern: str, *, ignore_case: bool) -> list[int]:
    """Rank lines by partial similarity and keep the most promising ones."""
    if len(numbers) <= _SHORTLIST_THRESHOLD:
        return list(numbers)
    processor = str.lower if ignore_case else None
    ranked = sorted(
        numbers,
        key=lambda number: (
            -fuzz.partial_ratio(pattern, strip_eol(lines[number - 1])[:_MAX_SCAN_CHARS], processor=processor),
            number,
        ),
    )
    return sorted(ranked[:_SHORTLIST_SIZE])


def collect_suggestions(
    lines: Sequence[str],
    pattern: str,
    *,
    hint_line: int | None = None,
    window: int = DEFAULT_MISS_WINDOW,
    limit: int = DEFAULT_MISS_CANDIDATES,
    ignore_case: bool = False,
) -> MissReport:
    """Collect the closest candidates by edit distance.

    With ``hint_line`` only lines within ``window`` of it are considered;
    otherwise the whole buffer is scanned. Large ranges are first narrowed
    to the lines with the best partial similarity.
    """
    if hint_line is not None:
        first = max(hint_line - window, 1)
        last = min(hint_line + window, len(lines))
    else:
        first, last = 1, len(lines)
    report = MissReport(pattern=pattern, window=(first, last) if lines else None)
    if not pattern or not lines:
        return report

    scored: list[Suggestion] = []
    for number in _shortlist(lines, range(first, last + 1), pattern, ignore_case=ignore_case):
        line_text = strip_eol(lines[number - 1])
        best = _best_window(line_text, pattern, ignore_case=ignore_case)
        if best is None:
            continue
        score, column, snippet = best
        scored.append(
            Suggestion(
                line=number,
                column=column + 1,
                score=score,
                snippet=snippet,
                line_text=line_text,
                marker=render_marker(snippet, pattern),
            )
        )
    scored.sort(key=lambda item: (item.score, item.line, item.column))
    report.candidates = scored[:limit]
    return report


__all__ = [
    "CaseKind",
    "MatchResult",
    "MatchSpan",
    "MissReport",
    "Suggestion",
    "adjust_case",
    "collect_suggestions",
    "compile_pattern",
    "detect_case_kind",
    "find",
    "levenshtein",
    "render_marker",
    "substitute",
]
