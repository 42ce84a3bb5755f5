"""Marker-bounded block edits."""

from __future__ import annotations

from typing import Literal

from ..errors import BlockMarkerError
from .encoding import normalize_newlines

BlockMode = Literal["replace", "insert"]


def _block_indent(text: str, marker_start: int) -> str:
    line_start = max(text.rfind("\n", 0, marker_start), text.rfind("\r", 0, marker_start)) + 1
    prefix = text[line_start:marker_start]
    return prefix[: len(prefix) - len(prefix.lstrip(" \t"))]


def _trailing_indent(existing: str) -> str:
    position = existing.rfind("\n")
    if position < 0:
        return ""
    tail = existing[position + 1 :]
    if tail and not tail.strip(" \t"):
        return tail
    return ""


def _rebuild_body(existing: str, requested: str, indent: str, newline: str) -> str:
    # Work in LF internally; terminators are restored to ``newline`` at the end.
    existing = normalize_newlines(existing, "\n")
    body = normalize_newlines(requested, "\n")
    if existing.startswith("\n") and not body.startswith("\n"):
        body = "\n" + body
    if existing.endswith("\n") and not body.endswith("\n"):
        body += "\n"

    rebuilt: list[str] = []
    for segment in body.splitlines(keepends=True) or [body]:
        line = segment[:-1] if segment.endswith("\n") else segment
        if indent and line and line[0] not in " \t":
            rebuilt.append(indent)
        rebuilt.append(segment)
    result = "".join(rebuilt)

    trailing = _trailing_indent(existing)
    if trailing and not result.endswith("\n" + trailing):
        if not result.endswith("\n"):
            result += "\n"
        result += trailing

    if newline != "\n":
        result = result.replace("\n", newline)
    return result


def apply_block(
    text: str,
    start_marker: str,
    end_marker: str,
    body: str,
    *,
    mode: BlockMode = "replace",
    newline: str = "\n",
) -> str | None:
    """Swap the region between the first ``start_marker`` and the next ``end_marker``.

    The new body inherits the start marker's indentation, gains the leading and
    trailing line breaks of the region it replaces, and keeps the indentation
    in front of the closing marker. Returns ``None`` when nothing changes.
    """
    if not start_marker or not end_marker:
        raise BlockMarkerError("block markers must not be empty")
    start = text.find(start_marker)
    if start < 0:
        raise BlockMarkerError(
            f"start marker '{start_marker}' not found",
            details={"marker": start_marker},
        )
    after_start = start + len(start_marker)
    end = text.find(end_marker, after_start)
    if end < 0:
        raise BlockMarkerError(
            f"end marker '{end_marker}' not found after start marker",
            details={"marker": end_marker},
        )

    existing = text[after_start:end]
    if mode == "insert" and existing.strip():
        raise BlockMarkerError(
            "insert mode requires the block region to be empty",
            details={"marker": start_marker},
        )

    desired = _rebuild_body(existing, body, _block_indent(text, start), newline)
    if desired == existing:
        return None
    return text[:after_start] + desired + text[end:]


__all__ = ["BlockMode", "apply_block"]
