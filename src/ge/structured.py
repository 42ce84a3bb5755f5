"""Typed edit requests accepted by the edit engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Union

from .errors import ConfigurationError

if TYPE_CHECKING:
    from .tools.patch import FileEdit


@dataclass(slots=True)
class MatchGuards:
    """Constraints that turn an unexpected match outcome into a hard failure."""

    expect: int | None = None
    match_limit: int | None = None
    after_line: int | None = None
    word_boundary: bool = False
    case_aware: bool = False

    def __post_init__(self) -> None:
        if self.expect is not None and self.expect < 0:
            raise ConfigurationError("expect must be zero or greater", details={"expect": self.expect})
        if self.match_limit is not None and self.match_limit < 1:
            raise ConfigurationError("match limit must be at least 1", details={"match_limit": self.match_limit})
        if self.after_line is not None and self.after_line < 0:
            raise ConfigurationError("after line must be zero or greater", details={"after_line": self.after_line})


@dataclass(slots=True)
class ReplaceRequest:
    """Literal or regex replacement."""

    pattern: str
    replacement: str
    mode: Literal["literal", "regex"] = "literal"
    guards: MatchGuards = field(default_factory=MatchGuards)
    kind: Literal["replace"] = "replace"


@dataclass(slots=True)
class RenameRequest:
    """Identifier rename; word boundaries and per-hit casing are on by default."""

    old: str
    new: str
    word_boundary: bool = True
    case_aware: bool = True
    expect: int | None = None
    match_limit: int | None = None
    after_line: int | None = None
    kind: Literal["rename"] = "rename"

    @property
    def guards(self) -> MatchGuards:
        return MatchGuards(
            expect=self.expect,
            match_limit=self.match_limit,
            after_line=self.after_line,
            word_boundary=self.word_boundary,
            case_aware=self.case_aware,
        )


@dataclass(slots=True)
class BlockRequest:
    """Replace or fill the region between two markers."""

    start_marker: str
    end_marker: str
    body: str
    mode: Literal["replace", "insert"] = "replace"
    kind: Literal["block"] = "block"


@dataclass(slots=True)
class PatchRequest:
    """One file section of an external unified diff."""

    edit: "FileEdit"
    permanent: bool = False
    destination: Path | None = None
    allow_overwrite: bool = False
    kind: Literal["patch"] = "patch"


@dataclass(slots=True)
class WriteRequest:
    """Create a file or overwrite it with complete content."""

    content: str
    newline: Literal["auto", "lf", "crlf", "cr"] = "auto"
    allow_overwrite: bool = False
    kind: Literal["write"] = "write"


EditRequest = Union[ReplaceRequest, RenameRequest, BlockRequest, PatchRequest, WriteRequest]


def requests_from_patch(
    patch: str,
    *,
    root: Path | None = None,
    permanent: bool = False,
    allow_overwrite: bool = False,
) -> list[tuple[Path, PatchRequest]]:
    """Split unified diff text into ``(path to read, request)`` pairs, one per file.

    The path is the old side for modify, delete and rename sections and the
    new side for creations; renames carry their destination.  With
    ``allow_overwrite`` a creation may replace a file that already exists.
    """
    from .tools.patch import parse_unified_diff

    base = root or Path(".")
    requests: list[tuple[Path, PatchRequest]] = []
    for edit in parse_unified_diff(patch):
        source = edit.source_path or edit.target_path
        destination = base / edit.target_path if edit.kind == "rename" else None
        request = PatchRequest(
            edit=edit,
            permanent=permanent,
            destination=destination,
            allow_overwrite=allow_overwrite,
        )
        requests.append((base / source, request))
    return requests


__all__ = [
    "BlockRequest",
    "EditRequest",
    "MatchGuards",
    "PatchRequest",
    "RenameRequest",
    "ReplaceRequest",
    "WriteRequest",
    "requests_from_patch",
]
