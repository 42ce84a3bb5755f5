"""Error taxonomy shared by every stage of the edit pipeline.

Each error carries a ``details`` mapping so callers (the CLI, a batch runner,
the change log) can report file, line and hunk context without a second
diagnostic pass.
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:
    from .tools.matching import MissReport


class EditError(RuntimeError):
    """Base class for failures raised by the edit engine."""

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details: dict[str, Any] = dict(details or {})

    @property
    def path(self) -> Path | None:
        value = self.details.get("path")
        if value is None:
            return None
        return Path(value)

    def with_path(self, path: Path | str) -> "EditError":
        """Attach ``path`` to the error details when it is not already set."""
        self.details.setdefault("path", Path(path).as_posix())
        return self


class ConfigurationError(EditError):
    """Raised for invalid settings, such as an unknown encoding override."""


class EncodingError(EditError):
    """Raised when an explicit encoding override cannot decode the bytes."""


class GuardViolation(EditError):
    """Raised when a match count contradicts an ``expect`` guard."""

    def __init__(
        self,
        message: str,
        *,
        expected: int | None = None,
        found: int | None = None,
        miss: "MissReport | None" = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.expected = expected
        self.found = found
        self.miss = miss
        if expected is not None:
            self.details.setdefault("expected", expected)
        if found is not None:
            self.details.setdefault("found", found)


class PatchFormatError(EditError):
    """Raised when unified diff text is malformed."""


class HunkMismatch(EditError):
    """Raised when a hunk cannot be anchored within the bounded search window."""

    def __init__(
        self,
        message: str,
        *,
        hunk_index: int,
        drift: str,
        expected_line: int,
        nearest_line: int | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.hunk_index = hunk_index
        self.drift = drift
        self.expected_line = expected_line
        self.nearest_line = nearest_line
        self.details.update(
            {
                "hunk": hunk_index,
                "drift": drift,
                "expected_line": expected_line,
                "nearest_line": nearest_line,
            }
        )


class FileIOError(EditError):
    """Raised when reading, writing, renaming or backing up a file fails."""


class OverwriteRefused(EditError):
    """Raised when a destination exists and overwriting was not permitted."""


class TransactionCancelled(EditError):
    """Raised when a cancellation signal arrives before the final rename."""


class BlockMarkerError(EditError):
    """Raised when block markers are missing or an insert targets a non-empty block."""


__all__ = [
    "BlockMarkerError",
    "ConfigurationError",
    "EditError",
    "EncodingError",
    "FileIOError",
    "GuardViolation",
    "HunkMismatch",
    "OverwriteRefused",
    "PatchFormatError",
    "TransactionCancelled",
]
