"""Rolling JSONL store for change records."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, List, Optional

from pydantic import ValidationError

from ..errors import FileIOError
from .schema import ChangeRecord

if TYPE_CHECKING:
    from ..config import EngineSettings

DEFAULT_LOG_PATH = Path(".ge/change_log.jsonl")
DEFAULT_MAX_ENTRIES = 500
LOGGER = logging.getLogger(__name__)


class ChangeLog:
    """Append-only change record stream that keeps only the newest entries.

    Appends are serialised with a lock so independent workers can share one
    handle without interleaving lines.
    """

    def __init__(self, path: Path | str = DEFAULT_LOG_PATH, *, max_entries: int = DEFAULT_MAX_ENTRIES) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.path = Path(path)
        self.max_entries = max_entries
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: "EngineSettings") -> "ChangeLog":
        return cls(settings.change_log, max_entries=settings.change_log_max_entries)

    def append(self, record: ChangeRecord) -> None:
        self.extend([record])

    def extend(self, records: Iterable[ChangeRecord]) -> None:
        payload = [record.model_dump_json() + "\n" for record in records]
        if not payload:
            return
        with self._lock:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.writelines(payload)
                self._rotate()
            except OSError as error:
                raise FileIOError(
                    f"failed to append to change log {self.path.as_posix()}: {error}",
                    details={"path": self.path.as_posix()},
                ) from error

    def _rotate(self) -> None:
        lines = self.path.read_text(encoding="utf-8").splitlines(keepends=True)
        if len(lines) <= self.max_entries:
            return
        kept = lines[-self.max_entries :]
        handle = tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=self.path.parent,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            delete=False,
        )
        try:
            with handle:
                handle.writelines(kept)
            os.replace(handle.name, self.path)
        except OSError:
            Path(handle.name).unlink(missing_ok=True)
            raise
        LOGGER.debug("Change log rotated to %s entries", len(kept))

    def entries(self, limit: Optional[int] = None) -> List[ChangeRecord]:
        """Return stored records oldest first; ``limit`` keeps only the newest ones."""
        if not self.path.exists():
            return []
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        records: List[ChangeRecord] = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(ChangeRecord.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as error:
                LOGGER.warning("Skipping unreadable change log line %s: %s", number, error)
        if limit is not None:
            records = records[-limit:] if limit > 0 else []
        return records

    def __len__(self) -> int:
        return len(self.entries())


__all__ = ["ChangeLog", "DEFAULT_LOG_PATH", "DEFAULT_MAX_ENTRIES"]
