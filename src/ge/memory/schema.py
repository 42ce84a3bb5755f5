"""Typed records produced by the edit engine and persisted by the change log."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base Pydantic model with strict field handling."""

    model_config = ConfigDict(extra="forbid", frozen=False)


class ChangeAction(str, Enum):
    """What happened to one target file."""

    APPLIED = "applied"
    SKIPPED = "skipped"
    DRY_RUN = "dry-run"
    NO_OP = "no-op"
    FAILED = "failed"


class LineSpan(RecordModel):
    """One changed region; starts are 1-based, counts may be zero."""

    kind: Literal["modify", "insert", "delete"]
    old_start: int
    old_count: int
    new_start: int
    new_count: int


class ChangeRecord(RecordModel):
    """Audit entry for one file processed by the engine."""

    timestamp: datetime = Field(default_factory=utc_now)
    verb: str
    path: str
    action: ChangeAction
    applied: bool = False
    spans: List[LineSpan] = Field(default_factory=list)
    summary: str = "no-change"
    diff_hash: Optional[str] = None
    encoding: Optional[str] = None
    newline: Optional[str] = None
    backup_path: Optional[str] = None
    undo_path: Optional[str] = None
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class UndoManifest(RecordModel):
    """Sidecar describing an undo patch and the file states it connects."""

    path: str
    original_path: Optional[str] = None
    verb: str
    pre_checksum: Optional[str] = None
    post_checksum: Optional[str] = None
    encoding: str
    newline: str
    patch_file: str
    backup_path: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "ChangeAction",
    "ChangeRecord",
    "LineSpan",
    "RecordModel",
    "UndoManifest",
    "utc_now",
]
