"""Building blocks of the edit pipeline."""

from .blocks import apply_block
from .diffing import DiffLimits, EditScript, RenderedDiff, compute_edit_script, render_diff, replay
from .encoding import EncodingStrategy, TextDocument, decode, detect, encode, read_document, split_lines
from .matching import MatchResult, MatchSpan, MissReport, find, substitute
from .patch import FileEdit, Hunk, HunkLine, apply_file_edit, build_hunks, invert_hunks, parse_unified_diff
from .transaction import TransactionOutcome, WriteTransaction, allocate_backup

__all__ = [
    "DiffLimits",
    "EditScript",
    "EncodingStrategy",
    "FileEdit",
    "Hunk",
    "HunkLine",
    "MatchResult",
    "MatchSpan",
    "MissReport",
    "RenderedDiff",
    "TextDocument",
    "TransactionOutcome",
    "WriteTransaction",
    "allocate_backup",
    "apply_block",
    "apply_file_edit",
    "build_hunks",
    "compute_edit_script",
    "decode",
    "detect",
    "encode",
    "find",
    "invert_hunks",
    "parse_unified_diff",
    "read_document",
    "render_diff",
    "replay",
    "split_lines",
    "substitute",
]
