"""Filesystem-safe names derived from target paths."""

from __future__ import annotations

import hashlib
import re
from typing import Pattern

_UNSAFE: Pattern[str] = re.compile(r"[^A-Za-z0-9_.-]+")
_SEPARATORS: Pattern[str] = re.compile(r"[\\/]+")
_COLLAPSE: Pattern[str] = re.compile(r"([-_])\1+")


def slugify(value: str | None, *, fallback: str = "file", max_length: int = 80) -> str:
    """Turn ``value`` (usually a path) into a single file-name component.

    Path separators become ``_`` so ``src/app.py`` and ``src_app.py`` stay
    readable; anything else outside ``[A-Za-z0-9_.-]`` becomes ``-``.
    """
    source = (value or "").strip()
    slug = _SEPARATORS.sub("_", source)
    slug = _UNSAFE.sub("-", slug)
    slug = _COLLAPSE.sub(r"\1", slug).strip("-_.")
    if not slug:
        slug = _UNSAFE.sub("-", fallback).strip("-_.") or "file"
    if len(slug) > max_length:
        slug = abbreviate_slug(slug, max_length=max_length)
    return slug


def abbreviate_slug(segment: str, *, max_length: int = 80) -> str:
    """Trim ``segment`` to ``max_length`` keeping it unique with a short digest."""
    if len(segment) <= max_length:
        return segment
    digest = hashlib.sha256(segment.encode("utf-8", errors="surrogateescape")).hexdigest()[:8]
    # Keep the tail: it holds the file name.
    tail_length = max(max_length - len(digest) - 1, 1)
    tail = segment[-tail_length:].lstrip("-_.") or segment[-tail_length:]
    return f"{digest}-{tail}"


__all__ = ["abbreviate_slug", "slugify"]
