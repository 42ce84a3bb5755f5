"""Encoding and newline resolution for files entering the edit pipeline."""

from __future__ import annotations

import codecs
import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import chardet

from ..errors import ConfigurationError, EncodingError, FileIOError

LOGGER = logging.getLogger(__name__)

BINARY_CHECK_BYTES = 4096

NEWLINE_LABELS: Mapping[str, str] = {"\n": "LF", "\r\n": "CRLF", "\r": "CR"}

# UTF-32 LE must be sniffed before UTF-16 LE: its BOM starts with FF FE.
_BOMS: tuple[tuple[bytes, str], ...] = (
    (codecs.BOM_UTF32_LE, "utf-32-le"),
    (codecs.BOM_UTF32_BE, "utf-32-be"),
    (codecs.BOM_UTF8, "utf-8"),
    (codecs.BOM_UTF16_LE, "utf-16-le"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
)
_BOM_BY_ENCODING: Mapping[str, bytes] = {name: bom for bom, name in _BOMS}
_WIDE_ENCODINGS = frozenset({"utf-16-le", "utf-16-be", "utf-32-le", "utf-32-be"})

_NEWLINE_RE = re.compile(r"\r\n|\r|\n")
_LINE_RE = re.compile(r"[^\r\n]*(?:\r\n|\r|\n)|[^\r\n]+")


@dataclass(slots=True)
class EncodingGuess:
    """Best-effort answer of :func:`detect`; detection never fails."""

    encoding: str
    has_bom: bool
    confidence: float
    source: str  # "override", "bom", "utf-8", "detector" or "fallback"
    lossy: bool = False


@dataclass(slots=True)
class DecodedText:
    """Decoded file text together with the newline style it uses."""

    text: str
    encoding: str
    has_bom: bool
    newline: str
    had_errors: bool = False
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class TextDocument:
    """A target file decoded into an ordered sequence of terminated lines.

    ``lines`` keep their own terminators so untouched regions encode back to
    the original bytes. Unless ``verbatim`` is set, minority terminators are
    rewritten to the dominant ``newline`` on load and the rewrite is reported
    in ``warnings``.
    """

    path: Path
    encoding: str
    has_bom: bool
    newline: str
    raw: bytes
    lines: list[str]
    exists: bool = True
    confidence: float = 1.0
    source: str = "utf-8"
    had_errors: bool = False
    verbatim: bool = False
    normalized_newlines: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.lines)

    @property
    def checksum(self) -> str:
        return hashlib.sha256(self.raw).hexdigest()

    @property
    def newline_label(self) -> str:
        return NEWLINE_LABELS.get(self.newline, repr(self.newline))

    def encode_lines(self, lines: list[str]) -> bytes:
        """Encode ``lines`` with this document's encoding, BOM and newline style."""
        newline = None if self.verbatim else self.newline
        return encode("".join(lines), self.encoding, newline, bom=self.has_bom)

    @classmethod
    def empty(cls, path: Path | str, *, encoding: str = "utf-8", newline: str = "\n") -> "TextDocument":
        """Return a placeholder document for a file that does not exist yet."""
        return cls(
            path=Path(path),
            encoding=encoding,
            has_bom=False,
            newline=newline,
            raw=b"",
            lines=[],
            exists=False,
            source="new-file",
        )


def canonical_encoding(label: str) -> str:
    """Resolve a codec label to Python's canonical codec name."""
    try:
        return codecs.lookup(label.strip()).name
    except LookupError as error:
        raise ConfigurationError(
            f"unknown encoding override '{label.strip()}'",
            details={"encoding": label},
        ) from error


def sniff_bom(data: bytes) -> tuple[str, bytes] | None:
    """Return ``(encoding, bom)`` when ``data`` starts with a byte-order mark."""
    for bom, name in _BOMS:
        if data.startswith(bom):
            return name, bom
    return None


def detect(data: bytes) -> EncodingGuess:
    """Guess the encoding of ``data``: BOM sniff, UTF-8 validation, chardet, UTF-8 fallback."""
    sniffed = sniff_bom(data)
    if sniffed is not None:
        return EncodingGuess(encoding=sniffed[0], has_bom=True, confidence=1.0, source="bom")

    if not data:
        return EncodingGuess(encoding="utf-8", has_bom=False, confidence=1.0, source="utf-8")

    try:
        data.decode("utf-8")
    except UnicodeDecodeError:
        pass
    else:
        confidence = 1.0 if data.isascii() else 0.99
        return EncodingGuess(encoding="utf-8", has_bom=False, confidence=confidence, source="utf-8")

    result = chardet.detect(data)
    label = result.get("encoding")
    confidence = float(result.get("confidence") or 0.0)
    if label:
        try:
            name = codecs.lookup(label).name
            data.decode(name)
        except (LookupError, UnicodeDecodeError):
            LOGGER.debug("Detector guess %s rejected; falling back to UTF-8", label)
        else:
            return EncodingGuess(encoding=name, has_bom=False, confidence=confidence, source="detector")

    return EncodingGuess(encoding="utf-8", has_bom=False, confidence=0.0, source="fallback", lossy=True)


def _resolve_unmarked_width(encoding: str, data: bytes) -> str:
    """Pin BOM-dependent codecs (``utf-16``, ``utf-32``) to an explicit byte order."""
    if encoding in {"utf-16", "utf-32"}:
        sniffed = sniff_bom(data)
        if sniffed is not None and sniffed[0].startswith(encoding):
            return sniffed[0]
        return f"{encoding}-le"
    if encoding == "utf-8-sig":
        return "utf-8"
    return encoding


def decode(data: bytes, encoding: str, *, strict: bool = False) -> DecodedText:
    """Decode ``data`` and report its dominant newline style.

    With ``strict`` a decode failure raises :class:`EncodingError`; otherwise
    undecodable bytes are carried as surrogate escapes (or replaced, for
    UTF-16/32) and a warning is recorded.
    """
    name = _resolve_unmarked_width(encoding, data)
    bom = _BOM_BY_ENCODING.get(name)
    has_bom = bool(bom) and data.startswith(bom)
    payload = data[len(bom):] if has_bom and bom else data
    warnings: list[str] = []
    had_errors = False

    try:
        text = payload.decode(name)
    except UnicodeDecodeError as error:
        if strict:
            raise EncodingError(
                f"cannot decode bytes as {name}: {error.reason} at offset {error.start}",
                details={"encoding": name, "offset": error.start},
            ) from error
        errors = "replace" if name in _WIDE_ENCODINGS else "surrogateescape"
        text = payload.decode(name, errors=errors)
        had_errors = True
        warnings.append(f"invalid {name} sequences coerced ({errors}) starting at byte {error.start}")

    return DecodedText(
        text=text,
        encoding=name,
        has_bom=has_bom,
        newline=dominant_newline(text),
        had_errors=had_errors,
        warnings=warnings,
    )


def encode(text: str, encoding: str, newline: str | None = None, *, bom: bool = False) -> bytes:
    """Encode ``text``; when ``newline`` is given every terminator is rewritten to it."""
    if newline is not None:
        text = normalize_newlines(text, newline)
    name = _resolve_unmarked_width(encoding, b"")
    errors = "strict" if name in _WIDE_ENCODINGS else "surrogateescape"
    try:
        payload = text.encode(name, errors=errors)
    except UnicodeEncodeError as error:
        raise EncodingError(
            f"cannot encode {error.object[error.start:error.end]!r} as {name}",
            details={"encoding": name, "offset": error.start},
        ) from error
    if bom:
        payload = _BOM_BY_ENCODING.get(name, b"") + payload
    return payload


def newline_counts(text: str) -> dict[str, int]:
    counts = {"\n": 0, "\r\n": 0, "\r": 0}
    for match in _NEWLINE_RE.finditer(text):
        counts[match.group(0)] += 1
    return counts


def dominant_newline(text: str, default: str = "\n") -> str:
    """Return the most frequent terminator; ties prefer LF, then CRLF."""
    counts = newline_counts(text)
    best = max(counts.values())
    if best == 0:
        return default
    for candidate in ("\n", "\r\n", "\r"):
        if counts[candidate] == best:
            return candidate
    return default


def normalize_newlines(text: str, newline: str) -> str:
    return _NEWLINE_RE.sub(newline, text)


def split_lines(text: str) -> list[str]:
    """Split ``text`` into lines that keep their ``\\n``, ``\\r\\n`` or ``\\r`` terminator."""
    return _LINE_RE.findall(text)


def line_ending(line: str) -> str:
    if line.endswith("\r\n"):
        return "\r\n"
    if line.endswith(("\n", "\r")):
        return line[-1]
    return ""


def strip_eol(line: str) -> str:
    return line[: len(line) - len(line_ending(line))]


def looks_binary(data: bytes) -> bool:
    """Return True when the leading bytes contain NUL outside a UTF-16/32 BOM."""
    if sniff_bom(data) is not None:
        return False
    return b"\0" in data[:BINARY_CHECK_BYTES]


@dataclass(slots=True)
class EncodingStrategy:
    """Encoding policy for a run: an optional override, otherwise auto-detection."""

    override: str | None = None
    _canonical: str | None = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.override is not None and self.override.strip():
            self._canonical = canonical_encoding(self.override)
        else:
            self.override = None

    def describe(self) -> str:
        if self._canonical:
            return f"override '{self.override}' ({self._canonical}), auto-detect disabled"
        return "auto-detect (BOM -> UTF-8 -> detector -> UTF-8 fallback)"

    def decide(self, data: bytes) -> EncodingGuess:
        if self._canonical is None:
            return detect(data)
        name = _resolve_unmarked_width(self._canonical, data)
        bom = _BOM_BY_ENCODING.get(name)
        return EncodingGuess(
            encoding=name,
            has_bom=bool(bom) and data.startswith(bom),
            confidence=1.0,
            source="override",
        )

    def default_encoding(self) -> str:
        if self._canonical is None:
            return "utf-8"
        return _resolve_unmarked_width(self._canonical, b"")

    def decode(self, data: bytes) -> tuple[EncodingGuess, DecodedText]:
        guess = self.decide(data)
        decoded = decode(data, guess.encoding, strict=guess.source == "override")
        if guess.lossy and not decoded.had_errors:
            decoded.warnings.append(f"encoding could not be detected; assumed {guess.encoding}")
        return guess, decoded


def document_from_bytes(
    path: Path | str,
    data: bytes,
    strategy: EncodingStrategy,
    *,
    verbatim: bool = False,
) -> TextDocument:
    """Build a :class:`TextDocument` from raw bytes."""
    guess, decoded = strategy.decode(data)
    text = decoded.text
    warnings = list(decoded.warnings)
    normalized = 0
    if not verbatim:
        counts = newline_counts(text)
        normalized = sum(count for style, count in counts.items() if style != decoded.newline)
        if normalized:
            text = normalize_newlines(text, decoded.newline)
            label = NEWLINE_LABELS[decoded.newline]
            warnings.append(f"normalized {normalized} minority line terminator(s) to {label}")

    for message in warnings:
        LOGGER.warning("%s: %s", Path(path).as_posix(), message)

    return TextDocument(
        path=Path(path),
        encoding=decoded.encoding,
        has_bom=decoded.has_bom,
        newline=decoded.newline,
        raw=data,
        lines=split_lines(text),
        confidence=guess.confidence,
        source=guess.source,
        had_errors=decoded.had_errors or guess.lossy,
        verbatim=verbatim,
        normalized_newlines=normalized,
        warnings=warnings,
    )


def read_document(path: Path | str, strategy: EncodingStrategy, *, verbatim: bool = False) -> TextDocument:
    """Read and decode ``path``; a missing file raises :class:`FileIOError`."""
    file_path = Path(path)
    try:
        data = file_path.read_bytes()
    except OSError as error:
        raise FileIOError(
            f"failed to read {file_path.as_posix()}: {error.strerror or error}",
            details={"path": file_path.as_posix()},
        ) from error
    return document_from_bytes(file_path, data, strategy, verbatim=verbatim)


__all__ = [
    "DecodedText",
    "EncodingGuess",
    "EncodingStrategy",
    "NEWLINE_LABELS",
    "TextDocument",
    "canonical_encoding",
    "decode",
    "detect",
    "document_from_bytes",
    "dominant_newline",
    "encode",
    "line_ending",
    "looks_binary",
    "newline_counts",
    "normalize_newlines",
    "read_document",
    "sniff_bom",
    "split_lines",
    "strip_eol",
]
