"""Stream parser for rsync output.

Turns raw byte chunks from rsync's stdout/stderr into typed events:

- ``ChangeEvent`` -- an itemized change line (transfer, delete, other).
- ``StatEvent`` -- one numeric field of the ``--stats`` summary block.
- ``ScanProgressEvent`` -- a file-list scanning marker.
- ``TextEvent`` -- any other stdout line, kept for the report.
- ``ErrorLineEvent`` -- any other stderr line.

Chunks may be split anywhere, including inside a multi-byte UTF-8
sequence.  Raw bytes are buffered and only complete lines are decoded, so
feeding a transcript in any chunking yields the same events.  Both ``\\n``
and ``\\r`` terminate a line (rsync rewrites progress lines with ``\\r``).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum

from yeoldbackup.backup.models import ChangeKind, ItemizedChange

logger = logging.getLogger(__name__)


class Stream(str, Enum):
    """Which pipe a chunk was read from."""

    STDOUT = "stdout"
    STDERR = "stderr"


class StatField(str, Enum):
    """Fields of the rsync ``--stats`` block the engine cares about."""

    TOTAL_FILES = "total_files"
    FILES_TRANSFERRED = "files_transferred"
    DELETED_FILES = "deleted_files"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeEvent:
    change: ItemizedChange
    line: str = field(default="", compare=False)

    @property
    def kind(self) -> ChangeKind:
        return self.change.kind

    @property
    def path(self) -> str:
        return self.change.path


@dataclass(frozen=True)
class StatEvent:
    field: StatField
    value: int
    line: str = field(default="", compare=False)


@dataclass(frozen=True)
class ScanProgressEvent:
    pass


@dataclass(frozen=True)
class TextEvent:
    line: str


@dataclass(frozen=True)
class ErrorLineEvent:
    line: str


ParserEvent = (
    ChangeEvent | StatEvent | ScanProgressEvent | TextEvent | ErrorLineEvent
)

# ---------------------------------------------------------------------------
# Line patterns
# ---------------------------------------------------------------------------

_LINE_END = re.compile(rb"[\r\n]")

# "*deleting   old/file.txt" (itemized) or "deleting old/file.txt" (-v only)
_DELETE_RE = re.compile(r"^\*?deleting\s+(?P<path>.+)$")

# YXcstpoguax: 11 chars on rsync 3.x, 9 chars on rsync 2.6.9.
_ITEMIZE_RE = re.compile(
    r"^(?P<code>(?P<update>[<>ch.])(?P<type>[fdLDS])[.+?a-zA-Z]{7,9}) (?P<path>.+)$"
)
_TRANSFER_MARKERS = frozenset("<>c")

# Order matters: the first matching label wins.
_STAT_PATTERNS: tuple[tuple[re.Pattern[str], StatField], ...] = (
    (
        re.compile(r"^Number of (?:regular )?files transferred:(?P<value>.*)$"),
        StatField.FILES_TRANSFERRED,
    ),
    (
        re.compile(r"^Number of (?:deleted files|deletions):(?P<value>.*)$"),
        StatField.DELETED_FILES,
    ),
    (
        re.compile(r"^Number of files:(?P<value>.*)$"),
        StatField.TOTAL_FILES,
    ),
)
_NUMBER_RE = re.compile(r"^\s*(?P<digits>\d[\d,.']*)")

_SCAN_RE = re.compile(
    r"^(?:building file list"
    r"|(?:sending|receiving) incremental file list"
    r"|receiving file list"
    r"|\d+ files(?:\.\.\.| to consider))"
)


def parse_stat_value(raw: str, label: StatField | None = None) -> int:
    """Parse the leading integer of a stats value.

    Thousand separators (``,``, ``.``, ``'``) are removed, so
    ``"1,234 (reg: 1,000, dir: 234)"`` yields ``1234``.  Unparseable values
    yield ``0`` and log a warning.
    """
    match = _NUMBER_RE.match(raw)
    if match:
        digits = re.sub(r"[,.']", "", match.group("digits"))
        try:
            return int(digits)
        except ValueError:
            pass
    logger.warning(
        "Could not parse rsync stats value %r for %s; using 0",
        raw.strip(),
        label.value if label else "unknown field",
    )
    return 0


def classify_line(text: str, stream: Stream = Stream.STDOUT) -> ParserEvent | None:
    """Classify one decoded output line.

    Returns:
        The event for the line, or ``None`` for blank lines.
    """
    line = text.strip()
    if not line:
        return None

    match = _DELETE_RE.match(line)
    if match:
        return ChangeEvent(
            ItemizedChange(
                kind=ChangeKind.DELETE, path=match.group("path").strip()
            ),
            line,
        )

    match = _ITEMIZE_RE.match(line)
    if match:
        path = match.group("path").strip()
        if match.group("type") == "L" and " -> " in path:
            path = path.split(" -> ", 1)[0]
        kind = (
            ChangeKind.TRANSFER
            if match.group("update") in _TRANSFER_MARKERS
            else ChangeKind.OTHER
        )
        return ChangeEvent(ItemizedChange(kind=kind, path=path), line)

    for pattern, stat_field in _STAT_PATTERNS:
        match = pattern.match(line)
        if match:
            return StatEvent(
                stat_field,
                parse_stat_value(match.group("value"), stat_field),
                line,
            )

    if _SCAN_RE.match(line):
        return ScanProgressEvent()

    if stream == Stream.STDERR:
        return ErrorLineEvent(line)
    return TextEvent(line)


class OutputParser:
    """Incremental, line-oriented parser for one rsync output stream.

    Args:
        stream: The pipe this parser reads; unclassified stderr lines become
            ``ErrorLineEvent`` instead of ``TextEvent``.
    """

    def __init__(self, stream: Stream = Stream.STDOUT) -> None:
        self.stream = stream
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> list[ParserEvent]:
        """Buffer *chunk* and return events for every completed line."""
        if not chunk:
            return []
        self._buffer.extend(chunk)
        parts = _LINE_END.split(bytes(self._buffer))
        # The last part is the (possibly empty) unterminated remainder.
        self._buffer = bytearray(parts[-1])
        return self._parse_lines(parts[:-1])

    def flush(self) -> list[ParserEvent]:
        """Parse and clear any trailing unterminated line (call at EOF)."""
        if not self._buffer:
            return []
        remainder = bytes(self._buffer)
        self._buffer.clear()
        return self._parse_lines([remainder])

    @property
    def pending(self) -> bytes:
        """Bytes received but not yet terminated by a newline."""
        return bytes(self._buffer)

    def _parse_lines(self, raw_lines: list[bytes]) -> list[ParserEvent]:
        events: list[ParserEvent] = []
        for raw in raw_lines:
            event = classify_line(
                raw.decode("utf-8", errors="replace"), self.stream
            )
            if event is not None:
                events.append(event)
        return events
