"""Dry-run analysis.

Runs rsync in simulate-only mode and derives a ``DryRunResult`` from the
parser events.  The fallback chain is explicit and ordered because rsync
versions disagree on how (and whether) they report deletions:

1. Stats events win when the ``--stats`` block is present.
2. Deletions: a non-zero stats deletion count is used as-is; otherwise the
   number of ``*deleting`` lines is used.  This also applies when the stats
   block explicitly reports ``0`` deletions.
3. Transfers: the stats transfer count, else the number of transfer lines.
4. ``needs_sync`` is true when either count is non-zero or any itemized
   line was seen at all.
5. Total source count: the stats file count, else ``0`` (which the gate
   treats as a full wipe when deletions are pending).
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

from yeoldbackup.backup.command import DEFAULT_EXCLUDES, build_dry_run_args
from yeoldbackup.backup.errors import (
    DryRunFailed,
    DryRunLaunchFailed,
    DryRunParseFailed,
    LaunchFailed,
    OperationCancelled,
    ProcessTerminationFailed,
)
from yeoldbackup.backup.models import (
    ChangeKind,
    DryRunResult,
    ItemizedChange,
    ProcessExit,
    SyncRequest,
)
from yeoldbackup.backup.parser import (
    ChangeEvent,
    ErrorLineEvent,
    OutputParser,
    ParserEvent,
    ScanProgressEvent,
    StatEvent,
    StatField,
    Stream,
)
from yeoldbackup.backup.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

# (files scanned so far, itemized changes seen so far)
ScanCallback = Callable[[int, int], None]


class DryRunAccumulator:
    """Collects parser events from one dry run.  No I/O."""

    def __init__(self) -> None:
        self.stats: dict[StatField, int] = {}
        self.changes: list[ItemizedChange] = []
        self.scan_markers = 0
        self.error_lines: list[str] = []

    def add(self, event: ParserEvent) -> None:
        if isinstance(event, StatEvent):
            self.stats[event.field] = event.value
        elif isinstance(event, ChangeEvent):
            self.changes.append(event.change)
        elif isinstance(event, ScanProgressEvent):
            self.scan_markers += 1
        elif isinstance(event, ErrorLineEvent):
            if event.line not in self.error_lines:
                self.error_lines.append(event.line)

    def count(self, kind: ChangeKind) -> int:
        return sum(1 for change in self.changes if change.kind == kind)

    @property
    def has_stats(self) -> bool:
        return bool(self.stats)

    def result(self, exit_info: ProcessExit) -> DryRunResult:
        """Derive the dry-run result, or raise if it cannot be trusted.

        Raises:
            ProcessTerminationFailed: rsync ignored the stop request.
            OperationCancelled: the run was stopped by the user.
            DryRunFailed: non-zero exit without a stats block.
            DryRunParseFailed: clean exit but nothing recognisable.
        """
        if exit_info.termination_failed:
            raise ProcessTerminationFailed("dry run did not stop")
        if exit_info.cancelled:
            raise OperationCancelled("during dry run")

        returncode = exit_info.returncode
        if returncode != 0 and not self.has_stats:
            detail = "\n".join(self.error_lines) or f"exit code {returncode}"
            raise DryRunFailed(detail)
        if not self.has_stats and not self.changes:
            raise DryRunParseFailed(
                "no stats block and no itemized changes in rsync output"
            )
        if returncode != 0:
            logger.warning(
                "Dry run exited with code %s but produced stats; continuing",
                returncode,
            )

        deleted_lines = self.count(ChangeKind.DELETE)
        transfer_lines = self.count(ChangeKind.TRANSFER)

        deletion_count = self.stats.get(StatField.DELETED_FILES, 0)
        if deletion_count == 0 and deleted_lines > 0:
            if StatField.DELETED_FILES in self.stats:
                logger.debug(
                    "Stats report 0 deletions but %d deleting lines seen; using lines",
                    deleted_lines,
                )
            deletion_count = deleted_lines

        if StatField.FILES_TRANSFERRED in self.stats:
            transfer_count = self.stats[StatField.FILES_TRANSFERRED]
        else:
            transfer_count = transfer_lines

        total = self.stats.get(StatField.TOTAL_FILES, 0)

        needs_sync = (
            transfer_count > 0 or deletion_count > 0 or bool(self.changes)
        )
        return DryRunResult(
            needs_sync=needs_sync,
            transfer_count=transfer_count,
            deletion_count=deletion_count,
            total_source_count=total,
            changes=tuple(self.changes),
        )


class DryRunAnalyzer:
    """Run the simulate-only pass and return its ``DryRunResult``.

    Args:
        supervisor: Process supervisor that owns the rsync process.
        rsync_path: Path to the rsync executable.
        excludes: Exclude patterns passed to rsync.
    """

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        rsync_path: str,
        excludes: tuple[str, ...] | list[str] = DEFAULT_EXCLUDES,
    ) -> None:
        self.supervisor = supervisor
        self.rsync_path = rsync_path
        self.excludes = excludes

    def run(
        self,
        request: SyncRequest,
        on_progress: ScanCallback | None = None,
        launch_guard: Callable[[Callable[[], None]], None] | None = None,
    ) -> DryRunResult:
        """Execute the dry run and block until it finishes.

        Args:
            request: Source/target pair.
            on_progress: Optional live callback ``(scanned, changes)``;
                informational only.
            launch_guard: Optional wrapper the orchestrator uses to launch
                under its own lock (so a concurrent cancel is not lost).

        Raises:
            DryRunLaunchFailed, DryRunFailed, DryRunParseFailed,
            OperationCancelled, ProcessTerminationFailed.
        """
        accumulator = DryRunAccumulator()
        stdout_parser = OutputParser(Stream.STDOUT)
        stderr_parser = OutputParser(Stream.STDERR)
        exited = threading.Event()
        exit_box: list[ProcessExit] = []

        def consume(events: list[ParserEvent]) -> None:
            if not events:
                return
            for event in events:
                accumulator.add(event)
            if on_progress is not None:
                on_progress(accumulator.scan_markers, len(accumulator.changes))

        def on_exit(exit_info: ProcessExit) -> None:
            try:
                consume(stdout_parser.flush())
                consume(stderr_parser.flush())
            finally:
                exit_box.append(exit_info)
                exited.set()

        def launch() -> None:
            self.supervisor.start(
                self.rsync_path,
                build_dry_run_args(request, self.excludes),
                on_stdout=lambda chunk: consume(stdout_parser.feed(chunk)),
                on_stderr=lambda chunk: consume(stderr_parser.feed(chunk)),
                on_exit=on_exit,
            )

        logger.info(
            "Dry run: %s -> %s", request.source_path, request.target_path
        )
        try:
            if launch_guard is not None:
                launch_guard(launch)
            else:
                launch()
        except LaunchFailed as exc:
            raise DryRunLaunchFailed(exc.detail) from exc

        try:
            exited.wait()
        finally:
            self.supervisor.cleanup()

        result = accumulator.result(exit_box[0])
        logger.info(
            "Dry run result: needs_sync=%s transfers=%d deletions=%d total=%d",
            result.needs_sync,
            result.transfer_count,
            result.deletion_count,
            result.total_source_count,
        )
        return result
