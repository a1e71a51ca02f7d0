"""Real (destructive) sync pass.

``SyncExecutor`` launches rsync with archive/delete/itemize flags and feeds
its output through ``SyncTracker``, which keeps the running counters,
builds the report transcript, and produces the final ``OperationOutcome``.
``SyncTracker`` has no process dependency and is driven directly in tests.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from yeoldbackup.backup.command import DEFAULT_EXCLUDES, build_sync_args
from yeoldbackup.backup.errors import (
    OperationCancelled,
    ProcessTerminationFailed,
    SyncFailed,
)
from yeoldbackup.backup.models import (
    ChangeKind,
    DryRunResult,
    EngineState,
    OperationOutcome,
    OutcomeStatus,
    ProcessExit,
    ProgressState,
    SyncRequest,
)
from yeoldbackup.backup.parser import (
    ChangeEvent,
    ErrorLineEvent,
    OutputParser,
    ParserEvent,
    StatEvent,
    Stream,
    TextEvent,
)
from yeoldbackup.backup.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

ProgressCallback = Callable[["SyncTracker"], None]

# rsync prints a lone "." for the transfer root; it carries no information.
_NOISE_LINES = frozenset({"."})


class SyncTracker:
    """Running counters and transcript for one real sync pass.

    Args:
        files_total: Transfer estimate from the dry run.
    """

    def __init__(self, files_total: int) -> None:
        self.files_total = max(files_total, 0)
        self.files_processed = 0
        self.current_file_name = ""
        self.error_occurred = False
        self._report_lines: list[str] = []
        self._error_lines: list[str] = []

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def handle(self, events: list[ParserEvent]) -> bool:
        """Apply the events parsed from one chunk.

        Returns:
            ``True`` if anything visible changed.
        """
        changed = False
        last_transfer: str | None = None
        for event in events:
            if isinstance(event, ChangeEvent):
                self._append_report(event.line)
                if event.kind == ChangeKind.TRANSFER:
                    if self.files_processed < self.files_total:
                        self.files_processed += 1
                    last_transfer = event.path
                changed = True
            elif isinstance(event, ErrorLineEvent):
                self.error_occurred = True
                if event.line not in self._error_lines:
                    self._error_lines.append(event.line)
                    self._append_report(event.line)
                changed = True
            elif isinstance(event, TextEvent):
                if self._append_report(event.line):
                    changed = True
            elif isinstance(event, StatEvent):
                self._append_report(event.line)
        if last_transfer is not None:
            self.current_file_name = last_transfer
        return changed

    def _append_report(self, line: str) -> bool:
        if not line or line.strip() in _NOISE_LINES:
            return False
        self._report_lines.append(line)
        return True

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def fraction_complete(self) -> float:
        if self.files_total == 0:
            return 0.0
        return min(max(self.files_processed / self.files_total, 0.0), 1.0)

    @property
    def report_text(self) -> str:
        return "\n".join(self._report_lines)

    @property
    def error_text(self) -> str:
        return "\n".join(self._error_lines)

    def progress(self) -> ProgressState:
        if self.current_file_name:
            message = f"Syncing {self.current_file_name}"
        else:
            message = "Syncing..."
        return ProgressState(
            phase=EngineState.SYNCING,
            files_processed=self.files_processed,
            files_total=self.files_total,
            current_file_name=self.current_file_name,
            fraction_complete=self.fraction_complete,
            message=message,
        )

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def finish(
        self,
        exit_info: ProcessExit,
        request: SyncRequest | None = None,
        started_at: str | None = None,
    ) -> OperationOutcome:
        """Build the terminal outcome for the finished process."""
        common = {
            "exit_code": exit_info.returncode,
            "report_text": self.report_text,
            "source_path": request.source_path if request else "",
            "target_path": request.target_path if request else "",
            "started_at": started_at,
            "completed_at": datetime.now(timezone.utc).isoformat(),
        }

        if exit_info.termination_failed:
            error = ProcessTerminationFailed(self.error_text)
            return OperationOutcome(
                status=OutcomeStatus.FAILED,
                error_text=str(error),
                error_type=type(error).__name__,
                **common,
            )

        if exit_info.cancelled:
            return OperationOutcome(
                status=OutcomeStatus.CANCELLED,
                error_text=self.error_text,
                error_type=OperationCancelled.__name__,
                **common,
            )

        if exit_info.returncode == 0 and not self.error_occurred:
            return OperationOutcome(status=OutcomeStatus.SUCCESS, **common)

        error_text = self.error_text or f"exit code {exit_info.returncode}"
        return OperationOutcome(
            status=OutcomeStatus.FAILED,
            error_text=error_text,
            error_type=SyncFailed.__name__,
            **common,
        )


class SyncExecutor:
    """Run the real rsync pass for one request.

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
        dry_run: DryRunResult,
        on_progress: ProgressCallback | None = None,
        launch_guard: Callable[[Callable[[], None]], None] | None = None,
        started_at: str | None = None,
    ) -> OperationOutcome:
        """Execute the sync and block until rsync exits.

        Launch failures propagate as ``LaunchFailed``; every other problem
        is reported in the returned outcome.
        """
        tracker = SyncTracker(dry_run.transfer_count)
        stdout_parser = OutputParser(Stream.STDOUT)
        stderr_parser = OutputParser(Stream.STDERR)
        exited = threading.Event()
        exit_box: list[ProcessExit] = []

        def consume(events: list[ParserEvent]) -> None:
            if tracker.handle(events) and on_progress is not None:
                on_progress(tracker)

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
                build_sync_args(request, self.excludes),
                on_stdout=lambda chunk: consume(stdout_parser.feed(chunk)),
                on_stderr=lambda chunk: consume(stderr_parser.feed(chunk)),
                on_exit=on_exit,
            )

        logger.info("Sync: %s -> %s", request.source_path, request.target_path)
        if launch_guard is not None:
            launch_guard(launch)
        else:
            launch()

        try:
            exited.wait()
        finally:
            self.supervisor.cleanup()

        outcome = tracker.finish(exit_box[0], request, started_at)
        logger.info(
            "Sync finished: status=%s exit_code=%s processed=%d/%d",
            outcome.status.value,
            outcome.exit_code,
            tracker.files_processed,
            tracker.files_total,
        )
        if outcome.error_text:
            logger.warning("Sync errors: %s", outcome.error_text)
        return outcome
