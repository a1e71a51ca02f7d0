"""Backup orchestrator: the single user-visible operation.

``BackupManager`` sequences dry run, deletion gate, optional confirmation,
and real sync into one state machine::

    IDLE -> CALCULATING -> COMPLETED                  (no changes)
                        -> SYNCING                    (gate open)
                        -> AWAITING_CONFIRMATION      (gate closed)
    AWAITING_CONFIRMATION -> SYNCING | CANCELLED
    CALCULATING | SYNCING -> FAILED | CANCELLED
    SYNCING -> COMPLETED | FAILED

Each operation runs on its own worker thread.  Every published update is
tagged with the operation's generation number and dropped if a newer
operation has started since.  Observers receive immutable
``BackupSnapshot`` objects, in state-machine order, on the thread that
produced the update; they must not block.

External commands: ``start(request)``, ``confirm_deletion()``, ``cancel()``.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable

from yeoldbackup.backup.analyzer import DryRunAnalyzer
from yeoldbackup.backup.errors import (
    BackupError,
    CancelledByUser,
    InvalidStateError,
    OperationCancelled,
    OperationInProgress,
)
from yeoldbackup.backup.executor import SyncExecutor, SyncTracker
from yeoldbackup.backup.gate import DeletionPolicy
from yeoldbackup.backup.history import HistoryRecorder
from yeoldbackup.backup.models import (
    BackupSnapshot,
    DryRunResult,
    EngineState,
    OperationOutcome,
    OutcomeStatus,
    ProgressState,
    SyncRequest,
)
from yeoldbackup.backup.reporter import (
    format_confirmation_prompt,
    format_dry_run_preview,
)
from yeoldbackup.backup.supervisor import ProcessSupervisor

if TYPE_CHECKING:
    from yeoldbackup.config import Config

logger = logging.getLogger(__name__)

Observer = Callable[[BackupSnapshot], None]

_TRANSITIONS: dict[EngineState, frozenset[EngineState]] = {
    EngineState.IDLE: frozenset({EngineState.CALCULATING}),
    EngineState.CALCULATING: frozenset(
        {
            EngineState.COMPLETED,
            EngineState.SYNCING,
            EngineState.AWAITING_CONFIRMATION,
            EngineState.FAILED,
            EngineState.CANCELLED,
        }
    ),
    EngineState.AWAITING_CONFIRMATION: frozenset(
        {EngineState.SYNCING, EngineState.CANCELLED}
    ),
    EngineState.SYNCING: frozenset(
        {EngineState.COMPLETED, EngineState.FAILED, EngineState.CANCELLED}
    ),
    EngineState.COMPLETED: frozenset({EngineState.CALCULATING}),
    EngineState.FAILED: frozenset({EngineState.CALCULATING}),
    EngineState.CANCELLED: frozenset({EngineState.CALCULATING}),
}

_OUTCOME_STATES = {
    OutcomeStatus.SUCCESS: EngineState.COMPLETED,
    OutcomeStatus.FAILED: EngineState.FAILED,
    OutcomeStatus.CANCELLED: EngineState.CANCELLED,
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class BackupManager:
    """Single-flight backup engine with an observable state machine.

    Args:
        config: Engine configuration (rsync path, excludes, thresholds,
            timeouts).  Defaults are used when omitted.
        supervisor: Process supervisor; one is built from *config* if
            omitted.
        history: Optional recorder notified once per finished operation.
        policy: Deletion thresholds; built from *config* if omitted.
    """

    def __init__(
        self,
        config: Config | None = None,
        supervisor: ProcessSupervisor | None = None,
        history: HistoryRecorder | None = None,
        policy: DeletionPolicy | None = None,
    ) -> None:
        if config is None:
            from yeoldbackup.config import Config

            config = Config()
        self.config = config
        self.supervisor = supervisor or ProcessSupervisor(
            terminate_grace=self.config.terminate_grace,
            interrupt_grace=self.config.interrupt_grace,
            drain_grace=self.config.drain_grace,
        )
        self.policy = policy or DeletionPolicy(
            min_deletions=self.config.min_deletions,
            min_fraction=self.config.min_fraction,
        )
        self.history = history
        self.analyzer = DryRunAnalyzer(
            self.supervisor, self.config.rsync_path, self.config.excludes
        )
        self.executor = SyncExecutor(
            self.supervisor, self.config.rsync_path, self.config.excludes
        )

        self._lock = threading.RLock()
        self._decided = threading.Condition(self._lock)
        self._done = threading.Event()
        self._done.set()
        self._observers: list[Observer] = []
        self._snapshot = BackupSnapshot()
        self._generation = 0
        self._cancel_requested = False
        self._decision: bool | None = None
        self._worker: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    @property
    def snapshot(self) -> BackupSnapshot:
        return self._snapshot

    @property
    def state(self) -> EngineState:
        return self._snapshot.state

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        """Register *observer*; returns a function that unregisters it."""
        with self._lock:
            self._observers.append(observer)

        def unsubscribe() -> None:
            with self._lock:
                if observer in self._observers:
                    self._observers.remove(observer)

        return unsubscribe

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the current operation is finished.

        Returns:
            ``True`` if no operation is in flight when the call returns.
        """
        return self._done.wait(timeout)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start(self, request: SyncRequest) -> int:
        """Begin a new operation on a worker thread.

        Returns:
            The operation's generation number.

        Raises:
            OperationInProgress: Another operation has not finished yet.
        """
        with self._lock:
            if not self._snapshot.state.is_stable:
                raise OperationInProgress(
                    f"Backup already in progress (state={self._snapshot.state.value})"
                )
            self._generation += 1
            generation = self._generation
            self._cancel_requested = False
            self._decision = None
            self._done.clear()
            self._transition(
                generation,
                EngineState.CALCULATING,
                request=request,
                progress=ProgressState(
                    phase=EngineState.CALCULATING,
                    message="Calculating changes...",
                ),
                report_text="",
                error_text="",
                dry_run=None,
                outcome=None,
            )
            worker = threading.Thread(
                target=self._run,
                args=(generation, request, _now()),
                name=f"yeoldbackup-worker-{generation}",
                daemon=True,
            )
            self._worker = worker
        logger.info(
            "Backup #%d requested: %s -> %s",
            generation,
            request.source_path,
            request.target_path,
        )
        worker.start()
        return generation

    def confirm_deletion(self) -> None:
        """Approve the pending deletions and continue to the real sync.

        Raises:
            InvalidStateError: No confirmation is pending.
        """
        with self._lock:
            if self._snapshot.state != EngineState.AWAITING_CONFIRMATION:
                raise InvalidStateError(
                    f"No deletion awaiting confirmation (state={self._snapshot.state.value})"
                )
            logger.info("Deletion confirmed by user")
            self._decision = True
            self._decided.notify_all()

    def cancel(self) -> bool:
        """Stop the current operation.

        Declines a pending confirmation, or asks the supervisor to terminate
        the running rsync process.

        Returns:
            ``False`` if there was nothing to cancel.
        """
        with self._lock:
            state = self._snapshot.state
            if state.is_stable:
                return False
            self._cancel_requested = True
            if state == EngineState.AWAITING_CONFIRMATION:
                logger.info("Deletion declined by user")
                self._decision = False
                self._decided.notify_all()
                return True
            logger.info("Stop requested in state %s", state.value)
            self._update(
                self._generation,
                progress=self._snapshot.progress.model_copy(
                    update={"message": "Stopping..."}
                ),
            )
            # Not launched yet: the launch guard sees the flag instead.
            self.supervisor.cancel()
            return True

    def shutdown(self, timeout: float | None = None) -> None:
        """Cancel any operation, wait for it, and release the process."""
        self.cancel()
        self.wait(timeout)
        self.supervisor.cleanup()

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self, generation: int, request: SyncRequest, started_at: str) -> None:
        report_text = ""
        try:
            dry_run = self.analyzer.run(
                request,
                on_progress=lambda scanned, changes: self._on_scan(
                    generation, scanned, changes
                ),
                launch_guard=self._launch_guard,
            )
            report_text = format_dry_run_preview(request, dry_run)
            self._update(generation, dry_run=dry_run, report_text=report_text)
            self._check_cancelled()

            if not dry_run.needs_sync:
                self._complete_without_changes(
                    generation, request, started_at, report_text
                )
                return

            decision = self.policy.evaluate(dry_run)
            if decision.requires_confirmation:
                self._await_confirmation(generation, dry_run)

            self._transition(
                generation,
                EngineState.SYNCING,
                progress=ProgressState(
                    phase=EngineState.SYNCING,
                    files_total=dry_run.transfer_count,
                    message="Syncing...",
                ),
            )
            outcome = self.executor.run(
                request,
                dry_run,
                on_progress=lambda tracker: self._on_sync_progress(
                    generation, tracker
                ),
                launch_guard=self._launch_guard,
                started_at=started_at,
            )
        except CancelledByUser as exc:
            outcome = self._error_outcome(
                OutcomeStatus.CANCELLED, exc, request, started_at, report_text
            )
            outcome = outcome.model_copy(update={"error_text": ""})
        except OperationCancelled as exc:
            outcome = self._error_outcome(
                OutcomeStatus.CANCELLED, exc, request, started_at, report_text
            )
        except BackupError as exc:
            logger.error("Backup #%d failed: %s", generation, exc)
            outcome = self._error_outcome(
                OutcomeStatus.FAILED, exc, request, started_at, report_text
            )
        except Exception as exc:
            logger.exception("Unexpected error in backup #%d", generation)
            outcome = self._error_outcome(
                OutcomeStatus.FAILED, exc, request, started_at, report_text
            )
        self._finish(generation, request, outcome)

    def _launch_guard(self, launch: Callable[[], None]) -> None:
        with self._lock:
            self._check_cancelled()
            launch()

    def _check_cancelled(self) -> None:
        with self._lock:
            if self._cancel_requested:
                raise OperationCancelled("before rsync was started")

    def _await_confirmation(self, generation: int, dry_run: DryRunResult) -> None:
        with self._lock:
            self._check_cancelled()
            self._transition(
                generation,
                EngineState.AWAITING_CONFIRMATION,
                progress=ProgressState(
                    phase=EngineState.AWAITING_CONFIRMATION,
                    files_total=dry_run.transfer_count,
                    message=format_confirmation_prompt(dry_run, self.policy),
                ),
            )
            while self._decision is None:
                self._decided.wait()
            if not self._decision:
                raise CancelledByUser()

    def _complete_without_changes(
        self,
        generation: int,
        request: SyncRequest,
        started_at: str,
        report_text: str,
    ) -> None:
        outcome = OperationOutcome(
            status=OutcomeStatus.SUCCESS,
            report_text=report_text,
            source_path=request.source_path,
            target_path=request.target_path,
            started_at=started_at,
            completed_at=_now(),
        )
        logger.info("Backup #%d: target already up to date", generation)
        self._finish(generation, request, outcome)

    def _error_outcome(
        self,
        status: OutcomeStatus,
        error: Exception,
        request: SyncRequest,
        started_at: str,
        report_text: str,
    ) -> OperationOutcome:
        return OperationOutcome(
            status=status,
            error_text=str(error),
            report_text=report_text,
            error_type=type(error).__name__,
            source_path=request.source_path,
            target_path=request.target_path,
            started_at=started_at,
            completed_at=_now(),
        )

    def _finish(
        self, generation: int, request: SyncRequest, outcome: OperationOutcome
    ) -> None:
        state = _OUTCOME_STATES[outcome.status]
        if self.history is not None:
            try:
                self.history.record(request, outcome)
            except Exception:
                logger.exception("Could not record backup history")

        with self._lock:
            try:
                progress = self._snapshot.progress
                if state == EngineState.COMPLETED:
                    progress = progress.model_copy(
                        update={
                            "fraction_complete": 1.0,
                            "files_processed": progress.files_total,
                        }
                    )
                progress = progress.model_copy(
                    update={"phase": state, "message": _final_message(outcome)}
                )
                self._transition(
                    generation,
                    state,
                    progress=progress,
                    outcome=outcome,
                    report_text=outcome.report_text,
                    error_text=outcome.error_text,
                )
            finally:
                self._done.set()

    # ------------------------------------------------------------------
    # Live updates
    # ------------------------------------------------------------------

    def _on_scan(self, generation: int, scanned: int, changes: int) -> None:
        with self._lock:
            progress = self._snapshot.progress.model_copy(
                update={
                    "message": f"Calculating changes... ({changes} found)"
                    if changes
                    else f"Scanning file list... ({scanned})"
                }
            )
            self._update(generation, progress=progress)

    def _on_sync_progress(self, generation: int, tracker: SyncTracker) -> None:
        with self._lock:
            current = self._snapshot.progress
            progress = tracker.progress()
            if (
                current.phase == EngineState.SYNCING
                and progress.files_processed < current.files_processed
            ):
                return
            self._update(
                generation,
                progress=progress,
                report_text=tracker.report_text,
                error_text=tracker.error_text,
            )

    # ------------------------------------------------------------------
    # Snapshot publication
    # ------------------------------------------------------------------

    def _transition(self, generation: int, state: EngineState, **changes) -> bool:
        with self._lock:
            current = self._snapshot.state
            if generation != self._generation:
                logger.debug(
                    "Dropping stale transition to %s from #%d", state.value, generation
                )
                return False
            if state not in _TRANSITIONS[current]:
                raise InvalidStateError(
                    f"Invalid transition {current.value} -> {state.value}"
                )
            logger.debug("State %s -> %s", current.value, state.value)
            return self._update(generation, state=state, **changes)

    def _update(self, generation: int, **changes) -> bool:
        with self._lock:
            if generation != self._generation:
                logger.debug("Dropping stale update from #%d", generation)
                return False
            self._snapshot = self._snapshot.model_copy(
                update={"generation": generation, **changes}
            )
            snapshot = self._snapshot
            for observer in list(self._observers):
                try:
                    observer(snapshot)
                except Exception:
                    logger.exception("Observer raised")
            return True


def _final_message(outcome: OperationOutcome) -> str:
    if outcome.status == OutcomeStatus.SUCCESS:
        return "Backup complete."
    if outcome.status == OutcomeStatus.CANCELLED:
        if outcome.error_type == CancelledByUser.__name__:
            return "Backup cancelled; nothing was deleted."
        return "Backup stopped."
    return f"Backup failed: {outcome.error_text}"
