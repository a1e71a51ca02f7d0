"""One-way mirror engine built on rsync.

Public API for previewing and applying a source-to-target mirror with a
deletion safety gate in between.

Architecture
------------
Every operation is a **dry run followed by a real run**.  The dry run is
parsed into a ``DryRunResult``; if the pending deletions are large both in
absolute and relative terms the operation pauses for confirmation before
anything on the target is touched.

Modules:

- ``orchestrator`` -- ``BackupManager``: the observable state machine.
- ``supervisor``   -- ``ProcessSupervisor``: one rsync process, its pipes,
  and the bounded stop sequence.
- ``parser``       -- ``OutputParser``: chunk-to-line framing and line
  classification.
- ``analyzer``     -- ``DryRunAnalyzer``: simulate-only pass.
- ``executor``     -- ``SyncExecutor``: destructive pass with live progress.
- ``gate``         -- ``DeletionPolicy``: confirmation thresholds.
- ``command``      -- rsync argument construction.
- ``history``      -- ``JsonHistoryStore``: persisted outcomes.
- ``reporter``     -- Human-readable and JSON report formatting.
- ``models``       -- Immutable data contracts.
- ``errors``       -- Exception taxonomy.

Usage example
-------------
::

    from yeoldbackup.backup import (
        BackupManager, EngineState, SyncRequest, format_outcome,
    )

    manager = BackupManager()
    manager.subscribe(lambda snap: print(snap.state, snap.progress.message))
    manager.start(SyncRequest(source_path="/data", target_path="/mnt/mirror"))

    manager.wait(5)
    if manager.state == EngineState.AWAITING_CONFIRMATION:
        manager.confirm_deletion()
    manager.wait()
    print(format_outcome(manager.snapshot.outcome))
"""

from .analyzer import DryRunAnalyzer
from .errors import (
    BackupError,
    CancelledByUser,
    DryRunFailed,
    DryRunLaunchFailed,
    DryRunParseFailed,
    InvalidStateError,
    LaunchFailed,
    OperationCancelled,
    OperationInProgress,
    ProcessAlreadyRunning,
    ProcessTerminationFailed,
    SyncFailed,
)
from .executor import SyncExecutor
from .gate import DeletionPolicy, requires_confirmation
from .history import HistoryRecorder, JsonHistoryStore
from .models import (
    BackupSnapshot,
    DryRunResult,
    EngineState,
    OperationOutcome,
    OutcomeStatus,
    ProgressState,
    SyncRequest,
)
from .orchestrator import BackupManager
from .parser import OutputParser
from .reporter import (
    format_confirmation_prompt,
    format_dry_run_preview,
    format_outcome,
    outcome_to_json,
)
from .supervisor import ProcessSupervisor

__all__ = [
    "BackupError",
    "BackupManager",
    "BackupSnapshot",
    "CancelledByUser",
    "DeletionPolicy",
    "DryRunAnalyzer",
    "DryRunFailed",
    "DryRunLaunchFailed",
    "DryRunParseFailed",
    "DryRunResult",
    "EngineState",
    "HistoryRecorder",
    "InvalidStateError",
    "JsonHistoryStore",
    "LaunchFailed",
    "OperationCancelled",
    "OperationInProgress",
    "OperationOutcome",
    "OutcomeStatus",
    "OutputParser",
    "ProcessAlreadyRunning",
    "ProcessSupervisor",
    "ProcessTerminationFailed",
    "ProgressState",
    "SyncExecutor",
    "SyncFailed",
    "SyncRequest",
    "format_confirmation_prompt",
    "format_dry_run_preview",
    "format_outcome",
    "outcome_to_json",
    "requires_confirmation",
]
