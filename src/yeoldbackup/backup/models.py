"""Pydantic models for the backup engine.

Defines the data contracts shared by the parser, analyzer, executor,
supervisor and orchestrator:

- ``SyncRequest``: the source/target pair for one operation.
- ``ChangeKind`` / ``ItemizedChange``: one parsed itemized change line.
- ``DryRunResult``: counts derived from the simulate-only pass.
- ``EngineState`` / ``ProgressState``: the orchestrator's phase and progress.
- ``OutcomeStatus`` / ``OperationOutcome``: terminal value of an operation.
- ``ProcessExit``: how the supervised rsync process ended.
- ``BackupSnapshot``: immutable view pushed to observers.

All models are frozen (immutable); updates go through ``model_copy``.
"""

from __future__ import annotations

import os
from enum import Enum

from pydantic import BaseModel, Field, model_validator

# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


class SyncRequest(BaseModel):
    """Source and target directories for one mirror operation.

    Attributes:
        source_path: Absolute path of the directory to copy from.
        target_path: Absolute path of the directory to mirror onto.
    """

    source_path: str
    target_path: str

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_paths(self) -> SyncRequest:
        for label, path in (
            ("source_path", self.source_path),
            ("target_path", self.target_path),
        ):
            if not path or not os.path.isabs(path):
                raise ValueError(f"{label} must be an absolute path: {path!r}")
        if os.path.normpath(self.source_path) == os.path.normpath(
            self.target_path
        ):
            raise ValueError("source_path and target_path must differ")
        return self

    @property
    def key(self) -> str:
        """Stable identifier for the (source, target) pair."""
        return f"{os.path.normpath(self.source_path)} -> {os.path.normpath(self.target_path)}"


# ---------------------------------------------------------------------------
# Itemized changes and dry-run result
# ---------------------------------------------------------------------------


class ChangeKind(str, Enum):
    """Kind of change reported by one itemized output line."""

    TRANSFER = "transfer"
    DELETE = "delete"
    OTHER = "other"


class ItemizedChange(BaseModel):
    """One parsed itemized change record.

    Attributes:
        kind: Whether the path is transferred, deleted, or only touched.
        path: Path relative to the source/target root.
    """

    kind: ChangeKind
    path: str

    model_config = {"frozen": True}


class DryRunResult(BaseModel):
    """What the simulate-only pass says the real pass would do.

    Attributes:
        needs_sync: True when at least one change would be made.
        transfer_count: Files that would be created or updated.
        deletion_count: Paths that would be deleted from the target.
        total_source_count: Number of files in the source tree.
        changes: Itemized changes seen during the dry run, for display.
    """

    needs_sync: bool
    transfer_count: int = Field(default=0, ge=0)
    deletion_count: int = Field(default=0, ge=0)
    total_source_count: int = Field(default=0, ge=0)
    changes: tuple[ItemizedChange, ...] = ()

    model_config = {"frozen": True}

    @property
    def deletions(self) -> list[ItemizedChange]:
        """Changes of kind DELETE."""
        return [c for c in self.changes if c.kind == ChangeKind.DELETE]

    @property
    def transfers(self) -> list[ItemizedChange]:
        """Changes of kind TRANSFER."""
        return [c for c in self.changes if c.kind == ChangeKind.TRANSFER]


# ---------------------------------------------------------------------------
# Orchestrator state and progress
# ---------------------------------------------------------------------------


class EngineState(str, Enum):
    """States of the backup orchestrator."""

    IDLE = "idle"
    CALCULATING = "calculating"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    SYNCING = "syncing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            EngineState.COMPLETED,
            EngineState.FAILED,
            EngineState.CANCELLED,
        )

    @property
    def is_stable(self) -> bool:
        """True for states from which a new request may start."""
        return self == EngineState.IDLE or self.is_terminal


class ProgressState(BaseModel):
    """Snapshot of the running operation's progress.

    Attributes:
        phase: Orchestrator state the progress belongs to.
        files_processed: Transfers seen so far in the real pass.
        files_total: Transfer estimate from the dry run.
        current_file_name: Most recently transferred path.
        fraction_complete: Progress in ``[0, 1]``.
        message: Human-readable status line.
    """

    phase: EngineState = EngineState.IDLE
    files_processed: int = Field(default=0, ge=0)
    files_total: int = Field(default=0, ge=0)
    current_file_name: str = ""
    fraction_complete: float = Field(default=0.0, ge=0.0, le=1.0)
    message: str = ""

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Outcome
# ---------------------------------------------------------------------------


class OutcomeStatus(str, Enum):
    """Terminal status of an operation."""

    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OperationOutcome(BaseModel):
    """Terminal value of one backup operation.

    Attributes:
        status: SUCCESS, FAILED, or CANCELLED.
        exit_code: rsync exit code, or ``None`` when no real process exited
            (never launched, or termination could not be confirmed).
        error_text: Consolidated error message, empty on success.
        report_text: Full transcript of the operation for display.
        error_type: Name of the error class that ended the operation.
        source_path: Source directory of the request.
        target_path: Target directory of the request.
        started_at: ISO 8601 timestamp when the operation started.
        completed_at: ISO 8601 timestamp when the outcome was created.
    """

    status: OutcomeStatus
    exit_code: int | None = None
    error_text: str = ""
    report_text: str = ""
    error_type: str | None = None
    source_path: str = ""
    target_path: str = ""
    started_at: str | None = None
    completed_at: str | None = None

    model_config = {"frozen": True}

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS


class ProcessExit(BaseModel):
    """How a supervised process ended.

    Attributes:
        returncode: OS exit status; negative for a signal, ``None`` when the
            process was abandoned without a confirmed exit.
        cancelled: True if the exit followed a ``cancel()`` request.
        termination_failed: True if the process ignored both signals and the
            supervisor gave up waiting.
    """

    returncode: int | None
    cancelled: bool = False
    termination_failed: bool = False

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Observer snapshot
# ---------------------------------------------------------------------------


class BackupSnapshot(BaseModel):
    """Read-only view of the orchestrator published to observers."""

    generation: int = 0
    state: EngineState = EngineState.IDLE
    progress: ProgressState = Field(default_factory=ProgressState)
    report_text: str = ""
    error_text: str = ""
    dry_run: DryRunResult | None = None
    outcome: OperationOutcome | None = None
    request: SyncRequest | None = None

    model_config = {"frozen": True}
