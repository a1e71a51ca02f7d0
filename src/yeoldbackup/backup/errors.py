"""Error taxonomy for the backup engine.

Analysis-phase errors (``DryRun*``) abort an operation before any
destructive action can start.  Execution-phase problems are accumulated by
the executor and surfaced once, in the ``OperationOutcome``.  The last three
classes signal misuse of the engine's API rather than runtime failures.
"""


class BackupError(Exception):
    """Base class for all backup engine errors.

    Attributes:
        detail: Human-readable detail, usually stderr text or an OS error.
    """

    default_message = "Backup failed"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        message = self.default_message
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class LaunchFailed(BackupError):
    """The rsync process could not be spawned."""

    default_message = "Failed to launch rsync"


class DryRunLaunchFailed(LaunchFailed):
    """The simulate-only pass could not be spawned."""

    default_message = "Failed to launch rsync dry run"


class DryRunFailed(BackupError):
    """The dry run exited non-zero without a usable stats block."""

    default_message = "Dry run failed"


class DryRunParseFailed(BackupError):
    """The dry run exited cleanly but its output could not be interpreted."""

    default_message = "Could not determine pending changes from dry run output"


class SyncFailed(BackupError):
    """The real pass exited non-zero or reported stream errors."""

    default_message = "Sync failed"


class ProcessTerminationFailed(BackupError):
    """rsync did not exit within the bounded wait after being stopped."""

    default_message = "rsync did not terminate after being stopped"


class CancelledByUser(BackupError):
    """The user declined the deletion confirmation."""

    default_message = "Deletion not confirmed; no changes were made"


class OperationCancelled(BackupError):
    """The user stopped a running rsync process and it exited."""

    default_message = "Backup stopped by user"


class ProcessAlreadyRunning(RuntimeError):
    """A second process was started while one is still owned."""


class OperationInProgress(RuntimeError):
    """A new request was submitted while another is in flight."""


class InvalidStateError(RuntimeError):
    """A command was issued in a state that does not accept it."""
