"""rsync command-line construction.

The source path always gets a trailing separator so rsync copies the
*contents* of the source into the target rather than nesting the source
directory inside it.  The target path is passed without one.
"""

from __future__ import annotations

import os
import shlex

from yeoldbackup.backup.models import SyncRequest

DEFAULT_RSYNC_PATH = "/usr/bin/rsync"

# Platform metadata and temp directories that must never be mirrored.
DEFAULT_EXCLUDES: tuple[str, ...] = (
    ".Spotlight-V100/",
    ".fseventsd/",
    ".Trashes",
    ".TemporaryItems/",
    ".DS_Store",
)

DRY_RUN_FLAGS: tuple[str, ...] = (
    "-a",
    "--delete",
    "--dry-run",
    "--stats",
    "--itemize-changes",
    "-v",
)

SYNC_FLAGS: tuple[str, ...] = (
    "-a",
    "--delete",
    "--itemize-changes",
    "-v",
)


def normalize_source(path: str) -> str:
    """Return *path* with exactly one trailing separator."""
    return path if path.endswith(os.sep) else path + os.sep


def normalize_target(path: str) -> str:
    """Return *path* without trailing separators (the root stays ``/``)."""
    stripped = path.rstrip(os.sep)
    return stripped or os.sep


def exclude_args(excludes: tuple[str, ...] | list[str]) -> list[str]:
    args: list[str] = []
    for pattern in excludes:
        args.extend(["--exclude", pattern])
    return args


def build_dry_run_args(
    request: SyncRequest,
    excludes: tuple[str, ...] | list[str] = DEFAULT_EXCLUDES,
) -> list[str]:
    """Arguments for the simulate-only pass (no executable)."""
    return [
        *DRY_RUN_FLAGS,
        *exclude_args(excludes),
        normalize_source(request.source_path),
        normalize_target(request.target_path),
    ]


def build_sync_args(
    request: SyncRequest,
    excludes: tuple[str, ...] | list[str] = DEFAULT_EXCLUDES,
) -> list[str]:
    """Arguments for the real, destructive pass (no executable)."""
    return [
        *SYNC_FLAGS,
        *exclude_args(excludes),
        normalize_source(request.source_path),
        normalize_target(request.target_path),
    ]


def format_command(executable: str, args: list[str]) -> str:
    """Render a command for log output."""
    return shlex.join([executable, *args])
