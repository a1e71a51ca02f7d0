"""Backup report formatting functions.

Provides human-readable and machine-readable output for backup operations:

- ``format_dry_run_preview`` -- what the real pass would change.
- ``format_confirmation_prompt`` -- the deletion warning shown before a
  destructive run.
- ``format_outcome`` -- post-run summary plus transcript.
- ``outcome_to_json`` -- structured dict for ``--json`` output.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .gate import DeletionPolicy
    from .models import DryRunResult, OperationOutcome, SyncRequest

from .gate import deletion_fraction
from .models import OutcomeStatus

# Keep the preview readable for large trees.
_PREVIEW_LIMIT = 20

# ------------------------------------------------------------------
# Dry-run preview
# ------------------------------------------------------------------


def format_dry_run_preview(
    request: SyncRequest, result: DryRunResult
) -> str:
    """Format a dry-run result grouped into transfers and deletions.

    Args:
        request: The source/target pair.
        result: The dry-run result.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []
    lines.append("DRY RUN -- No changes will be made")
    lines.append(f"Source: {request.source_path}")
    lines.append(f"Target: {request.target_path}")
    lines.append("")

    if not result.needs_sync:
        lines.append("No changes needed.")
        return "\n".join(lines)

    lines.append(
        f"{result.transfer_count} to transfer, "
        f"{result.deletion_count} to delete "
        f"(source has {result.total_source_count} files)"
    )
    lines.append("")

    for label, changes in (
        ("TRANSFER", result.transfers),
        ("DELETE", result.deletions),
    ):
        if not changes:
            continue
        lines.append(f"[{label}]")
        for change in changes[:_PREVIEW_LIMIT]:
            lines.append(f"  {change.path}")
        if len(changes) > _PREVIEW_LIMIT:
            lines.append(f"  ... ({len(changes) - _PREVIEW_LIMIT} more)")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Confirmation prompt
# ------------------------------------------------------------------


def format_confirmation_prompt(
    result: DryRunResult, policy: DeletionPolicy | None = None
) -> str:
    """Format the warning shown before deletions are applied."""
    fraction = deletion_fraction(
        result.deletion_count, result.total_source_count
    )
    lines = [
        f"WARNING: {result.deletion_count} files "
        f"({fraction:.0%} of the source) will be deleted from the target.",
    ]
    sample = result.deletions[:5]
    if sample:
        lines.append("For example:")
        for change in sample:
            lines.append(f"  {change.path}")
    if policy is not None:
        lines.append(
            f"(Confirmation is required at {policy.min_deletions}+ files "
            f"and {policy.min_fraction:.0%}+ of the source.)"
        )
    return "\n".join(lines)


# ------------------------------------------------------------------
# Outcome
# ------------------------------------------------------------------

_STATUS_HEADERS = {
    OutcomeStatus.SUCCESS: "Backup complete.",
    OutcomeStatus.FAILED: "Backup failed.",
    OutcomeStatus.CANCELLED: "Backup stopped.",
}


def format_outcome(outcome: OperationOutcome, transcript: bool = True) -> str:
    """Format a terminal outcome as human-readable text.

    Args:
        outcome: The operation outcome.
        transcript: Include the full report transcript.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = [_STATUS_HEADERS[outcome.status]]
    if outcome.source_path or outcome.target_path:
        lines.append(f"{outcome.source_path} -> {outcome.target_path}")
    if outcome.started_at:
        lines.append(f"Started: {outcome.started_at}")
    if outcome.completed_at:
        lines.append(f"Completed: {outcome.completed_at}")
    if outcome.exit_code is not None:
        lines.append(f"Exit code: {outcome.exit_code}")
    lines.append("")

    if outcome.error_text:
        lines.append("Errors:")
        for line in outcome.error_text.splitlines():
            lines.append(f"  {line}")
        lines.append("")

    if transcript and outcome.report_text:
        lines.append("Report:")
        for line in outcome.report_text.splitlines():
            lines.append(f"  {line}")
        lines.append("")

    return "\n".join(lines).rstrip()


def outcome_to_json(outcome: OperationOutcome) -> dict:
    """Convert an outcome to a structured dict for JSON serialisation."""
    entry: dict = {
        "status": outcome.status.value,
        "source_path": outcome.source_path,
        "target_path": outcome.target_path,
        "exit_code": outcome.exit_code,
        "started_at": outcome.started_at,
        "completed_at": outcome.completed_at,
        "report": outcome.report_text.splitlines(),
    }
    if outcome.error_text:
        entry["error"] = outcome.error_text
    if outcome.error_type:
        entry["error_type"] = outcome.error_type
    return entry
