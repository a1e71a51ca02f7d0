"""Tests for yeoldbackup.backup.reporter: preview, prompt and outcome text."""

from yeoldbackup.backup.gate import DeletionPolicy
from yeoldbackup.backup.models import (
    ChangeKind,
    DryRunResult,
    ItemizedChange,
    OperationOutcome,
    OutcomeStatus,
    SyncRequest,
)
from yeoldbackup.backup.reporter import (
    format_confirmation_prompt,
    format_dry_run_preview,
    format_outcome,
    outcome_to_json,
)

REQUEST = SyncRequest(source_path="/data/src", target_path="/data/dst")


def _result(transfers=0, deletions=0, total=0) -> DryRunResult:
    changes = tuple(
        ItemizedChange(kind=ChangeKind.TRANSFER, path=f"new/{i}.txt")
        for i in range(transfers)
    ) + tuple(
        ItemizedChange(kind=ChangeKind.DELETE, path=f"old/{i}.txt")
        for i in range(deletions)
    )
    return DryRunResult(
        needs_sync=bool(transfers or deletions),
        transfer_count=transfers,
        deletion_count=deletions,
        total_source_count=total,
        changes=changes,
    )


class TestFormatDryRunPreview:
    """Tests for format_dry_run_preview()."""

    def test_no_changes(self):
        text = format_dry_run_preview(REQUEST, _result(total=12))
        assert text.startswith("DRY RUN -- No changes will be made")
        assert "Source: /data/src" in text
        assert "Target: /data/dst" in text
        assert text.endswith("No changes needed.")

    def test_sections(self):
        text = format_dry_run_preview(REQUEST, _result(transfers=2, deletions=1, total=9))
        assert "2 to transfer, 1 to delete (source has 9 files)" in text
        assert "[TRANSFER]\n  new/0.txt\n  new/1.txt" in text
        assert "[DELETE]\n  old/0.txt" in text

    def test_empty_section_omitted(self):
        text = format_dry_run_preview(REQUEST, _result(transfers=1, total=3))
        assert "[DELETE]" not in text

    def test_long_lists_truncated(self):
        text = format_dry_run_preview(REQUEST, _result(deletions=25, total=30))
        assert "  old/19.txt" in text
        assert "  old/20.txt" not in text
        assert "... (5 more)" in text


class TestFormatConfirmationPrompt:
    """Tests for format_confirmation_prompt()."""

    def test_counts_and_fraction(self):
        text = format_confirmation_prompt(_result(deletions=8, total=40))
        assert text.startswith("WARNING: 8 files (20% of the source)")

    def test_sample_limited_to_five(self):
        text = format_confirmation_prompt(_result(deletions=8, total=40))
        assert "  old/4.txt" in text
        assert "  old/5.txt" not in text

    def test_policy_thresholds_shown(self):
        policy = DeletionPolicy(min_deletions=5, min_fraction=0.1)
        text = format_confirmation_prompt(_result(deletions=8, total=40), policy)
        assert "5+ files and 10%+ of the source" in text

    def test_empty_source_does_not_divide_by_zero(self):
        text = format_confirmation_prompt(_result(deletions=5, total=0))
        assert "5 files" in text


class TestFormatOutcome:
    """Tests for format_outcome() and outcome_to_json()."""

    def test_success_header(self):
        outcome = OperationOutcome(
            status=OutcomeStatus.SUCCESS,
            exit_code=0,
            report_text="sent 10 bytes",
            source_path="/data/src",
            target_path="/data/dst",
        )
        text = format_outcome(outcome)
        assert text.splitlines()[0] == "Backup complete."
        assert "/data/src -> /data/dst" in text
        assert "Exit code: 0" in text
        assert "Report:\n  sent 10 bytes" in text
        assert "Errors:" not in text

    def test_failure_lists_errors(self):
        outcome = OperationOutcome(
            status=OutcomeStatus.FAILED,
            exit_code=23,
            error_text="rsync: link failed\nrsync error: some files",
        )
        text = format_outcome(outcome)
        assert text.startswith("Backup failed.")
        assert "Errors:\n  rsync: link failed\n  rsync error: some files" in text

    def test_cancelled_without_transcript(self):
        outcome = OperationOutcome(
            status=OutcomeStatus.CANCELLED, report_text="building file list"
        )
        text = format_outcome(outcome, transcript=False)
        assert text == "Backup stopped."

    def test_json_shape(self):
        outcome = OperationOutcome(
            status=OutcomeStatus.FAILED,
            exit_code=None,
            error_text="Unable to stop rsync",
            error_type="ProcessTerminationFailed",
            report_text="line one\nline two",
        )
        data = outcome_to_json(outcome)
        assert data["status"] == "failed"
        assert data["exit_code"] is None
        assert data["report"] == ["line one", "line two"]
        assert data["error"] == "Unable to stop rsync"
        assert data["error_type"] == "ProcessTerminationFailed"

    def test_json_success_has_no_error_keys(self):
        data = outcome_to_json(OperationOutcome(status=OutcomeStatus.SUCCESS))
        assert "error" not in data
        assert "error_type" not in data
