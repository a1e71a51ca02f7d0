"""Deletion safety gate.

Decides whether a dry-run result deletes enough of the target to require
explicit confirmation.  Both thresholds must be met: a mirror that removes
one file out of one should not interrupt the user, but wiping most of a
large tree always should.  Everything here is pure.
"""

from __future__ import annotations

from dataclasses import dataclass

from yeoldbackup.backup.models import DryRunResult

DEFAULT_MIN_DELETIONS = 5
DEFAULT_MIN_FRACTION = 0.10


def deletion_fraction(deletion_count: int, total_source_count: int) -> float:
    """Fraction of the source tree that would be deleted.

    A total of ``0`` with pending deletions counts as a full wipe.
    """
    if total_source_count > 0:
        return deletion_count / total_source_count
    return 1.0 if deletion_count > 0 else 0.0


def requires_confirmation(
    deletion_count: int,
    total_source_count: int,
    min_deletions: int = DEFAULT_MIN_DELETIONS,
    min_fraction: float = DEFAULT_MIN_FRACTION,
) -> bool:
    """Return True iff both the count and the fraction thresholds are met."""
    return (
        deletion_count >= min_deletions
        and deletion_fraction(deletion_count, total_source_count) >= min_fraction
    )


@dataclass(frozen=True)
class GateDecision:
    requires_confirmation: bool
    deletion_count: int
    deletion_fraction: float


@dataclass(frozen=True)
class DeletionPolicy:
    """Configured thresholds for the deletion gate."""

    min_deletions: int = DEFAULT_MIN_DELETIONS
    min_fraction: float = DEFAULT_MIN_FRACTION

    def __post_init__(self) -> None:
        if self.min_deletions < 0:
            raise ValueError("min_deletions must be >= 0")
        if not 0.0 <= self.min_fraction <= 1.0:
            raise ValueError("min_fraction must be between 0 and 1")

    def evaluate(self, result: DryRunResult) -> GateDecision:
        fraction = deletion_fraction(
            result.deletion_count, result.total_source_count
        )
        return GateDecision(
            requires_confirmation=requires_confirmation(
                result.deletion_count,
                result.total_source_count,
                self.min_deletions,
                self.min_fraction,
            ),
            deletion_count=result.deletion_count,
            deletion_fraction=fraction,
        )
