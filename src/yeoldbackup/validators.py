"""
Input validation for backup requests.

Checks a user-chosen source/target pair before any rsync process is
launched, the way a directory picker would before enabling its start
button.
"""

import os

from pydantic import ValidationError

from yeoldbackup.backup.models import SyncRequest

# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Source folder")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


def validate_directory(
    path: str, field_name: str, writable: bool = False
) -> tuple[bool, str]:
    """
    Validate that *path* names an existing, accessible directory.

    Args:
        path: Directory path to check
        field_name: Label used in the error message
        writable: Also require write permission

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.
    """
    if not path or not path.strip():
        return (False, format_validation_error(field_name, "cannot be empty"))

    if not os.path.isabs(path):
        return (
            False,
            format_validation_error(field_name, "must be an absolute path"),
        )

    if not os.path.isdir(path):
        return (
            False,
            format_validation_error(field_name, f"'{path}' is not a directory"),
        )

    if not os.access(path, os.R_OK | os.X_OK):
        return (
            False,
            format_validation_error(field_name, f"'{path}' is not readable"),
        )

    if writable and not os.access(path, os.W_OK):
        return (
            False,
            format_validation_error(field_name, f"'{path}' is not writable"),
        )

    return (True, "")


def validate_request(source: str, target: str) -> tuple[bool, str]:
    """
    Validate a source/target pair.

    Validation rules:
        - Both paths non-empty and absolute
        - Source is a readable directory
        - Target is a writable directory
        - Source and target are not the same directory
    """
    ok, error = validate_directory(source, "Source folder")
    if not ok:
        return (False, error)

    ok, error = validate_directory(target, "Target folder", writable=True)
    if not ok:
        return (False, error)

    if os.path.realpath(source) == os.path.realpath(target):
        return (
            False,
            format_validation_error(
                "Target folder", "must differ from the source folder"
            ),
        )

    return (True, "")


def build_request(source: str, target: str) -> SyncRequest:
    """Validate *source* and *target* and build a ``SyncRequest``.

    Relative paths are made absolute against the current directory first.

    Raises:
        ValueError: If the pair does not validate.
    """
    source = os.path.abspath(os.path.expanduser(source)) if source else source
    target = os.path.abspath(os.path.expanduser(target)) if target else target

    ok, error = validate_request(source, target)
    if not ok:
        raise ValueError(error)

    try:
        return SyncRequest(source_path=source, target_path=target)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc
