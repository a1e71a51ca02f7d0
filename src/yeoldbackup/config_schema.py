"""Unified configuration schema for yeoldbackup.

Defines Pydantic models for the YAML config structure with dedicated
sections for the backup engine, the deletion safety gate, and logging.

Usage:
    from yeoldbackup.config_schema import build_config, to_fallbacks

    raw = load_hierarchical_config()
    unified = build_config(raw)
    config = load_config(yaml_fallbacks=to_fallbacks(unified))
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from yeoldbackup.backup.command import DEFAULT_EXCLUDES, DEFAULT_RSYNC_PATH
from yeoldbackup.backup.gate import DEFAULT_MIN_DELETIONS, DEFAULT_MIN_FRACTION

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class BackupConfig(BaseModel):
    """rsync invocation and process supervision settings.

    All fields are optional; env vars and CLI args can supply them at
    runtime instead.
    """

    rsync_path: str = Field(
        default=DEFAULT_RSYNC_PATH, description="Path to the rsync executable"
    )
    excludes: tuple[str, ...] = Field(
        default=DEFAULT_EXCLUDES,
        description="Patterns passed to rsync as --exclude",
    )
    terminate_grace: float = Field(
        default=0.5,
        ge=0,
        description="Seconds to wait after SIGTERM before sending SIGINT",
    )
    interrupt_grace: float = Field(
        default=1.0,
        ge=0,
        description="Seconds to wait after SIGINT before giving up",
    )
    drain_grace: float = Field(
        default=0.2,
        ge=0,
        description="Seconds to wait for trailing output after exit",
    )
    history_dir: str | None = Field(
        default=None, description="Directory for history.json"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    model_config = {"frozen": True}


class SafetyConfig(BaseModel):
    """Deletion gate thresholds.

    Confirmation is required only when both thresholds are met.
    """

    min_deletions: int = Field(
        default=DEFAULT_MIN_DELETIONS,
        ge=0,
        description="Minimum deletion count that can require confirmation",
    )
    min_fraction: float = Field(
        default=DEFAULT_MIN_FRACTION,
        ge=0,
        le=1,
        description="Minimum deletion fraction that can require confirmation",
    )

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has sensible defaults, so ``UnifiedConfig()``
    (zero-config) is always valid.
    """

    backup: BackupConfig = Field(default_factory=BackupConfig)
    safety: SafetyConfig = Field(default_factory=SafetyConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Factory function
# ---------------------------------------------------------------------------


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Handles missing sections gracefully; anything absent gets defaults.

    Args:
        raw_data: Merged configuration dictionary.

    Returns:
        Validated ``UnifiedConfig`` instance.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)


def to_fallbacks(unified: UnifiedConfig) -> dict:
    """Flatten the ``backup`` and ``safety`` sections for ``load_config()``.

    ``history_dir`` is omitted when unset so the built-in default applies.
    """
    fallbacks = unified.backup.model_dump(exclude_none=True)
    fallbacks["excludes"] = list(unified.backup.excludes)
    fallbacks.update(unified.safety.model_dump())
    return fallbacks
