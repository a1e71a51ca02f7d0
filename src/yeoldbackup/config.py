"""Runtime configuration for the backup engine.

Reads engine settings from CLI args, environment variables, .env files,
and YAML config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    YEOLDBACKUP_RSYNC_PATH: Path to the rsync executable (default: /usr/bin/rsync)
    YEOLDBACKUP_MIN_DELETIONS: Deletion count that may trigger confirmation (default: 5)
    YEOLDBACKUP_MIN_FRACTION: Deletion fraction that may trigger confirmation (default: 0.10)
    YEOLDBACKUP_HISTORY_DIR: Directory for history.json (default: ~/.yeoldbackup)
    YEOLDBACKUP_DEBUG: Enable debug logging (optional, default: false)
"""

import logging
import os
from dataclasses import dataclass

from yeoldbackup.backup.command import DEFAULT_EXCLUDES, DEFAULT_RSYNC_PATH
from yeoldbackup.backup.gate import DEFAULT_MIN_DELETIONS, DEFAULT_MIN_FRACTION

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_DIR = "~/.yeoldbackup"


@dataclass
class Config:
    rsync_path: str = DEFAULT_RSYNC_PATH
    excludes: tuple[str, ...] = DEFAULT_EXCLUDES
    min_deletions: int = DEFAULT_MIN_DELETIONS
    min_fraction: float = DEFAULT_MIN_FRACTION
    terminate_grace: float = 0.5
    interrupt_grace: float = 1.0
    drain_grace: float = 0.2
    history_dir: str = DEFAULT_HISTORY_DIR
    debug: bool = False


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If the rsync path is not absolute or a threshold or
            timeout is out of range.
    """
    config.rsync_path = config.rsync_path.strip()

    if not config.rsync_path:
        raise ValueError(
            "rsync path cannot be empty. Set YEOLDBACKUP_RSYNC_PATH environment variable."
        )
    if not os.path.isabs(config.rsync_path):
        raise ValueError(
            f"Invalid rsync path '{config.rsync_path}': must be an absolute path"
        )

    if config.min_deletions < 0:
        raise ValueError(
            f"Invalid min_deletions {config.min_deletions}: must be >= 0"
        )
    if not (0.0 <= config.min_fraction <= 1.0):
        raise ValueError(
            f"Invalid min_fraction {config.min_fraction}: must be between 0 and 1"
        )

    for name in ("terminate_grace", "interrupt_grace", "drain_grace"):
        if getattr(config, name) < 0:
            raise ValueError(f"Invalid {name}: must be >= 0")

    if not os.path.exists(config.rsync_path):
        logger.warning(
            "rsync executable not found at %s; backups will fail to launch",
            config.rsync_path,
        )


def _number_setting(env_var, cast, fallback, default, expected):
    """Read a numeric setting from *env_var*, else the YAML value, else *default*."""
    raw = os.getenv(env_var)
    if raw is None:
        return default if fallback is None else cast(fallback)
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {env_var} '{raw}': must be {expected}"
        ) from None


def load_config(
    rsync_path: str | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        rsync_path: Override rsync path (takes precedence over env var and YAML).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Flat dict of values from the YAML ``backup`` and
            ``safety`` sections.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If an environment value cannot be parsed or the final
            configuration is invalid.
    """
    fb = yaml_fallbacks or {}

    # --- String fields: CLI > env > YAML > default ---

    final_rsync = (
        rsync_path
        or os.getenv("YEOLDBACKUP_RSYNC_PATH")
        or fb.get("rsync_path")
        or DEFAULT_RSYNC_PATH
    )

    final_history = (
        os.getenv("YEOLDBACKUP_HISTORY_DIR")
        or fb.get("history_dir")
        or DEFAULT_HISTORY_DIR
    )

    # --- Boolean fields: CLI > env > YAML > default ---

    def get_bool_env(key: str) -> bool | None:
        """Return True/False from env var, or None if unset."""
        val = os.getenv(key)
        if val is None:
            return None
        return val.lower() in ("true", "1", "yes", "on")

    if debug:
        final_debug = True
    else:
        env_debug = get_bool_env("YEOLDBACKUP_DEBUG")
        if env_debug is not None:
            final_debug = env_debug
        else:
            final_debug = bool(fb.get("debug", False))

    # --- Numeric fields: env > YAML > default ---

    final_min_deletions = _number_setting(
        "YEOLDBACKUP_MIN_DELETIONS", int, fb.get("min_deletions"),
        DEFAULT_MIN_DELETIONS, "a whole number",
    )
    final_min_fraction = _number_setting(
        "YEOLDBACKUP_MIN_FRACTION", float, fb.get("min_fraction"),
        DEFAULT_MIN_FRACTION, "a number between 0 and 1",
    )

    # --- YAML-only fields ---

    excludes = fb.get("excludes")
    final_excludes = (
        tuple(excludes) if excludes is not None else DEFAULT_EXCLUDES
    )

    config = Config(
        rsync_path=final_rsync,
        excludes=final_excludes,
        min_deletions=final_min_deletions,
        min_fraction=final_min_fraction,
        terminate_grace=float(fb.get("terminate_grace", 0.5)),
        interrupt_grace=float(fb.get("interrupt_grace", 1.0)),
        drain_grace=float(fb.get("drain_grace", 0.2)),
        history_dir=final_history,
        debug=final_debug,
    )

    validate_config(config)

    return config
