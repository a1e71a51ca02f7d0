"""
YAML config files for yeoldbackup.

Files are found by convention (explicit env var, project directory, user
directories), may pull in fragments with ``!include``, and may reference
environment variables as ``${VAR}`` or ``${VAR:-fallback}``.  When several
files exist they are layered: a higher-precedence file replaces whole
top-level sections of a lower one.

Usage:
    from yeoldbackup.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "YEOLDBACKUP_CONFIG"
_PROJECT_DIR = ".yeoldbackup"

# ---------------------------------------------------------------------------
# Environment references
# ---------------------------------------------------------------------------

# ${NAME} or ${NAME:-fallback}; an unterminated "${" never matches.
_ENV_REF = re.compile(r"\$\{(?P<name>[^}:]+?)(?::-(?P<fallback>.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Expand environment references in *value*.

    An unset or empty variable expands to its fallback, or to ``""`` when
    none is given.
    """
    return _ENV_REF.sub(
        lambda m: os.environ.get(m.group("name")) or m.group("fallback") or "",
        value,
    )


def _interpolate_recursive(obj: Any) -> Any:
    """Expand references in every string of a parsed YAML document."""
    if isinstance(obj, dict):
        return {key: _interpolate_recursive(item) for key, item in obj.items()}
    if isinstance(obj, list):
        return [_interpolate_recursive(item) for item in obj]
    if isinstance(obj, str):
        return interpolate_env_vars(obj)
    return obj


# ---------------------------------------------------------------------------
# !include
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """``SafeLoader`` that understands ``!include <path>``.

    Relative include paths are resolved against the including file.  The
    chain of files being loaded travels with each loader, so a file that
    includes itself, directly or not, fails with ``ValueError``.
    """

    def __init__(self, stream, chain: tuple[Path, ...] = ()) -> None:
        super().__init__(stream)
        self.chain = chain

    def include(self, node: yaml.ScalarNode) -> Any:
        current = self.chain[-1]
        requested = Path(self.construct_scalar(node)).expanduser()
        path = (current.parent / requested).resolve()

        if path in self.chain:
            cycle = " -> ".join(str(p) for p in (*self.chain, path))
            raise ValueError(f"Circular include detected: {cycle}")
        if not path.is_file():
            raise FileNotFoundError(
                f"Include file not found: {path} (referenced from {current})"
            )
        return _load_yaml_with_includes(path, _chain=self.chain)


ConfigLoader.add_constructor("!include", ConfigLoader.include)


def _load_yaml_with_includes(path: Path, *, _chain: tuple[Path, ...] = ()) -> Any:
    """Parse one YAML file, following ``!include`` directives."""
    path = Path(path).resolve()
    with open(path, encoding="utf-8") as fh:
        loader = ConfigLoader(fh, chain=(*_chain, path))
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def _candidate_paths() -> list[Path]:
    project = Path.cwd() / _PROJECT_DIR
    home = Path.home()
    candidates = [
        project / "config.yml",
        project / "config.yaml",
        home / ".config" / "yeoldbackup" / "config.yml",
        home / _PROJECT_DIR / "config.yaml",
    ]
    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.insert(0, Path(explicit).expanduser().resolve())
    return candidates


def discover_config_files() -> list[Path]:
    """Existing config files, highest precedence first.

    Order: ``$YEOLDBACKUP_CONFIG``, ``./.yeoldbackup/config.yml``,
    ``./.yeoldbackup/config.yaml``, ``~/.config/yeoldbackup/config.yml``,
    ``~/.yeoldbackup/config.yaml``.
    """
    return [path for path in _candidate_paths() if path.exists()]


# ---------------------------------------------------------------------------
# Starter file
# ---------------------------------------------------------------------------

_STARTER_CONFIG = """\
# yeoldbackup configuration
#
# Engine settings can also be set via environment variables:
#   YEOLDBACKUP_RSYNC_PATH, YEOLDBACKUP_MIN_DELETIONS,
#   YEOLDBACKUP_MIN_FRACTION, YEOLDBACKUP_HISTORY_DIR, YEOLDBACKUP_DEBUG
#
# backup:
#   rsync_path: /usr/bin/rsync
#   excludes:
#     - .Spotlight-V100/
#     - .fseventsd/
#     - .Trashes
#     - .TemporaryItems/
#     - .DS_Store
#   terminate_grace: 0.5
#   interrupt_grace: 1.0
#   history_dir: ~/.yeoldbackup
#
# Deletions need confirmation only when BOTH thresholds are met:
#
# safety:
#   min_deletions: 5
#   min_fraction: 0.10
#
# logging:
#   level: INFO
#   file: null
"""


def resolve_config_path() -> Path:
    """The config file in effect, or the project-level default location.

    Nothing is created here; see ``ensure_config()``.
    """
    found = discover_config_files()
    return found[0] if found else Path.cwd() / _PROJECT_DIR / "config.yml"


def ensure_config(target: Path | None = None) -> Path:
    """Return the config file in effect, writing a commented starter first
    if there is none.

    Args:
        target: Where to write the starter file; defaults to
            ``resolve_config_path()``.
    """
    found = discover_config_files()
    if found:
        logger.debug("Config file already exists: %s", found[0])
        return found[0]

    path = Path(target) if target is not None else resolve_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", path)
    return path


# ---------------------------------------------------------------------------
# Layering
# ---------------------------------------------------------------------------


def load_hierarchical_config() -> dict[str, Any]:
    """Load every discovered file and layer them, lowest precedence first.

    Top-level sections of a later file replace those of an earlier one
    wholesale.  Environment references are expanded after layering.  With
    no config files the result is ``{}``.
    """
    paths = discover_config_files()
    if not paths:
        logger.debug("No config files found, using built-in defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        document = _load_yaml_with_includes(path)
        if isinstance(document, dict):
            merged.update(document)
        elif document is not None:
            logger.warning(
                "Ignoring config file %s: top level is a %s, not a mapping",
                path,
                type(document).__name__,
            )
    return _interpolate_recursive(merged)
