"""Command-line front end for the backup engine.

Runs one mirror operation from SOURCE to TARGET, renders progress on
stderr, asks before large deletions, and prints the final report on stdout.
Ctrl-C stops the running rsync process.
"""

import argparse
import json
import logging
import queue
import sys
import threading
from pathlib import Path

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from . import __version__
from .backup import (
    BackupError,
    BackupManager,
    BackupSnapshot,
    DryRunAnalyzer,
    EngineState,
    JsonHistoryStore,
    ProcessSupervisor,
    SyncRequest,
    format_dry_run_preview,
    format_outcome,
    outcome_to_json,
)
from .config import Config, load_config
from .config_loader import (
    discover_config_files,
    ensure_config,
    load_hierarchical_config,
)
from .config_schema import build_config, to_fallbacks
from .logger import setup_logging
from .validators import build_request

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2
EXIT_CANCELLED = 130

_EXIT_CODES = {
    EngineState.COMPLETED: EXIT_OK,
    EngineState.FAILED: EXIT_FAILED,
    EngineState.CANCELLED: EXIT_CANCELLED,
}


def _stderr_print(msg: str, end: str = "\n") -> None:
    print(msg, file=sys.stderr, end=end, flush=True)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def _load_settings(args: argparse.Namespace) -> tuple[Config, str | None]:
    """Resolve configuration: CLI > env (.env loaded first) > YAML > defaults.

    Returns:
        The validated ``Config`` and the log file named in YAML, if any.

    Raises:
        ValueError: If any source holds an invalid value.
    """
    load_dotenv()

    yaml_fallbacks: dict | None = None
    log_file: str | None = None
    config_files = discover_config_files()
    if config_files:
        try:
            unified = build_config(load_hierarchical_config())
        except (ValidationError, yaml.YAMLError, OSError) as exc:
            raise ValueError(
                f"Invalid config file {config_files[0]}: {exc}"
            ) from exc
        yaml_fallbacks = to_fallbacks(unified)
        log_file = unified.logging.file
        logger.debug("Using config file: %s", config_files[0])

    config = load_config(
        rsync_path=args.rsync,
        debug=args.debug,
        yaml_fallbacks=yaml_fallbacks,
    )
    return config, log_file


def _make_supervisor(config: Config) -> ProcessSupervisor:
    return ProcessSupervisor(
        terminate_grace=config.terminate_grace,
        interrupt_grace=config.interrupt_grace,
        drain_grace=config.drain_grace,
    )


# ---------------------------------------------------------------------------
# Preview (--dry-run)
# ---------------------------------------------------------------------------


def preview(config: Config, request: SyncRequest, as_json: bool = False) -> int:
    """Run only the simulate-only pass and print what would change."""
    supervisor = _make_supervisor(config)
    analyzer = DryRunAnalyzer(supervisor, config.rsync_path, config.excludes)
    box: dict = {}

    def work() -> None:
        try:
            box["result"] = analyzer.run(request)
        except BackupError as exc:
            box["error"] = exc

    worker = threading.Thread(target=work, name="yeoldbackup-preview", daemon=True)
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.1)
        except KeyboardInterrupt:
            _stderr_print("\nStopping...")
            supervisor.cancel()

    error = box.get("error")
    if error is not None:
        if as_json:
            entry = {
                "status": "failed",
                "error": str(error),
                "error_type": type(error).__name__,
            }
            print(json.dumps(entry, indent=2))
        else:
            _stderr_print(f"Error: {error}")
        return EXIT_FAILED

    result = box["result"]
    if as_json:
        print(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        print(format_dry_run_preview(request, result))
    return EXIT_OK


# ---------------------------------------------------------------------------
# Full backup
# ---------------------------------------------------------------------------


def _ask_confirmation(prompt: str) -> bool:
    _stderr_print(prompt)
    try:
        answer = input("Delete these files from the target? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


class _ProgressLine:
    """Single rewritten status line on stderr."""

    def __init__(self) -> None:
        self._last = ""

    def show(self, snapshot: BackupSnapshot) -> None:
        progress = snapshot.progress
        if snapshot.state == EngineState.SYNCING and progress.files_total:
            text = (
                f"[{progress.fraction_complete:4.0%}] "
                f"{progress.files_processed}/{progress.files_total} "
                f"{progress.current_file_name}"
            )
        else:
            text = progress.message.splitlines()[0] if progress.message else ""
        text = text[:78]
        if text and text != self._last:
            _stderr_print(f"\r{text:<78}", end="")
            self._last = text

    def close(self) -> None:
        if self._last:
            _stderr_print("")
            self._last = ""


def backup(
    manager: BackupManager,
    request: SyncRequest,
    assume_yes: bool = False,
    as_json: bool = False,
) -> int:
    """Run one full operation on *manager* and print its outcome.

    Returns:
        Process exit code for the terminal state.
    """
    updates: queue.Queue[BackupSnapshot] = queue.Queue()
    unsubscribe = manager.subscribe(updates.put)
    line = _ProgressLine()
    try:
        generation = manager.start(request)
        while True:
            try:
                snapshot = updates.get(timeout=0.1)
            except queue.Empty:
                continue
            except KeyboardInterrupt:
                line.close()
                _stderr_print("Stopping...")
                manager.cancel()
                continue
            if snapshot.generation != generation:
                continue

            if snapshot.state == EngineState.AWAITING_CONFIRMATION:
                line.close()
                if assume_yes:
                    manager.confirm_deletion()
                    continue
                try:
                    approved = _ask_confirmation(snapshot.progress.message)
                except KeyboardInterrupt:
                    approved = False
                if approved:
                    manager.confirm_deletion()
                else:
                    manager.cancel()
                continue

            if snapshot.state.is_terminal and snapshot.outcome is not None:
                break
            if not as_json:
                line.show(snapshot)
    finally:
        unsubscribe()
        line.close()

    manager.wait()
    outcome = snapshot.outcome
    if as_json:
        print(json.dumps(outcome_to_json(outcome), indent=2))
    else:
        print(format_outcome(outcome))
    return _EXIT_CODES[snapshot.state]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def run(argv: list[str] | None = None) -> None:
    """Entry point that handles errors gracefully and parses CLI arguments."""
    parser = argparse.ArgumentParser(
        prog="yeoldbackup",
        description="yeoldbackup - mirror a folder onto another with rsync",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Preview what would change
  yeoldbackup ~/Documents /Volumes/Backup/Documents --dry-run

  # Mirror, asking before large deletions
  yeoldbackup ~/Documents /Volumes/Backup/Documents

  # Unattended run (deletions are approved automatically)
  yeoldbackup ~/Documents /Volumes/Backup/Documents --yes --json

  # Write a starter config file
  yeoldbackup --init-config

Exit codes: 0 completed, 1 failed, 2 usage or config error, 130 cancelled.
The target becomes an exact mirror of the source: files missing from the
source are DELETED from the target.
        """,
    )
    parser.add_argument("source", nargs="?", help="Folder to back up")
    parser.add_argument("target", nargs="?", help="Folder to mirror onto")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only show what would change; never touch the target",
    )
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Approve large deletions without asking",
    )
    parser.add_argument(
        "--json", action="store_true", help="Print the result as JSON"
    )
    parser.add_argument(
        "--rsync",
        help="Path to rsync (takes precedence over YEOLDBACKUP_RSYNC_PATH and config files)",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument("--log-file", help="Also write logs to this file")
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Create a starter config file and exit",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"yeoldbackup version {__version__}",
    )

    args = parser.parse_args(argv)
    setup_logging(mode="cli", debug=args.debug, log_file=args.log_file)

    if args.init_config:
        path = ensure_config()
        print(f"Config file: {path}")
        sys.exit(EXIT_OK)

    if not args.source or not args.target:
        parser.error("SOURCE and TARGET are required")

    try:
        config, yaml_log_file = _load_settings(args)
        request = build_request(args.source, args.target)
    except ValueError as exc:
        _stderr_print(f"Error: {exc}")
        sys.exit(EXIT_USAGE)

    log_file = args.log_file or yaml_log_file
    if log_file != args.log_file or config.debug != args.debug:
        # The config file or environment changed the logging settings.
        setup_logging(
            mode="cli", debug=config.debug, log_file=log_file, force=True
        )

    if args.dry_run:
        sys.exit(preview(config, request, as_json=args.json))

    history = JsonHistoryStore(Path(config.history_dir).expanduser())
    manager = BackupManager(config, history=history)
    try:
        code = backup(manager, request, assume_yes=args.yes, as_json=args.json)
    except KeyboardInterrupt:
        _stderr_print("\nInterrupted.")
        manager.shutdown(timeout=5)
        code = EXIT_CANCELLED
    sys.exit(code)


if __name__ == "__main__":
    run()
