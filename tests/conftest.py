"""Shared pytest fixtures for yeoldbackup tests.

The engine is exercised without rsync by scripting fake processes: each
``FakeProcess`` has blocking stdout/stderr pipes that tests can feed and
close, and reacts to signals according to ``exit_on``.  ``FakeClock`` makes
the termination sequence instantaneous.
"""

import signal
import threading
import time

import pytest

from yeoldbackup.backup.supervisor import ProcessSupervisor
from yeoldbackup.config import Config


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-rsync",
        action="store_true",
        default=False,
        help="Run tests that invoke a real rsync binary",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "rsync: mark test as requiring a real rsync binary"
    )


def pytest_collection_modifyitems(config, items):
    """Skip rsync tests unless --run-rsync is passed."""
    if config.getoption("--run-rsync"):
        return
    skip_rsync = pytest.mark.skip(reason="need --run-rsync option to run")
    for item in items:
        if "rsync" in item.keywords:
            item.add_marker(skip_rsync)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    """Clock whose ``sleep`` advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        time.sleep(0)


class FakePipe:
    """Byte pipe whose ``read1`` blocks until data arrives or EOF."""

    def __init__(self, data: bytes = b"") -> None:
        self._buffer = bytearray(data)
        self._eof = False
        self._cond = threading.Condition()
        self.closed = False

    def feed(self, data: bytes) -> None:
        with self._cond:
            self._buffer.extend(data)
            self._cond.notify_all()

    def finish(self) -> None:
        with self._cond:
            self._eof = True
            self._cond.notify_all()

    def read1(self, size: int = -1) -> bytes:
        with self._cond:
            while not self._buffer and not self._eof:
                self._cond.wait()
            if not self._buffer:
                return b""
            n = len(self._buffer) if size < 0 else min(size, len(self._buffer))
            chunk = bytes(self._buffer[:n])
            del self._buffer[:n]
            return chunk

    def close(self) -> None:
        self.closed = True
        self.finish()


class FakeProcess:
    """``subprocess.Popen`` stand-in driven by the test.

    Args:
        stdout: Bytes available on stdout from the start.
        stderr: Bytes available on stderr from the start.
        returncode: Exit status used when the process exits on its own.
        running: Keep the process alive until ``exit()`` or a signal.
        exit_on: Signals that make a running process exit.
    """

    def __init__(
        self,
        stdout: bytes = b"",
        stderr: bytes = b"",
        returncode: int = 0,
        running: bool = False,
        exit_on: tuple = (signal.SIGTERM,),
    ) -> None:
        self.stdout = FakePipe(stdout)
        self.stderr = FakePipe(stderr)
        self.pid = 4242
        self.args: list[str] | None = None
        self.signals: list[signal.Signals] = []
        self.exit_on = exit_on
        self._default_returncode = returncode
        self._returncode: int | None = None
        if not running:
            self.exit()

    def exit(
        self, returncode: int | None = None, close_pipes: bool = True
    ) -> None:
        if close_pipes:
            self.stdout.finish()
            self.stderr.finish()
        self._returncode = (
            self._default_returncode if returncode is None else returncode
        )

    def poll(self) -> int | None:
        return self._returncode

    def send_signal(self, sig: signal.Signals) -> None:
        self.signals.append(sig)
        if self._returncode is None and sig in self.exit_on:
            self.exit(-int(sig))


class ScriptedPopen:
    """Popen factory returning the scripted processes in order."""

    def __init__(self, *processes) -> None:
        self.processes = list(processes)
        self.calls: list[list[str]] = []

    def __call__(self, argv, **kwargs):
        self.calls.append(list(argv))
        if not self.processes:
            raise OSError("no scripted process left")
        process = self.processes.pop(0)
        if isinstance(process, BaseException):
            raise process
        process.args = list(argv)
        return process


def rsync_dry_run_output(
    transfers: int = 0,
    deletions: int = 0,
    total: int = 10,
    stats: bool = True,
) -> bytes:
    """Build rsync 3.x style dry-run stdout."""
    lines = ["sending incremental file list"]
    lines += [f"*deleting   old/file{i}.txt" for i in range(deletions)]
    lines += [f">f+++++++++ new/file{i}.txt" for i in range(transfers)]
    if stats:
        lines += [
            "",
            f"Number of files: {total:,} (reg: {total:,})",
            f"Number of created files: {transfers}",
            f"Number of deleted files: {deletions}",
            f"Number of regular files transferred: {transfers}",
            "Total file size: 12,345 bytes",
            "",
            "sent 1,234 bytes  received 56 bytes  2,580.00 bytes/sec",
            "total size is 12,345  speedup is 9.57 (DRY RUN)",
        ]
    return ("\n".join(lines) + "\n").encode()


def rsync_sync_output(transfers: int = 0, deletions: int = 0) -> bytes:
    """Build rsync real-run stdout."""
    lines = ["sending incremental file list"]
    lines += [f"*deleting   old/file{i}.txt" for i in range(deletions)]
    lines += [f">f+++++++++ new/file{i}.txt" for i in range(transfers)]
    lines += ["", "sent 1,234 bytes  received 56 bytes  2,580.00 bytes/sec"]
    return ("\n".join(lines) + "\n").encode()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_process():
    """Factory fixture for ``FakeProcess``; releases blocked pipes at teardown."""
    created: list[FakeProcess] = []

    def _make(**kwargs) -> FakeProcess:
        process = FakeProcess(**kwargs)
        created.append(process)
        return process

    yield _make
    for process in created:
        process.stdout.finish()
        process.stderr.finish()


@pytest.fixture
def make_supervisor(fake_clock):
    """Factory fixture: ``make_supervisor(*processes) -> (supervisor, popen)``."""

    def _make(*processes, **kwargs):
        popen = ScriptedPopen(*processes)
        kwargs.setdefault("clock", fake_clock)
        kwargs.setdefault("drain_grace", 0.05)
        supervisor = ProcessSupervisor(popen=popen, **kwargs)
        return supervisor, popen

    return _make


@pytest.fixture
def dry_run_output():
    return rsync_dry_run_output


@pytest.fixture
def sync_output():
    return rsync_sync_output


@pytest.fixture
def test_config():
    """Config with fast timeouts for engine tests."""
    return Config(
        rsync_path="/usr/bin/rsync",
        terminate_grace=0.5,
        interrupt_grace=1.0,
        drain_grace=0.05,
    )


@pytest.fixture
def wait_until():
    """Poll *predicate* until true or fail after *timeout* seconds."""

    def _wait(predicate, timeout: float = 5.0, message: str = "condition"):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                pytest.fail(f"Timed out waiting for {message}")
            time.sleep(0.005)

    return _wait
