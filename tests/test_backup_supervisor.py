"""Tests for ProcessSupervisor and TerminationSequence.

Scripted fake processes cover the state machine and the bounded stop
sequence deterministically via FakeClock; a few tests run real child
interpreters to check pipe handling and signal delivery end to end.
"""

from __future__ import annotations

import signal
import sys
import threading
import time

import pytest

from yeoldbackup.backup.errors import LaunchFailed, ProcessAlreadyRunning
from yeoldbackup.backup.models import ProcessExit
from yeoldbackup.backup.supervisor import (
    ProcessState,
    ProcessSupervisor,
    TerminationSequence,
)


class _Recorder:
    """Collects callbacks and signals when on_exit arrives."""

    def __init__(self) -> None:
        self.stdout = bytearray()
        self.stderr = bytearray()
        self.exits: list[ProcessExit] = []
        self.done = threading.Event()

    def start(self, supervisor: ProcessSupervisor, executable: str, args: list[str]):
        supervisor.start(
            executable,
            args,
            on_stdout=self.stdout.extend,
            on_stderr=self.stderr.extend,
            on_exit=self._on_exit,
        )

    def _on_exit(self, exit_info: ProcessExit) -> None:
        self.exits.append(exit_info)
        self.done.set()

    def wait(self, timeout: float = 10.0) -> ProcessExit:
        assert self.done.wait(timeout), "on_exit was not delivered"
        return self.exits[0]


# ---------------------------------------------------------------------------
# TerminationSequence
# ---------------------------------------------------------------------------


class TestTerminationSequence:
    """Tests for the SIGTERM -> SIGINT escalation."""

    def test_exits_on_sigterm(self, make_process, fake_clock):
        process = make_process(running=True)
        sequence = TerminationSequence(process, fake_clock)
        assert sequence.run() is True
        assert sequence.signals_sent == [signal.SIGTERM]

    def test_escalates_to_sigint(self, make_process, fake_clock):
        process = make_process(running=True, exit_on=(signal.SIGINT,))
        sequence = TerminationSequence(process, fake_clock)
        assert sequence.run() is True
        assert sequence.signals_sent == [signal.SIGTERM, signal.SIGINT]
        assert fake_clock.now == pytest.approx(0.5)

    def test_gives_up_after_both_grace_periods(self, make_process, fake_clock):
        process = make_process(running=True, exit_on=())
        sequence = TerminationSequence(process, fake_clock)
        assert sequence.run() is False
        assert fake_clock.now == pytest.approx(1.5)
        assert max(fake_clock.sleeps) <= sequence.poll_interval

    def test_signal_to_dead_process_is_ignored(self, make_process, fake_clock):
        process = make_process(running=True)

        def gone(sig):
            raise ProcessLookupError()

        process.send_signal = gone
        sequence = TerminationSequence(process, fake_clock, 0.1, 0.1)
        assert sequence.run() is False


# ---------------------------------------------------------------------------
# ProcessSupervisor with fakes
# ---------------------------------------------------------------------------


class TestProcessSupervisor:
    """State machine, callbacks and cleanup."""

    def test_delivers_output_then_exit_once(self, make_supervisor, make_process):
        process = make_process(stdout=b"hello\n", stderr=b"warn\n", returncode=3)
        supervisor, popen = make_supervisor(process)
        recorder = _Recorder()

        recorder.start(supervisor, "/usr/bin/rsync", ["-a"])
        exit_info = recorder.wait()

        assert popen.calls == [["/usr/bin/rsync", "-a"]]
        assert bytes(recorder.stdout) == b"hello\n"
        assert bytes(recorder.stderr) == b"warn\n"
        assert exit_info == ProcessExit(returncode=3)
        assert supervisor.state == ProcessState.TERMINATED
        supervisor.cleanup()
        assert len(recorder.exits) == 1
        assert supervisor.state == ProcessState.IDLE

    def test_start_while_owning_process_raises(self, make_supervisor, make_process):
        supervisor, _ = make_supervisor(make_process(running=True))
        recorder = _Recorder()
        recorder.start(supervisor, "/usr/bin/rsync", [])
        with pytest.raises(ProcessAlreadyRunning):
            recorder.start(supervisor, "/usr/bin/rsync", [])
        supervisor.cancel()
        recorder.wait()
        supervisor.cleanup()

    def test_launch_failure_returns_to_idle(self, make_supervisor):
        supervisor, _ = make_supervisor(FileNotFoundError("missing"))
        with pytest.raises(LaunchFailed, match="missing"):
            _Recorder().start(supervisor, "/nope", [])
        assert supervisor.state == ProcessState.IDLE
        assert supervisor.has_process is False

    def test_cleanup_is_idempotent(self, make_supervisor, make_process):
        supervisor, _ = make_supervisor(make_process())
        recorder = _Recorder()
        recorder.start(supervisor, "/usr/bin/rsync", [])
        recorder.wait()
        supervisor.cleanup()
        supervisor.cleanup()
        supervisor.cleanup()
        assert supervisor.state == ProcessState.IDLE
        assert supervisor.pid is None

    def test_cleanup_without_process_is_noop(self, make_supervisor):
        supervisor, _ = make_supervisor()
        supervisor.cleanup()
        assert supervisor.state == ProcessState.IDLE

    def test_supervisor_reusable_after_cleanup(self, make_supervisor, make_process):
        supervisor, popen = make_supervisor(make_process(), make_process())
        for _ in range(2):
            recorder = _Recorder()
            recorder.start(supervisor, "/usr/bin/rsync", [])
            recorder.wait()
            supervisor.cleanup()
        assert len(popen.calls) == 2

    def test_cleanup_detaches_callbacks(self, make_supervisor, make_process):
        process = make_process(running=True)
        supervisor, _ = make_supervisor(process)
        recorder = _Recorder()
        recorder.start(supervisor, "/usr/bin/rsync", [])
        supervisor.cleanup()

        process.stdout.feed(b"late output\n")
        process.exit(0)

        assert recorder.done.wait(0.3) is False
        assert bytes(recorder.stdout) == b""

    def test_callback_exception_does_not_stop_pump(self, make_supervisor, make_process):
        supervisor, _ = make_supervisor(make_process(stdout=b"x\n"))
        done = threading.Event()

        def boom(chunk):
            raise RuntimeError("observer bug")

        supervisor.start(
            "/usr/bin/rsync",
            [],
            on_stdout=boom,
            on_stderr=lambda chunk: None,
            on_exit=lambda info: done.set(),
        )
        assert done.wait(5)
        supervisor.cleanup()

    def test_cancel_without_process(self, make_supervisor):
        supervisor, _ = make_supervisor()
        assert supervisor.cancel() is False

    def test_cancel_graceful(self, make_supervisor, make_process):
        process = make_process(running=True)
        supervisor, _ = make_supervisor(process)
        recorder = _Recorder()
        recorder.start(supervisor, "/usr/bin/rsync", [])

        assert supervisor.cancel() is True
        assert supervisor.cancel() is False
        exit_info = recorder.wait()

        assert exit_info.cancelled is True
        assert exit_info.termination_failed is False
        assert exit_info.returncode == -int(signal.SIGTERM)
        assert process.signals == [signal.SIGTERM]
        supervisor.cleanup()

    def test_cancel_ignored_signals_reports_termination_failure(
        self, make_supervisor, make_process, fake_clock
    ):
        process = make_process(running=True, exit_on=())
        supervisor, _ = make_supervisor(process)
        recorder = _Recorder()
        recorder.start(supervisor, "/usr/bin/rsync", [])

        supervisor.cancel()
        exit_info = recorder.wait()

        assert exit_info == ProcessExit(
            returncode=None, cancelled=True, termination_failed=True
        )
        assert process.signals[:2] == [signal.SIGTERM, signal.SIGINT]
        assert fake_clock.now >= 1.5
        assert supervisor.state == ProcessState.TERMINATED
        supervisor.cleanup()
        assert supervisor.state == ProcessState.IDLE
        assert len(recorder.exits) == 1

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    def test_abandoned_process_is_reported_before_sigkill(
        self, make_supervisor, make_process, wait_until
    ):
        process = make_process(running=True, exit_on=(signal.SIGKILL,))
        supervisor, _ = make_supervisor(process)
        recorder = _Recorder()
        recorder.start(supervisor, "/usr/bin/rsync", [])

        supervisor.cancel()
        exit_info = recorder.wait()
        wait_until(
            lambda: signal.SIGKILL in process.signals, message="SIGKILL sent"
        )

        assert exit_info.termination_failed is True
        assert process.signals == [signal.SIGTERM, signal.SIGINT, signal.SIGKILL]
        supervisor.cleanup()
        assert len(recorder.exits) == 1

    def test_exit_with_pipes_held_open_is_delivered_after_drain_grace(
        self, make_supervisor, make_process, caplog
    ):
        process = make_process(running=True)
        supervisor, _ = make_supervisor(process, drain_grace=0.3)
        recorder = _Recorder()
        recorder.start(supervisor, "/usr/bin/rsync", [])

        process.stdout.feed(b"last line\n")
        process.exit(0, close_pipes=False)
        exit_info = recorder.wait()

        assert exit_info == ProcessExit(returncode=0)
        assert bytes(recorder.stdout) == b"last line\n"
        assert "output pipes stayed open" in caplog.text
        supervisor.cleanup()
        time.sleep(0.1)
        assert len(recorder.exits) == 1


# ---------------------------------------------------------------------------
# Real child processes
# ---------------------------------------------------------------------------


@pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
class TestProcessSupervisorRealProcess:
    """End-to-end checks against real child interpreters."""

    def test_large_output_is_complete(self):
        supervisor = ProcessSupervisor(chunk_size=512, queue_size=4)
        recorder = _Recorder()
        script = "import sys; sys.stdout.write('line\\n' * 20000)"
        recorder.start(supervisor, sys.executable, ["-c", script])
        exit_info = recorder.wait()
        supervisor.cleanup()
        assert exit_info.returncode == 0
        assert bytes(recorder.stdout) == b"line\n" * 20000

    def test_stderr_and_exit_code(self):
        supervisor = ProcessSupervisor()
        recorder = _Recorder()
        script = "import sys; sys.stderr.write('bad\\n'); sys.exit(5)"
        recorder.start(supervisor, sys.executable, ["-c", script])
        exit_info = recorder.wait()
        supervisor.cleanup()
        assert exit_info.returncode == 5
        assert bytes(recorder.stderr) == b"bad\n"

    def test_missing_executable(self, tmp_path):
        supervisor = ProcessSupervisor()
        with pytest.raises(LaunchFailed):
            _Recorder().start(supervisor, str(tmp_path / "no-rsync"), [])
        assert supervisor.state == ProcessState.IDLE

    def test_cancel_sleeping_child(self):
        supervisor = ProcessSupervisor()
        recorder = _Recorder()
        script = "import time; print('ready', flush=True); time.sleep(30)"
        recorder.start(supervisor, sys.executable, ["-c", script])
        _wait_for_output(recorder, b"ready")

        assert supervisor.cancel() is True
        exit_info = recorder.wait()
        supervisor.cleanup()
        assert exit_info.cancelled is True
        assert exit_info.returncode == -int(signal.SIGTERM)

    def test_child_ignoring_signals_is_abandoned_and_killed(self):
        supervisor = ProcessSupervisor(terminate_grace=0.2, interrupt_grace=0.2)
        recorder = _Recorder()
        script = (
            "import signal, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "signal.signal(signal.SIGINT, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        recorder.start(supervisor, sys.executable, ["-c", script])
        _wait_for_output(recorder, b"ready")
        process = supervisor._handle.process

        supervisor.cancel()
        exit_info = recorder.wait()
        supervisor.cleanup()

        assert exit_info.termination_failed is True
        assert process.wait(timeout=5) == -int(signal.SIGKILL)


def _wait_for_output(recorder: _Recorder, marker: bytes, timeout: float = 10.0):
    deadline = time.monotonic() + timeout
    while marker not in bytes(recorder.stdout):
        if time.monotonic() > deadline:
            pytest.fail(f"child never printed {marker!r}")
        time.sleep(0.01)
