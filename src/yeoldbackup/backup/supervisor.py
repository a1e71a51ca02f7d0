"""Lifecycle management for the external rsync process.

``ProcessSupervisor`` owns at most one process at a time together with its
two output pipes.  State machine::

    IDLE -> STARTING -> RUNNING -> TERMINATING -> TERMINATED
                                \\------------> TERMINATED

``cleanup()`` returns the supervisor to IDLE.

Threading model
---------------
Two reader threads copy raw chunks from stdout/stderr into one bounded
``queue.Queue``.  A single pump thread drains that queue and invokes the
caller's callbacks, so ``on_stdout``, ``on_stderr`` and ``on_exit`` never run
concurrently with each other.  ``on_exit`` is delivered exactly once.

Cancellation
------------
``cancel()`` runs a ``TerminationSequence`` on a helper thread: SIGTERM,
wait ``terminate_grace``; SIGINT, wait ``interrupt_grace``; then the
supervisor gives up, forces its own state to TERMINATED and delivers a
``ProcessExit`` with ``termination_failed=True``.  Waiting goes through an
injectable clock so tests can drive the sequence without real delays.
"""

from __future__ import annotations

import logging
import queue
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol

from yeoldbackup.backup.command import format_command
from yeoldbackup.backup.errors import LaunchFailed, ProcessAlreadyRunning
from yeoldbackup.backup.models import ProcessExit
from yeoldbackup.backup.parser import Stream

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[bytes], None]
ExitCallback = Callable[[ProcessExit], None]


class ProcessState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class Clock(Protocol):
    """Time source used by the termination sequence."""

    def monotonic(self) -> float: ...  # pragma: no cover

    def sleep(self, seconds: float) -> None: ...  # pragma: no cover


class MonotonicClock:
    """Wall-clock implementation of ``Clock``."""

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)


# ---------------------------------------------------------------------------
# Termination sequence
# ---------------------------------------------------------------------------


class TerminationSequence:
    """Graceful-then-forceful stop of one process.

    Args:
        process: A ``subprocess.Popen``-like object (``poll``,
            ``send_signal``).
        clock: Time source for the bounded waits.
        terminate_grace: Seconds to wait after SIGTERM.
        interrupt_grace: Seconds to wait after SIGINT.
        poll_interval: Upper bound for a single sleep between polls.
    """

    def __init__(
        self,
        process: Any,
        clock: Clock,
        terminate_grace: float = 0.5,
        interrupt_grace: float = 1.0,
        poll_interval: float = 0.05,
    ) -> None:
        self.process = process
        self.clock = clock
        self.terminate_grace = terminate_grace
        self.interrupt_grace = interrupt_grace
        self.poll_interval = poll_interval
        self.signals_sent: list[signal.Signals] = []

    def run(self) -> bool:
        """Signal the process until it exits or the waits run out.

        Returns:
            ``True`` if the process exited, ``False`` if it is still running
            after both grace periods.
        """
        self._send(signal.SIGTERM)
        if self._wait(self.terminate_grace):
            return True
        logger.warning(
            "rsync still running %.1fs after SIGTERM; sending SIGINT",
            self.terminate_grace,
        )
        self._send(signal.SIGINT)
        if self._wait(self.interrupt_grace):
            return True
        return False

    def kill(self) -> None:
        """Last-resort SIGKILL for a process that ignored both signals."""
        self._send(getattr(signal, "SIGKILL", signal.SIGTERM))

    def _send(self, sig: signal.Signals) -> None:
        self.signals_sent.append(sig)
        try:
            self.process.send_signal(sig)
        except (ProcessLookupError, OSError) as exc:
            logger.debug("Could not deliver %s: %s", sig.name, exc)

    def _wait(self, timeout: float) -> bool:
        deadline = self.clock.monotonic() + timeout
        while self.process.poll() is None:
            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                return False
            self.clock.sleep(min(self.poll_interval, remaining))
        return True


# ---------------------------------------------------------------------------
# Process handle
# ---------------------------------------------------------------------------


@dataclass
class RunningProcessHandle:
    """Everything the supervisor owns for one process."""

    process: Any
    on_stdout: ChunkCallback | None
    on_stderr: ChunkCallback | None
    on_exit: ExitCallback | None
    chunks: queue.Queue
    readers: dict[Stream, threading.Thread] = field(default_factory=dict)
    pump: threading.Thread | None = None
    terminator: threading.Thread | None = None
    cancelled: bool = False
    detached: bool = False
    exit_delivered: bool = False
    finished: threading.Event = field(default_factory=threading.Event)
    dispatch_lock: threading.RLock = field(default_factory=threading.RLock)

    def pipe(self, stream: Stream) -> Any:
        if stream == Stream.STDOUT:
            return self.process.stdout
        return self.process.stderr


# ---------------------------------------------------------------------------
# Supervisor
# ---------------------------------------------------------------------------


class ProcessSupervisor:
    """Start, observe, stop, and release a single external process.

    Args:
        clock: Time source for the termination sequence.
        terminate_grace: Seconds between SIGTERM and SIGINT.
        interrupt_grace: Seconds between SIGINT and giving up.
        drain_grace: Seconds to keep reading after the process exits while
            its pipes are still open.
        popen: Factory compatible with ``subprocess.Popen``.
        chunk_size: Maximum bytes per read.
        queue_size: Capacity of the chunk queue.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        terminate_grace: float = 0.5,
        interrupt_grace: float = 1.0,
        drain_grace: float = 0.2,
        popen: Callable[..., Any] = subprocess.Popen,
        chunk_size: int = 4096,
        queue_size: int = 256,
    ) -> None:
        self._clock = clock or MonotonicClock()
        self._terminate_grace = terminate_grace
        self._interrupt_grace = interrupt_grace
        self._drain_grace = drain_grace
        self._popen = popen
        self._chunk_size = chunk_size
        self._queue_size = queue_size
        self._poll_interval = 0.05
        self._lock = threading.RLock()
        self._handle: RunningProcessHandle | None = None
        self._state = ProcessState.IDLE

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def has_process(self) -> bool:
        return self._handle is not None

    @property
    def pid(self) -> int | None:
        handle = self._handle
        if handle is None:
            return None
        return getattr(handle.process, "pid", None)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    def start(
        self,
        executable: str,
        args: list[str],
        on_stdout: ChunkCallback,
        on_stderr: ChunkCallback,
        on_exit: ExitCallback,
    ) -> None:
        """Spawn *executable* and begin streaming its output.

        Raises:
            ProcessAlreadyRunning: A process handle is still owned; call
                ``cleanup()`` first.
            LaunchFailed: The executable could not be spawned.
        """
        with self._lock:
            if self._handle is not None:
                raise ProcessAlreadyRunning(
                    f"Supervisor already owns a process (state={self._state.value})"
                )
            self._state = ProcessState.STARTING
            logger.info("Starting: %s", format_command(executable, args))
            try:
                process = self._popen(
                    [executable, *args],
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.PIPE,
                )
            except (OSError, ValueError, subprocess.SubprocessError) as exc:
                self._state = ProcessState.IDLE
                logger.error("Failed to launch %s: %s", executable, exc)
                raise LaunchFailed(str(exc)) from exc

            handle = RunningProcessHandle(
                process=process,
                on_stdout=on_stdout,
                on_stderr=on_stderr,
                on_exit=on_exit,
                chunks=queue.Queue(maxsize=self._queue_size),
            )
            self._handle = handle
            self._state = ProcessState.RUNNING

            for stream in (Stream.STDOUT, Stream.STDERR):
                reader = threading.Thread(
                    target=self._read_stream,
                    args=(handle, stream),
                    name=f"yeoldbackup-{stream.value}",
                    daemon=True,
                )
                handle.readers[stream] = reader
                reader.start()
            handle.pump = threading.Thread(
                target=self._pump,
                args=(handle,),
                name="yeoldbackup-pump",
                daemon=True,
            )
            handle.pump.start()

    # ------------------------------------------------------------------
    # Cancel
    # ------------------------------------------------------------------

    def cancel(self) -> bool:
        """Begin stopping the running process.

        Returns:
            ``True`` if a termination sequence was started, ``False`` if no
            process is in the RUNNING state.
        """
        with self._lock:
            handle = self._handle
            if handle is None or self._state != ProcessState.RUNNING:
                logger.debug(
                    "cancel() ignored in state %s", self._state.value
                )
                return False
            self._state = ProcessState.TERMINATING
            handle.cancelled = True

        sequence = TerminationSequence(
            handle.process,
            self._clock,
            terminate_grace=self._terminate_grace,
            interrupt_grace=self._interrupt_grace,
        )
        handle.terminator = threading.Thread(
            target=self._terminate,
            args=(handle, sequence),
            name="yeoldbackup-terminator",
            daemon=True,
        )
        handle.terminator.start()
        return True

    def _terminate(
        self, handle: RunningProcessHandle, sequence: TerminationSequence
    ) -> None:
        if sequence.run():
            # The pump sees the exit and delivers it.
            return
        logger.error(
            "rsync did not exit after SIGTERM and SIGINT (%.1fs); abandoning it",
            self._terminate_grace + self._interrupt_grace,
        )
        self._finish(
            handle,
            ProcessExit(
                returncode=None, cancelled=True, termination_failed=True
            ),
        )
        sequence.kill()

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def cleanup(self) -> None:
        """Release the current process handle.  Safe to call repeatedly.

        Callbacks are detached before the pipes are closed so a final read
        can never reach a dangling callback.
        """
        with self._lock:
            handle = self._handle
            if handle is None:
                return
            self._handle = None
            self._state = ProcessState.IDLE

        with handle.dispatch_lock:
            handle.detached = True
            handle.on_stdout = None
            handle.on_stderr = None
            handle.on_exit = None
        handle.finished.set()

        if handle.process.poll() is None:
            logger.warning(
                "Releasing handle of a process that is still running (pid=%s)",
                getattr(handle.process, "pid", None),
            )

        current = threading.current_thread()
        for stream, reader in handle.readers.items():
            if reader is not current:
                reader.join(timeout=self._drain_grace)
            if reader.is_alive():
                # The reader closes its own pipe once it reaches EOF.
                logger.debug("%s reader still blocked; leaving pipe open", stream.value)
                continue
            _close_quietly(handle.pipe(stream))
        logger.debug("Process handle released")

    # ------------------------------------------------------------------
    # Worker threads
    # ------------------------------------------------------------------

    def _read_stream(self, handle: RunningProcessHandle, stream: Stream) -> None:
        pipe = handle.pipe(stream)
        read = getattr(pipe, "read1", None) or pipe.read
        try:
            while True:
                chunk = read(self._chunk_size)
                if not chunk:
                    break
                if not self._put(handle, (stream, chunk)):
                    break
        except (OSError, ValueError) as exc:
            logger.debug("%s reader stopped: %s", stream.value, exc)
        finally:
            self._put(handle, (stream, None))
            _close_quietly(pipe)

    def _put(self, handle: RunningProcessHandle, item: tuple) -> bool:
        while True:
            try:
                handle.chunks.put(item, timeout=self._poll_interval)
                return True
            except queue.Full:
                if handle.detached or handle.finished.is_set():
                    return False

    def _pump(self, handle: RunningProcessHandle) -> None:
        open_streams = {Stream.STDOUT, Stream.STDERR}
        exited_at: float | None = None
        while not handle.finished.is_set():
            try:
                stream, chunk = handle.chunks.get(timeout=self._poll_interval)
            except queue.Empty:
                pass
            else:
                if chunk is None:
                    open_streams.discard(stream)
                else:
                    self._dispatch(handle, stream, chunk)
                if open_streams:
                    continue

            if handle.process.poll() is None:
                continue
            if not open_streams:
                break
            if exited_at is None:
                exited_at = time.monotonic()
            elif time.monotonic() - exited_at >= self._drain_grace:
                logger.warning(
                    "rsync exited but its output pipes stayed open; not waiting for them"
                )
                break
        else:
            return

        self._finish(
            handle,
            ProcessExit(
                returncode=handle.process.poll(), cancelled=handle.cancelled
            ),
        )

    def _dispatch(
        self, handle: RunningProcessHandle, stream: Stream, chunk: bytes
    ) -> None:
        with handle.dispatch_lock:
            if handle.detached:
                return
            callback = (
                handle.on_stdout if stream == Stream.STDOUT else handle.on_stderr
            )
            if callback is None:
                return
            try:
                callback(chunk)
            except Exception:
                logger.exception("Error in %s callback", stream.value)

    def _finish(self, handle: RunningProcessHandle, exit_info: ProcessExit) -> None:
        with handle.dispatch_lock:
            if handle.exit_delivered:
                return
            handle.exit_delivered = True
            handle.finished.set()
            with self._lock:
                if self._handle is handle:
                    self._state = ProcessState.TERMINATED
            logger.info(
                "Process finished: returncode=%s cancelled=%s termination_failed=%s",
                exit_info.returncode,
                exit_info.cancelled,
                exit_info.termination_failed,
            )
            callback = None if handle.detached else handle.on_exit
            if callback is not None:
                try:
                    callback(exit_info)
                except Exception:
                    logger.exception("Error in exit callback")


def _close_quietly(pipe: Any) -> None:
    if pipe is None:
        return
    try:
        pipe.close()
    except (OSError, ValueError) as exc:
        logger.debug("Error closing pipe: %s", exc)
