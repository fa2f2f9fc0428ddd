"""ProcessHandle: one supervised child process.

A handle owns the child's OS process, its two OutputDrainers and the
cancellation token of its PollLoop. Nothing else reads the child's pipes.

Lifecycle:
    NOT_STARTED --start()--> RUNNING --(exit observed)--> EXITED
                                     --stop()-----------> TERMINATED

The terminal transition happens exactly once. Stream readers and the process
reference are released once the process is gone and both streams have been
drained to end of file, or once the pipes stayed open for the kill timeout
after exit (a grandchild may inherit them). stop() releases at once.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

from .config import get_config
from .drainer import OutputDrainer
from .errors import (
    LaunchError,
    ProcessQueryError,
    ProcessStateError,
    StreamClosedRace,
    StreamReadError,
)
from .events import StatusReport, StreamName
from .runtime.launcher import IS_WINDOWS, LaunchSpec, ProcessTerminator, spawn
from .sinks import ConsoleSink, Sink, SinkSwitch

if TYPE_CHECKING:
    import anyio

__all__ = [
    "Liveness",
    "LivenessKind",
    "ProcessHandle",
    "ProcessState",
]

logger = logging.getLogger(__name__)


class ProcessState(str, Enum):
    """Lifecycle state of a ProcessHandle."""

    NOT_STARTED = "not_started"
    RUNNING = "running"
    EXITED = "exited"
    TERMINATED = "terminated"

    @property
    def terminal(self) -> bool:
        return self in (ProcessState.EXITED, ProcessState.TERMINATED)


class LivenessKind(Enum):
    EXITED = "exited"
    RUNNING = "running"
    QUERY_FAILED = "query_failed"


@dataclass(frozen=True)
class Liveness:
    """Result of an exit-status query.

    "Still running" is a normal result, not an error. An EXITED result with
    ``code=None`` means the process is gone but its code could not be reaped.
    """

    kind: LivenessKind
    code: int | None = None
    error: BaseException | None = None

    @classmethod
    def exited(cls, code: int | None) -> "Liveness":
        return cls(LivenessKind.EXITED, code=code)

    @classmethod
    def running(cls) -> "Liveness":
        return cls(LivenessKind.RUNNING)

    @classmethod
    def query_failed(cls, error: BaseException) -> "Liveness":
        return cls(LivenessKind.QUERY_FAILED, error=error)

    @property
    def is_running(self) -> bool:
        return self.kind is LivenessKind.RUNNING


def _split_command(command: str | Sequence[str | os.PathLike[str]]) -> list[str]:
    """Turn a command string or argument vector into argv. No shell involved."""
    if isinstance(command, str):
        argv = shlex.split(command, posix=not IS_WINDOWS)
    else:
        argv = [os.fspath(arg) for arg in command]
    if not argv:
        raise ValueError("command is required")
    return argv


def _format_code(code: int | None) -> str:
    return "unknown" if code is None else str(code)


class ProcessHandle:
    """Launch and supervise one external process without blocking the loop.

    Example:
        handle = ProcessHandle("ping -c 3 localhost", id="ping")
        await handle.start()
        handle.print_stdout = False   # keep draining, stop printing
        ...
        handle.check()                # "Process ping is still running."
        await handle.stop()

    Attributes:
        id: Caller-chosen label, used as output prefix
        launch_error: LaunchError of the last failed start(), if any
    """

    def __init__(
        self,
        command: str | Sequence[str | os.PathLike[str]],
        *,
        id: str = "",
        working_dir: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        print_stdout: bool | None = None,
        print_stderr: bool | None = None,
        poll_interval: float | None = None,
        wrap: int | None = None,
        sink: Sink | None = None,
        max_line_bytes: int | None = None,
        encoding: str = "utf-8",
        term_timeout: float | None = None,
        kill_timeout: float | None = None,
    ) -> None:
        config = get_config()

        poll_interval = config.poll_interval if poll_interval is None else poll_interval
        if not poll_interval > 0:
            raise ValueError(f"poll_interval must be positive, got {poll_interval}")
        wrap = config.wrap if wrap is None else wrap
        if wrap <= 0:
            raise ValueError(f"wrap must be positive, got {wrap}")
        max_line_bytes = config.max_line_bytes if max_line_bytes is None else max_line_bytes
        if max_line_bytes <= 0:
            raise ValueError(f"max_line_bytes must be positive, got {max_line_bytes}")

        self.id = id
        self._argv = _split_command(command)
        self._working_dir = Path(working_dir) if working_dir is not None else Path.cwd()
        self._env_overrides = dict(env) if env is not None else None
        self._poll_interval = float(poll_interval)
        self._wrap = wrap
        self._max_line_bytes = max_line_bytes
        self._encoding = encoding
        self._sink: Sink = sink if sink is not None else ConsoleSink(wrap=wrap)
        self._stdout_switch = SinkSwitch(config.print_stdout if print_stdout is None else print_stdout)
        self._stderr_switch = SinkSwitch(config.print_stderr if print_stderr is None else print_stderr)
        self._terminator = ProcessTerminator(
            term_timeout=config.term_timeout if term_timeout is None else term_timeout,
            kill_timeout=config.kill_timeout if kill_timeout is None else kill_timeout,
        )

        self._state = ProcessState.NOT_STARTED
        self._exit_code: int | None = None
        self._process: asyncio.subprocess.Process | None = None
        self._pid: int | None = None
        self._stdout: OutputDrainer | None = None
        self._stderr: OutputDrainer | None = None
        self._poll_token: anyio.CancelScope | None = None
        self._poll_error: BaseException | None = None
        self._done: asyncio.Event | None = None
        self._stop_done: asyncio.Event | None = None
        self._exited_at: float | None = None
        self._finisher: asyncio.Task[None] | None = None
        self._stopping = False
        self._released = False
        self.launch_error: LaunchError | None = None

    @classmethod
    async def launch(cls, command: str | Sequence[str], **kwargs: Any) -> "ProcessHandle":
        """Create a handle and start it immediately."""
        handle = cls(command, **kwargs)
        await handle.start()
        return handle

    # =========================================================================
    # Read-only launch parameters and state
    # =========================================================================

    @property
    def command(self) -> list[str]:
        return list(self._argv)

    @property
    def working_dir(self) -> Path:
        return self._working_dir

    @property
    def env(self) -> dict[str, str] | None:
        """Environment overrides (None = inherit unchanged)."""
        return dict(self._env_overrides) if self._env_overrides is not None else None

    @property
    def poll_interval(self) -> float:
        return self._poll_interval

    @property
    def wrap(self) -> int:
        return self._wrap

    @property
    def sink(self) -> Sink:
        return self._sink

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def pid(self) -> int | None:
        return self._pid

    @property
    def poll_error(self) -> BaseException | None:
        """Fatal error that stopped the poll loop, if any."""
        return self._poll_error

    @property
    def has_poll_loop(self) -> bool:
        return self._poll_token is not None and not self._poll_token.cancel_called

    @property
    def released(self) -> bool:
        return self._released

    # =========================================================================
    # Print switches (safe to flip from any thread at any time)
    # =========================================================================

    @property
    def print_stdout(self) -> bool:
        return self._stdout_switch.active

    @print_stdout.setter
    def print_stdout(self, value: bool) -> None:
        self._stdout_switch.active = value

    @property
    def print_stderr(self) -> bool:
        return self._stderr_switch.active

    @print_stderr.setter
    def print_stderr(self, value: bool) -> None:
        self._stderr_switch.active = value

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def _launch_spec(self) -> LaunchSpec:
        env = None
        if self._env_overrides is not None:
            env = {**os.environ, **self._env_overrides}
        return LaunchSpec(argv=list(self._argv), cwd=self._working_dir, env=env)

    async def start(self) -> None:
        """Spawn the child and begin draining its output.

        Raises:
            ProcessStateError: If the handle was already started
            LaunchError: If the OS could not create the process; the handle
                stays NOT_STARTED
        """
        from .poll import PollLoop

        if self._state is not ProcessState.NOT_STARTED:
            raise ProcessStateError(
                f"Process {self.id!r} is {self._state.value}, it can only be started once"
            )

        if not self._working_dir.is_dir():
            self.launch_error = LaunchError(
                self.id, f"working directory does not exist: {self._working_dir}"
            )
            logger.warning(str(self.launch_error))
            raise self.launch_error

        try:
            process = await spawn(self._launch_spec(), limit=self._max_line_bytes)
        except (OSError, ValueError) as e:
            self.launch_error = LaunchError(self.id, f"{type(e).__name__}: {e}")
            logger.warning(str(self.launch_error))
            raise self.launch_error from e

        assert process.stdout is not None and process.stderr is not None

        self._process = process
        self._pid = process.pid
        self._done = asyncio.Event()
        self._stop_done = asyncio.Event()
        self.launch_error = None

        # Pipes must be read from the start or the child can block on a full buffer
        self._stdout = OutputDrainer(
            self.id,
            StreamName.STDOUT,
            process.stdout,
            encoding=self._encoding,
            max_line_bytes=self._max_line_bytes,
        )
        self._stderr = OutputDrainer(
            self.id,
            StreamName.STDERR,
            process.stderr,
            encoding=self._encoding,
            max_line_bytes=self._max_line_bytes,
        )
        self._stdout.start()
        self._stderr.start()

        self._state = ProcessState.RUNNING
        logger.info(f"Started process {self.id!r} pid={process.pid}: {shlex.join(self._argv)}")

        PollLoop(self, self._poll_interval).start()

    async def stop(self, silent: bool = False) -> None:
        """Terminate the child if it is running. Safe to call any number of times.

        The call that actually winds the process down sends the final status
        line to the sink, unless silent. Concurrent calls return once that
        call has finished.
        """
        if self._state is ProcessState.NOT_STARTED:
            logger.debug(f"stop() on process {self.id!r} that was never started")
            return

        self._retire_poll_loop()

        if self._released:
            return
        if self._stopping:
            assert self._stop_done is not None
            await self._stop_done.wait()
            return
        if self._finisher is not None:
            await asyncio.wait({self._finisher})
            return

        # May record a natural exit that happened before stop() was called
        self.liveness()

        self._stopping = True
        process = self._process
        try:
            if self._state is ProcessState.RUNNING and process is not None:
                code = await self._terminator.terminate(process)
                self._set_terminated(code)
            await self._finish_streams()
        finally:
            self._stopping = False
            if self._state is ProcessState.RUNNING:
                self._set_terminated(process.returncode if process is not None else None)
            self._release()
            assert self._stop_done is not None
            self._stop_done.set()

        self.check(silent=silent)

    async def wait(self, timeout: float | None = None) -> int | None:
        """Wait until the process is gone and its output fully drained.

        Returns:
            The exit code (None if unknown)

        Raises:
            ProcessStateError: If the handle was never started
            StreamReadError: If draining failed
            asyncio.TimeoutError: If timeout expires first
        """
        if self._done is None:
            raise ProcessStateError(f"Process {self.id!r} has not been started")
        if timeout is None:
            await self._done.wait()
        else:
            await asyncio.wait_for(self._done.wait(), timeout=timeout)
        if self._poll_error is not None:
            raise self._poll_error
        return self._exit_code

    async def __aenter__(self) -> "ProcessHandle":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # =========================================================================
    # Liveness
    # =========================================================================

    def liveness(self) -> Liveness:
        """Query the exit status of the child.

        Observing an exit moves a RUNNING handle to EXITED.

        Raises:
            ProcessStateError: If the handle was never started
        """
        if self._state is ProcessState.NOT_STARTED:
            raise ProcessStateError(f"Process {self.id!r} has not been started")
        if self._state.terminal:
            return Liveness.exited(self._exit_code)

        try:
            code = self._query_returncode()
        except Exception as e:
            logger.debug(f"Exit status query failed for process {self.id!r}: {e}")
            return Liveness.query_failed(e)

        if code is None:
            return Liveness.running()
        if not self._stopping:
            self._set_exited(code)
        return Liveness.exited(code)

    def _query_returncode(self) -> int | None:
        if self._process is None:
            raise ProcessQueryError(f"Process {self.id!r} has no OS process attached")
        return self._process.returncode

    def is_running(self) -> bool:
        """True while the child has not exited.

        Raises:
            ProcessQueryError: If the exit status could not be queried
        """
        if self._state is ProcessState.NOT_STARTED:
            return False
        live = self.liveness()
        if live.kind is LivenessKind.QUERY_FAILED:
            raise ProcessQueryError(f"Cannot query process {self.id!r}: {live.error}") from live.error
        return live.is_running

    def exit_code(self) -> int | None:
        """Exit code once exited; None while running, never started, or unknown."""
        if self._state is ProcessState.NOT_STARTED:
            return None
        live = self.liveness()
        if live.kind is LivenessKind.QUERY_FAILED:
            raise ProcessQueryError(f"Cannot query process {self.id!r}: {live.error}") from live.error
        return live.code

    def _set_exited(self, code: int | None) -> None:
        if self._state is not ProcessState.RUNNING:
            return
        self._state = ProcessState.EXITED
        self._exit_code = code
        self._exited_at = time.monotonic()
        logger.info(f"Process {self.id!r} exited with code {_format_code(code)}")

    def _set_terminated(self, code: int | None) -> None:
        if self._state is not ProcessState.RUNNING:
            return
        self._state = ProcessState.TERMINATED
        self._exit_code = code
        logger.info(f"Process {self.id!r} terminated (exit code {_format_code(code)})")

    # =========================================================================
    # Draining
    # =========================================================================

    def _drainers(self) -> list[tuple[OutputDrainer, SinkSwitch]]:
        pairs = []
        if self._stderr is not None:
            pairs.append((self._stderr, self._stderr_switch))
        if self._stdout is not None:
            pairs.append((self._stdout, self._stdout_switch))
        return pairs

    def drain_once(self) -> bool:
        """One poll cycle: forward queued output, then re-evaluate liveness.

        Returns:
            True once the process is gone and all output has been forwarded,
            or once the pipes stayed open for the kill timeout after exit;
            the poll loop is retired at that point

        Raises:
            StreamReadError: Unexpected read failure on either stream
            ProcessQueryError: The exit status could not be queried
        """
        if self._state is ProcessState.NOT_STARTED:
            return False
        if self._released:
            self._retire_poll_loop()
            return True

        for drainer, switch in self._drainers():
            if drainer.eof_seen:
                continue
            try:
                drainer.drain(switch, self._sink)
            except StreamClosedRace as e:
                logger.warning(f"Poll cycle for process {self.id!r} read a closed {e.stream} stream")

        if self._stopping:
            # stop() owns the final flush and release
            return False

        live = self.liveness()
        if live.kind is LivenessKind.QUERY_FAILED:
            raise ProcessQueryError(f"Cannot query process {self.id!r}: {live.error}") from live.error
        if live.is_running:
            return False
        if not all(drainer.finished for drainer, _ in self._drainers()):
            # Exited, but the pipes still hold output
            if not self._eof_grace_expired():
                return False
            logger.warning(
                f"Process {self.id!r} exited but its output is still open after "
                f"{self._terminator.kill_timeout}s (inherited by a child?), releasing it"
            )
            self._flush()

        self._release()
        self._retire_poll_loop()
        return True

    def _eof_grace_expired(self) -> bool:
        if self._exited_at is None:
            return False
        return time.monotonic() - self._exited_at >= self._terminator.kill_timeout

    def _flush(self) -> None:
        """Forward whatever is still queued; used on the final drain."""
        for drainer, switch in self._drainers():
            if drainer.eof_seen:
                continue
            try:
                drainer.drain(switch, self._sink)
            except StreamClosedRace as e:
                logger.debug(f"Flush of process {self.id!r} hit closed {e.stream} stream")
            except StreamReadError as e:
                logger.error(str(e))
                if self._poll_error is None:
                    self._poll_error = e

    async def _finish_streams(self) -> None:
        for drainer, _ in self._drainers():
            if not await drainer.wait_eof(timeout=self._terminator.kill_timeout):
                logger.debug(
                    f"Process {self.id!r} {drainer.stream.value} still open, closing"
                )
        self._flush()
        for drainer, _ in self._drainers():
            await drainer.close()

    def _schedule_finish(self) -> None:
        """Hand the last drain of an exited process to a one-shot task."""
        if self._finisher is not None:
            return
        self._retire_poll_loop()
        self._finisher = asyncio.get_running_loop().create_task(
            self._finish_after_exit(), name=f"{self.id}-procman-finish"
        )

    async def _finish_after_exit(self) -> None:
        try:
            await self._finish_streams()
        except Exception as e:
            logger.error(f"Final drain of process {self.id!r} failed: {e}")
            self._record_poll_error(e)
        finally:
            self._release()

    def _release(self) -> None:
        if self._released:
            return
        self._released = True
        for drainer, _ in self._drainers():
            drainer.close_nowait()
        self._process = None
        if self._done is not None:
            self._done.set()
        logger.debug(f"Released resources of process {self.id!r}")

    # =========================================================================
    # Poll loop binding (the loop holds the handle, the handle only the token)
    # =========================================================================

    def _attach_poll_token(self, token: anyio.CancelScope) -> None:
        if self.has_poll_loop:
            raise ProcessStateError(f"Process {self.id!r} already has an active poll loop")
        self._poll_token = token

    def _detach_poll_token(self, token: anyio.CancelScope) -> None:
        if self._poll_token is token:
            self._poll_token = None

    def _retire_poll_loop(self) -> None:
        token = self._poll_token
        if token is not None and not token.cancel_called:
            token.cancel()
            logger.debug(f"Uninstalling poll loop for process {self.id!r}")

    def _record_poll_error(self, error: BaseException) -> None:
        if self._poll_error is None:
            self._poll_error = error
        if self._done is not None:
            self._done.set()

    # =========================================================================
    # Status
    # =========================================================================

    def check(self, silent: bool = False) -> StatusReport:
        """Re-evaluate liveness and report it.

        A process that is no longer running gets its queued output forwarded
        and its poll loop retired. Output still in flight is collected by a
        one-shot task bounded by the kill timeout, after which the handle is
        released.
        Unless silent, the status line is sent to the sink.
        """
        code: int | None = None
        if self._state is ProcessState.NOT_STARTED:
            message = f"Process {self.id} has not been started."
        else:
            live = self.liveness()
            if live.kind is LivenessKind.QUERY_FAILED:
                message = f"Process {self.id} could not be queried: {live.error}."
            elif live.is_running:
                message = f"Process {self.id} is still running."
            else:
                if not self._released and not self._stopping:
                    try:
                        finished = self.drain_once()
                    except (StreamReadError, ProcessQueryError) as e:
                        logger.error(str(e))
                        self._record_poll_error(e)
                        finished = False
                    if not finished:
                        self._schedule_finish()
                code = live.code
                message = f"Process {self.id} finished with exit value {_format_code(code)}."

        report = StatusReport(
            handle_id=self.id,
            state=self._state.value,
            exit_code=code,
            message=message,
        )
        if not silent:
            self._sink.status(report)
        return report

    def __repr__(self) -> str:
        return (
            f"ProcessHandle(id={self.id!r}, "
            f"command={shlex.join(self._argv)!r}, "
            f"state={self._state.value}, "
            f"pid={self._pid}, "
            f"exit_code={self._exit_code})"
        )
