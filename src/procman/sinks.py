"""Output sinks and print switches.

A sink receives the lines drained from a child and the status reports emitted
by check(). Whether a line is forwarded at all is decided by a SinkSwitch,
which callers may flip from any thread while the process runs.
"""

from __future__ import annotations

import logging
import sys
import textwrap
import threading
from typing import IO, Protocol, runtime_checkable

from .events import OutputLine, StatusReport, StreamName

__all__ = [
    "Sink",
    "SinkSwitch",
    "ConsoleSink",
    "BufferSink",
    "LoggingSink",
]

logger = logging.getLogger(__name__)


class SinkSwitch:
    """Lock-guarded on/off flag for one output stream."""

    def __init__(self, active: bool = True) -> None:
        self._lock = threading.Lock()
        self._active = bool(active)

    @property
    def active(self) -> bool:
        with self._lock:
            return self._active

    @active.setter
    def active(self, value: bool) -> None:
        with self._lock:
            self._active = bool(value)

    def __bool__(self) -> bool:
        return self.active

    def __repr__(self) -> str:
        return f"SinkSwitch(active={self.active})"


@runtime_checkable
class Sink(Protocol):
    """Destination for drained output."""

    def write(self, line: OutputLine) -> None:
        """Receive one output line."""
        ...

    def end_of_stream(self, handle_id: str, stream: StreamName) -> None:
        """The child closed the given stream."""
        ...

    def status(self, report: StatusReport) -> None:
        """Receive a check() status line."""
        ...


class ConsoleSink:
    """Print lines to the terminal as "<id>: <text>", wrapped to a width.

    Stderr lines go to ``err_file`` (sys.stderr by default); everything else,
    status lines included, goes to ``file``. Empty lines are not printed.
    """

    def __init__(
        self,
        wrap: int = 80,
        file: IO[str] | None = None,
        err_file: IO[str] | None = None,
    ) -> None:
        if wrap <= 0:
            raise ValueError(f"wrap must be positive, got {wrap}")
        self.wrap = wrap
        self._file = file
        self._err_file = err_file
        self._lock = threading.Lock()

    def _target(self, stream: StreamName) -> IO[str]:
        if stream is StreamName.STDERR:
            return self._err_file or sys.stderr
        return self._file or sys.stdout

    def format_line(self, line: OutputLine) -> list[str]:
        """Prefix and wrap one line; returns the physical lines to print."""
        text = f"{line.handle_id}: {line.text}" if line.handle_id else line.text
        return textwrap.wrap(text, width=self.wrap, replace_whitespace=False) or [text]

    def write(self, line: OutputLine) -> None:
        if not line.text:
            return
        target = self._target(line.stream)
        with self._lock:
            for chunk in self.format_line(line):
                print(chunk, file=target, flush=True)

    def end_of_stream(self, handle_id: str, stream: StreamName) -> None:
        with self._lock:
            print(file=self._target(stream), flush=True)

    def status(self, report: StatusReport) -> None:
        with self._lock:
            print(report.message, file=self._file or sys.stdout, flush=True)


class BufferSink:
    """Collect everything in memory. Useful for tests and programmatic use."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.lines: list[OutputLine] = []
        self.reports: list[StatusReport] = []
        self.closed: list[tuple[str, StreamName]] = []

    def write(self, line: OutputLine) -> None:
        with self._lock:
            self.lines.append(line)

    def end_of_stream(self, handle_id: str, stream: StreamName) -> None:
        with self._lock:
            self.closed.append((handle_id, stream))

    def status(self, report: StatusReport) -> None:
        with self._lock:
            self.reports.append(report)

    def texts(self, stream: StreamName | str = StreamName.STDOUT, handle_id: str | None = None) -> list[str]:
        """Texts received for one stream, optionally for one handle only."""
        stream = StreamName(stream)
        with self._lock:
            return [
                line.text
                for line in self.lines
                if line.stream is stream and (handle_id is None or line.handle_id == handle_id)
            ]

    def clear(self) -> None:
        with self._lock:
            self.lines.clear()
            self.reports.clear()
            self.closed.clear()


class LoggingSink:
    """Forward output to a logger: stdout at INFO, stderr at WARNING."""

    def __init__(self, target: logging.Logger | None = None) -> None:
        self._logger = target or logging.getLogger("procman.output")

    def write(self, line: OutputLine) -> None:
        level = logging.WARNING if line.stream is StreamName.STDERR else logging.INFO
        self._logger.log(level, f"[{line.handle_id}] {line.text}")

    def end_of_stream(self, handle_id: str, stream: StreamName) -> None:
        self._logger.debug(f"[{handle_id}] {stream.value} closed")

    def status(self, report: StatusReport) -> None:
        self._logger.info(report.message)
