"""procman exception classes.

Only LaunchError and StreamReadError normally reach callers. StreamClosedRace
is raised inside a poll cycle and absorbed there; "not yet exited" is never an
exception at all (see procman.handle.Liveness).
"""

from __future__ import annotations

__all__ = [
    "ProcessManagerError",
    "LaunchError",
    "StreamClosedRace",
    "StreamReadError",
    "ProcessStateError",
    "ProcessQueryError",
]


class ProcessManagerError(Exception):
    """Base class for procman errors."""
    pass


class LaunchError(ProcessManagerError):
    """The OS refused to create the process.

    Attributes:
        handle_id: Id of the handle whose start() failed
        reason: Human readable cause (missing executable, bad cwd, ...)
    """

    def __init__(self, handle_id: str, reason: str) -> None:
        self.handle_id = handle_id
        self.reason = reason
        super().__init__(f"Process {handle_id!r} could not be launched: {reason}")


class StreamClosedRace(ProcessManagerError):
    """A drain read from a stream that stop() already closed."""

    def __init__(self, handle_id: str, stream: str) -> None:
        self.handle_id = handle_id
        self.stream = stream
        super().__init__(f"Process {handle_id!r} {stream} stream is closed")


class StreamReadError(ProcessManagerError):
    """Unexpected failure reading a child's output stream.

    Attributes:
        handle_id: Id of the owning handle
        stream: "stdout" or "stderr"
        cause: The underlying exception
    """

    def __init__(self, handle_id: str, stream: str, cause: BaseException) -> None:
        self.handle_id = handle_id
        self.stream = stream
        self.cause = cause
        super().__init__(
            f"Process {handle_id!r} {stream} read failed: {type(cause).__name__}: {cause}"
        )


class ProcessStateError(ProcessManagerError):
    """Operation not valid in the handle's (or group's) current state."""
    pass


class ProcessQueryError(ProcessManagerError):
    """The exit-status query itself failed."""
    pass
