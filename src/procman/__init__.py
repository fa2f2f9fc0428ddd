"""procman - supervise external processes without blocking the event loop.

Each child's stdout and stderr are drained continuously and forwarded, line by
line and prefixed with the process id, while the caller keeps working.

环境变量:
    PROCMAN_POLL_INTERVAL: 轮询间隔（秒，默认 0.5）
    PROCMAN_PRINT_STDOUT / PROCMAN_PRINT_STDERR: 是否打印输出 (默认 true)
    PROCMAN_WRAP: 折行宽度 (默认 80)

用法:
    procman "ping -c 3 localhost"
"""

__version__ = "0.1.0"

from .errors import (
    LaunchError,
    ProcessManagerError,
    ProcessQueryError,
    ProcessStateError,
    StreamClosedRace,
    StreamReadError,
)
from .events import OutputLine, StatusReport, StreamName
from .group import BatchResult, ProcessGroup
from .handle import Liveness, LivenessKind, ProcessHandle, ProcessState
from .poll import PollLoop
from .sinks import BufferSink, ConsoleSink, LoggingSink, Sink, SinkSwitch

__all__ = [
    "__version__",
    "BatchResult",
    "BufferSink",
    "ConsoleSink",
    "LaunchError",
    "Liveness",
    "LivenessKind",
    "LoggingSink",
    "OutputLine",
    "PollLoop",
    "ProcessGroup",
    "ProcessHandle",
    "ProcessManagerError",
    "ProcessQueryError",
    "ProcessState",
    "ProcessStateError",
    "Sink",
    "SinkSwitch",
    "StatusReport",
    "StreamClosedRace",
    "StreamName",
    "StreamReadError",
]
