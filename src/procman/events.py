"""Event models delivered to sinks.

Design:
1. One model per thing a sink can receive - output lines and status reports
2. extra='ignore' so sinks can be fed from loosely built dicts
3. Timestamps are taken when the line is read, not when it is forwarded
"""

from __future__ import annotations

import time
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "StreamName",
    "OutputLine",
    "StatusReport",
]


class StreamName(str, Enum):
    """Child output stream."""

    STDOUT = "stdout"
    STDERR = "stderr"


class OutputLine(BaseModel):
    """One decoded line of child output.

    Attributes:
        handle_id: Id of the process that wrote the line
        stream: Which stream it came from
        text: Decoded text with the line terminator stripped
        timestamp: Unix time the line was read from the pipe
        forced: True when the line was flushed without a terminator
            (over-long line, or trailing text at end of stream)
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    handle_id: str
    stream: StreamName
    text: str
    timestamp: float = Field(default_factory=time.time)
    forced: bool = False


class StatusReport(BaseModel):
    """Result of a check() on one handle.

    Attributes:
        handle_id: Id of the checked process
        state: ProcessState value at check time
        exit_code: Exit code if known
        message: Human readable status line
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    handle_id: str
    state: str
    exit_code: int | None = None
    message: str
    timestamp: float = Field(default_factory=time.time)

    @property
    def running(self) -> bool:
        return self.state == "running"
