"""Output draining for one child stream.

Each OutputDrainer runs a background reader task doing true blocking reads on
the child's pipe and queueing decoded lines. drain() is the non-blocking half:
it forwards whatever is queued right now and returns. Because the reader never
waits on the poll cadence, the child cannot stall on a full pipe, and a
partially written line only ever blocks the reader task, never the host.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
from dataclasses import dataclass

from .errors import StreamClosedRace, StreamReadError
from .events import OutputLine, StreamName
from .sinks import Sink, SinkSwitch

__all__ = ["OutputDrainer"]

logger = logging.getLogger(__name__)

# Pipe errors that mean "somebody closed the stream under us"
_CLOSED_STREAM_ERRORS = (BrokenPipeError, ConnectionResetError)


class _EndOfStream:
    pass


@dataclass(frozen=True)
class _ReaderFailure:
    error: BaseException
    closed: bool


_EOF = _EndOfStream()


class OutputDrainer:
    """Reader task plus line channel for one output stream.

    Example:
        drainer = OutputDrainer("web", StreamName.STDOUT, process.stdout)
        drainer.start()
        ...
        drainer.drain(switch, sink)  # returns immediately
    """

    def __init__(
        self,
        handle_id: str,
        stream: StreamName,
        reader: asyncio.StreamReader,
        *,
        encoding: str = "utf-8",
        max_line_bytes: int = 64 * 1024,
    ) -> None:
        if max_line_bytes <= 0:
            raise ValueError(f"max_line_bytes must be positive, got {max_line_bytes}")
        self.handle_id = handle_id
        self.stream = StreamName(stream)
        self.encoding = encoding
        self.max_line_bytes = max_line_bytes
        self._reader = reader
        # Carries a multi-byte character split across forced chunks
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._queue: asyncio.Queue[OutputLine | _EndOfStream | _ReaderFailure] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self._finished = False
        self.lines_read = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def finished(self) -> bool:
        """True once end of stream has been drained, or the drainer was closed
        with nothing left to forward."""
        return self._finished or (self._closed and self._queue.empty())

    @property
    def eof_seen(self) -> bool:
        """True once drain() has consumed the end-of-stream marker or a failure."""
        return self._finished

    @property
    def reader_done(self) -> bool:
        return self._task is not None and self._task.done()

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(
            self._pump(), name=f"{self.handle_id}-procman-{self.stream.value}"
        )

    async def _pump(self) -> None:
        """Read lines until end of stream, pushing them onto the queue."""
        try:
            while True:
                forced = False
                try:
                    raw = await self._reader.readuntil(b"\n")
                except asyncio.IncompleteReadError as e:
                    # EOF; whatever is left has no terminator
                    if e.partial:
                        self._put(e.partial, forced=True, final=True)
                    break
                except asyncio.LimitOverrunError:
                    # No terminator within the limit: flush a chunk as a line
                    raw = await self._reader.read(self.max_line_bytes)
                    if not raw:
                        break
                    forced = True
                self._put(raw, forced=forced)
        except asyncio.CancelledError:
            raise
        except _CLOSED_STREAM_ERRORS as e:
            self._queue.put_nowait(_ReaderFailure(e, closed=True))
            return
        except Exception as e:
            self._queue.put_nowait(_ReaderFailure(e, closed=self._closed))
            return
        self._put(b"", forced=True, final=True)
        self._queue.put_nowait(_EOF)

    def _put(self, raw: bytes, *, forced: bool, final: bool = False) -> None:
        text = self._decoder.decode(raw, final=final)
        if forced and not text:
            # Nothing decodable yet, or nothing left at end of stream
            return
        if text.endswith("\n"):
            text = text[:-1]
        if text.endswith("\r"):
            text = text[:-1]
        self.lines_read += 1
        self._queue.put_nowait(
            OutputLine(
                handle_id=self.handle_id,
                stream=self.stream,
                text=text,
                forced=forced,
            )
        )

    def drain(self, switch: SinkSwitch, sink: Sink) -> int:
        """Forward every line queued right now, without waiting.

        Lines are consumed whether or not the switch is on; they are only
        forwarded when it is on at forward time.

        Returns:
            Number of lines consumed

        Raises:
            StreamClosedRace: The stream was closed by stop() (benign)
            StreamReadError: Any other read failure
        """
        if self._finished:
            return 0
        if self._closed and self._queue.empty():
            raise StreamClosedRace(self.handle_id, self.stream.value)

        count = 0
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return count

            if isinstance(item, _EndOfStream):
                self._finished = True
                if switch.active:
                    sink.end_of_stream(self.handle_id, self.stream)
                return count

            if isinstance(item, _ReaderFailure):
                self._finished = True
                if item.closed:
                    raise StreamClosedRace(self.handle_id, self.stream.value) from item.error
                raise StreamReadError(self.handle_id, self.stream.value, item.error) from item.error

            count += 1
            if switch.active:
                sink.write(item)

    async def wait_eof(self, timeout: float | None = None) -> bool:
        """Wait for the reader to reach end of stream.

        Returns:
            True if the reader finished within the timeout
        """
        if self._task is None:
            return True
        if self._task.done():
            return True
        done, _ = await asyncio.wait({self._task}, timeout=timeout)
        return bool(done)

    async def close(self) -> None:
        """Stop reading. Lines already queued can still be drained."""
        if self._closed:
            return
        self._closed = True
        task = self._task
        if task and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug(f"Closed {self.stream.value} reader for process {self.handle_id!r}")

    def close_nowait(self) -> None:
        """Synchronous close, for use from inside a poll cycle."""
        if self._closed:
            return
        self._closed = True
        if self._task and not self._task.done():
            self._task.cancel()
