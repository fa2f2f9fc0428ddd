"""PollLoop: the periodic driver of one ProcessHandle.

Every cycle calls ``handle.drain_once()`` and then sleeps for the interval, so
the next cycle is scheduled only after the previous one finished and cycles
for one handle never overlap. The loop stops when drain_once() reports the
handle finished, when the handle cancels the loop's token, or on a fatal
drain or sink error.

The loop holds a reference to its handle; the handle only holds the loop's
cancellation token (an anyio CancelScope).
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import anyio

from .errors import ProcessQueryError, ProcessStateError, StreamReadError

if TYPE_CHECKING:
    from .handle import ProcessHandle

__all__ = ["PollLoop"]

logger = logging.getLogger(__name__)

# Strong references to running loops; the event loop only keeps weak ones
_running_loops: set[asyncio.Task[None]] = set()


class PollLoop:
    """Fixed-delay poll task bound to one handle."""

    def __init__(self, handle: ProcessHandle, interval: float) -> None:
        if not interval > 0:
            raise ValueError(f"interval must be positive, got {interval}")
        self._handle = handle
        self.interval = float(interval)
        self._token = anyio.CancelScope()
        self._task: asyncio.Task[None] | None = None
        self.cycles = 0

    @property
    def name(self) -> str:
        return f"{self._handle.id}-procman-poll"

    @property
    def token(self) -> anyio.CancelScope:
        return self._token

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done() and not self._token.cancel_called

    def start(self) -> "PollLoop":
        """Attach to the handle and schedule the first cycle.

        A loop started for a handle that is not running cancels itself
        immediately instead of polling.

        Raises:
            ProcessStateError: If the loop was started before, or the handle
                already has an active loop
        """
        from .handle import ProcessState

        if self._task is not None or self._token.cancel_called:
            raise ProcessStateError(f"Poll loop {self.name!r} was already started")

        if self._handle.state is not ProcessState.RUNNING:
            logger.debug(
                f"Process {self._handle.id!r} is {self._handle.state.value}, "
                f"poll loop cancelled before its first cycle"
            )
            self._token.cancel()
            return self

        self._handle._attach_poll_token(self._token)
        self._task = asyncio.create_task(self._run(), name=self.name)
        _running_loops.add(self._task)
        self._task.add_done_callback(_running_loops.discard)
        logger.debug(f"Installed poll loop for process {self._handle.id!r} every {self.interval}s")
        return self

    def cancel(self) -> None:
        self._token.cancel()

    async def join(self) -> None:
        """Wait until the loop task has ended."""
        if self._task is not None:
            await asyncio.wait({self._task})

    async def _run(self) -> None:
        handle = self._handle
        try:
            with self._token:
                while not self._token.cancel_called:
                    self.cycles += 1
                    if handle.drain_once():
                        break
                    await anyio.sleep(self.interval)
        except (StreamReadError, ProcessQueryError) as e:
            logger.error(f"Poll loop for process {handle.id!r} failed: {e}")
            handle._record_poll_error(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # Usually a sink that raised; wait() re-raises it
            logger.error(
                f"Poll cycle for process {handle.id!r} raised {type(e).__name__}: {e}",
                exc_info=True,
            )
            handle._record_poll_error(e)
        finally:
            handle._detach_poll_token(self._token)
            logger.debug(f"Poll loop for process {handle.id!r} ended after {self.cycles} cycles")
