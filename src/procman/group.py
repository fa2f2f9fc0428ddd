"""ProcessGroup: batch operations over an ordered collection of handles.

Every batch operation visits all members, in insertion order, and collects
failures per id instead of stopping at the first one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from .errors import ProcessStateError
from .events import StatusReport
from .handle import ProcessHandle, ProcessState

__all__ = ["BatchResult", "ProcessGroup"]

logger = logging.getLogger(__name__)


@dataclass
class BatchResult:
    """Outcome of one batch operation.

    Attributes:
        operation: "start" or "stop"
        attempted: Ids the operation was applied to, in order
        failures: Exception per failed id
    """

    operation: str
    attempted: list[str] = field(default_factory=list)
    failures: dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def succeeded(self) -> list[str]:
        return [handle_id for handle_id in self.attempted if handle_id not in self.failures]

    def __repr__(self) -> str:
        return (
            f"BatchResult(operation={self.operation!r}, "
            f"attempted={len(self.attempted)}, "
            f"failed={sorted(self.failures)})"
        )


class ProcessGroup:
    """Ordered set of ProcessHandles with unique ids.

    Example:
        group = ProcessGroup()
        group.create("ping -c 3 localhost", id="ping")
        group.create(["python", "worker.py"], id="worker")
        result = await group.start()
        if not result.ok:
            ...
        group.check()
        await group.stop()
    """

    def __init__(self, handles: Iterable[ProcessHandle] = ()) -> None:
        self._handles: dict[str, ProcessHandle] = {}
        for handle in handles:
            self.add(handle)

    # =========================================================================
    # Membership
    # =========================================================================

    def add(self, handle: ProcessHandle) -> ProcessHandle:
        """Add a handle. Raises ProcessStateError if its id is taken."""
        if handle.id in self._handles:
            raise ProcessStateError(f"Duplicate process id {handle.id!r} in group")
        self._handles[handle.id] = handle
        return handle

    def create(self, command: Any, *, id: str | None = None, **kwargs: Any) -> ProcessHandle:
        """Construct a handle and add it. The id defaults to "p<position>"."""
        if id is None:
            id = f"p{len(self._handles) + 1}"
        return self.add(ProcessHandle(command, id=id, **kwargs))

    @property
    def ids(self) -> list[str]:
        return list(self._handles)

    def get(self, handle_id: str) -> ProcessHandle | None:
        return self._handles.get(handle_id)

    def __getitem__(self, key: str | int) -> ProcessHandle:
        if isinstance(key, int):
            return list(self._handles.values())[key]
        return self._handles[key]

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[ProcessHandle]:
        return iter(list(self._handles.values()))

    def __contains__(self, item: object) -> bool:
        if isinstance(item, ProcessHandle):
            return self._handles.get(item.id) is item
        return item in self._handles

    # =========================================================================
    # Batch operations
    # =========================================================================

    def _report(self, result: BatchResult) -> BatchResult:
        for handle_id, error in result.failures.items():
            logger.warning(f"{result.operation} failed for process {handle_id!r}: {error}")
        if result.attempted:
            logger.debug(
                f"Group {result.operation}: {len(result.succeeded)}/{len(result.attempted)} succeeded"
            )
        return result

    async def start(self) -> BatchResult:
        """Start every member that has not been started yet."""
        result = BatchResult("start")
        for handle in self:
            if handle.state is not ProcessState.NOT_STARTED:
                continue
            result.attempted.append(handle.id)
            try:
                await handle.start()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result.failures[handle.id] = e
        return self._report(result)

    async def stop(self, silent: bool = False) -> BatchResult:
        """Stop every member; never stops early. Each member that was wound
        down reports its final status unless silent."""
        result = BatchResult("stop")
        for handle in self:
            result.attempted.append(handle.id)
            try:
                await handle.stop(silent=silent)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                result.failures[handle.id] = e
        return self._report(result)

    def check(self, silent: bool = False) -> list[StatusReport]:
        return [handle.check(silent=silent) for handle in self]

    def running(self) -> dict[str, bool]:
        """Liveness per id; a member whose query fails counts as not running."""
        states = {}
        for handle in self:
            try:
                states[handle.id] = handle.is_running()
            except Exception as e:
                logger.warning(f"Cannot query process {handle.id!r}: {e}")
                states[handle.id] = False
        return states

    def has_running(self) -> bool:
        return any(self.running().values())

    def exit_codes(self) -> dict[str, int | None]:
        codes = {}
        for handle in self:
            try:
                codes[handle.id] = handle.exit_code()
            except Exception as e:
                logger.warning(f"Cannot query process {handle.id!r}: {e}")
                codes[handle.id] = None
        return codes

    async def wait(self) -> dict[str, int | None]:
        """Wait for every started member to finish draining.

        Members whose poll loop failed report None instead of raising.
        """
        codes: dict[str, int | None] = {}
        for handle in self:
            if handle.state is ProcessState.NOT_STARTED:
                codes[handle.id] = None
                continue
            try:
                codes[handle.id] = await handle.wait()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Process {handle.id!r} finished with error: {e}")
                codes[handle.id] = None
        return codes

    def set_print_stdout(self, flag: bool) -> None:
        for handle in self:
            handle.print_stdout = flag

    def set_print_stderr(self, flag: bool) -> None:
        for handle in self:
            handle.print_stderr = flag

    async def __aenter__(self) -> "ProcessGroup":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def __repr__(self) -> str:
        return f"ProcessGroup({self.ids})"
