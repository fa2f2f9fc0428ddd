"""PollLoop tests.

Test coverage:
- Cadence and cancellation
- Self-retirement when the handle reports completion
- Refusal to double-attach
- Fatal cycle errors (read failures and anything else) recorded on the handle
"""

from __future__ import annotations

import asyncio
from typing import Callable

import pytest

from conftest import py
from procman.errors import ProcessStateError, StreamReadError
from procman.handle import ProcessHandle, ProcessState
from procman.poll import PollLoop
from procman.sinks import BufferSink

pytestmark = pytest.mark.timeout(30)


class FakeHandle:
    """Stand-in exposing only what PollLoop touches."""

    def __init__(self, cycle: Callable[[int], bool] = lambda n: False) -> None:
        self.id = "fake"
        self.state = ProcessState.RUNNING
        self.token = None
        self.errors: list[BaseException] = []
        self.calls = 0
        self._cycle = cycle

    def _attach_poll_token(self, token) -> None:
        self.token = token

    def _detach_poll_token(self, token) -> None:
        if self.token is token:
            self.token = None

    def _record_poll_error(self, error: BaseException) -> None:
        self.errors.append(error)

    def drain_once(self) -> bool:
        self.calls += 1
        return self._cycle(self.calls)


class TestLifecycle:
    """Test starting and stopping the loop."""

    def test_rejects_bad_interval(self):
        with pytest.raises(ValueError):
            PollLoop(FakeHandle(), 0)

    @pytest.mark.asyncio
    async def test_cadence_and_cancel(self):
        handle = FakeHandle()
        loop = PollLoop(handle, 0.05).start()
        assert loop.active
        assert loop.name == "fake-procman-poll"
        assert handle.token is loop.token

        await asyncio.sleep(0.3)
        loop.cancel()
        loop.cancel()  # idempotent
        await loop.join()

        calls = handle.calls
        assert 2 <= calls <= 10
        assert not loop.active
        assert handle.token is None

        await asyncio.sleep(0.15)
        assert handle.calls == calls

    @pytest.mark.asyncio
    async def test_stops_when_cycle_reports_done(self):
        handle = FakeHandle(lambda n: n >= 3)
        loop = PollLoop(handle, 0.01).start()
        await asyncio.wait_for(loop.join(), timeout=5)

        assert handle.calls == 3
        assert loop.cycles == 3
        assert handle.errors == []

    @pytest.mark.asyncio
    async def test_cancel_from_inside_cycle(self):
        holder: list[PollLoop] = []

        def cycle(n: int) -> bool:
            holder[0].cancel()
            return False

        handle = FakeHandle(cycle)
        holder.append(PollLoop(handle, 0.01))
        holder[0].start()
        await asyncio.wait_for(holder[0].join(), timeout=5)

        assert handle.calls == 1

    @pytest.mark.asyncio
    async def test_start_twice_raises(self):
        loop = PollLoop(FakeHandle(), 0.05).start()
        with pytest.raises(ProcessStateError):
            loop.start()
        loop.cancel()
        await loop.join()

    @pytest.mark.asyncio
    async def test_terminal_handle_self_cancels(self):
        handle = FakeHandle()
        handle.state = ProcessState.EXITED

        loop = PollLoop(handle, 0.01).start()

        assert not loop.active
        assert loop.token.cancel_called
        assert handle.token is None
        await asyncio.sleep(0.05)
        assert handle.calls == 0


class TestErrors:
    """Test fatal cycle errors."""

    @pytest.mark.asyncio
    async def test_read_error_recorded(self):
        error = StreamReadError("fake", "stdout", OSError("boom"))

        def cycle(n: int) -> bool:
            raise error

        handle = FakeHandle(cycle)
        loop = PollLoop(handle, 0.01).start()
        await asyncio.wait_for(loop.join(), timeout=5)

        assert handle.errors == [error]
        assert handle.calls == 1
        assert handle.token is None

    @pytest.mark.asyncio
    async def test_unexpected_error_recorded(self):
        def cycle(n: int) -> bool:
            if n == 3:
                raise RuntimeError("sink broke")
            return False

        handle = FakeHandle(cycle)
        loop = PollLoop(handle, 0.01).start()
        await asyncio.wait_for(loop.join(), timeout=5)

        assert len(handle.errors) == 1
        assert isinstance(handle.errors[0], RuntimeError)
        assert handle.calls == 3
        assert handle.token is None
        assert not loop.active


class TestWithRealHandle:
    """Test the loop attached by ProcessHandle.start()."""

    @pytest.mark.asyncio
    async def test_second_loop_rejected(self):
        handle = ProcessHandle(py("import time; time.sleep(30)"), id="r", sink=BufferSink(), poll_interval=0.05)
        await handle.start()
        try:
            assert handle.has_poll_loop
            with pytest.raises(ProcessStateError):
                PollLoop(handle, 0.05).start()
        finally:
            await handle.stop()
        assert not handle.has_poll_loop

    @pytest.mark.asyncio
    async def test_loop_retires_after_exit(self):
        handle = ProcessHandle(py("print('x')"), id="r", sink=BufferSink(), poll_interval=0.02)
        await handle.start()
        await handle.wait(timeout=10)
        await asyncio.sleep(0.05)

        assert not handle.has_poll_loop
        # A fresh loop on a finished handle cancels itself
        loop = PollLoop(handle, 0.02).start()
        assert not loop.active
