"""Sink and SinkSwitch tests.

Test coverage:
- Console formatting: id prefix, wrapping, empty lines, stream routing
- End-of-stream terminator and status lines
- BufferSink filtering
- LoggingSink levels
- SinkSwitch toggling from another thread
"""

from __future__ import annotations

import io
import logging
import threading

import pytest

from procman.events import OutputLine, StatusReport, StreamName
from procman.sinks import BufferSink, ConsoleSink, LoggingSink, Sink, SinkSwitch


def _line(text: str, stream: StreamName = StreamName.STDOUT, handle_id: str = "p1") -> OutputLine:
    return OutputLine(handle_id=handle_id, stream=stream, text=text)


class TestSinkSwitch:
    """Test the print switch."""

    def test_default_on(self):
        assert SinkSwitch().active is True
        assert bool(SinkSwitch(False)) is False

    def test_toggle_from_other_thread(self):
        """The switch can be flipped from a thread other than the loop's."""
        switch = SinkSwitch(True)
        thread = threading.Thread(target=lambda: setattr(switch, "active", False))
        thread.start()
        thread.join()
        assert switch.active is False


class TestConsoleSink:
    """Test terminal output formatting."""

    def test_prefixes_id(self):
        out = io.StringIO()
        sink = ConsoleSink(file=out, err_file=io.StringIO())
        sink.write(_line("hello", handle_id="web"))
        assert out.getvalue() == "web: hello\n"

    def test_empty_id_prints_bare_text(self):
        out = io.StringIO()
        sink = ConsoleSink(file=out)
        sink.write(_line("hello", handle_id=""))
        assert out.getvalue() == "hello\n"

    def test_wraps_long_lines(self):
        out = io.StringIO()
        sink = ConsoleSink(wrap=10, file=out)
        sink.write(_line("aaaa bbbb cccc dddd", handle_id="x"))
        lines = out.getvalue().splitlines()
        assert len(lines) > 1
        assert all(len(line) <= 10 for line in lines)
        assert lines[0].startswith("x: ")

    def test_skips_empty_lines(self):
        out = io.StringIO()
        sink = ConsoleSink(file=out)
        sink.write(_line(""))
        assert out.getvalue() == ""

    def test_stderr_goes_to_err_file(self):
        out, err = io.StringIO(), io.StringIO()
        sink = ConsoleSink(file=out, err_file=err)
        sink.write(_line("oops", stream=StreamName.STDERR))
        assert out.getvalue() == ""
        assert err.getvalue() == "p1: oops\n"

    def test_end_of_stream_prints_blank_line(self):
        out = io.StringIO()
        sink = ConsoleSink(file=out)
        sink.end_of_stream("p1", StreamName.STDOUT)
        assert out.getvalue() == "\n"

    def test_status_printed_verbatim(self):
        out = io.StringIO()
        sink = ConsoleSink(file=out)
        report = StatusReport(handle_id="p1", state="running", message="Process p1 is still running.")
        sink.status(report)
        assert out.getvalue() == "Process p1 is still running.\n"

    def test_rejects_bad_wrap(self):
        with pytest.raises(ValueError):
            ConsoleSink(wrap=0)

    def test_satisfies_protocol(self):
        assert isinstance(ConsoleSink(), Sink)
        assert isinstance(BufferSink(), Sink)
        assert isinstance(LoggingSink(), Sink)


class TestBufferSink:
    """Test the in-memory sink."""

    def test_texts_filters_stream_and_id(self):
        sink = BufferSink()
        sink.write(_line("a", handle_id="p1"))
        sink.write(_line("b", stream=StreamName.STDERR, handle_id="p1"))
        sink.write(_line("c", handle_id="p2"))

        assert sink.texts() == ["a", "c"]
        assert sink.texts("stderr") == ["b"]
        assert sink.texts(StreamName.STDOUT, handle_id="p2") == ["c"]

    def test_clear(self):
        sink = BufferSink()
        sink.write(_line("a"))
        sink.end_of_stream("p1", StreamName.STDOUT)
        sink.clear()
        assert sink.lines == []
        assert sink.closed == []


class TestLoggingSink:
    """Test forwarding to logging."""

    def test_levels(self, caplog: pytest.LogCaptureFixture):
        sink = LoggingSink(logging.getLogger("procman.test_output"))
        with caplog.at_level(logging.INFO, logger="procman.test_output"):
            sink.write(_line("fine"))
            sink.write(_line("bad", stream=StreamName.STDERR))

        levels = {record.getMessage(): record.levelno for record in caplog.records}
        assert levels["[p1] fine"] == logging.INFO
        assert levels["[p1] bad"] == logging.WARNING
