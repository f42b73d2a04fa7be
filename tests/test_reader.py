"""Tests for ReaderIterator and its bytes decoder."""

import io
import json
import time
from unittest import mock

import pytest

from workerbridge.core import (
    CancellationError,
    LocalTaskContext,
    ReleaseState,
    WorkerProtocolError,
    WorkerRaisedError,
)
from workerbridge.observability import MemorySink, ObservabilityHub, TraceLevel
from workerbridge.process.bytes_runner import BytesReaderIterator
from workerbridge.process.protocol import SpecialLengths, write_envelope, write_int
from workerbridge.process.reader import InterruptibleIterator


# =============================================================================
# Test Fixtures
# =============================================================================


def worker_output(*frames) -> io.BytesIO:
    """Build a worker output stream. bytes/str are envelopes, ints are markers."""
    buf = io.BytesIO()
    for frame in frames:
        if isinstance(frame, int):
            write_int(buf, frame)
        else:
            write_envelope(buf, frame)
    buf.seek(0)
    return buf


def make_reader(stream, reuse=True, writer_exception=None, context=None, hub=None,
                released_or_closed=None):
    runner = mock.Mock()
    runner.reuse_worker = reuse
    runner.observability_hub = hub or ObservabilityHub()
    writer = mock.Mock()
    writer.exception = writer_exception
    worker = mock.Mock()
    worker.worker_id = "w-1"
    reader = BytesReaderIterator(
        stream,
        writer,
        time.perf_counter(),
        worker,
        released_or_closed or ReleaseState(),
        context or LocalTaskContext(),
        runner,
        partition_index=7,
    )
    return reader, runner, worker


def traced_hub():
    hub = ObservabilityHub()
    sink = MemorySink()
    hub.configure(level=TraceLevel.VERBOSE, sinks=[sink])
    return hub, sink


# =============================================================================
# Normal Stream Tests
# =============================================================================


class TestCleanEnd:
    """Tests for streams that end normally."""

    def test_records_then_release(self):
        """Test records are yielded in order and the worker is released once."""
        stream = worker_output(b"a", b"b", b"c", -1, -4)
        reader, runner, worker = make_reader(stream)

        assert list(reader) == [b"a", b"b", b"c"]
        assert reader.is_exhausted
        runner.release_worker.assert_called_once_with(worker)
        assert stream.closed

    def test_exhausted_reader_stays_exhausted(self):
        """Test pulling after the end keeps returning nothing."""
        reader, runner, _ = make_reader(worker_output(-1, -4))

        assert list(reader) == []
        assert not reader.has_next()
        with pytest.raises(StopIteration):
            next(reader)
        assert runner.release_worker.call_count == 1

    def test_null_records(self):
        """Test NULL markers yield None records."""
        reader, _, _ = make_reader(worker_output(b"x", -5, b"", -1, -4))

        assert list(reader) == [b"x", None, b""]

    def test_has_next_does_not_consume(self):
        """Test repeated has_next() keeps the same buffered record."""
        reader, _, _ = make_reader(worker_output(b"a", b"b", -1, -4))

        assert reader.has_next()
        assert reader.has_next()
        assert next(reader) == b"a"
        assert next(reader) == b"b"
        assert not reader.has_next()

    def test_no_release_without_reuse(self):
        """Test the worker is not released when reuse is disabled."""
        reader, runner, _ = make_reader(worker_output(b"a", -1, -4), reuse=False)

        assert list(reader) == [b"a"]
        runner.release_worker.assert_not_called()

    def test_no_release_after_completion_hook(self):
        """Test the reader loses the release race once the latch is taken."""
        state = ReleaseState()
        assert state.try_settle()
        reader, runner, _ = make_reader(worker_output(-1, -4), released_or_closed=state)

        assert list(reader) == []
        runner.release_worker.assert_not_called()

    def test_data_end_without_stream_end(self):
        """Test a data end followed by anything but END_OF_STREAM ends without release."""
        reader, runner, _ = make_reader(worker_output(b"a", -1, -1))

        assert list(reader) == [b"a"]
        assert reader.is_exhausted
        runner.release_worker.assert_not_called()

    def test_bare_end_of_stream(self):
        """Test END_OF_STREAM alone ends the stream and releases."""
        reader, runner, _ = make_reader(worker_output(b"a", -4))

        assert list(reader) == [b"a"]
        runner.release_worker.assert_called_once()


# =============================================================================
# Failure Tests
# =============================================================================


class TestFailures:
    """Tests for failure translation."""

    def test_worker_exception_after_record(self):
        """Test a record followed by an exception frame."""
        reader, runner, _ = make_reader(worker_output(b"1", -2, "boom"))

        assert next(reader) == b"1"
        with pytest.raises(WorkerRaisedError) as exc_info:
            next(reader)

        assert exc_info.value.message == "boom"
        assert str(exc_info.value) == "boom"
        assert exc_info.value.__cause__ is None
        runner.release_worker.assert_not_called()

    def test_worker_exception_chains_writer_failure(self):
        """Test the writer failure becomes the cause of a worker exception."""
        writer_error = BrokenPipeError("pipe closed")
        reader, _, _ = make_reader(worker_output(-2, "boom"), writer_exception=writer_error)

        with pytest.raises(WorkerRaisedError) as exc_info:
            next(reader)

        assert exc_info.value.message == "boom"
        assert exc_info.value.__cause__ is writer_error

    def test_eof_is_crash(self):
        """Test an unexpected end of stream is reported as a crash."""
        reader, _, _ = make_reader(worker_output(b"a"))

        assert next(reader) == b"a"
        with pytest.raises(WorkerProtocolError) as exc_info:
            next(reader)

        assert "Worker exited unexpectedly (crashed)" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, EOFError)

    def test_truncated_envelope_is_crash(self):
        """Test a payload cut short is reported as a crash."""
        stream = io.BytesIO(b"\x00\x00\x00\x10abc")
        reader, _, _ = make_reader(stream)

        with pytest.raises(WorkerProtocolError):
            next(reader)

    def test_writer_failure_wins_over_eof(self):
        """Test a recorded writer failure is raised instead of the EOF symptom."""
        writer_error = RuntimeError("input iterator failed")
        reader, _, _ = make_reader(worker_output(), writer_exception=writer_error)

        with pytest.raises(RuntimeError) as exc_info:
            next(reader)

        assert exc_info.value is writer_error

    def test_cancellation_wins_over_eof(self):
        """Test interruption supersedes the EOF that follows it."""
        context = LocalTaskContext()
        context.mark_interrupted("killed by user")
        reader, _, _ = make_reader(
            worker_output(), context=context, writer_exception=RuntimeError("x")
        )

        with pytest.raises(CancellationError) as exc_info:
            next(reader)

        assert exc_info.value.reason == "killed by user"

    def test_cancellation_wins_over_worker_exception(self):
        """Test interruption supersedes an exception frame."""
        context = LocalTaskContext()
        context.mark_interrupted("stage cancelled")
        reader, _, _ = make_reader(worker_output(-2, "boom"), context=context)

        with pytest.raises(CancellationError):
            next(reader)

    def test_unsupported_markers(self):
        """Test columnar and unknown markers are protocol errors."""
        for marker in (SpecialLengths.START_ARROW_STREAM, SpecialLengths.READ_SCHEMA, -42):
            reader, _, _ = make_reader(worker_output(int(marker)))
            with pytest.raises(WorkerProtocolError):
                next(reader)

    def test_failure_is_raised_again_without_reading(self):
        """Test later pulls re-raise the first error and leave the stream alone."""
        hub, sink = traced_hub()
        stream = worker_output(-2, "boom", b"after")
        reader, runner, _ = make_reader(stream, hub=hub)

        with pytest.raises(WorkerRaisedError) as first:
            next(reader)
        with pytest.raises(WorkerRaisedError) as second:
            next(reader)
        with pytest.raises(WorkerRaisedError):
            reader.has_next()

        assert second.value is first.value
        assert reader.is_exhausted
        ends = sink.get_records("session_end")
        assert [end.outcome for end in ends] == ["worker_error"]
        runner.release_worker.assert_not_called()

    def test_failure_closes_stream(self):
        """Test the input stream is closed when a failure is raised."""
        stream = worker_output(b"a")
        reader, _, _ = make_reader(stream)

        assert next(reader) == b"a"
        with pytest.raises(WorkerProtocolError):
            next(reader)

        assert stream.closed


# =============================================================================
# Tracing Tests
# =============================================================================


class TestTracing:
    """Tests for trace records emitted by the reader."""

    def test_timing_data_is_skipped_and_traced(self):
        """Test timing sections produce a TimingRecord and no output record."""
        hub, sink = traced_hub()
        timings = json.dumps({"boot_ms": 1.5, "records": 1})
        reader, _, _ = make_reader(worker_output(b"a", -3, timings, -1, -4), hub=hub)

        assert list(reader) == [b"a"]

        timing = sink.get_records("timing")
        assert len(timing) == 1
        assert timing[0].timings == {"boot_ms": 1.5, "records": 1}
        assert timing[0].partition_index == 7

    def test_undecodable_timing_is_ignored(self):
        """Test timing payloads that are not JSON do not break the stream."""
        hub, sink = traced_hub()
        reader, _, _ = make_reader(worker_output(-3, b"\xff\xfe", b"a", -1, -4), hub=hub)

        assert list(reader) == [b"a"]
        assert sink.get_records("timing") == []

    def test_session_end_released(self):
        """Test a clean end emits a released session end record."""
        hub, sink = traced_hub()
        reader, _, _ = make_reader(worker_output(b"a", b"b", -1, -4), hub=hub)
        list(reader)

        ends = sink.get_records("session_end")
        assert len(ends) == 1
        assert ends[0].outcome == "released"
        assert ends[0].records_read == 2
        assert ends[0].worker_id == "w-1"

    def test_session_end_worker_error(self):
        """Test an exception frame emits a worker_error session end."""
        hub, sink = traced_hub()
        reader, _, _ = make_reader(worker_output(-2, "boom"), hub=hub)

        with pytest.raises(WorkerRaisedError):
            next(reader)

        assert sink.get_records("session_end")[0].outcome == "worker_error"


# =============================================================================
# InterruptibleIterator Tests
# =============================================================================


class TestInterruptibleIterator:
    """Tests for InterruptibleIterator."""

    def test_passes_through(self):
        """Test records pass through while the task runs."""
        context = LocalTaskContext()
        it = InterruptibleIterator(context, iter([1, 2]))

        assert list(it) == [1, 2]

    def test_raises_once_interrupted(self):
        """Test the next pull after interruption raises CancellationError."""
        context = LocalTaskContext()
        delegate = iter([1, 2, 3])
        it = InterruptibleIterator(context, delegate)

        assert next(it) == 1
        context.mark_interrupted("speculative copy won")

        with pytest.raises(CancellationError) as exc_info:
            next(it)

        assert "speculative copy won" in str(exc_info.value)
        assert next(delegate) == 2
