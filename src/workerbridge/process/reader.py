"""Reader side of a worker session.

ReaderIterator is a lazy, single-pass iterator over the worker's output
with one-element lookahead. Subclasses decode records in read(); control
frames go through the shared handlers defined here, which also decide
when the worker is returned to the pool.

Failures are translated at pull time, in priority order:
1. The task was interrupted -> CancellationError
2. The writer recorded a failure -> that failure (the reader's error is a symptom)
3. The stream ended unexpectedly -> WorkerProtocolError("Worker exited unexpectedly (crashed)")
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Iterator, Optional, TYPE_CHECKING

from workerbridge.core.context import TaskContext
from workerbridge.core.errors import (
    CancellationError,
    WorkerProtocolError,
    WorkerRaisedError,
)
from workerbridge.core.pool import ReleaseState, WorkerHandle
from workerbridge.observability.records import SessionEndRecord, TimingRecord
from workerbridge.process.protocol import SpecialLengths, read_envelope, read_int, read_utf
from workerbridge.process.writer import WriterThread

if TYPE_CHECKING:
    from workerbridge.process.runner import BaseWorkerRunner

logger = logging.getLogger(__name__)

# Marks an empty lookahead slot; None is a valid record
_EMPTY = object()


class ReaderIterator(ABC):
    """Pull-based iterator over records produced by a worker.

    Args:
        stream: Buffered reader over the worker socket.
        writer_thread: Writer of the same session, consulted for failures.
        start_time: perf_counter() value when the session started.
        worker: Worker of the session.
        released_or_closed: Latch shared with the task completion hook.
        context: Task context of the session.
        runner: Runner that owns the session.
        partition_index: Partition computed by the task.
    """

    def __init__(
        self,
        stream: BinaryIO,
        writer_thread: WriterThread,
        start_time: float,
        worker: WorkerHandle,
        released_or_closed: ReleaseState,
        context: TaskContext,
        runner: "BaseWorkerRunner",
        partition_index: int = 0,
    ):
        self.stream = stream
        self.writer_thread = writer_thread
        self.start_time = start_time
        self.worker = worker
        self.released_or_closed = released_or_closed
        self.context = context
        self.runner = runner
        self.partition_index = partition_index
        self._hub = runner.observability_hub

        self._next_obj: Any = _EMPTY
        self._eos = False
        self._failure: Optional[Exception] = None
        self._records_read = 0
        self._outcome = "end_of_stream"

    def __iter__(self) -> "ReaderIterator":
        return self

    def __next__(self) -> Any:
        if not self.has_next():
            raise StopIteration
        obj = self._next_obj
        self._next_obj = _EMPTY
        self._records_read += 1
        return obj

    def has_next(self) -> bool:
        """Make sure one record is buffered. False once the stream has ended."""
        if self._next_obj is not _EMPTY:
            return True
        if self._failure is not None:
            # A failed session raises the same error on every later pull
            raise self._failure
        if self._eos:
            return False

        try:
            obj = self.read()
        except Exception as e:
            error = self._translate_failure(e)
            self._failure = error
            self._eos = True
            self._close_stream()
            self._emit_end()
            if error is e:
                raise
            raise error

        if self._eos:
            return False
        self._next_obj = obj
        return True

    @property
    def is_exhausted(self) -> bool:
        return self._eos

    @abstractmethod
    def read(self) -> Any:
        """Read the next record from the stream.

        When a control frame ends the stream, call the matching handler and
        return any value; it is discarded once the stream is marked ended.
        """
        ...

    # -------------------------------------------------------------------------
    # Shared control frame handlers
    # -------------------------------------------------------------------------

    def handle_worker_exception(self) -> WorkerRaisedError:
        """Decode an exception frame. The caller raises the returned error."""
        message = read_utf(self.stream)
        self._outcome = "worker_error"
        return WorkerRaisedError(message, cause=self.writer_thread.exception)

    def handle_end_of_stream(self) -> None:
        self._finish_stream()
        self._eos = True
        self._emit_end()

    def handle_end_of_data_section(self) -> None:
        if read_int(self.stream) == SpecialLengths.END_OF_STREAM:
            self._finish_stream()
        self._eos = True
        self._emit_end()

    def handle_timing_data(self) -> None:
        """Consume a timing envelope. Payloads that are not JSON objects are ignored."""
        payload = read_envelope(self.stream)
        if not self._hub.enabled:
            return
        try:
            timings = json.loads(payload.decode("utf-8"))
        except ValueError:
            logger.debug(f"Ignoring undecodable timing data ({len(payload)} bytes)")
            return
        if isinstance(timings, dict):
            self._hub.emit(TimingRecord(
                partition_index=self.partition_index,
                worker_id=self.worker.worker_id,
                timings=timings,
            ))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _close_stream(self) -> None:
        try:
            self.stream.close()
        except OSError as e:
            logger.debug(f"Failed to close worker input stream: {e}")

    def _finish_stream(self) -> None:
        self._close_stream()
        if self.runner.reuse_worker and self.released_or_closed.try_settle():
            self.runner.release_worker(self.worker)
            self._outcome = "released"

    def _translate_failure(self, e: Exception) -> Exception:
        if self.context.is_interrupted():
            logger.debug(f"Exception thrown after task interruption: {e}")
            self._outcome = "cancelled"
            return CancellationError(self.context.get_kill_reason() or "unknown reason")

        if isinstance(e, WorkerRaisedError):
            return e

        writer_exception = self.writer_thread.exception
        if writer_exception is not None:
            logger.error(f"Worker exited unexpectedly (crashed): {e}")
            logger.error(
                "This may have been caused by a prior exception:",
                exc_info=writer_exception,
            )
            self._outcome = "crashed"
            return writer_exception

        if isinstance(e, (EOFError, ConnectionError)):
            self._outcome = "crashed"
            error = WorkerProtocolError("Worker exited unexpectedly (crashed)")
            error.__cause__ = e
            return error

        self._outcome = "crashed"
        return e

    def _emit_end(self) -> None:
        if not self._hub.enabled:
            return
        self._hub.emit(SessionEndRecord(
            partition_index=self.partition_index,
            worker_id=self.worker.worker_id,
            outcome=self._outcome,
            records_read=self._records_read,
            duration_ms=(time.perf_counter() - self.start_time) * 1000,
        ))


class InterruptibleIterator:
    """Iterator wrapper that stops promptly once the task is interrupted.

    Args:
        context: Task context to watch.
        delegate: Iterator to wrap.
    """

    def __init__(self, context: TaskContext, delegate: Iterator[Any]):
        self._context = context
        self._delegate = delegate

    def __iter__(self) -> "InterruptibleIterator":
        return self

    def __next__(self) -> Any:
        if self._context.is_interrupted():
            raise CancellationError(self._context.get_kill_reason() or "unknown reason")
        return next(self._delegate)

    @property
    def delegate(self) -> Iterator[Any]:
        return self._delegate
