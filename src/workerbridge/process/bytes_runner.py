"""Runner exchanging opaque byte records with the worker.

Command section:
    int32 chain count, then per chain: int32 function count and one
    envelope per function command

Data section:
    one envelope per record (None is sent as NULL), then END_OF_DATA_SECTION

The worker answers with envelopes, NULL markers and timing data, followed
by END_OF_DATA_SECTION and END_OF_STREAM.
"""

import logging
from typing import Any, BinaryIO, Iterator, Optional, Sequence

from workerbridge.core.context import BarrierCapability, TaskContext
from workerbridge.core.errors import WorkerProtocolError
from workerbridge.core.function import ChainedWorkerFunctions
from workerbridge.core.pool import ReleaseState, WorkerHandle
from workerbridge.process.protocol import (
    SpecialLengths,
    read_bytes,
    read_int,
    write_envelope,
    write_int,
)
from workerbridge.process.reader import ReaderIterator
from workerbridge.process.runner import BaseWorkerRunner
from workerbridge.process.writer import WriterThread

logger = logging.getLogger(__name__)


class BytesWriterThread(WriterThread):
    """Writes function commands and byte records.

    Args:
        worker: Worker acquired for this session.
        input_iterator: Records to send; bytes, str or None.
        partition_index: Partition computed by the task.
        context: Task context of the session.
        funcs: Function chains whose commands make up the command section.
        **kwargs: Passed to WriterThread.
    """

    def __init__(
        self,
        worker: WorkerHandle,
        input_iterator: Iterator[Any],
        partition_index: int,
        context: TaskContext,
        funcs: Sequence[ChainedWorkerFunctions],
        **kwargs: Any,
    ):
        super().__init__(worker, input_iterator, partition_index, context, **kwargs)
        self._funcs = funcs

    def write_command(self, stream: BinaryIO) -> None:
        write_int(stream, len(self._funcs))
        for chain in self._funcs:
            write_int(stream, len(chain.funcs))
            for func in chain.funcs:
                write_envelope(stream, func.command)

    def write_iterator_to_stream(self, stream: BinaryIO) -> None:
        for record in self.iterate_input():
            if record is None:
                write_int(stream, SpecialLengths.NULL)
            else:
                write_envelope(stream, record)
        write_int(stream, SpecialLengths.END_OF_DATA_SECTION)


class BytesReaderIterator(ReaderIterator):
    """Decodes worker output into bytes records (None for NULL)."""

    def read(self) -> Any:
        while True:
            length = read_int(self.stream)
            if length >= 0:
                return read_bytes(self.stream, length)
            if length == SpecialLengths.NULL:
                return None
            if length == SpecialLengths.TIMING_DATA:
                self.handle_timing_data()
                continue
            if length == SpecialLengths.WORKER_EXCEPTION_THROWN:
                raise self.handle_worker_exception()
            if length == SpecialLengths.END_OF_DATA_SECTION:
                self.handle_end_of_data_section()
                return None
            if length == SpecialLengths.END_OF_STREAM:
                self.handle_end_of_stream()
                return None
            raise WorkerProtocolError(f"Unexpected marker from worker: {length}")


class BytesWorkerRunner(BaseWorkerRunner):
    """Runs byte records through a worker.

    Example:
        >>> runner = BytesWorkerRunner(funcs, {"py_worker_reuse": "true"}, pool)
        >>> for record in runner.compute(iter([b"x"]), 0, context):
        ...     print(record)
    """

    def new_writer_thread(
        self,
        worker: WorkerHandle,
        input_iterator: Iterator[Any],
        partition_index: int,
        context: TaskContext,
        barrier: Optional[BarrierCapability],
    ) -> WriterThread:
        return BytesWriterThread(
            worker,
            input_iterator,
            partition_index,
            context,
            self.funcs,
            barrier=barrier,
            buffer_size=self.buffer_size,
            worker_exec=self.worker_exec,
            observability_hub=self.observability_hub,
        )

    def new_reader_iterator(
        self,
        stream: BinaryIO,
        writer_thread: WriterThread,
        start_time: float,
        worker: WorkerHandle,
        released_or_closed: ReleaseState,
        context: TaskContext,
        partition_index: int,
    ) -> ReaderIterator:
        return BytesReaderIterator(
            stream,
            writer_thread,
            start_time,
            worker,
            released_or_closed,
            context,
            self,
            partition_index=partition_index,
        )
