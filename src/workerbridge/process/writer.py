"""Writer thread feeding a worker its session input.

The writer owns the write half of the worker socket for the whole session.
It never raises out of its thread: a failure is recorded on the thread
(see WriterThread.exception) for the reader to report, and the write side
is always half-closed so the worker stops waiting for input.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Iterator, Optional

from workerbridge.core.context import BarrierCapability, TaskContext
from workerbridge.core.errors import ResourceSetupError
from workerbridge.core.pool import WorkerHandle
from workerbridge.observability import ObservabilityHub
from workerbridge.process.barrier import BarrierServer
from workerbridge.process.protocol import SpecialLengths, write_bool, write_int

logger = logging.getLogger(__name__)


class WriterThread(threading.Thread, ABC):
    """Writes the session header, command and input data to a worker.

    Subclasses define the command section and the data sections; the
    framing around them is fixed:

        int32 partition index, bool is-barrier, int32 barrier port,
        command section, data sections, int32 END_OF_STREAM

    Args:
        worker: Worker acquired for this session.
        input_iterator: Records to send.
        partition_index: Partition computed by the task.
        context: Task context of the session.
        barrier: Barrier capability, for barrier tasks only.
        buffer_size: Size of the socket write buffer.
        worker_exec: Worker executable, used in the thread name.
        observability_hub: Optional custom hub (uses global if None).
    """

    def __init__(
        self,
        worker: WorkerHandle,
        input_iterator: Iterator[Any],
        partition_index: int,
        context: TaskContext,
        barrier: Optional[BarrierCapability] = None,
        buffer_size: int = 65536,
        worker_exec: str = "worker",
        observability_hub: Optional[ObservabilityHub] = None,
    ):
        super().__init__(name=f"stdout writer for {worker_exec}", daemon=True)
        self._worker = worker
        self._input_iterator = input_iterator
        self._partition_index = partition_index
        self._context = context
        self._barrier = barrier
        self._buffer_size = buffer_size
        self._hub = observability_hub or ObservabilityHub.get_instance()

        self._exception: Optional[BaseException] = None
        self._stop_event = threading.Event()
        self._barrier_server: Optional[BarrierServer] = None

    @property
    def exception(self) -> Optional[BaseException]:
        """The failure raised while writing, if any."""
        return self._exception

    @property
    def barrier_server(self) -> Optional[BarrierServer]:
        return self._barrier_server

    def shutdown_on_task_completion(self) -> None:
        """Ask the writer to stop. Only valid once the task has completed."""
        assert self._context.is_completed()
        self._stop_event.set()

    @abstractmethod
    def write_command(self, stream: BinaryIO) -> None:
        """Write the command section."""
        ...

    @abstractmethod
    def write_iterator_to_stream(self, stream: BinaryIO) -> None:
        """Write the input records as data sections.

        Implementations should drain iterate_input() so that a stop request
        interrupts them between records.
        """
        ...

    def iterate_input(self) -> Iterator[Any]:
        """Iterate the input records, stopping once the task completes."""
        for record in self._input_iterator:
            if self._stop_event.is_set():
                raise InterruptedError("Writer stopped on task completion")
            yield record

    def run(self) -> None:
        stream: Optional[BinaryIO] = None
        try:
            stream = self._worker.output_stream(self._buffer_size)

            port = 0
            if self._barrier is not None:
                port = self._start_barrier_server()

            write_int(stream, self._partition_index)
            write_bool(stream, self._barrier is not None)
            write_int(stream, port)
            self.write_command(stream)
            self.write_iterator_to_stream(stream)
            write_int(stream, SpecialLengths.END_OF_STREAM)
            stream.flush()
        except Exception as e:
            if self._context.is_completed() or self._context.is_interrupted():
                logger.debug(
                    f"Exception thrown after task completion (likely due to cleanup): {e}"
                )
            else:
                # Reported by the reader; raising here would only kill this thread
                if self._exception is None:
                    self._exception = e
                logger.debug(f"Writer for partition {self._partition_index} failed: {e}")
            self._shutdown_output()
        finally:
            if stream is not None:
                self._close_quietly(stream)

    def _start_barrier_server(self) -> int:
        server = BarrierServer(self._barrier, observability_hub=self._hub)
        try:
            port = server.start()
        except ResourceSetupError as e:
            logger.error(f"Barrier session for partition {self._partition_index}: {e}")
            raise
        self._barrier_server = server
        self._context.add_task_completion_listener(lambda _: server.close())
        return port

    def _shutdown_output(self) -> None:
        if self._worker.is_closed:
            return
        try:
            self._worker.shutdown_output()
        except OSError as e:
            logger.debug(f"Failed to shut down worker output: {e}")

    @staticmethod
    def _close_quietly(stream: BinaryIO) -> None:
        try:
            stream.close()
        except (OSError, ValueError) as e:
            logger.debug(f"Failed to close worker output stream: {e}")
