"""Worker runners - drive one worker per task over a local socket.

A runner turns (input records, partition index, task context) into a lazy
iterator of worker output. For each call to compute() it:

    acquire worker ──→ WriterThread  (header, command, data, END_OF_STREAM)
          │        ──→ MonitorThread (kills the worker of a stuck task)
          └──────────→ ReaderIterator (returned to the caller)

The worker is released to the pool or closed exactly once, whichever of the
task completion hook and the reader's end-of-stream handler gets there
first. The watchdog destroys it independently.

Example:
    >>> from workerbridge.process import BytesWorkerRunner, ProcessWorkerPool
    >>> from workerbridge.core import LocalTaskContext, WorkerFunction, ChainedWorkerFunctions
    >>>
    >>> funcs = [ChainedWorkerFunctions([WorkerFunction(b"upper", {}, "python3")])]
    >>> with ProcessWorkerPool() as pool:
    ...     runner = BytesWorkerRunner(funcs, {"buffer_size": "8192"}, pool)
    ...     context = LocalTaskContext(partition_id=0)
    ...     out = list(runner.compute(iter([b"a", b"b"]), 0, context))
    ...     context.mark_completed()
    >>> out
    [b'A', b'B']
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, BinaryIO, Dict, Iterator, Mapping, Optional, Sequence

from workerbridge.config.schema import RunnerConfig
from workerbridge.core.context import BarrierCapability, TaskContext
from workerbridge.core.function import ChainedWorkerFunctions
from workerbridge.core.pool import ReleaseState, WorkerHandle, WorkerPool
from workerbridge.observability import ObservabilityHub
from workerbridge.observability.records import SessionStartRecord
from workerbridge.process.monitor import DEFAULT_POLL_INTERVAL_SEC, MonitorThread
from workerbridge.process.reader import InterruptibleIterator, ReaderIterator
from workerbridge.process.writer import WriterThread

logger = logging.getLogger(__name__)


class WorkerConf:
    """Configuration keys understood by runners."""
    BUFFER_SIZE = "buffer_size"
    PY_WORKER_REUSE = "py_worker_reuse"
    PY_EXECUTOR_MEMORY = "py_executor_memory"
    EXECUTOR_CORES = "executor_cores"
    PYTHON_ENV = "python_env"
    TASK_KILL_TIMEOUT = "task_kill_timeout"


class WorkerEnv:
    """Environment variables injected into the worker."""
    BUFFER_SIZE = "BUFFER_SIZE"
    PY_WORKER_REUSE = "PY_WORKER_REUSE"
    PY_EXECUTOR_MEMORY = "PY_EXECUTOR_MEMORY"


class BaseWorkerRunner(ABC):
    """Base class for runners that stream records through a worker.

    Subclasses supply the writer (command and data format) and the reader
    (record decoding) through new_writer_thread() and new_reader_iterator().

    All functions of the chains share the executable, version and the
    environment map of the first function. The environment map is mutated
    by compute() and must not be modified concurrently.

    Args:
        funcs: Function chains to run, at least one.
        conf: Configuration map (see WorkerConf); values may be strings.
        pool: Pool providing workers.
        observability_hub: Optional custom observability hub (uses global if None).
        monitor_poll_interval: Seconds between watchdog checks.
    """

    def __init__(
        self,
        funcs: Sequence[ChainedWorkerFunctions],
        conf: Optional[Mapping[str, Any]],
        pool: WorkerPool,
        observability_hub: Optional[ObservabilityHub] = None,
        monitor_poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
    ):
        if not funcs or not funcs[0].funcs:
            raise ValueError("At least one worker function is required")

        self.funcs = list(funcs)
        self.conf: Dict[str, Any] = dict(conf or {})
        self.config = RunnerConfig.from_conf(self.conf)
        self.pool = pool
        self.observability_hub = observability_hub or ObservabilityHub.get_instance()
        self.monitor_poll_interval = monitor_poll_interval

        self.buffer_size = self.config.buffer_size
        self.reuse_worker = self.config.py_worker_reuse
        # Each worker gets an equal share of the executor memory
        self.memory_mb = self.config.memory_mb

        head = self.funcs[0].funcs[0]
        self.env_vars = head.env_vars
        self.worker_exec = self.config.python_env or head.worker_exec
        self.worker_ver = head.worker_ver

    def compute(
        self,
        input_iterator: Iterator[Any],
        partition_index: int,
        context: TaskContext,
        barrier: Optional[BarrierCapability] = None,
    ) -> Iterator[Any]:
        """Run the input through a worker and return its output lazily.

        Args:
            input_iterator: Records to send to the worker.
            partition_index: Partition computed by the task.
            context: Task context of the calling task.
            barrier: Barrier capability, for barrier tasks only.

        Returns:
            Iterator over the worker output. It raises CancellationError once
            the task is interrupted.
        """
        start_time = time.perf_counter()

        if self.reuse_worker:
            self.env_vars[WorkerEnv.PY_WORKER_REUSE] = "1"
        if self.memory_mb is not None:
            self.env_vars[WorkerEnv.PY_EXECUTOR_MEMORY] = str(self.memory_mb)
        self.env_vars[WorkerEnv.BUFFER_SIZE] = str(self.buffer_size)

        worker = self.pool.acquire(self.worker_exec, dict(self.env_vars), self.config.to_conf())
        released_or_closed = ReleaseState()

        writer_thread = self.new_writer_thread(
            worker, input_iterator, partition_index, context, barrier
        )

        def on_task_completion(_context: TaskContext) -> None:
            writer_thread.shutdown_on_task_completion()
            if not self.reuse_worker or released_or_closed.try_settle():
                try:
                    worker.close()
                except Exception as e:
                    logger.warning(f"Failed to close worker socket: {e}")

        context.add_task_completion_listener(on_task_completion)

        writer_thread.start()
        MonitorThread(
            self.pool,
            self.worker_exec,
            dict(self.env_vars),
            worker,
            context,
            kill_timeout_ms=self.config.task_kill_timeout,
            poll_interval=self.monitor_poll_interval,
            partition_index=partition_index,
            released_or_closed=released_or_closed,
            observability_hub=self.observability_hub,
        ).start()

        if self.observability_hub.enabled:
            self.observability_hub.emit(SessionStartRecord(
                partition_index=partition_index,
                worker_exec=self.worker_exec,
                worker_id=worker.worker_id,
                reuse_worker=self.reuse_worker,
                buffer_size=self.buffer_size,
                memory_mb=self.memory_mb,
            ))

        stream = worker.input_stream(self.buffer_size)
        reader = self.new_reader_iterator(
            stream, writer_thread, start_time, worker, released_or_closed, context,
            partition_index,
        )
        return InterruptibleIterator(context, reader)

    def release_worker(self, worker: WorkerHandle) -> None:
        """Return a worker to the idle pool."""
        self.pool.release(self.worker_exec, dict(self.env_vars), worker)

    @abstractmethod
    def new_writer_thread(
        self,
        worker: WorkerHandle,
        input_iterator: Iterator[Any],
        partition_index: int,
        context: TaskContext,
        barrier: Optional[BarrierCapability],
    ) -> WriterThread:
        ...

    @abstractmethod
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
        ...
