"""Worker sessions over local sockets.

Components:
- Protocol: int32 framing, special length markers, envelopes
- Writer / Reader: the two halves of one session
- Barrier: side-channel listener for barrier tasks
- Monitor: watchdog for interrupted tasks
- Runners: BaseWorkerRunner orchestration, BytesWorkerRunner
- Launcher: ProcessWorkerPool backed by Python subprocesses
"""

from workerbridge.process.protocol import SpecialLengths, BarrierProtocol
from workerbridge.process.barrier import BarrierServer
from workerbridge.process.writer import WriterThread
from workerbridge.process.reader import ReaderIterator, InterruptibleIterator
from workerbridge.process.monitor import MonitorThread, describe_task
from workerbridge.process.runner import BaseWorkerRunner, WorkerConf, WorkerEnv
from workerbridge.process.bytes_runner import (
    BytesWorkerRunner,
    BytesWriterThread,
    BytesReaderIterator,
)
from workerbridge.process.launcher import ProcessWorkerPool

__all__ = [
    # Protocol
    "SpecialLengths",
    "BarrierProtocol",
    # Session
    "BarrierServer",
    "WriterThread",
    "ReaderIterator",
    "InterruptibleIterator",
    "MonitorThread",
    "describe_task",
    # Runners
    "BaseWorkerRunner",
    "WorkerConf",
    "WorkerEnv",
    "BytesWorkerRunner",
    "BytesWriterThread",
    "BytesReaderIterator",
    # Pool
    "ProcessWorkerPool",
]
