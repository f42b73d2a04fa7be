"""workerbridge - Drive external worker processes over local sockets.

A task hands its input records to a worker process and pulls the results
back lazily. Each session runs a writer thread, a reader iterator and a
watchdog, and returns the worker to a pool when the stream ends cleanly.

Quick Start:
    >>> import sys
    >>> import workerbridge as wb
    >>>
    >>> funcs = [wb.ChainedWorkerFunctions([wb.WorkerFunction(b"upper", {}, sys.executable)])]
    >>> with wb.ProcessWorkerPool() as pool:
    ...     runner = wb.BytesWorkerRunner(funcs, {"buffer_size": "8192"}, pool)
    ...     context = wb.LocalTaskContext(partition_id=0)
    ...     print(list(runner.compute(iter([b"hi"]), 0, context)))
    ...     context.mark_completed()
    [b'HI']

For advanced usage, see:
- workerbridge.core: errors, task context, worker functions, pool protocol
- workerbridge.process: protocol, writer/reader, barrier, watchdog, runners
- workerbridge.config: YAML configuration
- workerbridge.observability: session tracing
"""

try:
    from workerbridge._version import __version__
except ImportError:
    __version__ = "0.0.0.dev0"

from workerbridge.core import (
    # Errors
    WorkerBridgeError,
    WorkerProtocolError,
    WorkerRaisedError,
    CancellationError,
    ResourceSetupError,
    BarrierFailedError,
    # Context
    LocalTaskContext,
    LocalBarrier,
    # Functions
    WorkerFunction,
    ChainedWorkerFunctions,
    # Pool
    WorkerHandle,
)
from workerbridge.process import (
    BaseWorkerRunner,
    BytesWorkerRunner,
    ProcessWorkerPool,
    SpecialLengths,
)
from workerbridge.config import RunnerConfig, load_yaml_config

__all__ = [
    "__version__",
    # Errors
    "WorkerBridgeError",
    "WorkerProtocolError",
    "WorkerRaisedError",
    "CancellationError",
    "ResourceSetupError",
    "BarrierFailedError",
    # Context
    "LocalTaskContext",
    "LocalBarrier",
    # Functions
    "WorkerFunction",
    "ChainedWorkerFunctions",
    # Runners and pool
    "WorkerHandle",
    "BaseWorkerRunner",
    "BytesWorkerRunner",
    "ProcessWorkerPool",
    "SpecialLengths",
    # Config
    "RunnerConfig",
    "load_yaml_config",
]
