"""Core types shared by the session machinery.

- Errors: WorkerBridgeError and its classified subclasses
- Context: TaskContext / BarrierCapability protocols and local implementations
- Functions: WorkerFunction, ChainedWorkerFunctions
- Pool: WorkerHandle and the WorkerPool protocol
"""

from workerbridge.core.errors import (
    WorkerBridgeError,
    WorkerProtocolError,
    WorkerRaisedError,
    CancellationError,
    ResourceSetupError,
    BarrierFailedError,
    TaskCompletionListenerError,
)
from workerbridge.core.context import (
    TaskContext,
    BarrierCapability,
    LocalTaskContext,
    LocalBarrier,
)
from workerbridge.core.function import WorkerFunction, ChainedWorkerFunctions
from workerbridge.core.pool import ReleaseState, WorkerHandle, WorkerPool

__all__ = [
    # Errors
    "WorkerBridgeError",
    "WorkerProtocolError",
    "WorkerRaisedError",
    "CancellationError",
    "ResourceSetupError",
    "BarrierFailedError",
    "TaskCompletionListenerError",
    # Context
    "TaskContext",
    "BarrierCapability",
    "LocalTaskContext",
    "LocalBarrier",
    # Functions
    "WorkerFunction",
    "ChainedWorkerFunctions",
    # Pool
    "ReleaseState",
    "WorkerHandle",
    "WorkerPool",
]
