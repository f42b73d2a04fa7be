"""Worker function descriptors.

A WorkerFunction names the worker runtime to launch and the opaque command
it should run. Functions applied one after another on the worker side are
grouped into a ChainedWorkerFunctions.
"""

from dataclasses import dataclass, field
from typing import Dict, List


@dataclass
class WorkerFunction:
    """One command to run inside a worker.

    Attributes:
        command: Opaque command payload, interpreted by the worker.
        env_vars: Environment for the worker process. Shared by reference
            with the session that runs it.
        worker_exec: Executable used to launch the worker.
        worker_ver: Version string of the worker runtime.
    """
    command: bytes
    env_vars: Dict[str, str] = field(default_factory=dict)
    worker_exec: str = "python3"
    worker_ver: str = ""


@dataclass
class ChainedWorkerFunctions:
    """Functions applied in sequence to the same records."""
    funcs: List[WorkerFunction] = field(default_factory=list)
