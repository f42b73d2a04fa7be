"""Worker handles and the worker pool protocol.

Sessions consume the pool through three operations only: acquire a worker
for an executable and environment, release it back to idle, or destroy it.
How workers are spawned and health-checked is up to the pool.
"""

import socket
import subprocess
import threading
from typing import BinaryIO, Dict, Mapping, Optional, Protocol


class ReleaseState:
    """Exactly-once latch deciding who releases or closes a worker.

    The task completion hook and the reader's end-of-stream handler both
    try to settle it; only the first caller of try_settle() gets True.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._settled = False

    def try_settle(self) -> bool:
        """Flip to released-or-closed. Returns True for the single winner."""
        with self._lock:
            if self._settled:
                return False
            self._settled = True
            return True

    @property
    def is_settled(self) -> bool:
        return self._settled


class WorkerHandle:
    """One acquired worker process and its socket connection.

    The session owning the handle reads from one half of the socket and
    writes to the other; the two directions are never shared between
    threads.

    Args:
        sock: Connected stream socket to the worker.
        process: The worker process, when the pool spawned it locally.
        worker_id: Identifier used in log messages.
    """

    def __init__(
        self,
        sock: socket.socket,
        process: Optional[subprocess.Popen] = None,
        worker_id: Optional[str] = None,
    ):
        self.sock = sock
        self.process = process
        self.worker_id = worker_id or (str(process.pid) if process else f"sock-{sock.fileno()}")
        self._closed = False

    def input_stream(self, buffer_size: int) -> BinaryIO:
        """Buffered binary reader over the worker's output."""
        return self.sock.makefile("rb", buffering=buffer_size)

    def output_stream(self, buffer_size: int) -> BinaryIO:
        """Buffered binary writer over the worker's input."""
        return self.sock.makefile("wb", buffering=buffer_size)

    def shutdown_output(self) -> None:
        """Half-close the write side so the worker sees end of input."""
        self.sock.shutdown(socket.SHUT_WR)

    def close(self) -> None:
        """Close the connection, unblocking any thread reading or writing it."""
        if self._closed:
            return
        self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Peer already gone
            pass
        self.sock.close()

    @property
    def is_closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return f"WorkerHandle({self.worker_id})"


class WorkerPool(Protocol):
    """Protocol for the collaborator that owns worker processes."""

    def acquire(
        self,
        worker_exec: str,
        env_vars: Mapping[str, str],
        conf: Optional[Dict[str, str]] = None,
    ) -> WorkerHandle:
        """Return an idle or newly started worker for (exec, env)."""
        ...

    def release(
        self, worker_exec: str, env_vars: Mapping[str, str], handle: WorkerHandle
    ) -> None:
        """Return a worker to the idle pool for reuse."""
        ...

    def destroy(
        self, worker_exec: str, env_vars: Mapping[str, str], handle: WorkerHandle
    ) -> None:
        """Forcibly terminate a worker. It must never be reused."""
        ...
