"""Worker pool that runs each worker in its own Python subprocess.

Each worker is started as:

    <worker_exec> -m workerbridge.process.worker --port <port>

and connects back to a one-shot listener on the host. Idle workers are kept
per (executable, environment) key and handed out again only while their
process is alive.

Example:
    >>> from workerbridge.process.launcher import ProcessWorkerPool
    >>>
    >>> with ProcessWorkerPool(connect_timeout_sec=5.0) as pool:
    ...     worker = pool.acquire(sys.executable, {"PY_WORKER_REUSE": "1"})
    ...     ...
    ...     pool.release(sys.executable, {"PY_WORKER_REUSE": "1"}, worker)
"""

import logging
import os
import socket
import subprocess
import threading
from typing import Dict, List, Mapping, Optional, Tuple

from workerbridge.core.errors import ResourceSetupError
from workerbridge.core.pool import WorkerHandle

logger = logging.getLogger(__name__)

WORKER_MODULE = "workerbridge.process.worker"

PoolKey = Tuple[str, Tuple[Tuple[str, str], ...]]


class ProcessWorkerPool:
    """Spawns, reuses and kills worker subprocesses.

    Args:
        connect_timeout_sec: How long a new worker may take to connect back.
        host: Interface the workers connect back to.
        log_level: Log level passed to the workers.
    """

    def __init__(
        self,
        connect_timeout_sec: float = 10.0,
        host: str = "127.0.0.1",
        log_level: str = "WARNING",
    ):
        self._connect_timeout_sec = connect_timeout_sec
        self._host = host
        self._log_level = log_level

        self._lock = threading.Lock()
        self._idle: Dict[PoolKey, List[WorkerHandle]] = {}
        self._workers: List[WorkerHandle] = []

    @staticmethod
    def _key(worker_exec: str, env_vars: Mapping[str, str]) -> PoolKey:
        return worker_exec, tuple(sorted(env_vars.items()))

    @staticmethod
    def _is_alive(handle: WorkerHandle) -> bool:
        if handle.is_closed:
            return False
        return handle.process is None or handle.process.poll() is None

    def acquire(
        self,
        worker_exec: str,
        env_vars: Mapping[str, str],
        conf: Optional[Dict[str, str]] = None,
    ) -> WorkerHandle:
        """Return a live idle worker for (exec, env), or start a new one.

        Raises:
            ResourceSetupError: If a new worker cannot be started.
        """
        key = self._key(worker_exec, env_vars)
        with self._lock:
            idle = self._idle.get(key, [])
            while idle:
                handle = idle.pop()
                if self._is_alive(handle):
                    logger.debug(f"Reusing worker {handle.worker_id}")
                    return handle
                self._discard(handle)

        handle = self._spawn(worker_exec, env_vars)
        with self._lock:
            self._workers.append(handle)
        return handle

    def release(
        self, worker_exec: str, env_vars: Mapping[str, str], handle: WorkerHandle
    ) -> None:
        """Put a worker back into the idle pool."""
        with self._lock:
            if not self._is_alive(handle):
                self._discard(handle)
                return
            self._idle.setdefault(self._key(worker_exec, env_vars), []).append(handle)

    def destroy(
        self, worker_exec: str, env_vars: Mapping[str, str], handle: WorkerHandle
    ) -> None:
        """Kill a worker. It is never handed out again."""
        with self._lock:
            idle = self._idle.get(self._key(worker_exec, env_vars), [])
            if handle in idle:
                idle.remove(handle)
            self._discard(handle)
        self._stop(handle, kill=True)

    def shutdown(self) -> None:
        """Stop every worker started by this pool."""
        with self._lock:
            workers = list(self._workers)
            self._workers.clear()
            self._idle.clear()
        for handle in workers:
            self._stop(handle, kill=False)

    def idle_count(self, worker_exec: Optional[str] = None) -> int:
        """Number of idle workers, optionally for one executable."""
        with self._lock:
            return sum(
                len(handles)
                for (exec_, _), handles in self._idle.items()
                if worker_exec is None or exec_ == worker_exec
            )

    def __enter__(self) -> "ProcessWorkerPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.shutdown()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _discard(self, handle: WorkerHandle) -> None:
        # Caller holds the lock
        if handle in self._workers:
            self._workers.remove(handle)

    def _spawn(self, worker_exec: str, env_vars: Mapping[str, str]) -> WorkerHandle:
        try:
            listener = socket.create_server((self._host, 0), backlog=1)
        except OSError as e:
            raise ResourceSetupError(f"Failed to listen for worker connection: {e}") from e

        try:
            listener.settimeout(self._connect_timeout_sec)
            port = listener.getsockname()[1]
            cmd = [
                worker_exec,
                "-m", WORKER_MODULE,
                "--port", str(port),
                "--host", self._host,
                "--log-level", self._log_level,
            ]
            env = dict(os.environ)
            env.update(env_vars)

            logger.info(f"Starting worker subprocess: {' '.join(cmd)}")
            try:
                process = subprocess.Popen(
                    cmd,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                )
            except OSError as e:
                raise ResourceSetupError(f"Failed to start worker subprocess: {e}") from e

            try:
                sock, _ = listener.accept()
            except OSError as e:
                self._kill_process(process)
                raise ResourceSetupError(
                    f"Worker did not connect back within {self._connect_timeout_sec}s: {e}"
                ) from e
        finally:
            listener.close()

        sock.setblocking(True)
        handle = WorkerHandle(sock, process)
        logger.debug(f"Worker {handle.worker_id} connected on port {port}")
        return handle

    def _stop(self, handle: WorkerHandle, kill: bool) -> None:
        try:
            handle.close()
        except OSError as e:
            logger.warning(f"Failed to close worker socket: {e}")
        if handle.process is None:
            return
        if kill:
            self._kill_process(handle.process)
            return
        # Workers exit on their own once the connection is closed
        try:
            handle.process.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            logger.warning(f"Worker {handle.worker_id} did not exit, killing")
            self._kill_process(handle.process)

    @staticmethod
    def _kill_process(process: subprocess.Popen) -> None:
        try:
            process.kill()
            process.wait(timeout=5.0)
        except Exception as e:
            logger.warning(f"Error killing worker process {process.pid}: {e}")
