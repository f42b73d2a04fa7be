"""Watchdog that kills workers of tasks that do not stop when interrupted.

A task may ignore cooperative interruption. Its writer and reader would
then stay blocked on the worker socket forever, holding the worker slot.
MonitorThread waits for the interruption, gives the task a grace period to
complete, and destroys the worker through the pool if it has not.
"""

import logging
import threading
import time
from typing import Mapping, Optional

from workerbridge.core.context import TaskContext
from workerbridge.core.pool import ReleaseState, WorkerHandle, WorkerPool
from workerbridge.observability import ObservabilityHub
from workerbridge.observability.records import WorkerKillRecord

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SEC = 2.0


def describe_task(context: TaskContext) -> str:
    """Task name as the executor prints it, to help find the task to blame."""
    return (
        f"{getattr(context, 'partition_id', '?')}.{getattr(context, 'attempt_number', '?')} "
        f"in stage {getattr(context, 'stage_id', '?')} "
        f"(TID {getattr(context, 'task_attempt_id', '?')})"
    )


class MonitorThread(threading.Thread):
    """Destroys the worker if an interrupted task fails to complete in time.

    The destroy bypasses the release latch: a destroyed worker must never go
    back to the idle pool. Completion may still flip between the last check
    and the destroy call; that race is accepted.

    Args:
        pool: Pool that owns the worker.
        worker_exec: Worker executable (pool key).
        env_vars: Worker environment (pool key).
        worker: Worker of the session.
        context: Task context to watch.
        kill_timeout_ms: Grace period after interruption, in milliseconds.
        poll_interval: Seconds between checks of the task state.
        partition_index: Partition computed by the task.
        released_or_closed: Release latch of the session, reported when killing.
        observability_hub: Optional custom hub (uses global if None).
    """

    def __init__(
        self,
        pool: WorkerPool,
        worker_exec: str,
        env_vars: Mapping[str, str],
        worker: WorkerHandle,
        context: TaskContext,
        kill_timeout_ms: int = 20000,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
        partition_index: int = 0,
        released_or_closed: Optional[ReleaseState] = None,
        observability_hub: Optional[ObservabilityHub] = None,
    ):
        super().__init__(name=f"Worker Monitor for {worker_exec}", daemon=True)
        self._pool = pool
        self._worker_exec = worker_exec
        self._env_vars = env_vars
        self._worker = worker
        self._context = context
        self._kill_timeout_ms = kill_timeout_ms
        self._poll_interval = poll_interval
        self._partition_index = partition_index
        self._released_or_closed = released_or_closed
        self._hub = observability_hub or ObservabilityHub.get_instance()
        self._killed = False

    @property
    def killed(self) -> bool:
        """Whether this watchdog attempted to destroy the worker."""
        return self._killed

    def run(self) -> None:
        while not self._context.is_interrupted() and not self._context.is_completed():
            time.sleep(self._poll_interval)

        if self._context.is_completed():
            return

        time.sleep(self._kill_timeout_ms / 1000)
        if self._context.is_completed():
            return

        task_name = describe_task(self._context)
        settled = self._released_or_closed is not None and self._released_or_closed.is_settled
        logger.warning(
            f"Incomplete task {task_name} interrupted: Attempting to kill worker"
            f" (released or closed: {settled})"
        )
        self._killed = True
        error: Optional[str] = None
        try:
            self._pool.destroy(self._worker_exec, self._env_vars, self._worker)
        except Exception as e:
            logger.error(f"Exception when trying to kill worker {self._worker.worker_id}: {e}")
            error = str(e)

        if self._hub.enabled:
            self._hub.emit(WorkerKillRecord(
                partition_index=self._partition_index,
                worker_id=self._worker.worker_id,
                task_name=task_name,
                kill_timeout_ms=self._kill_timeout_ms,
                released_or_closed=settled,
                succeeded=error is None,
                error=error,
            ))
