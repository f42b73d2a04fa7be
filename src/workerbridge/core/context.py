"""Task context capabilities consumed by worker sessions.

A worker session never schedules or cancels tasks itself. It only asks the
task context whether the task is completed or interrupted, and registers
callbacks that run when the task completes. Barrier tasks additionally
supply a barrier capability that the worker can call back into.

Example:
    >>> from workerbridge.core import LocalTaskContext, LocalBarrier
    >>>
    >>> context = LocalTaskContext(partition_id=3)
    >>> context.add_task_completion_listener(lambda ctx: print("done"))
    >>> context.mark_completed()
    done
"""

import logging
import threading
from typing import Callable, List, Optional, Protocol

from workerbridge.core.errors import BarrierFailedError, TaskCompletionListenerError

logger = logging.getLogger(__name__)


class TaskContext(Protocol):
    """Protocol for the task-scheduling context a session runs in."""

    partition_id: int
    attempt_number: int
    stage_id: int
    task_attempt_id: int

    def is_completed(self) -> bool:
        """Whether the task has finished (successfully or not)."""
        ...

    def is_interrupted(self) -> bool:
        """Whether the task has been asked to stop."""
        ...

    def add_task_completion_listener(
        self, listener: Callable[["TaskContext"], None]
    ) -> None:
        """Register a callback invoked once when the task completes."""
        ...

    def get_kill_reason(self) -> Optional[str]:
        """Reason given when the task was interrupted, if any."""
        ...


class BarrierCapability(Protocol):
    """Protocol for a rendezvous primitive shared by a group of tasks."""

    def barrier(self) -> None:
        """Block until every cooperating task has arrived.

        Raises:
            BarrierFailedError: If the rendezvous cannot complete.
        """
        ...


class LocalTaskContext:
    """In-process task context.

    Completion listeners run exactly once, in registration order, on the
    thread that calls mark_completed(). A listener registered after
    completion runs immediately.

    Args:
        partition_id: Partition this task computes.
        attempt_number: Attempt number of this task.
        stage_id: Stage the task belongs to.
        task_attempt_id: Unique id of this task attempt.
    """

    def __init__(
        self,
        partition_id: int = 0,
        attempt_number: int = 0,
        stage_id: int = 0,
        task_attempt_id: int = 0,
    ):
        self.partition_id = partition_id
        self.attempt_number = attempt_number
        self.stage_id = stage_id
        self.task_attempt_id = task_attempt_id

        self._lock = threading.Lock()
        self._completed = False
        self._kill_reason: Optional[str] = None
        self._listeners: List[Callable[["LocalTaskContext"], None]] = []

    def is_completed(self) -> bool:
        return self._completed

    def is_interrupted(self) -> bool:
        return self._kill_reason is not None

    def get_kill_reason(self) -> Optional[str]:
        return self._kill_reason

    def mark_interrupted(self, reason: str = "unknown reason") -> None:
        """Flag the task as interrupted.

        Args:
            reason: Human-readable kill reason.
        """
        self._kill_reason = reason

    def add_task_completion_listener(
        self, listener: Callable[["LocalTaskContext"], None]
    ) -> None:
        with self._lock:
            if not self._completed:
                self._listeners.append(listener)
                return
        listener(self)

    def mark_completed(self) -> None:
        """Mark the task completed and run all completion listeners.

        Every listener runs even if an earlier one fails.

        Raises:
            TaskCompletionListenerError: If any listener raised.
        """
        with self._lock:
            if self._completed:
                return
            self._completed = True
            listeners = list(self._listeners)
            self._listeners.clear()

        errors: List[BaseException] = []
        for listener in listeners:
            try:
                listener(self)
            except Exception as e:
                logger.error(f"Error in task completion listener: {e}")
                errors.append(e)

        if errors:
            raise TaskCompletionListenerError(errors)


class LocalBarrier:
    """Barrier capability backed by threading.Barrier.

    Args:
        parties: Number of tasks that must arrive before any proceeds.
        timeout: Optional timeout in seconds. None waits forever.
    """

    def __init__(self, parties: int, timeout: Optional[float] = None):
        if parties < 1:
            raise ValueError("parties must be at least 1")
        self._barrier = threading.Barrier(parties)
        self._timeout = timeout

    def barrier(self) -> None:
        try:
            self._barrier.wait(self._timeout)
        except threading.BrokenBarrierError as e:
            raise BarrierFailedError("Barrier was broken before all tasks arrived") from e

    def abort(self) -> None:
        """Break the barrier, failing every current and future waiter."""
        self._barrier.abort()

    @property
    def n_waiting(self) -> int:
        """Number of tasks currently blocked in barrier()."""
        return self._barrier.n_waiting
