"""Tests for task context and barrier implementations."""

import threading

import pytest

from workerbridge.core import (
    BarrierFailedError,
    LocalBarrier,
    LocalTaskContext,
    TaskCompletionListenerError,
)
from workerbridge.process.monitor import describe_task


class TestLocalTaskContext:
    """Tests for LocalTaskContext."""

    def test_initial_state(self):
        """Test a new context is neither completed nor interrupted."""
        context = LocalTaskContext(partition_id=3)

        assert context.partition_id == 3
        assert not context.is_completed()
        assert not context.is_interrupted()
        assert context.get_kill_reason() is None

    def test_mark_interrupted(self):
        """Test interruption records the kill reason."""
        context = LocalTaskContext()
        context.mark_interrupted("stage cancelled")

        assert context.is_interrupted()
        assert context.get_kill_reason() == "stage cancelled"

    def test_listeners_run_once_in_order(self):
        """Test listeners run in registration order, exactly once."""
        context = LocalTaskContext()
        calls = []
        context.add_task_completion_listener(lambda ctx: calls.append("a"))
        context.add_task_completion_listener(lambda ctx: calls.append("b"))

        context.mark_completed()
        context.mark_completed()

        assert calls == ["a", "b"]
        assert context.is_completed()

    def test_listener_after_completion_runs_immediately(self):
        """Test a late listener runs on registration."""
        context = LocalTaskContext()
        context.mark_completed()
        calls = []

        context.add_task_completion_listener(lambda ctx: calls.append(ctx))

        assert calls == [context]

    def test_listener_errors_are_aggregated(self):
        """Test every listener runs and failures are raised together."""
        context = LocalTaskContext()
        calls = []

        def failing(ctx):
            raise RuntimeError("listener broke")

        context.add_task_completion_listener(failing)
        context.add_task_completion_listener(lambda ctx: calls.append("ran"))

        with pytest.raises(TaskCompletionListenerError) as exc_info:
            context.mark_completed()

        assert calls == ["ran"]
        assert len(exc_info.value.errors) == 1
        assert "listener broke" in str(exc_info.value)

    def test_describe_task(self):
        """Test the task name used in watchdog messages."""
        context = LocalTaskContext(
            partition_id=3, attempt_number=1, stage_id=2, task_attempt_id=42
        )
        assert describe_task(context) == "3.1 in stage 2 (TID 42)"


class TestLocalBarrier:
    """Tests for LocalBarrier."""

    def test_single_party_passes(self):
        """Test a one-party barrier returns immediately."""
        LocalBarrier(1).barrier()

    def test_two_parties_meet(self):
        """Test both parties are released once both arrive."""
        barrier = LocalBarrier(2, timeout=5.0)
        passed = []

        thread = threading.Thread(target=lambda: (barrier.barrier(), passed.append(1)))
        thread.start()
        barrier.barrier()
        thread.join(timeout=5.0)

        assert passed == [1]

    def test_abort_fails_waiters(self):
        """Test an aborted barrier raises BarrierFailedError."""
        barrier = LocalBarrier(2)
        barrier.abort()

        with pytest.raises(BarrierFailedError):
            barrier.barrier()

    def test_timeout_breaks_barrier(self):
        """Test a timed-out wait raises BarrierFailedError."""
        barrier = LocalBarrier(2, timeout=0.05)

        with pytest.raises(BarrierFailedError):
            barrier.barrier()

    def test_invalid_parties(self):
        """Test parties must be positive."""
        with pytest.raises(ValueError):
            LocalBarrier(0)
